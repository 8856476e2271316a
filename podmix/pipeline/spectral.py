"""Spectral subtraction noise reduction.

STFT analysis/synthesis written out directly over the sample buffer:
  ① Per-frame RMS energy over the whole track
  ② Noise set = the quietest 10% of frames (at least 10), falling back
     to the first second when the track is shorter than one frame
  ③ Noise profile = mean magnitude spectrum of the noise set
  ④ clean = max(mag − sensitivity × noise, 0.01 × mag), phase kept,
     conjugate symmetry restored before the inverse FFT
  ⑤ Overlap-add, normalized by the summed squared window

Frame 2048, hop 512, Hann analysis and synthesis windows.
"""

from __future__ import annotations

import numpy as np
import structlog

from podmix.audio import as_frames
from podmix.models import AudioTrack

logger = structlog.get_logger()

FRAME_SIZE = 2048
HOP_SIZE = 512
NOISE_PERCENTILE = 0.10
MIN_NOISE_FRAMES = 10
SPECTRAL_FLOOR = 0.01
NOISE_FALLBACK_S = 1.0
CHUNK_FRAMES = 256

THRESHOLD_RANGE_DB = (-60.0, -30.0)
SENSITIVITY_RANGE = (1.5, 3.0)


def sensitivity_from_threshold(threshold_db: float) -> float:
    """Linear map −60 dB → 1.5 … −30 dB → 3.0 (a higher noise floor subtracts harder)."""
    lo, hi = THRESHOLD_RANGE_DB
    u = (min(max(threshold_db, lo), hi) - lo) / (hi - lo)
    s_lo, s_hi = SENSITIVITY_RANGE
    return s_lo + (s_hi - s_lo) * u


def _frame_starts(n: int) -> tuple[np.ndarray, int]:
    """Frame start offsets into the padded buffer, and the padded length."""
    padded = n + 2 * FRAME_SIZE
    rem = (padded - FRAME_SIZE) % HOP_SIZE
    if rem:
        padded += HOP_SIZE - rem
    n_frames = 1 + (padded - FRAME_SIZE) // HOP_SIZE
    return np.arange(n_frames) * HOP_SIZE, padded


def _frame_energy(x: np.ndarray, starts: np.ndarray) -> np.ndarray:
    csum = np.concatenate(([0.0], np.cumsum(np.square(x))))
    return np.sqrt(np.maximum(csum[starts + FRAME_SIZE] - csum[starts], 0.0) / FRAME_SIZE)


def _noise_frames(energy: np.ndarray, starts: np.ndarray, n: int, sr: int) -> np.ndarray:
    """Indices of the frames whose spectra define the noise profile."""
    interior = np.flatnonzero((starts >= FRAME_SIZE) & (starts + FRAME_SIZE <= FRAME_SIZE + n))
    if len(interior):
        k = min(len(interior), max(int(len(interior) * NOISE_PERCENTILE), MIN_NOISE_FRAMES))
        # Quietest k frames; ties (digital silence) resolve by position
        order = np.argsort(energy[interior], kind="stable")
        return np.sort(interior[order[:k]])
    # Shorter than one frame: use what overlaps the first second
    head = int(NOISE_FALLBACK_S * sr)
    return np.flatnonzero((starts + FRAME_SIZE > FRAME_SIZE) & (starts < FRAME_SIZE + head))


def _spectra(padded: np.ndarray, starts: np.ndarray, window: np.ndarray) -> np.ndarray:
    idx = starts[:, np.newaxis] + np.arange(FRAME_SIZE)[np.newaxis, :]
    return np.fft.fft(padded[idx] * window, axis=1)


def spectral_subtract(x: np.ndarray, sr: int, sensitivity: float) -> np.ndarray:
    """Denoise one channel; output has the input's length."""
    x = np.asarray(x, dtype=np.float64)
    n = len(x)
    if n == 0:
        return x.copy()

    window = np.hanning(FRAME_SIZE)
    starts, padded_len = _frame_starts(n)
    padded = np.zeros(padded_len)
    padded[FRAME_SIZE:FRAME_SIZE + n] = x

    energy = _frame_energy(padded, starts)
    noise_idx = _noise_frames(energy, starts, n, sr)
    noise_mag = np.zeros(FRAME_SIZE)
    for i in range(0, len(noise_idx), CHUNK_FRAMES):
        noise_mag += np.abs(_spectra(padded, starts[noise_idx[i:i + CHUNK_FRAMES]], window)).sum(axis=0)
    noise_mag /= max(len(noise_idx), 1)

    half = FRAME_SIZE // 2
    output = np.zeros(padded_len)
    win_sum = np.zeros(padded_len)
    win_sq = window**2
    for i in range(0, len(starts), CHUNK_FRAMES):
        block = starts[i:i + CHUNK_FRAMES]
        spec = _spectra(padded, block, window)
        mag = np.abs(spec)
        clean = np.maximum(mag - sensitivity * noise_mag, SPECTRAL_FLOOR * mag)
        rebuilt = clean * np.exp(1j * np.angle(spec))
        # Hermitian symmetry so the inverse transform is real
        rebuilt[:, 0] = rebuilt[:, 0].real
        rebuilt[:, half] = rebuilt[:, half].real
        rebuilt[:, half + 1:] = np.conj(rebuilt[:, 1:half][:, ::-1])
        frames = np.fft.ifft(rebuilt, axis=1).real * window
        for start, frame in zip(block, frames):
            output[start:start + FRAME_SIZE] += frame
            win_sum[start:start + FRAME_SIZE] += win_sq

    output /= np.maximum(win_sum, 1e-8)
    return output[FRAME_SIZE:FRAME_SIZE + n]


def spectral_denoise_samples(samples: np.ndarray, sr: int, threshold_db: float) -> np.ndarray:
    """Each channel gets its own noise profile."""
    data = as_frames(samples)
    sensitivity = sensitivity_from_threshold(threshold_db)
    return np.column_stack([spectral_subtract(data[:, ch], sr, sensitivity) for ch in range(data.shape[1])])


def spectral_denoise_buffer(data: bytes, threshold_db: float) -> bytes:
    """Decode → subtract → re-encode at the same rate and channel count."""
    track = AudioTrack.from_bytes(data)
    cleaned = AudioTrack(spectral_denoise_samples(track.samples, track.sample_rate, threshold_db),
                         track.sample_rate)
    logger.info(
        "denoise.spectral",
        sensitivity=round(sensitivity_from_threshold(threshold_db), 3),
        channels=track.channels,
        seconds=round(track.duration, 2),
    )
    return cleaned.to_wav_bytes()
