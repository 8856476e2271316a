"""In-process DSP kernels behind the native engine's filter nodes.

All kernels take and return float64 arrays shaped (frames, channels) and
follow the semantics of the ffmpeg filter each node renders to:
  - highpass / lowpass: 2-pole Butterworth biquads
  - afftdn: STFT magnitude subtraction with bounded reduction
  - loudnorm: BS.1770 measurement (pyloudnorm) + linear gain, peak-limited
  - acompressor: RMS detector, soft knee, average channel link
  - alimiter: lookahead peak limiter
  - afade / atrim / silencedetect
"""

from __future__ import annotations

import math

import numpy as np
import pyloudnorm as pyln
from scipy import signal
from scipy.ndimage import minimum_filter1d

from podmix.audio import as_frames, db_to_linear

TRUE_PEAK_OVERSAMPLE = 4
COMPRESSOR_BLOCK = 32
LRA_WINDOW_S = 3.0
LRA_HOP_S = 1.0
ABSOLUTE_GATE_LUFS = -70.0


# ── Filters ──────────────────────────────────────────────


def _butter(data: np.ndarray, sr: int, freq: float, btype: str) -> np.ndarray:
    nyq = sr / 2
    if freq <= 0 or freq >= nyq:
        return data
    sos = signal.butter(2, freq, btype=btype, fs=sr, output="sos")
    return signal.sosfilt(sos, as_frames(data), axis=0)


def highpass(data: np.ndarray, sr: int, freq: float) -> np.ndarray:
    return _butter(data, sr, freq, "highpass")


def lowpass(data: np.ndarray, sr: int, freq: float) -> np.ndarray:
    return _butter(data, sr, freq, "lowpass")


def fft_denoise(data: np.ndarray, sr: int, noise_reduction: float, noise_floor: float,
                nperseg: int = 2048) -> np.ndarray:
    """Per-bin magnitude subtraction, attenuation capped at ``noise_reduction`` dB.

    The noise spectrum is the 10th-percentile magnitude per bin, raised to at
    least the absolute ``noise_floor`` level.
    """
    data = as_frames(data)
    n = len(data)
    if n < nperseg:
        return data.copy()
    max_atten = db_to_linear(-abs(noise_reduction))
    win = signal.get_window("hann", nperseg)
    floor_bin = db_to_linear(noise_floor) * np.sqrt(np.sum(win**2)) / np.sum(win)
    out = np.empty_like(data)
    for ch in range(data.shape[1]):
        _, _, z = signal.stft(data[:, ch], fs=sr, nperseg=nperseg, noverlap=nperseg * 3 // 4,
                              scaling="spectrum")
        mag = np.abs(z)
        noise = np.maximum(np.percentile(mag, 10, axis=1, keepdims=True), floor_bin)
        gain = np.clip(1.0 - noise / np.maximum(mag, 1e-12), max_atten, 1.0)
        _, y = signal.istft(z * gain, fs=sr, nperseg=nperseg, noverlap=nperseg * 3 // 4,
                            scaling="spectrum")
        y = y[:n]
        out[:, ch] = np.pad(y, (0, n - len(y))) if len(y) < n else y
    return out


# ── Loudness ─────────────────────────────────────────────


def integrated_loudness(data: np.ndarray, sr: int) -> float:
    data = as_frames(data)
    meter = pyln.Meter(sr)
    if len(data) < int(meter.block_size * sr):
        return float("-inf")
    with np.errstate(divide="ignore"):
        return float(meter.integrated_loudness(data))


def true_peak_db(data: np.ndarray) -> float:
    """dBTP from 4x oversampled absolute peak."""
    data = as_frames(data)
    if len(data) == 0:
        return float("-inf")
    up = signal.resample_poly(data, TRUE_PEAK_OVERSAMPLE, 1, axis=0)
    peak = max(float(np.max(np.abs(up))), float(np.max(np.abs(data))))
    return float(20 * np.log10(peak)) if peak > 0 else float("-inf")


def loudness_range(data: np.ndarray, sr: int) -> float:
    """EBU 3342 LRA from 3 s short-term windows."""
    data = as_frames(data)
    win, hop = int(LRA_WINDOW_S * sr), int(LRA_HOP_S * sr)
    if len(data) < win:
        return 0.0
    meter = pyln.Meter(sr)
    short_term = []
    with np.errstate(divide="ignore"):
        for start in range(0, len(data) - win + 1, hop):
            lufs = meter.integrated_loudness(data[start:start + win])
            if np.isfinite(lufs) and lufs > ABSOLUTE_GATE_LUFS:
                short_term.append(lufs)
    if len(short_term) < 2:
        return 0.0
    st = np.array(short_term)
    relative_gate = 10 * np.log10(np.mean(10 ** (st / 10))) - 20
    gated = st[st > relative_gate]
    if len(gated) < 2:
        return 0.0
    return float(np.percentile(gated, 95) - np.percentile(gated, 10))


def measure(data: np.ndarray, sr: int) -> dict[str, float]:
    """Integrated loudness, true peak, LRA and relative gate threshold."""
    i = integrated_loudness(data, sr)
    return {
        "i": i,
        "tp": true_peak_db(data),
        "lra": loudness_range(data, sr),
        "thresh": i - 10.0 if math.isfinite(i) else ABSOLUTE_GATE_LUFS,
    }


def loudnorm(data: np.ndarray, sr: int, target_i: float, target_tp: float,
             measured_i: float | None = None) -> tuple[np.ndarray, str, float]:
    """Gain to target, then peak-limit if the ceiling is exceeded.

    Returns (audio, normalization type, applied gain dB).
    """
    data = as_frames(data)
    if measured_i is None:
        measured_i = integrated_loudness(data, sr)
    gain_db = target_i - measured_i if math.isfinite(measured_i) else 0.0
    out = data * db_to_linear(gain_db)
    kind = "linear"
    if len(out) and true_peak_db(out) > target_tp:
        out = limit(out, sr, db_to_linear(target_tp))
        kind = "dynamic"
    return out, kind, gain_db


# ── Dynamics ─────────────────────────────────────────────


def compress(data: np.ndarray, sr: int, threshold: float, ratio: float,
             attack_ms: float, release_ms: float, knee: float = 2.82843,
             makeup: float = 1.0) -> np.ndarray:
    """Soft-knee feed-forward compressor with RMS detection.

    The detector runs per block of COMPRESSOR_BLOCK samples; gains are
    interpolated back to sample rate.
    """
    data = as_frames(data)
    n = len(data)
    if n == 0:
        return data.copy()
    power = np.mean(np.square(data), axis=1)
    nb = -(-n // COMPRESSOR_BLOCK)
    blocks = np.pad(power, (0, nb * COMPRESSOR_BLOCK - n), mode="edge").reshape(nb, COMPRESSOR_BLOCK).mean(axis=1)

    atk = min(1.0, 1.0 / (max(attack_ms, 0.01) * sr / 4000))
    rel = min(1.0, 1.0 / (max(release_ms, 0.01) * sr / 4000))
    atk_b = 1 - (1 - atk) ** COMPRESSOR_BLOCK
    rel_b = 1 - (1 - rel) ** COMPRESSOR_BLOCK
    env = np.empty(nb)
    level = 0.0
    for i, p in enumerate(blocks):
        level += (p - level) * (atk_b if p > level else rel_b)
        env[i] = level

    env_db = 10 * np.log10(np.maximum(env, 1e-20))
    thresh_db = 20 * np.log10(max(threshold, 1e-10))
    knee_db = 20 * np.log10(max(knee, 1.0))
    d = env_db - thresh_db
    g_db = np.zeros_like(d)
    above = d >= knee_db / 2
    g_db[above] = -(d[above] - d[above] / ratio)
    if knee_db > 0:
        in_knee = (d > -knee_db / 2) & ~above
        x = d[in_knee] + knee_db / 2
        g_db[in_knee] = -(x**2 / (2 * knee_db)) * (1 - 1 / ratio)

    centers = (np.arange(nb) + 0.5) * COMPRESSOR_BLOCK
    gains = np.interp(np.arange(n), centers, 10 ** (g_db / 20)) * makeup
    return data * gains[:, np.newaxis]


def limit(data: np.ndarray, sr: int, ceiling: float, attack_ms: float = 5.0,
          release_ms: float = 50.0) -> np.ndarray:
    """Brickwall limiter: lookahead gain minimum, one-pole release."""
    data = as_frames(data)
    n = len(data)
    if n == 0:
        return data.copy()
    env = np.max(np.abs(data), axis=1)
    gain = np.ones(n)
    above = env > ceiling
    if not np.any(above):
        return data.copy()
    gain[above] = ceiling / env[above]

    size = max(1, int(attack_ms * sr / 1000)) + 1
    held = minimum_filter1d(gain, size=size, origin=-(size // 2), mode="nearest")
    rel_c = np.exp(-1.0 / (max(release_ms, 0.01) * sr / 1000))
    released, _ = signal.lfilter([1 - rel_c], [1, -rel_c], held, zi=[held[0] * rel_c])
    smooth = np.minimum(held, released)
    return np.clip(data * smooth[:, np.newaxis], -ceiling, ceiling)


# ── Timeline ─────────────────────────────────────────────


def fade(data: np.ndarray, sr: int, direction: str, start: float, duration: float) -> np.ndarray:
    """Linear afade: silence before a fade-in, silence after a fade-out."""
    data = as_frames(data)
    t = np.arange(len(data)) / sr
    if duration <= 0:
        gain = (t >= start).astype(np.float64) if direction == "in" else (t < start).astype(np.float64)
    elif direction == "in":
        gain = np.clip((t - start) / duration, 0.0, 1.0)
    elif direction == "out":
        gain = np.clip((start + duration - t) / duration, 0.0, 1.0)
    else:
        raise ValueError(f"Unknown fade direction: {direction}")
    return data * gain[:, np.newaxis]


def trim(data: np.ndarray, sr: int, start: float, end: float | None) -> np.ndarray:
    data = as_frames(data)
    lo = max(0, int(round(start * sr)))
    hi = len(data) if end is None else min(len(data), int(round(end * sr)))
    return data[lo:max(lo, hi)].copy()


def silent_runs(data: np.ndarray, sr: int, noise_db: float, min_duration: float) -> list[tuple[int, int]]:
    """(start, end) sample indices of runs where every channel is below noise."""
    data = as_frames(data)
    if len(data) == 0:
        return []
    quiet = np.all(np.abs(data) < db_to_linear(noise_db), axis=1)
    edges = np.diff(np.concatenate(([0], quiet.astype(np.int8), [0])))
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)
    min_len = int(math.ceil(min_duration * sr))
    return [(int(s), int(e)) for s, e in zip(starts, ends) if e - s >= min_len]
