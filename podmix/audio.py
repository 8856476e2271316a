"""Sample-buffer helpers shared by the engine backends and the stages."""

from __future__ import annotations

import io
import re

import librosa
import numpy as np
import soundfile as sf

_DB_RE = re.compile(r"^\s*([-+]?\d+(?:\.\d+)?)\s*(?:db)?\s*$", re.IGNORECASE)

MP3_MAX_KBPS = 320
MP3_MIN_KBPS = 32
PCM16_SCALE = 32768


def db_to_linear(db: float) -> float:
    return float(10 ** (db / 20))


def parse_db(text: str | float) -> float:
    """``"-20dB"`` → -20.0. Bare numbers are accepted as dB."""
    if isinstance(text, (int, float)):
        return float(text)
    m = _DB_RE.match(text)
    if not m:
        raise ValueError(f"Not a dB value: {text!r}")
    return float(m.group(1))


def parse_bitrate(text: str) -> int:
    """``"192k"`` → 192 (kbps)."""
    t = text.strip().lower()
    if t.endswith("k"):
        t = t[:-1]
    try:
        return int(float(t))
    except ValueError:
        raise ValueError(f"Not a bitrate: {text!r}") from None


def as_frames(data: np.ndarray) -> np.ndarray:
    """Promote 1-D buffers to (frames, 1)."""
    return data[:, np.newaxis] if data.ndim == 1 else data


def to_channels(data: np.ndarray, channels: int) -> np.ndarray:
    """Down-mix by averaging, up-mix by duplicating mono."""
    data = as_frames(data)
    have = data.shape[1]
    if have == channels:
        return data
    if channels == 1:
        return data.mean(axis=1, keepdims=True)
    if have == 1:
        return np.repeat(data, channels, axis=1)
    return np.repeat(data.mean(axis=1, keepdims=True), channels, axis=1)


def resample(data: np.ndarray, sr_in: int, sr_out: int) -> np.ndarray:
    if sr_in == sr_out or len(data) == 0:
        return data
    out = librosa.resample(as_frames(data), orig_sr=sr_in, target_sr=sr_out, axis=0)
    return np.ascontiguousarray(out)


def quantize_pcm16(data: np.ndarray) -> np.ndarray:
    """Float → int16 on the same 1/32768 scale ``decode`` reads with.

    Decoding and re-encoding an existing PCM_16 buffer is then lossless.
    """
    return np.clip(np.round(as_frames(data) * PCM16_SCALE), -PCM16_SCALE, PCM16_SCALE - 1).astype(np.int16)


def encode_wav(data: np.ndarray, sr: int, subtype: str = "PCM_16") -> bytes:
    buf = io.BytesIO()
    if subtype == "PCM_16":
        sf.write(buf, quantize_pcm16(data), sr, format="WAV", subtype=subtype)
    else:
        sf.write(buf, np.clip(as_frames(data), -1.0, 1.0), sr, format="WAV", subtype=subtype)
    return buf.getvalue()


def encode_mp3(data: np.ndarray, sr: int, kbps: int = 192) -> bytes:
    """Constant-bitrate MP3 through libsndfile's LAME binding."""
    kbps = min(max(kbps, MP3_MIN_KBPS), MP3_MAX_KBPS)
    level = (MP3_MAX_KBPS - kbps) / (MP3_MAX_KBPS - MP3_MIN_KBPS)
    buf = io.BytesIO()
    sf.write(
        buf, np.clip(as_frames(data), -1.0, 1.0), sr,
        format="MP3", subtype="MPEG_LAYER_III",
        compression_level=level, bitrate_mode="CONSTANT",
    )
    return buf.getvalue()


def decode(data: bytes) -> tuple[np.ndarray, int]:
    """Decode any libsndfile-readable buffer to float64 (frames, channels)."""
    samples, sr = sf.read(io.BytesIO(data), dtype="float64", always_2d=True)
    return samples, int(sr)
