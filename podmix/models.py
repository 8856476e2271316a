"""PODMIX data model — run configuration, progress events and stage records.

ProcessConfig is immutable for one run; every other record is produced by a
stage and handed forward, never mutated in place.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import numpy as np
from pydantic import BaseModel, ConfigDict

from podmix.audio import decode, encode_wav


# ── Closed variants ──────────────────────────────────────


class DenoiseMethod(StrEnum):
    """Noise reduction strategies."""

    NONE = "none"  # bandpass only
    DELEGATED_A = "afftdn"  # engine FFT denoiser, fusable
    DELEGATED_B = "anlmdn"  # engine non-local means, too slow to fuse
    SPECTRAL = "spectral"  # in-process spectral subtraction


class OutputFormat(StrEnum):
    """Final artifact encodings."""

    MP3 = "mp3"
    WAV = "wav"

    @property
    def media_type(self) -> str:
        if self is OutputFormat.MP3:
            return "audio/mpeg"
        if self is OutputFormat.WAV:
            return "audio/wav"
        raise ValueError(f"Unknown output format: {self}")


class Stage(StrEnum):
    """Progress stage tags."""

    LOADING = "loading"
    TRIM = "trim"
    PREVIEW = "preview"
    DENOISE = "denoise"
    LOUDNESS = "loudness"
    DYNAMICS = "dynamics"
    PROCESS = "process"  # fused denoise/loudness/dynamics
    MIX = "mix"
    SILENCE = "silence"
    BGM = "bgm"
    ENDSCENE = "endscene"
    EXPORT = "export"
    COMPLETE = "complete"
    ERROR = "error"


# ── Run configuration ────────────────────────────────────


class ProcessConfig(BaseModel):
    """Every parameter of one pipeline run.

    Ranges are enforced by the caller; dB-strings such as ``"-20dB"`` are
    parsed when the dynamics stage needs them.
    """

    model_config = ConfigDict(frozen=True)

    # Preview
    preview_mode: bool = False
    preview_duration: float = 30.0

    # Clap sync
    pre_clap_margin: float = 0.5
    post_clap_cut: float = 1.0
    clap_threshold_db: float = -10.0

    # Denoise
    denoise_method: DenoiseMethod = DenoiseMethod.SPECTRAL
    noise_gate_threshold: float = -50.0  # -60 .. -30

    # Loudness
    two_pass_loudness: bool = False
    target_lufs: float = -16.0
    true_peak: float = -1.5
    lra: float = 11.0

    # Dynamics
    comp_threshold: str = "-20dB"
    comp_ratio: float = 4.0
    comp_attack: float = 5.0
    comp_release: float = 50.0
    limiter_limit: str = "-1dB"

    # BGM
    bgm_filename: str | None = None
    bgm_target_lufs: float = -44.0
    bgm_fade_in: float = 3.0
    bgm_fade_out: float = 3.0

    # Endscene
    endscene_filename: str | None = None
    endscene_crossfade: float = 2.0

    # Silence compaction
    silence_trim_enabled: bool = False
    silence_threshold_db: float = -35.0
    silence_min_duration: float = 2.0
    silence_target_duration: float = 0.5

    # Output
    mp3_bitrate: str = "192k"
    output_format: OutputFormat = OutputFormat.MP3

    @property
    def uses_fast_path(self) -> bool:
        """Denoise, loudness and dynamics fuse into one command per track."""
        if self.two_pass_loudness:
            return False
        method = self.denoise_method
        if method in (DenoiseMethod.NONE, DenoiseMethod.DELEGATED_A):
            return True
        if method in (DenoiseMethod.DELEGATED_B, DenoiseMethod.SPECTRAL):
            return False
        raise ValueError(f"Unknown denoise method: {method}")


# ── Records ──────────────────────────────────────────────


@dataclass
class AudioTrack:
    """Decoded PCM, shape (frames, channels)."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate else 0.0

    @classmethod
    def from_bytes(cls, data: bytes) -> AudioTrack:
        samples, sr = decode(data)
        return cls(samples=samples, sample_rate=sr)

    def mono(self) -> np.ndarray:
        return self.samples.mean(axis=1)

    def to_wav_bytes(self, subtype: str = "PCM_16") -> bytes:
        return encode_wav(self.samples, self.sample_rate, subtype)


@dataclass
class LoudnessMeasurement:
    """Pass-1 loudness record (LUFS, dBTP, LU, LUFS)."""

    integrated: float
    true_peak: float
    lra: float
    threshold: float
    target_offset: float = 0.0

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> LoudnessMeasurement:
        return cls(
            integrated=float(record["input_i"]),
            true_peak=float(record["input_tp"]),
            lra=float(record["input_lra"]),
            threshold=float(record["input_thresh"]),
            target_offset=float(record.get("target_offset", 0.0)),
        )

    @property
    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.integrated, self.true_peak, self.lra, self.threshold))


@dataclass(frozen=True)
class SilenceRegion:
    start: float
    end: float
    duration: float


@dataclass(frozen=True)
class Segment:
    start: float
    end: float

    @property
    def length(self) -> float:
        return self.end - self.start


@dataclass
class TrimResult:
    """Detected clap onsets and the cut points derived from them."""

    onset_a: float
    onset_b: float
    cut_a: float
    cut_b: float


@dataclass
class ProgressEvent:
    stage: Stage
    percent: int
    message: str


@dataclass
class ProcessResult:
    """The single artifact a successful run yields."""

    data: bytes
    output_format: OutputFormat
    trim: TrimResult
    measurements: dict[str, LoudnessMeasurement] = field(default_factory=dict)
    fallbacks: list[str] = field(default_factory=list)
    recoveries: int = 0

    @property
    def media_type(self) -> str:
        return self.output_format.media_type
