"""Typed filter graphs — the command language both engine backends execute.

A graph names its input buffers, runs one filter chain per branch, optionally
combines the branches (mix or concatenate) and writes one output buffer (or
discards the audio when only the log telemetry is wanted).

Every node renders to its ffmpeg filter expression, so a graph is also a
complete description of an ffmpeg invocation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

from podmix.models import LoudnessMeasurement


def fmt_num(value: float) -> str:
    """Compact decimal without exponent notation."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


# ── Filter nodes ─────────────────────────────────────────


@dataclass(frozen=True)
class Highpass:
    frequency: float

    def to_ffmpeg(self) -> str:
        return f"highpass=f={fmt_num(self.frequency)}"


@dataclass(frozen=True)
class Lowpass:
    frequency: float

    def to_ffmpeg(self) -> str:
        return f"lowpass=f={fmt_num(self.frequency)}"


@dataclass(frozen=True)
class FFTDenoise:
    """Engine FFT denoiser (afftdn)."""

    noise_reduction: float  # dB, 0.01..97
    noise_floor: float  # dB, -80..-20

    def to_ffmpeg(self) -> str:
        return f"afftdn=nr={fmt_num(self.noise_reduction)}:nf={fmt_num(self.noise_floor)}"


@dataclass(frozen=True)
class NLMeansDenoise:
    """Engine non-local-means denoiser (anlmdn)."""

    strength: float

    def to_ffmpeg(self) -> str:
        return f"anlmdn=s={fmt_num(self.strength)}"


@dataclass(frozen=True)
class Loudnorm:
    """EBU R128 normalizer.

    With ``print_json`` the node is a measurement pass; with ``measured`` it
    is the linear correction pass; with neither it is single-pass.
    """

    integrated: float
    true_peak: float
    lra: float
    measured: LoudnessMeasurement | None = None
    linear: bool = False
    print_json: bool = False

    def to_ffmpeg(self) -> str:
        parts = [f"I={fmt_num(self.integrated)}", f"TP={fmt_num(self.true_peak)}", f"LRA={fmt_num(self.lra)}"]
        if self.measured is not None:
            m = self.measured
            parts += [
                f"measured_I={fmt_num(m.integrated)}",
                f"measured_TP={fmt_num(m.true_peak)}",
                f"measured_LRA={fmt_num(m.lra)}",
                f"measured_thresh={fmt_num(m.threshold)}",
            ]
        if self.linear:
            parts.append("linear=true")
        if self.print_json:
            parts.append("print_format=json")
        return "loudnorm=" + ":".join(parts)


@dataclass(frozen=True)
class Compressor:
    """Feed-forward RMS compressor; threshold is linear amplitude."""

    threshold: float
    ratio: float
    attack: float  # ms
    release: float  # ms
    knee: float = 2.82843  # linear factor around threshold
    makeup: float = 1.0

    def to_ffmpeg(self) -> str:
        return (
            f"acompressor=threshold={fmt_num(self.threshold)}:ratio={fmt_num(self.ratio)}"
            f":attack={fmt_num(self.attack)}:release={fmt_num(self.release)}"
        )


@dataclass(frozen=True)
class Limiter:
    """Lookahead peak limiter; limit is linear amplitude."""

    limit: float
    attack: float = 5.0  # ms
    release: float = 50.0  # ms

    def to_ffmpeg(self) -> str:
        return (
            f"alimiter=limit={fmt_num(self.limit)}:attack={fmt_num(self.attack)}"
            f":release={fmt_num(self.release)}:level=disabled"
        )


@dataclass(frozen=True)
class Fade:
    """Linear fade anchored at an absolute stream position."""

    direction: Literal["in", "out"]
    start: float
    duration: float

    def to_ffmpeg(self) -> str:
        return f"afade=t={self.direction}:st={fmt_num(self.start)}:d={fmt_num(self.duration)}"


@dataclass(frozen=True)
class Trim:
    """Keep [start, end) seconds and restart timestamps at zero."""

    start: float
    end: float | None = None

    def to_ffmpeg(self) -> str:
        expr = f"atrim=start={self.start:.4f}"
        if self.end is not None:
            expr += f":end={self.end:.4f}"
        return expr + ",asetpts=N/SR/TB"


@dataclass(frozen=True)
class Downmix:
    """Fold any layout to mono."""

    def to_ffmpeg(self) -> str:
        return "aformat=channel_layouts=mono"


@dataclass(frozen=True)
class Resample:
    sample_rate: int

    def to_ffmpeg(self) -> str:
        return f"aresample={self.sample_rate}"


@dataclass(frozen=True)
class SilenceDetect:
    noise_db: float
    duration: float

    def to_ffmpeg(self) -> str:
        return f"silencedetect=noise={fmt_num(self.noise_db)}dB:d={fmt_num(self.duration)}"


Filter = Union[
    Highpass, Lowpass, FFTDenoise, NLMeansDenoise, Loudnorm, Compressor,
    Limiter, Fade, Trim, Downmix, Resample, SilenceDetect,
]


# ── Graph structure ──────────────────────────────────────


@dataclass(frozen=True)
class InputSpec:
    """A workspace buffer opened as a graph input."""

    name: str
    seek: float | None = None
    duration: float | None = None
    loop: bool = False  # stream-level infinite loop


@dataclass(frozen=True)
class Branch:
    input: int
    filters: tuple[Filter, ...] = ()


@dataclass(frozen=True)
class Mix:
    """Additive, unweighted sum; length follows the first branch."""

    duration: Literal["first", "longest", "shortest"] = "first"

    def to_ffmpeg(self, n: int) -> str:
        return f"amix=inputs={n}:duration={self.duration}:normalize=0"


@dataclass(frozen=True)
class Concat:
    """Sample-accurate end-to-end join."""

    def to_ffmpeg(self, n: int) -> str:
        return f"concat=n={n}:v=0:a=1"


Combine = Union[Mix, Concat]

CODEC_FORMATS = {"pcm_s16le": "wav", "libmp3lame": "mp3"}


@dataclass(frozen=True)
class OutputSpec:
    """Destination buffer; ``name=None`` discards the audio."""

    name: str | None
    sample_rate: int | None = None
    channels: int | None = None
    codec: str = "pcm_s16le"
    bitrate: str | None = None

    @property
    def container(self) -> str:
        try:
            return CODEC_FORMATS[self.codec]
        except KeyError:
            raise ValueError(f"Unsupported codec: {self.codec}") from None


NULL_OUTPUT = OutputSpec(name=None)


@dataclass(frozen=True)
class FilterGraph:
    inputs: tuple[InputSpec, ...]
    branches: tuple[Branch, ...]
    output: OutputSpec = NULL_OUTPUT
    combine: Combine | None = None
    label: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.inputs:
            raise ValueError("Filter graph needs at least one input")
        if not self.branches:
            raise ValueError("Filter graph needs at least one branch")
        for b in self.branches:
            if not 0 <= b.input < len(self.inputs):
                raise ValueError(f"Branch references missing input {b.input}")
        if len(self.branches) > 1 and self.combine is None:
            raise ValueError("Multiple branches need a combine step")

    @classmethod
    def chain(
        cls,
        source: str | InputSpec,
        filters: tuple[Filter, ...] | list[Filter] = (),
        output: OutputSpec = NULL_OUTPUT,
        label: str = "",
    ) -> FilterGraph:
        """Single input → single filter chain → output."""
        spec = source if isinstance(source, InputSpec) else InputSpec(source)
        return cls(inputs=(spec,), branches=(Branch(0, tuple(filters)),), output=output, label=label)

    @property
    def is_simple(self) -> bool:
        return len(self.branches) == 1 and self.combine is None and self.branches[0].input == 0 and len(self.inputs) == 1
