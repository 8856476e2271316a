"""Native engine — executes filter graphs in-process.

numpy/scipy DSP, soundfile decode/encode, librosa resampling and pyloudnorm
metering. Writes its log in ffmpeg's format (input durations, loudnorm JSON,
silencedetect lines) so one telemetry adapter serves every backend.
"""

from __future__ import annotations

import json
import math

import numpy as np
import structlog

from podmix.audio import as_frames, decode, encode_mp3, encode_wav, parse_bitrate, resample, to_channels
from podmix.engine import dsp
from podmix.engine.base import Engine
from podmix.engine.graph import (
    Compressor,
    Concat,
    Downmix,
    Fade,
    FFTDenoise,
    Filter,
    FilterGraph,
    Highpass,
    InputSpec,
    Limiter,
    Loudnorm,
    Lowpass,
    Mix,
    NLMeansDenoise,
    OutputSpec,
    Resample,
    SilenceDetect,
    Trim,
)
from podmix.engine.telemetry import format_duration
from podmix.errors import EngineError

logger = structlog.get_logger()

Stream = tuple[np.ndarray, int]


def _fmt(value: float) -> str:
    return f"{value:.2f}" if math.isfinite(value) else ("-inf" if value < 0 else "inf")


class NativeEngine(Engine):
    """In-memory engine; buffers live in a dict for the instance's lifetime."""

    backend = "native"

    def __init__(self, *, log_lines: bool = False) -> None:
        super().__init__(log_lines=log_lines)
        self._files: dict[str, bytes] = {}
        self._filter_index = 0

    def dispose(self) -> None:
        self._files.clear()
        super().dispose()

    # ── Buffer store ──

    def exists(self, name: str) -> bool:
        return name in self._files

    def list_files(self) -> list[str]:
        return sorted(self._files)

    def _read(self, name: str) -> bytes:
        return self._files[name]

    def _write(self, name: str, data: bytes) -> None:
        self._files[name] = data

    def _delete(self, name: str) -> None:
        del self._files[name]

    # ── Execution ──

    def _run(self, graph: FilterGraph) -> None:
        self._filter_index = 0
        decoded = [self._open_input(i, spec) for i, spec in enumerate(graph.inputs)]
        try:
            streams: list[Stream] = []
            for branch in graph.branches:
                data, sr = decoded[branch.input]
                spec = graph.inputs[branch.input]
                if spec.loop:
                    data = self._loop(data, sr, branch.filters, spec.name)
                for node in branch.filters:
                    data, sr = self._apply(node, data, sr)
                streams.append((data, sr))
            if graph.combine is None:
                data, sr = streams[0]
            else:
                data, sr = self._combine(graph.combine, streams)
            self._write_output(graph.output, data, sr)
        except (ValueError, FloatingPointError, RuntimeError) as exc:
            self.emit(f"Error while filtering: {exc}")
            raise EngineError(f"{graph.label or 'graph'}: {exc}", returncode=1) from exc

    def _open_input(self, index: int, spec: InputSpec) -> Stream:
        if spec.name not in self._files:
            self.emit(f"{spec.name}: No such file or directory")
            raise EngineError(f"Missing input buffer {spec.name!r}", returncode=1)
        try:
            data, sr = decode(self._files[spec.name])
        except (RuntimeError, ValueError, TypeError) as exc:
            self.emit(f"{spec.name}: Invalid data found when processing input")
            raise EngineError(f"Cannot decode {spec.name!r}: {exc}", returncode=1) from exc
        self.emit(f"Input #{index}, from '{spec.name}':")
        self.emit(f"  Duration: {format_duration(len(data) / sr)}, start: 0.000000, bitrate: N/A")
        self.emit(f"  Stream #{index}:0: Audio: {sr} Hz, {data.shape[1]} channels")
        if spec.seek:
            data = data[int(round(spec.seek * sr)):]
        if spec.duration is not None:
            data = data[:int(round(spec.duration * sr))]
        return data, sr

    def _loop(self, data: np.ndarray, sr: int, filters: tuple[Filter, ...], name: str) -> np.ndarray:
        """Materialize an infinite loop up to the branch's first bounded trim."""
        end = next((f.end for f in filters if isinstance(f, Trim) and f.end is not None), None)
        if end is None:
            raise EngineError(f"Looped input {name!r} has no bounding trim", returncode=1)
        if len(data) == 0:
            raise EngineError(f"Cannot loop empty input {name!r}", returncode=1)
        reps = int(math.ceil(end * sr / len(data))) + 1
        return np.tile(data, (reps, 1))

    def _apply(self, node: Filter, data: np.ndarray, sr: int) -> Stream:
        self._filter_index += 1
        if isinstance(node, Highpass):
            return dsp.highpass(data, sr, node.frequency), sr
        if isinstance(node, Lowpass):
            return dsp.lowpass(data, sr, node.frequency), sr
        if isinstance(node, FFTDenoise):
            return dsp.fft_denoise(data, sr, node.noise_reduction, node.noise_floor), sr
        if isinstance(node, NLMeansDenoise):
            self.emit("[AVFilterGraph] No such filter: 'anlmdn'")
            raise EngineError("anlmdn is not available in the native engine", returncode=1)
        if isinstance(node, Loudnorm):
            return self._loudnorm(node, data, sr), sr
        if isinstance(node, Compressor):
            return dsp.compress(data, sr, node.threshold, node.ratio, node.attack, node.release,
                                node.knee, node.makeup), sr
        if isinstance(node, Limiter):
            return dsp.limit(data, sr, node.limit, node.attack, node.release), sr
        if isinstance(node, Fade):
            return dsp.fade(data, sr, node.direction, node.start, node.duration), sr
        if isinstance(node, Trim):
            return dsp.trim(data, sr, node.start, node.end), sr
        if isinstance(node, Downmix):
            return to_channels(data, 1), sr
        if isinstance(node, Resample):
            return resample(data, sr, node.sample_rate), node.sample_rate
        if isinstance(node, SilenceDetect):
            self._silencedetect(node, data, sr)
            return data, sr
        raise EngineError(f"Unsupported filter: {type(node).__name__}", returncode=1)

    def _loudnorm(self, node: Loudnorm, data: np.ndarray, sr: int) -> np.ndarray:
        before = dsp.measure(data, sr) if node.print_json else None
        if node.measured is not None and node.linear:
            measured_i = node.measured.integrated
        elif before is not None:
            measured_i = before["i"]
        else:
            measured_i = None
        out, kind, gain_db = dsp.loudnorm(data, sr, node.integrated, node.true_peak, measured_i=measured_i)
        if before is not None:
            after = dsp.measure(out, sr)
            record = {
                "input_i": _fmt(before["i"]),
                "input_tp": _fmt(before["tp"]),
                "input_lra": _fmt(before["lra"]),
                "input_thresh": _fmt(before["thresh"]),
                "output_i": _fmt(after["i"]),
                "output_tp": _fmt(after["tp"]),
                "output_lra": _fmt(after["lra"]),
                "output_thresh": _fmt(after["thresh"]),
                "normalization_type": kind,
                "target_offset": _fmt(node.integrated - after["i"]) if math.isfinite(after["i"]) else "0.00",
            }
            self.emit(f"[Parsed_loudnorm_{self._filter_index - 1} @ native]")
            for line in json.dumps(record, indent="\t").splitlines():
                self.emit(line)
        logger.debug("native.loudnorm", gain_db=round(gain_db, 2), kind=kind)
        return out

    def _silencedetect(self, node: SilenceDetect, data: np.ndarray, sr: int) -> None:
        tag = f"[silencedetect @ native{self._filter_index - 1}]"
        for start, end in dsp.silent_runs(data, sr, node.noise_db, node.duration):
            t0, t1 = start / sr, end / sr
            self.emit(f"{tag} silence_start: {t0:.6f}")
            self.emit(f"{tag} silence_end: {t1:.6f} | silence_duration: {t1 - t0:.6f}")

    def _combine(self, combine: Mix | Concat, streams: list[Stream]) -> Stream:
        sr = streams[0][1]
        channels = as_frames(streams[0][0]).shape[1]
        parts = [to_channels(resample(d, s, sr), channels) for d, s in streams]
        if isinstance(combine, Concat):
            return np.concatenate(parts, axis=0), sr
        if isinstance(combine, Mix):
            lengths = [len(p) for p in parts]
            if combine.duration == "first":
                n = lengths[0]
            elif combine.duration == "longest":
                n = max(lengths)
            else:
                n = min(lengths)
            out = np.zeros((n, channels))
            for p in parts:
                m = min(n, len(p))
                out[:m] += p[:m]
            return out, sr
        raise EngineError(f"Unsupported combine: {type(combine).__name__}", returncode=1)

    def _write_output(self, output: OutputSpec, data: np.ndarray, sr: int) -> None:
        if output.sample_rate and output.sample_rate != sr:
            data = resample(data, sr, output.sample_rate)
            sr = output.sample_rate
        if output.channels:
            data = to_channels(data, output.channels)
        if output.name is None:
            self.emit(f"size=N/A time={format_duration(len(data) / sr)} bitrate=N/A")
            return
        container = output.container
        if container == "wav":
            encoded = encode_wav(data, sr)
        elif container == "mp3":
            encoded = encode_mp3(data, sr, parse_bitrate(output.bitrate or "128k"))
        else:
            raise EngineError(f"Unsupported container: {container}", returncode=1)
        self._files[output.name] = encoded
        self.emit(f"size={len(encoded) // 1024}kB time={format_duration(len(data) / sr)} bitrate=N/A")
