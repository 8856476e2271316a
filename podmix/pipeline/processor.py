"""PODMIX Processor — runs the full two-speaker pipeline.

Stages:
  ① Trim       clap sync, both tracks cut to 44.1 kHz mono
  ② Preview    optional clip to the first N seconds
  ③ Process    denoise → loudness → dynamics per track, or one fused
               command per track when denoise is none/afftdn
  ④ Mix        A + B, length of A
  ⑤ Silence    optional interior-pause compaction
  ⑥ BGM        optional music bed at an absolute LUFS
  ⑦ Endscene   optional outro, faded and appended
  ⑧ Export     MP3 encode or WAV as-is

The run owns a workspace of named engine buffers; each buffer is deleted once
its last consumer stage has finished. Stages run one at a time on a worker
thread. When the engine log shows the abort signature, the live buffers are
snapshotted, the engine is replaced and the snapshot re-injected: after a
completed stage the run resumes with the next stage, after an interrupted
stage that stage is replayed once from its inputs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

import structlog

from podmix.config import Settings, settings
from podmix.engine import default_handle
from podmix.engine.base import Engine, EngineHealth
from podmix.engine.graph import Filter, FilterGraph, Loudnorm, OutputSpec
from podmix.engine.handle import EngineHandle
from podmix.errors import (
    EngineAbortedError,
    EngineError,
    InvalidAssetError,
    PodmixError,
    RecoveryFailedError,
)
from podmix.models import DenoiseMethod, ProcessConfig, ProcessResult, Stage
from podmix.pipeline.denoise import apply_denoise, denoise_chain
from podmix.pipeline.dynamics import DynamicsConfig, apply_dynamics, dynamics_chain
from podmix.pipeline.loudness import LOUDNESS_SAMPLE_RATE, normalize_loudness
from podmix.pipeline.mix import add_bgm, append_endscene, export, mix_voices
from podmix.pipeline.progress import ProgressCallback, ProgressReporter
from podmix.pipeline.silence import compact_silence
from podmix.pipeline.trim import clip_preview, sync_and_trim
from podmix.pipeline.workspace import Workspace

logger = structlog.get_logger()

T = TypeVar("T")

AssetLike = bytes | bytearray | memoryview


# ── Fused fast path ──────────────────────────────────────


def _dynamics_config(config: ProcessConfig) -> DynamicsConfig:
    return DynamicsConfig(
        threshold=config.comp_threshold,
        ratio=config.comp_ratio,
        attack_ms=config.comp_attack,
        release_ms=config.comp_release,
        limit=config.limiter_limit,
    )


def fused_chain(config: ProcessConfig, method: DenoiseMethod) -> tuple[Filter, ...]:
    """Denoise + single-pass loudness + compressor + limiter."""
    return (
        denoise_chain(method, config.noise_gate_threshold)
        + (Loudnorm(config.target_lufs, config.true_peak, config.lra),)
        + dynamics_chain(_dynamics_config(config))
    )


def run_fused(engine: Engine, source: str, output: str, config: ProcessConfig) -> DenoiseMethod:
    """One engine command per track; afftdn failure drops to bandpass only."""
    method = config.denoise_method

    def _graph(m: DenoiseMethod) -> FilterGraph:
        return FilterGraph.chain(
            source, fused_chain(config, m),
            output=OutputSpec(output, sample_rate=LOUDNESS_SAMPLE_RATE, channels=1),
            label=f"fused:{source}",
        )

    try:
        engine.execute(_graph(method))
        return method
    except EngineAbortedError:
        raise
    except EngineError as exc:
        if method is DenoiseMethod.NONE:
            raise
        logger.warning("denoise.fallback", method=str(method), source=source, error=str(exc), fused=True)
    engine.execute(_graph(DenoiseMethod.NONE))
    return DenoiseMethod.NONE


# ── Run ──────────────────────────────────────────────────


def _asset(kind: str, data: Any, declared: str | None) -> bytes | None:
    """Validate an optional asset; a declared or supplied one must be real bytes."""
    if data is None:
        if declared:
            raise InvalidAssetError(f"{kind} {declared!r} is declared but no data was supplied", stage=Stage.LOADING)
        return None
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise InvalidAssetError(f"{kind} is not a byte buffer ({type(data).__name__})", stage=Stage.LOADING)
    data = bytes(data)
    if not data:
        raise InvalidAssetError(f"{kind} buffer is empty", stage=Stage.LOADING)
    return data


class _Run:
    """State of one pipeline run."""

    def __init__(self, handle: EngineHandle, config: ProcessConfig, reporter: ProgressReporter,
                 cfg: Settings) -> None:
        self.handle = handle
        self.config = config
        self.reporter = reporter
        self.cfg = cfg
        self.stage = Stage.LOADING
        self.workspace: Workspace | None = None
        self.recoveries = 0
        self.fallbacks: list[str] = []

    # ── Stage execution and recovery ──

    async def _recover(self, stage: Stage) -> None:
        assert self.workspace is not None
        try:
            snapshot = self.workspace.snapshot()
            engine = await asyncio.to_thread(self.handle.reinitialize)
            self.workspace.restore(engine, snapshot)
        except (PodmixError, OSError) as exc:
            raise RecoveryFailedError(f"Engine recovery failed during {stage}: {exc}", stage=stage) from exc
        self.recoveries += 1
        logger.warning("pipeline.recovered", stage=str(stage), buffers=sorted(snapshot),
                       generation=self.handle.generation)

    async def _run_stage(self, stage: Stage, fn: Callable[[Engine], T], *,
                         outputs: tuple[str, ...] = (), consumed: tuple[str, ...] = ()) -> T:
        assert self.workspace is not None
        self.stage = stage
        replayed = False
        try:
            while True:
                try:
                    result = await asyncio.to_thread(fn, self.workspace.engine)
                    break
                except EngineAbortedError as exc:
                    if replayed:
                        raise RecoveryFailedError(f"{stage} aborted again after recovery", stage=stage) from exc
                    logger.warning("pipeline.stage_interrupted", stage=str(stage), error=str(exc))
                    await self._recover(stage)
                    replayed = True
        except Exception:
            self.workspace.discard(*outputs)
            raise

        self.workspace.adopt(*outputs)
        self.workspace.release(*consumed)
        if self.workspace.engine.health is EngineHealth.ABORTED:
            await self._recover(stage)
        return result

    # ── Pipeline ──

    async def execute(self, track_a: Any, track_b: Any, bgm: Any, endscene: Any) -> ProcessResult:
        try:
            return await self._pipeline(track_a, track_b, bgm, endscene)
        except Exception as exc:
            if isinstance(exc, PodmixError) and exc.stage is None:
                exc.stage = str(self.stage)
            logger.error("pipeline.failed", stage=str(self.stage), error=str(exc), error_type=type(exc).__name__)
            self.reporter.fail(f"{self.stage}: {exc}")
            raise
        finally:
            if self.workspace is not None:
                self.workspace.clear()

    async def _pipeline(self, track_a: Any, track_b: Any, bgm: Any, endscene: Any) -> ProcessResult:
        cfg = self.config
        report = self.reporter.report

        report(Stage.LOADING, "loading", "Preparing engine")
        data_a = _asset("Speaker A track", track_a, None)
        data_b = _asset("Speaker B track", track_b, None)
        if data_a is None or data_b is None:
            raise InvalidAssetError("Both speaker tracks are required", stage=Stage.LOADING)
        bgm_data = _asset("BGM", bgm, cfg.bgm_filename)
        endscene_data = _asset("Endscene", endscene, cfg.endscene_filename)

        engine = await asyncio.to_thread(self.handle.ensure_healthy)
        ws = self.workspace = Workspace(engine)
        ws.put("input_a", data_a)
        ws.put("input_b", data_b)
        report(Stage.LOADING, "loaded", "Tracks loaded")

        # ① Trim
        report(Stage.TRIM, "trim", "Detecting claps and trimming")
        trim = await self._run_stage(
            Stage.TRIM,
            partial(
                sync_and_trim,
                source_a="input_a", source_b="input_b", output_a="trim_a.wav", output_b="trim_b.wav",
                threshold_db=cfg.clap_threshold_db, pre_margin=cfg.pre_clap_margin,
                post_cut=cfg.post_clap_cut, detect_window=self.cfg.onset_detect_window,
            ),
            outputs=("trim_a.wav", "trim_b.wav"), consumed=("input_a", "input_b"),
        )
        track = {"a": "trim_a.wav", "b": "trim_b.wav"}

        # ② Preview
        if cfg.preview_mode:
            report(Stage.PREVIEW, "preview", f"Clipping to {cfg.preview_duration:g}s preview")
            for k in ("a", "b"):
                out = f"preview_{k}.wav"
                await self._run_stage(
                    Stage.PREVIEW, partial(clip_preview, source=track[k], output=out, seconds=cfg.preview_duration),
                    outputs=(out,), consumed=(track[k],),
                )
                track[k] = out

        # ③ Process
        measurements = {}
        if cfg.uses_fast_path:
            for k in ("a", "b"):
                out = f"processed_{k}.wav"
                report(Stage.PROCESS, f"process_{k}", f"Processing speaker {k.upper()}")
                applied = await self._run_stage(
                    Stage.PROCESS, partial(run_fused, source=track[k], output=out, config=cfg),
                    outputs=(out,), consumed=(track[k],),
                )
                if applied is not cfg.denoise_method:
                    self.fallbacks.append(f"denoise_{k}")
                track[k] = out
        else:
            for k in ("a", "b"):
                out = f"denoised_{k}.wav"
                report(Stage.DENOISE, f"denoise_{k}", f"Denoising speaker {k.upper()} ({cfg.denoise_method})")
                applied = await self._run_stage(
                    Stage.DENOISE,
                    partial(apply_denoise, source=track[k], output=out, method=cfg.denoise_method,
                            threshold_db=cfg.noise_gate_threshold),
                    outputs=(out,), consumed=(track[k],),
                )
                if applied is not cfg.denoise_method:
                    self.fallbacks.append(f"denoise_{k}")
                track[k] = out
            for k in ("a", "b"):
                out = f"loudness_{k}.wav"
                report(Stage.LOUDNESS, f"loudness_{k}", f"Normalizing speaker {k.upper()} to {cfg.target_lufs:g} LUFS")
                measurements[k] = await self._run_stage(
                    Stage.LOUDNESS,
                    partial(normalize_loudness, source=track[k], output=out, target_i=cfg.target_lufs,
                            target_tp=cfg.true_peak, target_lra=cfg.lra),
                    outputs=(out,), consumed=(track[k],),
                )
                track[k] = out
            for k in ("a", "b"):
                out = f"dynamics_{k}.wav"
                report(Stage.DYNAMICS, f"dynamics_{k}", f"Compressing speaker {k.upper()}")
                await self._run_stage(
                    Stage.DYNAMICS,
                    partial(apply_dynamics, source=track[k], output=out, cfg=_dynamics_config(cfg)),
                    outputs=(out,), consumed=(track[k],),
                )
                track[k] = out

        # ④ Mix
        report(Stage.MIX, "mix", "Mixing voices")
        await self._run_stage(
            Stage.MIX, partial(mix_voices, voice_a=track["a"], voice_b=track["b"], output="mixed.wav"),
            outputs=("mixed.wav",), consumed=(track["a"], track["b"]),
        )
        current = "mixed.wav"

        # ⑤ Silence
        if cfg.silence_trim_enabled:
            report(Stage.SILENCE, "silence", "Compacting silences")
            await self._run_stage(
                Stage.SILENCE,
                partial(compact_silence, source=current, output="compact.wav",
                        threshold_db=cfg.silence_threshold_db, min_duration=cfg.silence_min_duration,
                        target_duration=cfg.silence_target_duration, max_segments=self.cfg.max_segments_per_pass),
                outputs=("compact.wav",), consumed=(current,),
            )
            current = "compact.wav"

        # ⑥ BGM
        if bgm_data is not None:
            report(Stage.BGM, "bgm", "Adding background music")
            self.stage = Stage.BGM
            ws.put("bgm_input", bgm_data)
            await self._run_stage(
                Stage.BGM,
                partial(add_bgm, voice=current, bgm="bgm_input", output="with_bgm.wav",
                        target_lufs=cfg.bgm_target_lufs, fade_in=cfg.bgm_fade_in, fade_out=cfg.bgm_fade_out),
                outputs=("with_bgm.wav",), consumed=(current, "bgm_input"),
            )
            current = "with_bgm.wav"

        # ⑦ Endscene
        if endscene_data is not None:
            report(Stage.ENDSCENE, "endscene", "Appending endscene")
            self.stage = Stage.ENDSCENE
            ws.put("endscene_input", endscene_data)
            await self._run_stage(
                Stage.ENDSCENE,
                partial(append_endscene, main=current, endscene="endscene_input", output="with_endscene.wav",
                        crossfade=cfg.endscene_crossfade),
                outputs=("with_endscene.wav",), consumed=(current, "endscene_input"),
            )
            current = "with_endscene.wav"

        # ⑧ Export
        report(Stage.EXPORT, "export", f"Encoding {cfg.output_format}")
        data = await self._run_stage(
            Stage.EXPORT,
            partial(export, source=current, output_format=cfg.output_format, bitrate=cfg.mp3_bitrate),
            consumed=(current,),
        )
        report(Stage.EXPORT, "finalize", "Finalizing")

        self.stage = Stage.COMPLETE
        report(Stage.COMPLETE, "complete", "Done")
        logger.info("pipeline.complete", bytes=len(data), format=str(cfg.output_format),
                    recoveries=self.recoveries, fallbacks=self.fallbacks, peak_buffers=ws.peak_live)
        return ProcessResult(
            data=data,
            output_format=cfg.output_format,
            trim=trim,
            measurements=measurements,
            fallbacks=list(self.fallbacks),
            recoveries=self.recoveries,
        )


# ── Public API ───────────────────────────────────────────


class PodcastProcessor:
    """Serializes runs over one engine handle.

    A processor built without a handle provisions its own from settings and
    disposes it on ``close()``.
    """

    def __init__(self, handle: EngineHandle | None = None, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._owns_handle = handle is None
        self.handle = handle or default_handle(self._cfg)
        self._lock = asyncio.Lock()

    async def process(
        self,
        track_a: AssetLike,
        track_b: AssetLike,
        config: ProcessConfig | None = None,
        on_progress: ProgressCallback | None = None,
        *,
        bgm: AssetLike | None = None,
        endscene: AssetLike | None = None,
    ) -> ProcessResult:
        """Run the whole pipeline; raises a PodmixError subclass on failure."""
        config = config or ProcessConfig()
        async with self._lock:
            run = _Run(self.handle, config, ProgressReporter(on_progress), self._cfg)
            logger.info("pipeline.start", denoise=str(config.denoise_method), fast_path=config.uses_fast_path,
                        output=str(config.output_format))
            return await run.execute(track_a, track_b, bgm, endscene)

    def close(self) -> None:
        if self._owns_handle:
            self.handle.dispose()

    async def __aenter__(self) -> PodcastProcessor:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()


async def process_podcast(
    track_a: AssetLike,
    track_b: AssetLike,
    config: ProcessConfig | None = None,
    on_progress: ProgressCallback | None = None,
    *,
    bgm: AssetLike | None = None,
    endscene: AssetLike | None = None,
    handle: EngineHandle | None = None,
) -> ProcessResult:
    """One-shot run; an engine is provisioned and disposed unless ``handle`` is given."""
    async with PodcastProcessor(handle) as processor:
        return await processor.process(track_a, track_b, config, on_progress, bgm=bgm, endscene=endscene)
