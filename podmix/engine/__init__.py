"""ENGINE — Media engine boundary.

- Graph: typed filter graphs over named buffers
- Native: in-process numpy/scipy/pyloudnorm backend (default)
- FFmpeg: subprocess backend over a private buffer directory
- Handle: injected engine resource with start/dispose/reinitialize
- Telemetry: log-line parsing (loudness, silence, duration, abort)
"""

from __future__ import annotations

from podmix.config import Settings, settings
from podmix.engine.base import Engine, EngineHealth
from podmix.engine.ffmpeg import FFmpegEngine
from podmix.engine.handle import EngineHandle
from podmix.engine.native import NativeEngine


def create_engine(cfg: Settings | None = None) -> Engine:
    """Build an unstarted engine for the configured backend."""
    cfg = cfg or settings
    if cfg.engine_backend == "native":
        return NativeEngine(log_lines=cfg.log_engine_lines)
    if cfg.engine_backend == "ffmpeg":
        return FFmpegEngine(cfg.ffmpeg_binary, cfg.work_dir, log_lines=cfg.log_engine_lines)
    raise ValueError(f"Unknown engine backend: {cfg.engine_backend}")


def default_handle(cfg: Settings | None = None) -> EngineHandle:
    return EngineHandle(lambda: create_engine(cfg))


__all__ = [
    "Engine",
    "EngineHandle",
    "EngineHealth",
    "FFmpegEngine",
    "NativeEngine",
    "create_engine",
    "default_handle",
]
