"""Denoise stage — bandpass plus the selected noise reduction.

Threshold mapping (t = threshold dB clamped to −60..−30, u = (t + 60) / 30):
  afftdn   nr = 6 + 24·u dB, nf = t
  anlmdn   s  = 0.001 + 0.009·u
  spectral sensitivity = 1.5 + 1.5·u
An engine-delegated filter that fails falls back to the bandpass alone.
"""

from __future__ import annotations

import structlog

from podmix.engine.base import Engine
from podmix.engine.graph import FFTDenoise, Filter, FilterGraph, Highpass, Lowpass, NLMeansDenoise, OutputSpec
from podmix.errors import EngineAbortedError, EngineError
from podmix.models import DenoiseMethod
from podmix.pipeline.spectral import THRESHOLD_RANGE_DB, spectral_denoise_buffer

logger = structlog.get_logger()

BANDPASS_LOW_HZ = 80.0
BANDPASS_HIGH_HZ = 12000.0
DENOISE_SAMPLE_RATE = 44100

BANDPASS: tuple[Filter, ...] = (Highpass(BANDPASS_LOW_HZ), Lowpass(BANDPASS_HIGH_HZ))


def _unit(threshold_db: float) -> float:
    lo, hi = THRESHOLD_RANGE_DB
    return (min(max(threshold_db, lo), hi) - lo) / (hi - lo)


def delegated_filter(method: DenoiseMethod, threshold_db: float) -> Filter | None:
    """Engine filter for ``method``; None where no engine filter applies."""
    u = _unit(threshold_db)
    if method is DenoiseMethod.DELEGATED_A:
        return FFTDenoise(noise_reduction=6.0 + 24.0 * u, noise_floor=min(max(threshold_db, -60.0), -30.0))
    if method is DenoiseMethod.DELEGATED_B:
        return NLMeansDenoise(strength=0.001 + 0.009 * u)
    if method in (DenoiseMethod.NONE, DenoiseMethod.SPECTRAL):
        return None
    raise ValueError(f"Unknown denoise method: {method}")


def denoise_chain(method: DenoiseMethod, threshold_db: float) -> tuple[Filter, ...]:
    node = delegated_filter(method, threshold_db)
    return ((node,) if node is not None else ()) + BANDPASS


def _bandpass_graph(source: str, output: str, filters: tuple[Filter, ...]) -> FilterGraph:
    return FilterGraph.chain(
        source, filters,
        output=OutputSpec(output, sample_rate=DENOISE_SAMPLE_RATE, channels=1),
        label=f"denoise:{source}",
    )


def apply_denoise(
    engine: Engine,
    source: str,
    output: str,
    method: DenoiseMethod,
    threshold_db: float = -50.0,
) -> DenoiseMethod:
    """Write the denoised track to ``output``; returns the method actually applied."""
    if method is DenoiseMethod.NONE:
        engine.execute(_bandpass_graph(source, output, BANDPASS))
        return method

    if method is DenoiseMethod.SPECTRAL:
        staged = f"{output}.spectral.wav"
        engine.write_file(staged, spectral_denoise_buffer(engine.read_file(source), threshold_db))
        try:
            engine.execute(_bandpass_graph(staged, output, BANDPASS))
        finally:
            engine.delete_file(staged)
        return method

    if method in (DenoiseMethod.DELEGATED_A, DenoiseMethod.DELEGATED_B):
        try:
            engine.execute(_bandpass_graph(source, output, denoise_chain(method, threshold_db)))
            return method
        except EngineAbortedError:
            raise
        except EngineError as exc:
            logger.warning("denoise.fallback", method=str(method), source=source, error=str(exc))
        engine.execute(_bandpass_graph(source, output, BANDPASS))
        return DenoiseMethod.NONE

    raise ValueError(f"Unknown denoise method: {method}")
