"""Loudness normalization — two-pass measure/correct or single-pass.

Pass 1 runs the engine's loudnorm in measurement mode and reads the JSON
record out of the log. Pass 2 feeds the measurements back for a linear
(gain-only) correction and resamples to 48 kHz.
"""

from __future__ import annotations

import structlog

from podmix.engine.base import Engine
from podmix.engine.graph import FilterGraph, Loudnorm, OutputSpec
from podmix.engine.telemetry import parse_loudnorm_record
from podmix.models import LoudnessMeasurement

logger = structlog.get_logger()

LOUDNESS_SAMPLE_RATE = 48000


def measure_loudness(engine: Engine, source: str, target_i: float, target_tp: float,
                     target_lra: float) -> LoudnessMeasurement:
    """Pass 1. Raises MeasurementParseError without a record in the log."""
    graph = FilterGraph.chain(
        source, (Loudnorm(target_i, target_tp, target_lra, print_json=True),),
        label=f"loudness_measure:{source}",
    )
    with engine.capture_log() as log:
        engine.execute(graph)
    return parse_loudnorm_record(log.lines)


def normalize_loudness(engine: Engine, source: str, output: str, *, target_i: float = -16.0,
                       target_tp: float = -1.5, target_lra: float = 11.0) -> LoudnessMeasurement:
    """Two-pass normalization; returns the pass-1 record for logging."""
    measured = measure_loudness(engine, source, target_i, target_tp, target_lra)
    logger.info(
        "loudness.measured", source=source,
        input_i=measured.integrated, input_tp=measured.true_peak,
        input_lra=measured.lra, input_thresh=measured.threshold,
    )
    engine.execute(FilterGraph.chain(
        source,
        (Loudnorm(target_i, target_tp, target_lra, measured=measured, linear=True),),
        output=OutputSpec(output, sample_rate=LOUDNESS_SAMPLE_RATE, channels=1),
        label=f"loudness_correct:{source}",
    ))
    return measured


def normalize_loudness_single_pass(engine: Engine, source: str, output: str, *, target_i: float = -16.0,
                                   target_tp: float = -1.5, target_lra: float = 11.0) -> None:
    engine.execute(FilterGraph.chain(
        source, (Loudnorm(target_i, target_tp, target_lra),),
        output=OutputSpec(output, sample_rate=LOUDNESS_SAMPLE_RATE, channels=1),
        label=f"loudness_single:{source}",
    ))
