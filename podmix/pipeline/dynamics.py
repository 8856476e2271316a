"""Dynamics — compressor then limiter in one engine pass.

Threshold and ceiling arrive as dB-strings ("-20dB") and are converted to
linear amplitude for the engine primitives; ratio/attack/release pass through.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from podmix.audio import db_to_linear, parse_db
from podmix.engine.base import Engine
from podmix.engine.graph import Compressor, Filter, FilterGraph, Limiter, OutputSpec

logger = structlog.get_logger()

DYNAMICS_SAMPLE_RATE = 48000


@dataclass
class DynamicsConfig:
    threshold: str = "-20dB"
    ratio: float = 4.0
    attack_ms: float = 5.0
    release_ms: float = 50.0
    limit: str = "-1dB"


def dynamics_chain(cfg: DynamicsConfig) -> tuple[Filter, ...]:
    return (
        Compressor(
            threshold=db_to_linear(parse_db(cfg.threshold)),
            ratio=cfg.ratio,
            attack=cfg.attack_ms,
            release=cfg.release_ms,
        ),
        Limiter(limit=db_to_linear(parse_db(cfg.limit))),
    )


def apply_dynamics(engine: Engine, source: str, output: str, cfg: DynamicsConfig | None = None) -> None:
    cfg = cfg or DynamicsConfig()
    chain = dynamics_chain(cfg)
    engine.execute(FilterGraph.chain(
        source, chain,
        output=OutputSpec(output, sample_rate=DYNAMICS_SAMPLE_RATE, channels=1),
        label=f"dynamics:{source}",
    ))
    logger.info("dynamics.applied", source=source, threshold=cfg.threshold, ratio=cfg.ratio, limit=cfg.limit)
