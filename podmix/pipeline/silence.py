"""Silence compaction — shorten long interior pauses.

Silent regions come from the engine's silence detector (already gated on a
minimum duration). The timeline is rebuilt as an ordered list of segments:
each region keeps only its first ``target`` seconds, everything between
regions is kept whole. Segments are cut and joined in batches so no single
graph grows past ``max_segments`` branches; each batch appends to the previous
batch's output.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from podmix.config import settings
from podmix.engine.base import Engine
from podmix.engine.graph import Branch, Concat, FilterGraph, InputSpec, OutputSpec, SilenceDetect, Trim
from podmix.engine.telemetry import parse_duration, parse_silence_regions
from podmix.models import Segment, SilenceRegion

logger = structlog.get_logger()

MIN_SEGMENT_S = 0.001


@dataclass
class CompactionResult:
    regions: int
    segments: int
    batches: int
    removed_s: float


def detect_silence(engine: Engine, source: str, threshold_db: float,
                   min_duration: float) -> tuple[list[SilenceRegion], float]:
    """Silent regions plus the source duration, from one detector pass."""
    with engine.capture_log() as log:
        engine.execute(FilterGraph.chain(
            source, (SilenceDetect(threshold_db, min_duration),), label=f"silencedetect:{source}",
        ))
    return parse_silence_regions(log.lines), parse_duration(log.lines)


def build_segments(regions: list[SilenceRegion], total: float, target: float) -> list[Segment]:
    """Kept spans of the timeline, in order; sub-millisecond spans dropped."""
    segments: list[Segment] = []
    cursor = 0.0
    for region in regions:
        if region.start > cursor:
            segments.append(Segment(cursor, region.start))
        segments.append(Segment(region.start, region.start + min(target, region.duration)))
        cursor = max(cursor, region.end)
    if cursor < total:
        segments.append(Segment(cursor, total))
    return [s for s in segments if s.length >= MIN_SEGMENT_S]


def batch_graph(source: str, segments: list[Segment], output: str,
                previous: str | None = None) -> FilterGraph:
    """Cut ``segments`` from ``source`` and join them after ``previous``."""
    inputs = [InputSpec(source)]
    branches: list[Branch] = []
    if previous is not None:
        inputs.append(InputSpec(previous))
        branches.append(Branch(1))
    branches.extend(Branch(0, (Trim(s.start, s.end),)) for s in segments)
    return FilterGraph(
        inputs=tuple(inputs),
        branches=tuple(branches),
        combine=Concat(),
        output=OutputSpec(output, channels=1),
        label=f"silence_concat:{len(segments)}",
    )


def concat_segments(engine: Engine, source: str, output: str, segments: list[Segment],
                    max_segments: int | None = None) -> int:
    """Run the batched extract-and-join; returns the number of batches."""
    size = max(1, max_segments or settings.max_segments_per_pass)
    batches = [segments[i:i + size] for i in range(0, len(segments), size)]
    previous: str | None = None
    for k, batch in enumerate(batches):
        target = output if k == len(batches) - 1 else f"{output}.part{k}.wav"
        engine.execute(batch_graph(source, batch, target, previous))
        if previous is not None:
            engine.delete_file(previous)
        previous = target
    return len(batches)


def compact_silence(
    engine: Engine,
    source: str,
    output: str,
    *,
    threshold_db: float = -35.0,
    min_duration: float = 2.0,
    target_duration: float = 0.5,
    max_segments: int | None = None,
) -> CompactionResult:
    regions, total = detect_silence(engine, source, threshold_db, min_duration)
    segments = build_segments(regions, total, target_duration) if regions else []
    if not segments:
        engine.write_file(output, engine.read_file(source))
        logger.info("silence.passthrough", regions=len(regions))
        return CompactionResult(regions=len(regions), segments=0, batches=0, removed_s=0.0)

    batches = concat_segments(engine, source, output, segments, max_segments)
    removed = total - sum(s.length for s in segments)
    logger.info("silence.compacted", regions=len(regions), segments=len(segments),
                batches=batches, removed_s=round(removed, 3))
    return CompactionResult(regions=len(regions), segments=len(segments), batches=batches, removed_s=removed)
