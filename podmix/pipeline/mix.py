"""Mixer — voice merge, BGM overlay, endscene append, final encode.

- mix_voices: unweighted sum of both speakers; length follows speaker A
- add_bgm: loop/trim the bed to the voice length, fade, level to an absolute LUFS
- append_endscene: independent fade-out/fade-in, then sample-accurate concat
- export: MP3 encode, or the WAV buffer as-is
"""

from __future__ import annotations

import structlog

from podmix.engine.base import Engine
from podmix.engine.graph import (
    Branch,
    Concat,
    Downmix,
    Fade,
    FilterGraph,
    InputSpec,
    Loudnorm,
    Mix,
    OutputSpec,
    Resample,
    Trim,
)
from podmix.engine.telemetry import parse_duration
from podmix.models import OutputFormat

logger = structlog.get_logger()

MIX_SAMPLE_RATE = 48000
LENGTH_TOLERANCE_S = 0.01
BGM_TRUE_PEAK = -1.5
BGM_LRA = 11.0

_MIX_OUT = dict(sample_rate=MIX_SAMPLE_RATE, channels=1)


def probe_duration(engine: Engine, name: str) -> float:
    """Seconds, read from the engine's input banner."""
    with engine.capture_log() as log:
        engine.execute(FilterGraph.chain(name, label=f"probe:{name}"))
    return parse_duration(log.lines)


def mix_voices(engine: Engine, voice_a: str, voice_b: str, output: str) -> None:
    """Sum both speakers without auto-gain; B is cut or padded to A's length."""
    dur_a, dur_b = probe_duration(engine, voice_a), probe_duration(engine, voice_b)
    if abs(dur_a - dur_b) > LENGTH_TOLERANCE_S:
        logger.warning("mix.length_mismatch", a=dur_a, b=dur_b, kept=dur_a)
    engine.execute(FilterGraph(
        inputs=(InputSpec(voice_a), InputSpec(voice_b)),
        branches=(Branch(0, (Downmix(),)), Branch(1, (Downmix(),))),
        combine=Mix(duration="first"),
        output=OutputSpec(output, **_MIX_OUT),
        label="mix_voices",
    ))


def add_bgm(engine: Engine, voice: str, bgm: str, output: str, *, target_lufs: float = -44.0,
            fade_in: float = 3.0, fade_out: float = 3.0) -> None:
    """Lay a music bed under the voice at an absolute loudness."""
    voice_dur = probe_duration(engine, voice)
    bgm_dur = probe_duration(engine, bgm)
    looped = bgm_dur < voice_dur
    bed = (
        Trim(0.0, voice_dur),
        Downmix(),
        Loudnorm(target_lufs, BGM_TRUE_PEAK, BGM_LRA),
        Resample(MIX_SAMPLE_RATE),
        Fade("in", 0.0, fade_in),
        Fade("out", max(0.0, voice_dur - fade_out), fade_out),
    )
    engine.execute(FilterGraph(
        inputs=(InputSpec(voice), InputSpec(bgm, loop=looped)),
        branches=(Branch(0), Branch(1, bed)),
        combine=Mix(duration="first"),
        output=OutputSpec(output, **_MIX_OUT),
        label="add_bgm",
    ))
    logger.info("mix.bgm", voice=voice_dur, bgm=bgm_dur, looped=looped, target_lufs=target_lufs)


def append_endscene(engine: Engine, main: str, endscene: str, output: str, *, crossfade: float = 2.0) -> None:
    """Fade the tail out, fade the endscene in, join end to end.

    The fades are independent, so the join dips in level; this matches the
    established output and is kept.
    """
    main_dur = probe_duration(engine, main)
    fade_in = max(0.0, crossfade)
    # Only the fade-out is bounded by the main track
    fade_out = min(fade_in, main_dur)
    engine.execute(FilterGraph(
        inputs=(InputSpec(main), InputSpec(endscene)),
        branches=(
            Branch(0, (Fade("out", max(0.0, main_dur - fade_out), fade_out),)),
            Branch(1, (Downmix(), Resample(MIX_SAMPLE_RATE), Fade("in", 0.0, fade_in))),
        ),
        combine=Concat(),
        output=OutputSpec(output, **_MIX_OUT),
        label="append_endscene",
    ))
    logger.info("mix.endscene", main=main_dur, fade_in=fade_in, fade_out=fade_out)


def export(engine: Engine, source: str, output_format: OutputFormat, bitrate: str = "192k") -> bytes:
    """Final artifact bytes in ``output_format``."""
    if output_format is OutputFormat.WAV:
        return engine.read_file(source)
    if output_format is OutputFormat.MP3:
        encoded = f"{source}.export.mp3"
        engine.execute(FilterGraph.chain(
            source,
            output=OutputSpec(encoded, codec="libmp3lame", bitrate=bitrate),
            label="export_mp3",
        ))
        try:
            return engine.read_file(encoded)
        finally:
            engine.delete_file(encoded)
    raise ValueError(f"Unknown output format: {output_format}")
