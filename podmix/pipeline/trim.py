"""Clap sync — onset detection and cut-point trimming.

Both speakers clap once at the start of recording. The clap is the first
point where a 5 ms RMS envelope exceeds a threshold relative to the track's
global peak; each track is cut relative to its own clap and emitted as
44.1 kHz mono.
"""

from __future__ import annotations

import numpy as np
import structlog

from podmix.config import settings
from podmix.engine.base import Engine
from podmix.engine.graph import FilterGraph, InputSpec, OutputSpec, Trim
from podmix.errors import OnsetNotDetected
from podmix.models import AudioTrack, TrimResult

logger = structlog.get_logger()

TRIM_SAMPLE_RATE = 44100
RMS_WINDOW_S = 0.005


def rms_envelope(samples: np.ndarray, sr: int, window_s: float = RMS_WINDOW_S) -> np.ndarray:
    """Sliding RMS; element i covers samples [i, i + window)."""
    w = max(1, int(sr * window_s))
    if len(samples) < w:
        return np.zeros(0)
    csum = np.concatenate(([0.0], np.cumsum(np.square(samples, dtype=np.float64))))
    power = np.maximum((csum[w:] - csum[:-w]) / w, 0.0)
    return np.sqrt(power)


def detect_onset(samples: np.ndarray, sr: int, threshold_db: float) -> float:
    """Seconds to the first envelope sample above peak × 10^(dB/20)."""
    if samples.ndim == 2:
        samples = samples.mean(axis=1)
    peak = float(np.max(np.abs(samples))) if len(samples) else 0.0
    if peak <= 0:
        raise OnsetNotDetected("Track is silent; no clap to detect")
    threshold = peak * 10 ** (threshold_db / 20)
    hits = np.flatnonzero(rms_envelope(samples, sr) > threshold)
    if len(hits) == 0:
        raise OnsetNotDetected(f"No onset above {threshold_db} dB of peak")
    return float(hits[0]) / sr


def cut_point(onset: float, pre_margin: float, post_cut: float) -> float:
    """Cut after the clap when post_cut > 0, otherwise keep a margin before it."""
    if post_cut > 0:
        return onset + post_cut
    return max(0.0, onset - pre_margin)


def _detect(engine: Engine, source: str, window: float, threshold_db: float) -> float:
    probe = f"{source}.detect.wav"
    engine.execute(FilterGraph.chain(
        InputSpec(source, duration=window),
        output=OutputSpec(probe, sample_rate=TRIM_SAMPLE_RATE, channels=1),
        label=f"detect:{source}",
    ))
    try:
        track = AudioTrack.from_bytes(engine.read_file(probe))
    finally:
        engine.delete_file(probe)
    return detect_onset(track.mono(), track.sample_rate, threshold_db)


def trim_track(engine: Engine, source: str, output: str, cut: float) -> None:
    engine.execute(FilterGraph.chain(
        InputSpec(source, seek=cut if cut > 0 else None),
        output=OutputSpec(output, sample_rate=TRIM_SAMPLE_RATE, channels=1),
        label=f"trim:{source}",
    ))


def clip_preview(engine: Engine, source: str, output: str, seconds: float) -> None:
    """Keep the first ``seconds`` of a trimmed track."""
    engine.execute(FilterGraph.chain(
        source, (Trim(0.0, seconds),),
        output=OutputSpec(output, sample_rate=TRIM_SAMPLE_RATE, channels=1),
        label=f"preview:{source}",
    ))


def sync_and_trim(
    engine: Engine,
    source_a: str,
    source_b: str,
    output_a: str,
    output_b: str,
    *,
    threshold_db: float = -10.0,
    pre_margin: float = 0.5,
    post_cut: float = 1.0,
    detect_window: float | None = None,
) -> TrimResult:
    """Detect each track's clap and cut both to 44.1 kHz mono.

    Track lengths are left as they fall; the mixer decides how to reconcile
    them.
    """
    window = detect_window if detect_window is not None else settings.onset_detect_window
    tracks = (("a", source_a, output_a), ("b", source_b, output_b))
    onsets: list[float] = []
    for label, source, _ in tracks:
        try:
            onsets.append(_detect(engine, source, window, threshold_db))
        except OnsetNotDetected as exc:
            raise OnsetNotDetected(f"Speaker {label.upper()}: {exc}") from exc

    # Both claps found; nothing is written before this point
    cuts: list[float] = []
    for (label, source, output), onset in zip(tracks, onsets):
        cut = cut_point(onset, pre_margin, post_cut)
        trim_track(engine, source, output, cut)
        logger.info("trim.onset_detected", track=label, onset=round(onset, 4), cut=round(cut, 4))
        cuts.append(cut)
    return TrimResult(onset_a=onsets[0], onset_b=onsets[1], cut_a=cuts[0], cut_b=cuts[1])
