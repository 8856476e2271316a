"""Engine log telemetry — the only place that reads the engine's free text.

Extracts loudness records, silence intervals, input durations and the
abort signature from log lines in ffmpeg's format.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from podmix.errors import MeasurementParseError, TelemetryParseError
from podmix.models import LoudnessMeasurement, SilenceRegion

if TYPE_CHECKING:
    from podmix.engine.base import Engine

_NUM = r"(-?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?|-?inf|nan)"

_JSON_RE = re.compile(r"\{[\s\S]*?\}")
_SILENCE_START_RE = re.compile(r"silence_start:\s*" + _NUM)
_SILENCE_END_RE = re.compile(r"silence_end:\s*" + _NUM + r"\s*\|\s*silence_duration:\s*" + _NUM)
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_ABORT_RE = re.compile(r"Aborted\(\)|Assertion .* failed|RuntimeError: abort", re.IGNORECASE)

LOUDNORM_KEYS = ("input_i", "input_tp", "input_lra", "input_thresh")


class LogCapture:
    """Collects engine log lines while the context is open."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self.lines: list[str] = []

    def _on_line(self, line: str) -> None:
        self.lines.append(line)

    def __enter__(self) -> LogCapture:
        self._engine.add_log_listener(self._on_line)
        return self

    def __exit__(self, *exc: Any) -> None:
        self._engine.remove_log_listener(self._on_line)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def _joined(lines: Iterable[str] | str) -> str:
    return lines if isinstance(lines, str) else "\n".join(lines)


def parse_loudnorm_record(lines: Iterable[str] | str) -> LoudnessMeasurement:
    """First well-formed JSON object carrying the input_* measurements."""
    text = _joined(lines)
    for match in _JSON_RE.finditer(text):
        try:
            record = json.loads(match.group(0))
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict) or not all(k in record for k in LOUDNORM_KEYS):
            continue
        try:
            return LoudnessMeasurement.from_record(record)
        except (TypeError, ValueError):
            continue
    raise MeasurementParseError("No loudness measurement record in engine output")


def parse_silence_regions(lines: Iterable[str] | str) -> list[SilenceRegion]:
    """Pair silence_start / silence_end lines into ordered regions.

    A start without a matching end (silence running into EOF on engines that
    do not flush it) is dropped.
    """
    regions: list[SilenceRegion] = []
    pending: float | None = None
    for line in _joined(lines).splitlines():
        m = _SILENCE_START_RE.search(line)
        if m:
            pending = max(0.0, float(m.group(1)))
            continue
        m = _SILENCE_END_RE.search(line)
        if m and pending is not None:
            end = float(m.group(1))
            regions.append(SilenceRegion(start=pending, end=end, duration=max(0.0, end - pending)))
            pending = None
    return regions


def parse_duration(lines: Iterable[str] | str) -> float:
    """Seconds from the first ``Duration: HH:MM:SS.xx`` line."""
    m = _DURATION_RE.search(_joined(lines))
    if not m:
        raise TelemetryParseError("No duration in engine output")
    hours, minutes, seconds = m.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def format_duration(seconds: float) -> str:
    """Render seconds the way the engine prints input durations."""
    centis = int(round(max(seconds, 0.0) * 100))
    hours, rem = divmod(centis, 360000)
    minutes, rem = divmod(rem, 6000)
    secs, cs = divmod(rem, 100)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{cs:02d}"


def is_abort_signature(line: str) -> bool:
    return bool(_ABORT_RE.search(line))
