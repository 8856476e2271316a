"""Progress reporting at fixed per-stage milestones."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from podmix.models import ProgressEvent, Stage

logger = structlog.get_logger()

ProgressCallback = Callable[[ProgressEvent], None]

MILESTONES: dict[str, int] = {
    "loading": 0,
    "loaded": 10,
    "trim": 10,
    "preview": 14,
    "denoise_a": 15,
    "denoise_b": 20,
    "loudness_a": 25,
    "loudness_b": 35,
    "dynamics_a": 40,
    "dynamics_b": 50,
    "process_a": 25,
    "process_b": 40,
    "mix": 60,
    "silence": 65,
    "bgm": 70,
    "endscene": 80,
    "export": 90,
    "finalize": 95,
    "complete": 100,
}


class ProgressReporter:
    """Delivers non-decreasing progress events to an optional callback."""

    def __init__(self, callback: ProgressCallback | None = None) -> None:
        self._callback = callback
        self.percent = 0
        self.events: list[ProgressEvent] = []

    def report(self, stage: Stage, milestone: str | int, message: str) -> ProgressEvent:
        target = MILESTONES[milestone] if isinstance(milestone, str) else int(milestone)
        self.percent = max(self.percent, min(100, target))
        event = ProgressEvent(stage=stage, percent=self.percent, message=message)
        self.events.append(event)
        logger.info("progress", stage=str(stage), percent=self.percent, message=message)
        if self._callback is not None:
            self._callback(event)
        return event

    def fail(self, message: str) -> ProgressEvent:
        return self.report(Stage.ERROR, self.percent, message)
