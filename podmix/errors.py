"""PODMIX error hierarchy.

Every stage raises one of these; the processor tags the failing stage and
converts the failure into a terminal progress event before re-raising.
"""

from __future__ import annotations


class PodmixError(Exception):
    """Base class for all pipeline failures."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class OnsetNotDetected(PodmixError):
    """No envelope sample crossed the clap threshold."""


class WorkspaceError(PodmixError):
    """A named buffer could not be read, written or found."""


class InvalidAssetError(PodmixError):
    """A declared BGM/endscene asset is not a usable byte buffer."""


class TelemetryParseError(PodmixError):
    """Required telemetry was missing from the engine log."""


class MeasurementParseError(TelemetryParseError):
    """No well-formed loudness record in the measurement pass output."""


class EngineError(PodmixError):
    """An engine command failed."""

    def __init__(self, message: str, *, returncode: int | None = None, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.returncode = returncode


class EngineAbortedError(EngineError):
    """The engine is in its aborted state and refuses commands."""


class EngineNotStartedError(EngineError):
    """Engine used before start() or after dispose()."""


class RecoveryFailedError(PodmixError):
    """Snapshot/reinitialize/re-inject did not bring the run back."""
