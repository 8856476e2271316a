"""Engine contract — lifecycle, named-buffer store, graph execution, log stream.

Health is an explicit state machine:

    HEALTHY ──command failed──▶ DEGRADED
    HEALTHY/DEGRADED ──abort signature──▶ ABORTED

There is no edge back to HEALTHY on an instance; recovery replaces the
instance (see ``EngineHandle.reinitialize``).
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import StrEnum

import structlog

from podmix.engine.graph import FilterGraph
from podmix.engine.telemetry import LogCapture, is_abort_signature
from podmix.errors import EngineAbortedError, EngineError, EngineNotStartedError, WorkspaceError

logger = structlog.get_logger()

LogListener = Callable[[str], None]


class EngineHealth(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ABORTED = "aborted"


_TRANSITIONS: dict[EngineHealth, frozenset[EngineHealth]] = {
    EngineHealth.HEALTHY: frozenset({EngineHealth.DEGRADED, EngineHealth.ABORTED}),
    EngineHealth.DEGRADED: frozenset({EngineHealth.ABORTED}),
    EngineHealth.ABORTED: frozenset(),
}


class HealthState:
    """Guarded health transitions for one engine instance."""

    def __init__(self) -> None:
        self._state = EngineHealth.HEALTHY
        self._lock = threading.Lock()

    @property
    def state(self) -> EngineHealth:
        return self._state

    def transition(self, to: EngineHealth) -> bool:
        """Move to ``to`` if allowed; returns whether the state changed."""
        with self._lock:
            if to is self._state:
                return False
            if to not in _TRANSITIONS[self._state]:
                return False
            self._state = to
            return True


class Engine(ABC):
    """A media engine serving one run at a time."""

    backend = "abstract"

    def __init__(self, *, log_lines: bool = False) -> None:
        self._health = HealthState()
        self._listeners: list[LogListener] = []
        self._started = False
        self._log_lines = log_lines

    # ── Lifecycle ──

    def start(self) -> None:
        self._started = True
        logger.debug("engine.started", backend=self.backend)

    def dispose(self) -> None:
        self._started = False
        self._listeners.clear()
        logger.debug("engine.disposed", backend=self.backend)

    @property
    def started(self) -> bool:
        return self._started

    @property
    def health(self) -> EngineHealth:
        return self._health.state

    def _require_started(self) -> None:
        if not self._started:
            raise EngineNotStartedError(f"{self.backend} engine is not started")

    # ── Log stream ──

    def add_log_listener(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    def remove_log_listener(self, listener: LogListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def capture_log(self) -> LogCapture:
        return LogCapture(self)

    def emit(self, line: str) -> None:
        """Publish one log line; the abort signature flips health to ABORTED."""
        if self._log_lines:
            logger.debug("engine.log", backend=self.backend, line=line)
        if is_abort_signature(line) and self._health.transition(EngineHealth.ABORTED):
            logger.warning("engine.aborted", backend=self.backend, line=line)
        for listener in list(self._listeners):
            listener(line)

    # ── Commands ──

    def execute(self, graph: FilterGraph) -> None:
        """Run one graph. Raises EngineError on failure."""
        self._require_started()
        if self.health is EngineHealth.ABORTED:
            raise EngineAbortedError(f"{self.backend} engine is aborted")
        try:
            self._run(graph)
        except EngineAbortedError:
            self._health.transition(EngineHealth.ABORTED)
            raise
        except EngineError as exc:
            if self._health.transition(EngineHealth.DEGRADED):
                logger.warning("engine.degraded", backend=self.backend, graph=graph.label, error=str(exc))
            raise
        if self.health is EngineHealth.ABORTED:
            logger.warning("engine.abort_after_command", backend=self.backend, graph=graph.label)

    @abstractmethod
    def _run(self, graph: FilterGraph) -> None:
        """Backend execution; must raise EngineError subclasses only."""

    # ── Buffer store ──

    def read_file(self, name: str) -> bytes:
        self._require_started()
        try:
            return self._read(name)
        except (KeyError, OSError) as exc:
            raise WorkspaceError(f"Cannot read buffer {name!r}: {exc}") from exc

    def write_file(self, name: str, data: bytes) -> None:
        self._require_started()
        try:
            self._write(name, bytes(data))
        except OSError as exc:
            raise WorkspaceError(f"Cannot write buffer {name!r}: {exc}") from exc

    def delete_file(self, name: str) -> None:
        self._require_started()
        try:
            self._delete(name)
        except (KeyError, OSError) as exc:
            raise WorkspaceError(f"Cannot delete buffer {name!r}: {exc}") from exc

    @abstractmethod
    def exists(self, name: str) -> bool: ...

    @abstractmethod
    def list_files(self) -> list[str]: ...

    @abstractmethod
    def _read(self, name: str) -> bytes: ...

    @abstractmethod
    def _write(self, name: str, data: bytes) -> None: ...

    @abstractmethod
    def _delete(self, name: str) -> None: ...
