"""Run-scoped named-buffer workspace.

Tracks which engine buffers belong to the current run, deletes each one as
soon as its last consumer is done, and snapshots/re-injects the live set
across an engine reinitialization.
"""

from __future__ import annotations

import structlog

from podmix.engine.base import Engine
from podmix.errors import WorkspaceError

logger = structlog.get_logger()


class Workspace:
    """Live buffers of one run, stored in the current engine instance."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._live: set[str] = set()
        self.peak_live = 0

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def live(self) -> frozenset[str]:
        return frozenset(self._live)

    def put(self, name: str, data: bytes) -> None:
        self._engine.write_file(name, data)
        self.adopt(name)

    def adopt(self, *names: str) -> None:
        """Register buffers a stage wrote through the engine."""
        for name in names:
            if not self._engine.exists(name):
                raise WorkspaceError(f"Stage output {name!r} was not written")
            self._live.add(name)
        self.peak_live = max(self.peak_live, len(self._live))

    def get(self, name: str) -> bytes:
        if name not in self._live:
            raise WorkspaceError(f"Buffer {name!r} is not live in this run")
        return self._engine.read_file(name)

    def release(self, *names: str) -> None:
        """Delete buffers whose last consumer has finished."""
        for name in names:
            if name not in self._live:
                continue
            self._live.discard(name)
            if self._engine.exists(name):
                self._engine.delete_file(name)
        logger.debug("workspace.release", released=list(names), live=len(self._live))

    def discard(self, *names: str) -> None:
        """Delete outputs a failed stage may have left without adopting them."""
        for name in names:
            if name in self._live:
                continue
            try:
                if self._engine.started and self._engine.exists(name):
                    self._engine.delete_file(name)
            except WorkspaceError as exc:
                logger.warning("workspace.discard_fail", buffer=name, error=str(exc))

    def snapshot(self) -> dict[str, bytes]:
        return {name: self._engine.read_file(name) for name in sorted(self._live)}

    def restore(self, engine: Engine, snapshot: dict[str, bytes]) -> None:
        """Re-inject a snapshot into a fresh engine and switch to it."""
        for name, data in snapshot.items():
            engine.write_file(name, data)
        self._engine = engine
        self._live = set(snapshot)

    def clear(self) -> None:
        """Drop everything still live; tolerant of a dead engine."""
        names, self._live = sorted(self._live), set()
        for name in names:
            try:
                if self._engine.started and self._engine.exists(name):
                    self._engine.delete_file(name)
            except WorkspaceError as exc:
                logger.warning("workspace.clear_fail", buffer=name, error=str(exc))
