"""Engine handle — the injected resource wrapping one engine instance.

Owns the lifecycle (start/dispose) and the single path back to a healthy
engine: dispose the current instance and start a fresh one.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from podmix.engine.base import Engine, EngineHealth
from podmix.errors import EngineNotStartedError

logger = structlog.get_logger()


class EngineHandle:
    """Lazily started, replaceable engine."""

    def __init__(self, factory: Callable[[], Engine]) -> None:
        self._factory = factory
        self._engine: Engine | None = None
        self.generation = 0

    @property
    def engine(self) -> Engine:
        if self._engine is None or not self._engine.started:
            raise EngineNotStartedError("Engine handle is not started")
        return self._engine

    @property
    def started(self) -> bool:
        return self._engine is not None and self._engine.started

    @property
    def health(self) -> EngineHealth:
        return self.engine.health

    def start(self) -> Engine:
        if self._engine is None:
            engine = self._factory()
            engine.start()
            self._engine = engine
            self.generation += 1
            logger.info("engine.start", backend=engine.backend, generation=self.generation)
        return self._engine

    def dispose(self) -> None:
        if self._engine is not None:
            engine, self._engine = self._engine, None
            engine.dispose()
            logger.info("engine.dispose", backend=engine.backend, generation=self.generation)

    def reinitialize(self) -> Engine:
        """Discard the current instance and start a fresh, healthy one."""
        previous = self._engine.health if self._engine is not None else None
        self.dispose()
        engine = self.start()
        logger.warning("engine.reinitialized", previous=previous, generation=self.generation)
        return engine

    def ensure_healthy(self) -> Engine:
        if not self.started:
            return self.start()
        if self.engine.health is not EngineHealth.HEALTHY:
            return self.reinitialize()
        return self.engine

    def __enter__(self) -> EngineHandle:
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.dispose()
