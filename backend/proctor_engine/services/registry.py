"""In-process registries for live attempt engines and supervisor monitors."""

import logging
import time
from typing import Callable

from proctor_engine.config import settings
from proctor_engine.core.errors import SessionNotFound
from proctor_engine.services.attempt_engine import AttemptEngine
from proctor_engine.services.grading_client import GradingClient, get_grading_client
from proctor_engine.services.monitoring import MonitoringAggregator

logger = logging.getLogger(__name__)


class SessionRegistry:
    """One ``AttemptEngine`` per attempt reference.

    Engines that reach a terminal status stay readable for
    ``retention_seconds`` and are dropped by a later ``open``.
    """

    def __init__(
        self,
        client: GradingClient | None = None,
        *,
        retention_seconds: float = settings.SESSION_RETENTION_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._retention = retention_seconds
        self._monotonic = monotonic
        self._engines: dict[str, AttemptEngine] = {}
        self._finished: dict[str, float] = {}

    def open(self, attempt_ref: str) -> AttemptEngine:
        """Return the live engine for ``attempt_ref``, creating a fresh one if needed."""
        self._prune()
        engine = self._engines.get(attempt_ref)
        if engine is not None and not engine.closed:
            return engine
        engine = AttemptEngine(attempt_ref, self._client or get_grading_client())
        engine.add_listener(self._track)
        self._engines[attempt_ref] = engine
        self._finished.pop(attempt_ref, None)
        return engine

    def get(self, attempt_ref: str) -> AttemptEngine:
        engine = self._engines.get(attempt_ref)
        if engine is None:
            raise SessionNotFound(f"No live session for attempt {attempt_ref}")
        return engine

    def close(self, attempt_ref: str) -> AttemptEngine:
        engine = self._engines.pop(attempt_ref, None)
        self._finished.pop(attempt_ref, None)
        if engine is None:
            raise SessionNotFound(f"No live session for attempt {attempt_ref}")
        engine.teardown()
        return engine

    def close_all(self) -> None:
        for attempt_ref in list(self._engines):
            self.close(attempt_ref)

    def __len__(self) -> int:
        return len(self._engines)

    def _track(self, engine: AttemptEngine) -> None:
        if engine.status.is_terminal and self._engines.get(engine.attempt_ref) is engine:
            self._finished.setdefault(engine.attempt_ref, self._monotonic())

    def _prune(self) -> None:
        now = self._monotonic()
        for attempt_ref, finished_at in list(self._finished.items()):
            if now - finished_at >= self._retention:
                logger.info("Dropping finished session for attempt %s", attempt_ref)
                self.close(attempt_ref)


class MonitorRegistry:
    """One polling ``MonitoringAggregator`` per test reference."""

    def __init__(self, client: GradingClient | None = None) -> None:
        self._client = client
        self._monitors: dict[str, MonitoringAggregator] = {}

    def start(self, test_ref: str) -> MonitoringAggregator:
        monitor = self._monitors.get(test_ref)
        if monitor is None:
            monitor = MonitoringAggregator(test_ref, self._client or get_grading_client())
            self._monitors[test_ref] = monitor
        monitor.start()
        return monitor

    def get(self, test_ref: str) -> MonitoringAggregator:
        monitor = self._monitors.get(test_ref)
        if monitor is None:
            raise SessionNotFound(f"No monitor running for test {test_ref}")
        return monitor

    async def stop(self, test_ref: str) -> None:
        monitor = self._monitors.pop(test_ref, None)
        if monitor is None:
            raise SessionNotFound(f"No monitor running for test {test_ref}")
        await monitor.stop()

    async def stop_all(self) -> None:
        for test_ref in list(self._monitors):
            await self.stop(test_ref)


# ── singleton accessors ───────────────────────────────────────────────────────

_sessions: SessionRegistry | None = None
_monitors: MonitorRegistry | None = None


def get_session_registry() -> SessionRegistry:
    global _sessions
    if _sessions is None:
        _sessions = SessionRegistry()
    return _sessions


def get_monitor_registry() -> MonitorRegistry:
    global _monitors
    if _monitors is None:
        _monitors = MonitorRegistry()
    return _monitors
