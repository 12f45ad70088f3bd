"""Attempt clock — server-authoritative countdown with a single expiry edge.

Remaining time is always recomputed from the wall clock
(``duration - (now - start_time)``), never from the number of ticks seen, so
a suspended or backgrounded process gains nothing when it resumes.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from proctor_engine.config import settings
from proctor_engine.core.errors import ClockSkewDetected

logger = logging.getLogger(__name__)

Now = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_remaining(seconds: float | None) -> str:
    """``m:ss`` display string; empty for untimed tests."""
    if seconds is None:
        return ""
    whole = int(seconds + 0.999) if seconds > 0 else 0  # round up so 0:00 means expired
    return f"{whole // 60}:{whole % 60:02d}"


class AttemptClock:
    """Countdown for one attempt.

    ``on_expired`` is called exactly once, the first time remaining time
    reaches zero; the clock then detaches itself. A clock built with
    ``duration_seconds=None`` is inert and never expires.
    """

    def __init__(
        self,
        start_time: datetime | None,
        duration_seconds: int | None,
        on_expired: Callable[[], None],
        *,
        tick_seconds: float = settings.CLOCK_TICK_SECONDS,
        now: Now = utcnow,
    ) -> None:
        self._start = start_time
        self._duration = duration_seconds
        self._on_expired = on_expired
        self._tick = tick_seconds
        self._now = now
        self._task: asyncio.Task | None = None
        self._expired = False

    @property
    def inert(self) -> bool:
        return self._duration is None or self._start is None

    @property
    def expired(self) -> bool:
        return self._expired

    @property
    def attached(self) -> bool:
        return self._task is not None and not self._task.done()

    def remaining(self) -> float | None:
        """Seconds left, clamped to ``[0, duration]``; None when untimed."""
        if self.inert:
            return None
        elapsed = (self._now() - self._start).total_seconds()
        return max(0.0, min(float(self._duration), self._duration - elapsed))

    def check_skew(self) -> None:
        """Raise ``ClockSkewDetected`` when local time disagrees with the server start.

        The clock keeps working either way: an already-negative remaining time
        simply reads as zero and expires on the first tick.
        """
        if self.inert:
            return
        elapsed = (self._now() - self._start).total_seconds()
        if elapsed < 0:
            raise ClockSkewDetected(
                f"start time is {-elapsed:.1f}s in the local future",
                details={"elapsed": elapsed},
            )
        if self._duration - elapsed <= 0:
            raise ClockSkewDetected(
                f"remaining time is already {self._duration - elapsed:.1f}s at creation",
                details={"elapsed": elapsed},
            )

    def tick(self) -> float | None:
        """Recompute remaining time and fire the expiry edge if it hit zero."""
        remaining = self.remaining()
        if remaining is None or self._expired:
            return remaining
        if remaining <= 0:
            self._expired = True
            self.detach()
            logger.info("Attempt clock expired (start=%s, duration=%ss)", self._start, self._duration)
            self._on_expired()
        return remaining

    def attach(self) -> None:
        """Start ticking on the running event loop. No-op for untimed clocks."""
        if self.inert or self._expired or self.attached:
            return
        self.tick()
        if self._expired:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def detach(self) -> None:
        """Stop ticking. Synchronous; safe to call repeatedly or from a tick."""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while not self._expired:
            remaining = self.remaining() or 0.0
            # Sleep to the expiry point when it comes before the next tick.
            await asyncio.sleep(max(0.0, min(self._tick, remaining)))
            self.tick()
