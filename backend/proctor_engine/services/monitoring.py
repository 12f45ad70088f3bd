"""Supervisor monitoring — periodic polling and per-attempt risk derivation.

The aggregator never touches attempt state. Each poll fetches the complete
attempt list for one test and replaces the snapshot wholesale, so a
supervisor never sees a half-merged view.

Polls never overlap: when the interval fires while a poll is still in
flight, that tick is skipped (counted in ``skipped_polls``), not queued.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

from proctor_engine.config import settings
from proctor_engine.core.errors import EngineError
from proctor_engine.schemas.attempt import AttemptStatus, AttemptSummary, AutoSubmitReason
from proctor_engine.schemas.monitoring import (
    MonitoringEntry,
    MonitoringSnapshot,
    RiskLevel,
    StatusCounts,
)
from proctor_engine.schemas.violation import ViolationEvent, ViolationType
from proctor_engine.services.attempt_clock import utcnow
from proctor_engine.services.grading_client import GradingClient

logger = logging.getLogger(__name__)

_FRAUD_WEIGHTS = {
    ViolationType.TAB_SWITCH: 5,
    ViolationType.FULLSCREEN_EXIT: 10,
    ViolationType.CLIPBOARD_ATTEMPT: 5,
    ViolationType.FOCUS_LOST: 2,
}


# ── pure derivations ──────────────────────────────────────────────────────────


def risk_level(
    status: AttemptStatus,
    violation_count: int,
    max_violations: int,
    auto_submit_reason: AutoSubmitReason | None = None,
) -> RiskLevel:
    """Classify one attempt for the supervisor view.

    High: one violation (or fewer) away from auto-submit while in progress,
    or already auto-submitted because of violations. An auto-submitted
    attempt with no recorded reason counts as violation-driven when it
    reached the threshold.
    Medium: some violations, but not yet near the threshold.
    Low: everything else.
    """
    if status is AttemptStatus.IN_PROGRESS and violation_count >= max_violations - 1:
        return RiskLevel.HIGH
    if status is AttemptStatus.AUTO_SUBMITTED:
        if auto_submit_reason is AutoSubmitReason.VIOLATIONS:
            return RiskLevel.HIGH
        if auto_submit_reason is None and violation_count >= max_violations:
            return RiskLevel.HIGH
    if 0 < violation_count < max_violations - 1:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def fraud_score(violations: list[ViolationEvent]) -> int:
    """Weighted violation tally, capped at 100."""
    return min(100, sum(_FRAUD_WEIGHTS.get(v.type, 0) for v in violations))


def build_entry(summary: AttemptSummary, max_violations: int) -> MonitoringEntry:
    count = max(summary.violation_count, len(summary.violations))
    graded = summary.status in (AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED)
    return MonitoringEntry(
        attempt_ref=summary.attempt_ref,
        student_id=summary.student_id,
        student_name=summary.student_name,
        status=summary.status,
        violation_count=count,
        risk_level=risk_level(summary.status, count, max_violations, summary.auto_submit_reason),
        fraud_score=fraud_score(summary.violations),
        auto_submit_reason=summary.auto_submit_reason,
        score=summary.score if graded else None,
        violations=summary.violations,
    )


def build_snapshot(
    test_ref: str,
    max_violations: int,
    summaries: list[AttemptSummary],
    polled_at: datetime,
) -> MonitoringSnapshot:
    entries = [build_entry(s, max_violations) for s in summaries]
    counts = StatusCounts()
    for entry in entries:
        if entry.status is AttemptStatus.SUBMITTED:
            counts.submitted += 1
        elif entry.status is AttemptStatus.AUTO_SUBMITTED:
            counts.auto_submitted += 1
        elif entry.status is AttemptStatus.TERMINATED:
            counts.terminated += 1
        else:
            counts.active += 1
    return MonitoringSnapshot(
        test_ref=test_ref,
        max_violations=max_violations,
        polled_at=polled_at,
        entries=entries,
        counts=counts,
    )


# ── polling aggregator ────────────────────────────────────────────────────────


class MonitoringAggregator:
    def __init__(
        self,
        test_ref: str,
        client: GradingClient,
        *,
        interval: float = settings.MONITOR_POLL_INTERVAL_SECONDS,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.test_ref = test_ref
        self._client = client
        self._interval = interval
        self._now = now
        self.snapshot: MonitoringSnapshot | None = None
        self.last_error: EngineError | None = None
        self.skipped_polls = 0
        self._inflight: asyncio.Task | None = None
        self._runner: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    @property
    def poll_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._runner = asyncio.get_running_loop().create_task(self._run())
        logger.info("Monitor for test %s started (every %.1fs)", self.test_ref, self._interval)

    async def stop(self) -> None:
        """Explicit stop: cancels the schedule and any poll still in flight."""
        self._stopped.set()
        tasks = [t for t in (self._runner, self._inflight) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runner = None
        self._inflight = None
        logger.info("Monitor for test %s stopped", self.test_ref)

    def trigger(self) -> asyncio.Task | None:
        """Start a poll unless one is already in flight (then skip it)."""
        if self.poll_in_flight:
            self.skipped_polls += 1
            logger.debug("Monitor %s: poll skipped, previous still in flight", self.test_ref)
            return None
        self._inflight = asyncio.get_running_loop().create_task(self._poll())
        return self._inflight

    async def refresh(self) -> MonitoringSnapshot | None:
        """Manual "refresh now"; joins the in-flight poll when there is one."""
        task = self._inflight if self.poll_in_flight else self.trigger()
        if task is not None:
            await asyncio.shield(task)
        return self.snapshot

    async def _run(self) -> None:
        while not self._stopped.is_set():
            self.trigger()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    async def _poll(self) -> None:
        try:
            listing = await self._client.list_attempts(self.test_ref)
        except EngineError as exc:
            # Keep showing the last complete snapshot.
            self.last_error = exc
            logger.warning("Monitor %s: poll failed: %s", self.test_ref, exc)
            return
        self.last_error = None
        self.snapshot = build_snapshot(
            self.test_ref, listing.max_violations, listing.attempts, self._now()
        )
        logger.debug(
            "Monitor %s: %d attempt(s), %d high risk",
            self.test_ref,
            len(self.snapshot.entries),
            sum(1 for e in self.snapshot.entries if e.risk_level is RiskLevel.HIGH),
        )
