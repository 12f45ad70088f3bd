"""Shared pytest fixtures for engine and gateway tests."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from proctor_engine.api.deps import get_monitors, get_sessions
from proctor_engine.core.errors import AttemptNotFound
from proctor_engine.main import app
from proctor_engine.schemas.attempt import (
    AttemptList,
    AttemptSession,
    AttemptStatus,
    AttemptSummary,
    Option,
    Question,
    SubmissionResult,
    TestDefinition,
)
from proctor_engine.services.attempt_clock import utcnow
from proctor_engine.services.attempt_engine import AttemptEngine
from proctor_engine.services.registry import MonitorRegistry, SessionRegistry


# ── Test doubles ──────────────────────────────────────────────────────────


class FakeClock:
    """Injectable ``now`` that only moves when a test says so."""

    def __init__(self, start: datetime | None = None):
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` on the retry path; returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeGradingClient:
    """In-memory grading collaborator.

    ``fail(op, *errors)`` queues errors raised by the next calls of ``op``;
    ``hold(op)`` returns an event that blocks ``op`` until it is set.
    """

    def __init__(self, now=utcnow):
        self._now = now
        self.tests: dict[str, TestDefinition] = {}
        self.attempts: dict[str, AttemptSession] = {}
        self.calls: list[tuple[str, str]] = []
        self.saves: list[tuple[str, str, str, float]] = []
        self.saved: dict[str, dict[str, str]] = defaultdict(dict)
        self.violations: dict[str, list[tuple[str, str]]] = defaultdict(list)
        self.submits: list[tuple[str, str | None]] = []
        self.result = SubmissionResult(final_score=8.0, passed=True, percentage=80.0)
        self.listings: dict[str, AttemptList] = {}
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        self._holds: dict[str, asyncio.Event] = {}

    # ── scripting ─────────────────────────────────────────────────────────

    def add_attempt(
        self,
        attempt_ref: str,
        test: TestDefinition,
        *,
        student_id: str = "stu-1",
        status: AttemptStatus = AttemptStatus.IN_PROGRESS,
        start_time: datetime | None = None,
        answers: dict[str, str] | None = None,
        violations: list | None = None,
    ) -> None:
        self.tests[test.id] = test
        self.attempts[attempt_ref] = AttemptSession(
            attempt_ref=attempt_ref,
            test_ref=test.id,
            student_id=student_id,
            status=status,
            start_time=start_time or self._now(),
            answers=answers or {},
            violations=violations or [],
        )

    def fail(self, op: str, *errors: Exception) -> None:
        self._failures[op].extend(errors)

    def hold(self, op: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._holds[op] = gate
        return gate

    async def _call(self, op: str, ref: str) -> None:
        self.calls.append((op, ref))
        gate = self._holds.get(op)
        if gate is not None:
            await gate.wait()
        if self._failures[op]:
            raise self._failures[op].pop(0)

    # ── collaborator API ──────────────────────────────────────────────────

    async def fetch_attempt(self, attempt_ref):
        await self._call("fetch_attempt", attempt_ref)
        if attempt_ref not in self.attempts:
            raise AttemptNotFound(f"{attempt_ref}: Attempt not found")
        attempt = self.attempts[attempt_ref].model_copy(deep=True)
        return attempt, self.tests[attempt.test_ref]

    async def save_answer(self, attempt_ref, question_id, value, *, time_spent=0.0):
        await self._call("save_answer", attempt_ref)
        self.saves.append((attempt_ref, question_id, value, time_spent))
        self.saved[attempt_ref][question_id] = value
        if attempt_ref in self.attempts:
            self.attempts[attempt_ref].answers[question_id] = value

    async def report_violation(self, attempt_ref, violation_type, evidence, *, timestamp=None):
        await self._call("report_violation", attempt_ref)
        self.violations[attempt_ref].append((violation_type.value, evidence))

    async def submit_attempt(self, attempt_ref, *, reason=None):
        await self._call("submit_attempt", attempt_ref)
        self.submits.append((attempt_ref, reason.value if reason else None))
        return self.result

    async def list_attempts(self, test_ref):
        await self._call("list_attempts", test_ref)
        return self.listings.get(test_ref, AttemptList(test_ref=test_ref))

    async def aclose(self):
        pass


def make_test(
    *,
    test_id: str = "test-1",
    questions: int = 3,
    duration_seconds: int | None = 1800,
    proctoring_enabled: bool = True,
    max_violations: int = 3,
    **extra,
) -> TestDefinition:
    return TestDefinition(
        id=test_id,
        title="Physics Midterm",
        questions=[
            Question(
                id=f"q{i}",
                prompt=f"Question {i}",
                options=[Option(id=f"q{i}-{c}", text=c.upper()) for c in "abcd"],
            )
            for i in range(1, questions + 1)
        ],
        duration_seconds=duration_seconds,
        passing_percentage=50.0,
        proctoring_enabled=proctoring_enabled,
        max_violations=max_violations,
        **extra,
    )


def summary(attempt_ref: str, status: AttemptStatus, **fields) -> AttemptSummary:
    return AttemptSummary(attempt_ref=attempt_ref, status=status, **fields)


# ── Engine fixtures ───────────────────────────────────────────────────────


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def grading(clock: FakeClock) -> FakeGradingClient:
    return FakeGradingClient(now=clock)


@pytest_asyncio.fixture
async def make_engine(grading: FakeGradingClient, clock: FakeClock, sleeper: RecordingSleep):
    """Factory for engines wired to the fake collaborator, torn down after the test."""
    engines: list[AttemptEngine] = []

    def factory(attempt_ref: str = "att-1", **kwargs) -> AttemptEngine:
        kwargs.setdefault("now", clock)
        kwargs.setdefault("sleep", sleeper)
        kwargs.setdefault("tick_seconds", 3600)  # tests drive the clock with tick()
        kwargs.setdefault("backoff_base", 0.5)
        kwargs.setdefault("max_submit_attempts", 3)
        engine = AttemptEngine(attempt_ref, grading, **kwargs)
        engines.append(engine)
        return engine

    yield factory

    for engine in engines:
        engine.teardown()
        await engine.wait_idle()
    await asyncio.sleep(0)


# ── Gateway fixtures ──────────────────────────────────────────────────────


@pytest.fixture
def api_grading() -> FakeGradingClient:
    return FakeGradingClient()


@pytest.fixture
def client(api_grading: FakeGradingClient):
    """FastAPI test client whose registries talk to the fake collaborator."""
    sessions = SessionRegistry(client=api_grading)
    monitors = MonitorRegistry(client=api_grading)
    app.dependency_overrides[get_sessions] = lambda: sessions
    app.dependency_overrides[get_monitors] = lambda: monitors

    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(sessions.close_all)
        test_client.portal.call(monitors.stop_all)
    app.dependency_overrides.clear()


STUDENT = {"X-User-Id": "stu-1", "X-User-Role": "student"}
OTHER_STUDENT = {"X-User-Id": "stu-2", "X-User-Role": "student"}
TEACHER = {"X-User-Id": "tch-1", "X-User-Role": "teacher"}
