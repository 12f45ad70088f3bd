"""Attempt engine — the state machine that owns one proctored attempt.

Lifecycle::

    NotStarted ──(proctoring on)──▶ AwaitingFullscreen ──(fullscreen granted)──▶ InProgress
    NotStarted ──(proctoring off)─────────────────────────────────────────────▶ InProgress
    InProgress ──(user submit)──────────────▶ Submitted
    InProgress ──(clock expiry | violation threshold)──▶ AutoSubmitted
    NotStarted / AwaitingFullscreen / InProgress ──(fatal collaborator error)──▶ Terminated

Three event sources feed the engine — clock ticks, detector violations and
user actions — and they may arrive in any order. Submission is guarded by a
set-once terminal target: the first trigger claims it, detaches the clock and
the detector, flushes unsaved answers and calls the collaborator's submit.
Every later trigger joins the in-flight submission instead of starting a new
one, so the collaborator sees a single submit per successful attempt.

While that submission is running the status stays InProgress and
``display_status`` reads ``SubmissionPending``. Retries use exponential
backoff; once they are exhausted ``SubmissionFailed`` is raised and local
answers and violations are left untouched for a manual retry.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable

from proctor_engine.config import settings
from proctor_engine.core.errors import (
    AttemptAlreadyTerminal,
    ClockSkewDetected,
    EngineError,
    FatalAttemptError,
    InvalidTransition,
    PayloadValidationError,
    SubmissionFailed,
    TransientNetworkError,
)
from proctor_engine.schemas.attempt import (
    AttemptSession,
    AttemptStatus,
    AutoSubmitReason,
    Question,
    SubmissionResult,
    TestDefinition,
)
from proctor_engine.schemas.violation import ViolationEvent
from proctor_engine.services.answer_store import AnswerStore
from proctor_engine.services.attempt_clock import AttemptClock, Now, utcnow
from proctor_engine.services.grading_client import GradingClient
from proctor_engine.services.violation_detector import (
    SignalBus,
    ViolationDetector,
    ViolationPolicy,
)

logger = logging.getLogger(__name__)

SUBMISSION_PENDING = "SubmissionPending"

_VIOLATION_NOTICE = (
    "This incident has been logged. Multiple violations may lead to disqualification."
)


class AttemptEngine:
    def __init__(
        self,
        attempt_ref: str,
        client: GradingClient,
        *,
        bus: SignalBus | None = None,
        policy: ViolationPolicy | None = None,
        now: Now = utcnow,
        tick_seconds: float = settings.CLOCK_TICK_SECONDS,
        max_submit_attempts: int = settings.SUBMIT_MAX_ATTEMPTS,
        backoff_base: float = settings.SUBMIT_BACKOFF_BASE_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.attempt_ref = attempt_ref
        self._client = client
        self._now = now
        self._tick_seconds = tick_seconds
        self._max_submit_attempts = max(1, max_submit_attempts)
        self._backoff_base = backoff_base
        self._sleep = sleep

        self.bus = bus or SignalBus()
        self.session = AttemptSession(attempt_ref=attempt_ref, test_ref="")
        self.test: TestDefinition | None = None
        self.questions: list[Question] = []
        self.answers = AnswerStore(self._remote_save)
        self.detector = ViolationDetector(self.record_violation, policy=policy, now=now)
        self.clock: AttemptClock | None = None

        self.result: SubmissionResult | None = None
        self.last_error: EngineError | None = None
        self.last_warning: str | None = None

        # Terminal transition guard: set once by whichever trigger comes first.
        self._terminal_target: AttemptStatus | None = None
        self._auto_reason: AutoSubmitReason | None = None
        self._submit_task: asyncio.Task | None = None
        self._start_task: asyncio.Task | None = None

        self._background: set[asyncio.Task] = set()
        self._listeners: list[Callable[["AttemptEngine"], None]] = []
        self._cursor_since = None
        self._closed = False

    # ── read-only views ───────────────────────────────────────────────────

    @property
    def status(self) -> AttemptStatus:
        return self.session.status

    @property
    def submission_pending(self) -> bool:
        return self._terminal_target is not None and not self.status.is_terminal

    @property
    def display_status(self) -> str:
        return SUBMISSION_PENDING if self.submission_pending else self.status.value

    @property
    def auto_submit_reason(self) -> AutoSubmitReason | None:
        return self._auto_reason

    @property
    def closed(self) -> bool:
        return self._closed

    def remaining_seconds(self) -> float | None:
        if self.clock is not None:
            return self.clock.remaining()
        return self.test.duration_seconds if self.test else None

    def current_question(self) -> Question | None:
        if not self.questions:
            return None
        return self.questions[self.session.current_question_index]

    def add_listener(self, callback: Callable[["AttemptEngine"], None]) -> None:
        """Register a callback fired on every status change and recorded violation."""
        self._listeners.append(callback)

    # ── lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> AttemptSession:
        """Fetch the attempt and enter AwaitingFullscreen or InProgress.

        A second call made while the first is still fetching joins it.
        """
        if self._start_task is not None and not self._start_task.done():
            return await asyncio.shield(self._start_task)
        if self.status is not AttemptStatus.NOT_STARTED or self._closed:
            raise InvalidTransition(f"Attempt {self.attempt_ref} already started ({self.status.value})")
        self._start_task = asyncio.get_running_loop().create_task(self._load())
        return await asyncio.shield(self._start_task)

    async def _load(self) -> AttemptSession:
        try:
            remote, test = await self._client.fetch_attempt(self.attempt_ref)
            if remote.status.is_terminal:
                raise AttemptAlreadyTerminal(
                    f"Attempt {self.attempt_ref} is already {remote.status.value}"
                )
        except EngineError as exc:
            # A rejected initial fetch is not retried.
            self._terminate(exc)
            raise

        self.test = test
        self.session = AttemptSession(
            attempt_ref=self.attempt_ref,
            test_ref=test.id,
            student_id=remote.student_id,
            status=AttemptStatus.NOT_STARTED,
            start_time=remote.start_time,
            answers=dict(remote.answers),
            violations=list(remote.violations),
        )
        self.questions = self._order_questions(test)
        self.answers.seed_saved(remote.answers)
        logger.info(
            "Attempt %s loaded: %d question(s), duration=%s, proctoring=%s, resumed violations=%d",
            self.attempt_ref,
            len(self.questions),
            test.duration_seconds,
            test.proctoring_enabled,
            len(remote.violations),
        )

        if test.proctoring_enabled:
            self._set_status(AttemptStatus.AWAITING_FULLSCREEN)
        else:
            self._begin()
        return self.session

    async def enter_fullscreen(self, granted: bool) -> AttemptStatus:
        """Outcome of the user's "enter fullscreen" action."""
        self._ensure_open()
        if self.status is AttemptStatus.IN_PROGRESS:
            return self.status
        if self.status is not AttemptStatus.AWAITING_FULLSCREEN:
            raise InvalidTransition(f"Cannot enter fullscreen while {self.status.value}")
        if not granted:
            self.last_warning = "Fullscreen is required for this proctored exam. Please allow fullscreen to start."
            logger.info("Attempt %s: fullscreen denied, still awaiting", self.attempt_ref)
            self._notify()
            return self.status
        self.last_warning = None
        self._begin()
        return self.status

    def teardown(self) -> None:
        """Detach the clock and the detector now. In-flight calls may finish."""
        if self._closed:
            return
        self._closed = True
        self._account_dwell(stop=True)
        self.detector.detach()
        if self.clock is not None:
            self.clock.detach()
        logger.info("Attempt %s torn down in status %s", self.attempt_ref, self.display_status)

    # ── user actions ──────────────────────────────────────────────────────

    def set_answer(self, question_id: str, value: str) -> None:
        self._ensure_answerable()
        question = self._question(question_id)
        if question.options and value not in {o.id for o in question.options}:
            raise PayloadValidationError(f"Option {value!r} is not part of question {question_id}")
        self.answers.set_answer(question_id, value)
        self.session.answers[question_id] = value

    async def save_answer(self, question_id: str) -> bool:
        """Push one answer. A failure leaves a warning but keeps the local value."""
        self._ensure_answerable()
        self._question(question_id)
        try:
            saved = await self.answers.save_answer(question_id)
        except FatalAttemptError as exc:
            self._terminate(exc)
            raise
        if not saved and not self.status.is_terminal:
            self.last_warning = (
                f"Your answer to question {question_id} could not be saved yet. "
                "It is kept on this device and will be sent on submit."
            )
            self._notify()
        return saved

    async def navigate(self, index: int, *, save_current: bool = False) -> Question:
        """Move the question cursor, optionally saving the current answer first."""
        self._ensure_answerable()
        if not 0 <= index < len(self.questions):
            raise PayloadValidationError(f"Question index {index} out of range 0..{len(self.questions) - 1}")
        current = self.current_question()
        self._account_dwell()
        if save_current and current is not None and self.answers.get(current.id) is not None:
            await self.save_answer(current.id)
        self.session.current_question_index = index
        return self.questions[index]

    async def submit(self) -> SubmissionResult:
        """Manual submit. Joins an in-flight submission instead of starting another."""
        if self.result is not None:
            return self.result
        if self.status.is_terminal:
            raise InvalidTransition(f"Attempt {self.attempt_ref} is already {self.status.value}")
        if self._closed and self._terminal_target is None:
            raise InvalidTransition(f"Attempt {self.attempt_ref} session is closed")
        if self.status is not AttemptStatus.IN_PROGRESS:
            raise InvalidTransition(f"Cannot submit while {self.status.value}")
        if self._terminal_target is None:
            self._claim(AttemptStatus.SUBMITTED)
        return await asyncio.shield(self._ensure_submit_task())

    async def wait_for_submission(self) -> SubmissionResult | None:
        """Await the running submission, if any (e.g. one started by the clock)."""
        if self.result is not None:
            return self.result
        if self._submit_task is None:
            return None
        return await asyncio.shield(self._submit_task)

    async def wait_idle(self) -> None:
        """Wait for fire-and-forget work (violation reports) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── event sinks ───────────────────────────────────────────────────────

    def record_violation(self, event: ViolationEvent) -> bool:
        """Append a violation and escalate when the threshold is reached.

        Returns False when the event was ignored because the session is not
        in progress.
        """
        if self.status is not AttemptStatus.IN_PROGRESS or self._closed or self._terminal_target is not None:
            logger.debug("Attempt %s: ignoring %s in status %s", self.attempt_ref, event.type.value, self.status.value)
            return False

        self.session.violations.append(event)
        count = len(self.session.violations)
        self.last_warning = f"{event.evidence}. {_VIOLATION_NOTICE}"
        logger.info(
            "Attempt %s: violation %s (%d/%d): %s",
            self.attempt_ref,
            event.type.value,
            count,
            self.test.max_violations,
            event.evidence,
        )
        self._spawn(self._report_violation(event))
        self._notify()

        if count >= self.test.max_violations:
            self._trigger_auto_submit(AutoSubmitReason.VIOLATIONS)
        return True

    def _on_clock_expired(self) -> None:
        self._trigger_auto_submit(AutoSubmitReason.TIME_EXPIRED)

    # ── internals: transitions ────────────────────────────────────────────

    def _begin(self) -> None:
        if self.session.start_time is None:
            # The collaborator stamps start_time when the attempt is created;
            # fall back to local time only when it did not.
            self.session.start_time = self._now()
        self._set_status(AttemptStatus.IN_PROGRESS)
        self._cursor_since = self._now()

        self.clock = AttemptClock(
            self.session.start_time,
            self.test.duration_seconds,
            self._on_clock_expired,
            tick_seconds=self._tick_seconds,
            now=self._now,
        )
        try:
            self.clock.check_skew()
        except ClockSkewDetected as exc:
            logger.warning("Attempt %s: %s (treating remaining time as %s)", self.attempt_ref, exc, self.clock.remaining())

        if self.test.proctoring_enabled:
            self.detector.attach(self.bus)

        # A resumed attempt may already be at the threshold.
        if len(self.session.violations) >= self.test.max_violations:
            self._trigger_auto_submit(AutoSubmitReason.VIOLATIONS)
            return
        self.clock.attach()

    def _trigger_auto_submit(self, reason: AutoSubmitReason) -> None:
        if self._terminal_target is not None or self.status.is_terminal:
            logger.debug("Attempt %s: auto-submit (%s) ignored, already finalising", self.attempt_ref, reason.value)
            return
        self._auto_reason = reason
        self._claim(AttemptStatus.AUTO_SUBMITTED)
        self._ensure_submit_task()

    def _claim(self, target: AttemptStatus) -> None:
        self._terminal_target = target
        self.detector.detach()
        if self.clock is not None:
            self.clock.detach()
        self._account_dwell(stop=True)
        logger.info(
            "Attempt %s: submission started → %s%s",
            self.attempt_ref,
            target.value,
            f" ({self._auto_reason.value})" if self._auto_reason else "",
        )
        self._notify()

    def _release_claim(self) -> None:
        """Undo a manual claim whose payload was rejected, so the student can continue."""
        self._terminal_target = None
        self._cursor_since = self._now()
        if self.test.proctoring_enabled and not self._closed:
            self.detector.attach(self.bus)
        if self.clock is not None and not self._closed:
            self.clock.attach()
        self._notify()

    def _terminate(self, exc: EngineError) -> None:
        if self.status.is_terminal:
            return
        self.last_error = exc
        self.detector.detach()
        if self.clock is not None:
            self.clock.detach()
        logger.error("Attempt %s terminated: %s", self.attempt_ref, exc)
        self._set_status(AttemptStatus.TERMINATED)

    def _complete(self, result: SubmissionResult) -> None:
        if self.status.is_terminal:
            logger.debug("Attempt %s: discarding submit result, already %s", self.attempt_ref, self.status.value)
            return
        self.result = result
        self.last_error = None
        self.session.answers = self.answers.saved_answers()
        logger.info(
            "Attempt %s %s: score=%s passed=%s",
            self.attempt_ref,
            self._terminal_target.value,
            result.final_score,
            result.passed,
        )
        self._set_status(self._terminal_target)

    def _set_status(self, status: AttemptStatus) -> None:
        previous = self.session.status
        self.session.status = status
        if previous is not status:
            logger.info("Attempt %s: %s → %s", self.attempt_ref, previous.value, status.value)
        self._notify()

    # ── internals: submission ─────────────────────────────────────────────

    def _ensure_submit_task(self) -> asyncio.Task:
        task = self._submit_task
        if task is None or (task.done() and self.result is None):
            task = asyncio.get_running_loop().create_task(self._finalize())
            task.add_done_callback(self._on_finalize_done)
            self._submit_task = task
        return task

    def _on_finalize_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Already logged and recorded on self.last_error by _finalize.
            logger.debug("Attempt %s: submission task ended with %r", self.attempt_ref, exc)

    async def _finalize(self) -> SubmissionResult:
        last_exc: EngineError | None = None
        for attempt in range(1, self._max_submit_attempts + 1):
            try:
                outcome = await self.answers.flush_all()
                failed = [qid for qid, ok in outcome.items() if not ok]
                if failed:
                    raise TransientNetworkError(
                        f"{len(failed)} answer(s) could not be flushed",
                        details={"questions": failed},
                    )
                result = await self._client.submit_attempt(self.attempt_ref, reason=self._auto_reason)
            except TransientNetworkError as exc:
                last_exc = exc
                if attempt < self._max_submit_attempts:
                    delay = self._backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        "Attempt %s: submit try %d/%d failed (%s); retrying in %.2fs",
                        self.attempt_ref,
                        attempt,
                        self._max_submit_attempts,
                        exc,
                        delay,
                    )
                    await self._sleep(delay)
                continue
            except PayloadValidationError as exc:
                self.last_error = exc
                logger.warning("Attempt %s: submission rejected: %s", self.attempt_ref, exc)
                if self._terminal_target is AttemptStatus.SUBMITTED:
                    # The re-attached clock may claim an auto-submit at once;
                    # it must get a fresh task, not this finishing one.
                    self._submit_task = None
                    self._release_claim()
                raise
            except FatalAttemptError as exc:
                self._terminate(exc)
                raise
            except EngineError as exc:
                self.last_error = exc
                logger.error("Attempt %s: submission aborted: %s", self.attempt_ref, exc)
                self._notify()
                raise
            self._complete(result)
            return result

        error = SubmissionFailed(attempts=self._max_submit_attempts, last_error=last_exc)
        self.last_error = error
        logger.error("Attempt %s: %s; local answers and violations kept for a manual retry", self.attempt_ref, error)
        self._notify()
        raise error

    async def _remote_save(self, question_id: str, value: str, time_spent: float) -> None:
        await self._client.save_answer(self.attempt_ref, question_id, value, time_spent=time_spent)

    async def _report_violation(self, event: ViolationEvent) -> None:
        try:
            await self._client.report_violation(
                self.attempt_ref, event.type, event.evidence, timestamp=event.timestamp
            )
        except EngineError as exc:
            # Fail-open: a lost report must never block the exam.
            logger.warning("Attempt %s: violation report dropped: %s", self.attempt_ref, exc)

    # ── internals: helpers ────────────────────────────────────────────────

    def _order_questions(self, test: TestDefinition) -> list[Question]:
        """Apply the test's ordering policy, seeded by the attempt so a resume sees the same order."""
        rng = random.Random(self.attempt_ref)
        questions = list(test.questions)
        if test.randomize_questions:
            rng.shuffle(questions)
        if test.randomize_options:
            questions = [
                q.model_copy(update={"options": rng.sample(q.options, len(q.options))})
                for q in questions
            ]
        return questions

    def _question(self, question_id: str) -> Question:
        for question in self.questions:
            if question.id == question_id:
                return question
        raise PayloadValidationError(f"Question {question_id} is not part of this attempt")

    def _account_dwell(self, *, stop: bool = False) -> None:
        if self._cursor_since is None:
            return
        current = self.current_question()
        now = self._now()
        if current is not None:
            self.answers.add_time_spent(current.id, (now - self._cursor_since).total_seconds())
        self._cursor_since = None if stop else now

    def _ensure_open(self) -> None:
        if self._closed:
            raise InvalidTransition(f"Attempt {self.attempt_ref} session is closed")
        if self.status.is_terminal:
            raise InvalidTransition(f"Attempt {self.attempt_ref} is already {self.status.value}")

    def _ensure_answerable(self) -> None:
        self._ensure_open()
        if self.status is not AttemptStatus.IN_PROGRESS:
            raise InvalidTransition(f"Answers can only change while in progress (now {self.status.value})")
        if self._terminal_target is not None:
            raise InvalidTransition("Submission in progress; answers are locked")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Attempt %s: listener %r failed", self.attempt_ref, callback)
