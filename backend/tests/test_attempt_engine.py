"""Tests for the attempt engine state machine."""

import asyncio
from datetime import timedelta

import pytest

from proctor_engine.core.errors import (
    AttemptAlreadyTerminal,
    AttemptNotFound,
    EngineError,
    InvalidTransition,
    PayloadValidationError,
    SubmissionFailed,
    TransientNetworkError,
)
from proctor_engine.schemas.attempt import AttemptStatus, AutoSubmitReason
from proctor_engine.schemas.violation import (
    EnvironmentSignal,
    SignalKind,
    ViolationEvent,
    ViolationType,
)
from proctor_engine.services.attempt_engine import SUBMISSION_PENDING

from conftest import make_test

TAB_HIDDEN = EnvironmentSignal(kind=SignalKind.VISIBILITY_CHANGE, hidden=True)
FULLSCREEN_LEFT = EnvironmentSignal(kind=SignalKind.FULLSCREEN_CHANGE, fullscreen=False)


async def _in_progress(make_engine, grading, test=None, ref="att-1", **attempt):
    grading.add_attempt(ref, test or make_test(), **attempt)
    engine = make_engine(ref)
    await engine.start()
    if engine.status is AttemptStatus.AWAITING_FULLSCREEN:
        await engine.enter_fullscreen(True)
    return engine


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ── start / fullscreen ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_proctored_attempt_waits_for_fullscreen(make_engine, grading):
    grading.add_attempt("att-1", make_test())
    engine = make_engine()
    await engine.start()
    assert engine.status is AttemptStatus.AWAITING_FULLSCREEN
    assert engine.clock is None
    assert not engine.detector.attached

    await engine.enter_fullscreen(False)
    assert engine.status is AttemptStatus.AWAITING_FULLSCREEN
    assert "Fullscreen is required" in engine.last_warning

    await engine.enter_fullscreen(True)
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert engine.detector.attached
    assert engine.clock.attached
    assert engine.last_warning is None


@pytest.mark.asyncio
async def test_unproctored_attempt_starts_immediately(make_engine, grading):
    grading.add_attempt("att-1", make_test(proctoring_enabled=False))
    engine = make_engine()
    await engine.start()
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert not engine.detector.attached
    assert engine.bus.subscriber_count() == 0


@pytest.mark.asyncio
async def test_start_twice_is_rejected(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    with pytest.raises(InvalidTransition):
        await engine.start()


@pytest.mark.asyncio
async def test_missing_attempt_terminates(make_engine, grading):
    engine = make_engine("nope")
    with pytest.raises(AttemptNotFound):
        await engine.start()
    assert engine.status is AttemptStatus.TERMINATED
    assert isinstance(engine.last_error, AttemptNotFound)
    assert len(grading.calls) == 1  # never retried


@pytest.mark.asyncio
async def test_already_submitted_attempt_terminates(make_engine, grading):
    grading.add_attempt("att-1", make_test(), status=AttemptStatus.SUBMITTED)
    engine = make_engine()
    with pytest.raises(AttemptAlreadyTerminal):
        await engine.start()
    assert engine.status is AttemptStatus.TERMINATED


@pytest.mark.asyncio
async def test_transient_fetch_error_is_not_retried(make_engine, grading):
    grading.add_attempt("att-1", make_test())
    grading.fail("fetch_attempt", TransientNetworkError("down"))
    engine = make_engine()
    with pytest.raises(TransientNetworkError):
        await engine.start()
    assert engine.status is AttemptStatus.TERMINATED


@pytest.mark.asyncio
async def test_concurrent_starts_share_one_fetch(make_engine, grading):
    grading.add_attempt("att-1", make_test())
    gate = grading.hold("fetch_attempt")
    engine = make_engine()

    first = asyncio.create_task(engine.start())
    second = asyncio.create_task(engine.start())
    await _settle()
    gate.set()
    sessions = await asyncio.gather(first, second)

    assert sessions[0] is sessions[1] is engine.session
    assert grading.calls.count(("fetch_attempt", "att-1")) == 1
    assert engine.status is AttemptStatus.AWAITING_FULLSCREEN

    await engine.enter_fullscreen(True)
    clock = engine.clock
    assert clock.attached
    with pytest.raises(InvalidTransition):
        await engine.start()
    assert engine.clock is clock

# ── answers ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_answer_save_and_failure_warning(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    engine.set_answer("q1", "q1-b")
    assert await engine.save_answer("q1") is True
    assert grading.saved["att-1"] == {"q1": "q1-b"}

    grading.fail("save_answer", TransientNetworkError("timeout"))
    engine.set_answer("q2", "q2-a")
    assert await engine.save_answer("q2") is False
    assert engine.answers.get("q2") == "q2-a"
    assert "could not be saved" in engine.last_warning
    assert engine.status is AttemptStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_invalid_option_is_rejected(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    with pytest.raises(PayloadValidationError):
        engine.set_answer("q1", "q2-a")
    with pytest.raises(PayloadValidationError):
        engine.set_answer("q99", "q1-a")
    assert engine.answers.answers() == {}


@pytest.mark.asyncio
async def test_answers_rejected_before_start(make_engine, grading):
    grading.add_attempt("att-1", make_test())
    engine = make_engine()
    await engine.start()
    with pytest.raises(InvalidTransition):
        engine.set_answer("q1", "q1-a")


@pytest.mark.asyncio
async def test_fatal_save_terminates(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("save_answer", AttemptAlreadyTerminal("closed by teacher"))
    engine.set_answer("q1", "q1-a")
    with pytest.raises(AttemptAlreadyTerminal):
        await engine.save_answer("q1")
    assert engine.status is AttemptStatus.TERMINATED
    assert not engine.detector.attached
    assert not engine.clock.attached


@pytest.mark.asyncio
async def test_navigate_saves_and_tracks_time(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading)
    first = engine.current_question()
    engine.set_answer(first.id, f"{first.id}-c")
    clock.advance(42)
    second = await engine.navigate(1, save_current=True)
    assert second is engine.questions[1]
    assert engine.session.current_question_index == 1
    assert grading.saves == [("att-1", first.id, f"{first.id}-c", 42.0)]

    with pytest.raises(PayloadValidationError):
        await engine.navigate(7)


# ── manual submit ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_submit_flushes_then_submits(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("save_answer", TransientNetworkError("flaky"))
    engine.set_answer("q1", "q1-a")
    assert await engine.save_answer("q1") is False

    result = await engine.submit()
    assert result.final_score == 8.0
    assert engine.status is AttemptStatus.SUBMITTED
    assert grading.saved["att-1"] == {"q1": "q1-a"}
    assert grading.submits == [("att-1", None)]
    assert engine.auto_submit_reason is None
    assert engine.session.answers == grading.saved["att-1"]
    assert not engine.detector.attached
    assert not engine.clock.attached

    # Idempotent once graded.
    assert await engine.submit() is result
    assert len(grading.submits) == 1


@pytest.mark.asyncio
async def test_answers_locked_while_submitting(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    gate = grading.hold("submit_attempt")
    submitting = asyncio.create_task(engine.submit())
    await _settle()

    assert engine.status is AttemptStatus.IN_PROGRESS
    assert engine.display_status == SUBMISSION_PENDING
    with pytest.raises(InvalidTransition):
        engine.set_answer("q1", "q1-a")

    gate.set()
    await submitting
    assert engine.display_status == AttemptStatus.SUBMITTED.value


@pytest.mark.asyncio
async def test_concurrent_triggers_submit_once(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading)
    gate = grading.hold("submit_attempt")
    manual = asyncio.create_task(engine.submit())
    await _settle()

    # Clock expiry and a violation arrive while the manual submit is in flight.
    clock.advance(3600)
    engine.clock.tick()
    engine.record_violation(
        ViolationEvent(type=ViolationType.TAB_SWITCH, evidence="late", timestamp=clock.current)
    )
    second = asyncio.create_task(engine.submit())
    await _settle()

    gate.set()
    first_result, second_result = await asyncio.gather(manual, second)
    assert first_result == second_result
    assert grading.submits == [("att-1", None)]
    assert engine.status is AttemptStatus.SUBMITTED
    assert engine.session.violations == []


@pytest.mark.asyncio
async def test_rejected_manual_submit_returns_to_in_progress(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("submit_attempt", PayloadValidationError("unanswered required questions"))
    with pytest.raises(PayloadValidationError):
        await engine.submit()
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert engine.display_status == AttemptStatus.IN_PROGRESS.value
    assert engine.detector.attached
    assert engine.clock.attached

    engine.set_answer("q1", "q1-a")
    result = await engine.submit()
    assert result.passed
    assert engine.status is AttemptStatus.SUBMITTED


@pytest.mark.asyncio
async def test_expiry_during_rejected_manual_submit_still_auto_submits(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading, make_test(duration_seconds=60))
    gate = grading.hold("submit_attempt")
    grading.fail("submit_attempt", PayloadValidationError("unanswered required questions"))

    manual = asyncio.create_task(engine.submit())
    await _settle()
    assert engine.display_status == SUBMISSION_PENDING
    clock.advance(120)
    gate.set()

    with pytest.raises(PayloadValidationError):
        await manual
    await engine.wait_for_submission()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert grading.submits == [("att-1", "time_expired")]


@pytest.mark.asyncio
async def test_unexpected_submit_error_is_recorded_and_retryable(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("submit_attempt", EngineError("unexpected HTTP 403"))
    with pytest.raises(EngineError):
        await engine.submit()
    assert engine.last_error is not None
    assert "403" in str(engine.last_error)
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert engine.display_status == SUBMISSION_PENDING

    result = await engine.submit()
    assert result.passed
    assert engine.status is AttemptStatus.SUBMITTED
    assert engine.last_error is None
    assert grading.submits == [("att-1", None)]

@pytest.mark.asyncio
async def test_fatal_submit_terminates(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("submit_attempt", AttemptAlreadyTerminal("already graded"))
    with pytest.raises(AttemptAlreadyTerminal):
        await engine.submit()
    assert engine.status is AttemptStatus.TERMINATED
    with pytest.raises(InvalidTransition):
        await engine.submit()


@pytest.mark.asyncio
async def test_submit_before_fullscreen_is_rejected(make_engine, grading):
    grading.add_attempt("att-1", make_test())
    engine = make_engine()
    await engine.start()
    with pytest.raises(InvalidTransition):
        await engine.submit()


# ── retries ───────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submit_retries_with_backoff(make_engine, grading, sleeper):
    engine = await _in_progress(make_engine, grading)
    grading.fail("submit_attempt", TransientNetworkError("502"), TransientNetworkError("503"))
    result = await engine.submit()
    assert result.passed
    assert sleeper.delays == [0.5, 1.0]
    assert engine.status is AttemptStatus.SUBMITTED
    assert len(grading.submits) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_keep_local_state(make_engine, grading, sleeper):
    engine = await _in_progress(make_engine, grading)
    engine.set_answer("q1", "q1-d")
    grading.fail("submit_attempt", *[TransientNetworkError("down")] * 3)

    with pytest.raises(SubmissionFailed) as excinfo:
        await engine.submit()
    assert excinfo.value.attempts == 3
    assert sleeper.delays == [0.5, 1.0]
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert engine.display_status == SUBMISSION_PENDING
    assert engine.answers.get("q1") == "q1-d"
    assert isinstance(engine.last_error, SubmissionFailed)

    # Manual retry succeeds and reuses the original target.
    result = await engine.submit()
    assert result.passed
    assert engine.status is AttemptStatus.SUBMITTED
    assert engine.last_error is None


@pytest.mark.asyncio
async def test_unflushable_answer_counts_as_failed_try(make_engine, grading, sleeper):
    engine = await _in_progress(make_engine, grading)
    engine.set_answer("q1", "q1-a")
    grading.fail("save_answer", TransientNetworkError("reset"))
    await engine.submit()
    assert sleeper.delays == [0.5]
    assert grading.saved["att-1"] == {"q1": "q1-a"}
    assert engine.status is AttemptStatus.SUBMITTED


# ── auto-submit ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_violation_threshold_auto_submits(make_engine, grading):
    engine = await _in_progress(make_engine, grading, make_test(max_violations=3))

    assert engine.bus.publish(TAB_HIDDEN) is False
    engine.bus.publish(FULLSCREEN_LEFT)
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert "Multiple violations may lead to disqualification" in engine.last_warning

    engine.bus.publish(TAB_HIDDEN)
    assert engine.display_status == SUBMISSION_PENDING
    engine.bus.publish(TAB_HIDDEN)  # detector already detached

    await engine.wait_for_submission()
    await engine.wait_idle()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.VIOLATIONS
    assert len(engine.session.violations) == 3
    assert grading.submits == [("att-1", "violations")]
    assert [t for t, _ in grading.violations["att-1"]] == ["TAB_SWITCH", "FULLSCREEN_EXIT", "TAB_SWITCH"]


@pytest.mark.asyncio
async def test_time_expiry_auto_submits(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading, make_test(duration_seconds=600))
    engine.set_answer("q1", "q1-a")
    clock.advance(599)
    engine.clock.tick()
    assert engine.status is AttemptStatus.IN_PROGRESS

    clock.advance(1)
    engine.clock.tick()
    await engine.wait_for_submission()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED
    assert grading.saved["att-1"] == {"q1": "q1-a"}
    assert grading.submits == [("att-1", "time_expired")]


@pytest.mark.asyncio
async def test_resume_after_deadline_auto_submits(make_engine, grading, clock):
    test = make_test(duration_seconds=600, proctoring_enabled=False)
    engine = await _in_progress(
        make_engine, grading, test, start_time=clock.current - timedelta(seconds=900)
    )
    await engine.wait_for_submission()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.TIME_EXPIRED


@pytest.mark.asyncio
async def test_untimed_attempt_never_expires(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading, make_test(duration_seconds=None))
    assert engine.remaining_seconds() is None
    clock.advance(10**6)
    engine.clock.tick()
    assert engine.status is AttemptStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_violation_report_failure_is_fail_open(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    grading.fail("report_violation", TransientNetworkError("offline"))
    engine.bus.publish(TAB_HIDDEN)
    await engine.wait_idle()
    assert len(engine.session.violations) == 1
    assert engine.status is AttemptStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_violations_ignored_after_terminal(make_engine, grading, clock):
    engine = await _in_progress(make_engine, grading)
    await engine.submit()
    event = ViolationEvent(type=ViolationType.TAB_SWITCH, evidence="x", timestamp=clock.current)
    assert engine.record_violation(event) is False
    assert engine.session.violations == []


# ── resume / ordering / teardown ──────────────────────────────────────────


@pytest.mark.asyncio
async def test_resume_restores_answers_and_violations(make_engine, grading, clock):
    old = ViolationEvent(type=ViolationType.TAB_SWITCH, evidence="earlier", timestamp=clock.current)
    engine = await _in_progress(
        make_engine,
        grading,
        make_test(max_violations=3),
        answers={"q2": "q2-b"},
        violations=[old, old],
        start_time=clock.current - timedelta(seconds=300),
    )
    assert engine.answers.get("q2") == "q2-b"
    assert engine.answers.unsaved() == []
    assert len(engine.session.violations) == 2
    assert engine.remaining_seconds() == 1500

    engine.bus.publish(TAB_HIDDEN)
    await engine.wait_for_submission()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED


@pytest.mark.asyncio
async def test_resume_at_threshold_auto_submits_on_begin(make_engine, grading, clock):
    old = ViolationEvent(type=ViolationType.FULLSCREEN_EXIT, evidence="earlier", timestamp=clock.current)
    engine = await _in_progress(
        make_engine, grading, make_test(max_violations=2), violations=[old, old]
    )
    await engine.wait_for_submission()
    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.VIOLATIONS


@pytest.mark.asyncio
async def test_randomised_order_is_stable_per_attempt(make_engine, grading):
    test = make_test(questions=8, randomize_questions=True, randomize_options=True)
    first = await _in_progress(make_engine, grading, test, ref="att-7")
    again = make_engine("att-7")
    await again.start()

    assert [q.id for q in first.questions] == [q.id for q in again.questions]
    assert [o.id for o in first.questions[0].options] == [o.id for o in again.questions[0].options]
    assert sorted(q.id for q in first.questions) == sorted(q.id for q in test.questions)


@pytest.mark.asyncio
async def test_teardown_detaches_everything(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    engine.teardown()
    assert engine.closed
    assert engine.bus.subscriber_count() == 0
    assert not engine.clock.attached
    engine.bus.publish(TAB_HIDDEN)
    assert engine.session.violations == []
    with pytest.raises(InvalidTransition):
        await engine.submit()


@pytest.mark.asyncio
async def test_listeners_see_status_changes(make_engine, grading):
    grading.add_attempt("att-1", make_test(proctoring_enabled=False))
    engine = make_engine()
    seen = []
    engine.add_listener(lambda e: seen.append(e.display_status))
    engine.add_listener(lambda e: 1 / 0)  # a broken listener must not break the engine
    await engine.start()
    await engine.submit()
    assert seen[0] == "InProgress"
    assert SUBMISSION_PENDING in seen
    assert seen[-1] == "Submitted"


@pytest.mark.asyncio
async def test_flushed_answer_survives_a_fresh_fetch(make_engine, grading):
    engine = await _in_progress(make_engine, grading)
    engine.set_answer("q3", "q3-c")
    await engine.answers.flush_all()
    attempt, _ = await grading.fetch_attempt("att-1")
    assert attempt.answers["q3"] == "q3-c"


@pytest.mark.asyncio
async def test_second_violation_at_limit_two_ends_the_attempt(make_engine, grading, clock):
    engine = await _in_progress(
        make_engine, grading, make_test(duration_seconds=60, max_violations=2)
    )
    clock.advance(10)
    engine.bus.publish(FULLSCREEN_LEFT)
    assert engine.status is AttemptStatus.IN_PROGRESS
    assert len(engine.session.violations) == 1

    clock.advance(10)
    engine.bus.publish(TAB_HIDDEN)
    assert not engine.clock.attached
    engine.bus.publish(TAB_HIDDEN)
    await engine.wait_for_submission()

    assert engine.status is AttemptStatus.AUTO_SUBMITTED
    assert engine.auto_submit_reason is AutoSubmitReason.VIOLATIONS
    assert [v.timestamp for v in engine.session.violations] == [
        clock.current - timedelta(seconds=10),
        clock.current,
    ]
    # Expiry after the fact changes nothing.
    clock.advance(60)
    engine.clock.tick()
    assert grading.submits == [("att-1", "violations")]
