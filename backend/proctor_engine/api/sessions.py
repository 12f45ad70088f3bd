"""Live attempt session routes — the student's exam page talks to these.

Flow:
  1. POST /api/sessions/{ref}/start        → fetch attempt, AwaitingFullscreen or InProgress
  2. POST /api/sessions/{ref}/fullscreen   → result of the fullscreen request
  3. PUT  /api/sessions/{ref}/answers/{q}  → change an answer (local)
  4. POST /api/sessions/{ref}/answers/{q}/save → push one answer
  5. POST /api/sessions/{ref}/navigate     → move the question cursor
  6. POST /api/sessions/{ref}/signals      → raw browser signal for the detector
  7. POST /api/sessions/{ref}/submit       → final flush + grading
  8. DELETE /api/sessions/{ref}            → leave the page (detach clock/detector)
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from proctor_engine.api.deps import Identity, get_sessions, require_student
from proctor_engine.config import settings
from proctor_engine.schemas.attempt import AttemptStatus
from proctor_engine.schemas.common import SuccessResponse
from proctor_engine.schemas.session import (
    AnswerUpdate,
    FullscreenRequest,
    NavigateRequest,
    SaveResult,
    SessionRead,
    SignalResult,
)
from proctor_engine.schemas.violation import EnvironmentSignal
from proctor_engine.services.attempt_clock import format_remaining
from proctor_engine.services.attempt_engine import AttemptEngine
from proctor_engine.services.registry import SessionRegistry

logger = logging.getLogger(__name__)
router = APIRouter()


def _to_read(engine: AttemptEngine) -> SessionRead:
    remaining = engine.remaining_seconds()
    error = engine.last_error
    return SessionRead(
        attempt_ref=engine.attempt_ref,
        test_ref=engine.session.test_ref,
        status=engine.status,
        display_status=engine.display_status,
        remaining_seconds=remaining,
        remaining_display=format_remaining(remaining),
        time_warning=remaining is not None and remaining < settings.TIME_WARNING_SECONDS,
        violation_count=len(engine.session.violations),
        max_violations=engine.test.max_violations if engine.test else None,
        current_question_index=engine.session.current_question_index,
        question_count=len(engine.questions),
        current_question=engine.current_question(),
        answers=engine.answers.answers(),
        unsaved=engine.answers.unsaved(),
        warning=engine.last_warning,
        error=f"{error.code}: {error.message}" if error else None,
        auto_submit_reason=engine.auto_submit_reason,
        result=engine.result,
    )


def _owned_engine(attempt_ref: str, current_user: Identity, sessions: SessionRegistry) -> AttemptEngine:
    engine = sessions.get(attempt_ref)
    owner = engine.session.student_id
    if owner is not None and owner != current_user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Attempt belongs to another student"
        )
    return engine


@router.post("/{attempt_ref}/start", response_model=SessionRead)
async def start_session(
    attempt_ref: str,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Start (or resume) an attempt. Repeated calls return the live session."""
    engine = sessions.open(attempt_ref)
    fresh = engine.status is AttemptStatus.NOT_STARTED
    if fresh:
        await engine.start()
    try:
        _owned_engine(attempt_ref, current_user, sessions)
    except HTTPException:
        if fresh:
            sessions.close(attempt_ref)
        logger.warning("User %s tried to open attempt %s", current_user.user_id, attempt_ref)
        raise
    return _to_read(engine)


@router.get("/{attempt_ref}", response_model=SessionRead)
async def get_session(
    attempt_ref: str,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    engine = _owned_engine(attempt_ref, current_user, sessions)
    if engine.clock is not None:
        engine.clock.tick()  # catch up after a suspended client
    return _to_read(engine)


@router.post("/{attempt_ref}/fullscreen", response_model=SessionRead)
async def enter_fullscreen(
    attempt_ref: str,
    body: FullscreenRequest,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    engine = _owned_engine(attempt_ref, current_user, sessions)
    await engine.enter_fullscreen(body.granted)
    return _to_read(engine)


@router.put("/{attempt_ref}/answers/{question_id}", response_model=SessionRead)
async def set_answer(
    attempt_ref: str,
    question_id: str,
    body: AnswerUpdate,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    engine = _owned_engine(attempt_ref, current_user, sessions)
    engine.set_answer(question_id, body.value)
    return _to_read(engine)


@router.post("/{attempt_ref}/answers/{question_id}/save", response_model=SaveResult)
async def save_answer(
    attempt_ref: str,
    question_id: str,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    engine = _owned_engine(attempt_ref, current_user, sessions)
    saved = await engine.save_answer(question_id)
    return SaveResult(
        question_id=question_id,
        saved=saved,
        warning=None if saved else engine.last_warning,
    )


@router.post("/{attempt_ref}/navigate", response_model=SessionRead)
async def navigate(
    attempt_ref: str,
    body: NavigateRequest,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    engine = _owned_engine(attempt_ref, current_user, sessions)
    await engine.navigate(body.index, save_current=body.save_current)
    return _to_read(engine)


@router.post("/{attempt_ref}/signals", response_model=SignalResult)
async def publish_signal(
    attempt_ref: str,
    signal: EnvironmentSignal,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Relay a browser signal to the session's detector (if it is attached)."""
    engine = _owned_engine(attempt_ref, current_user, sessions)
    before = len(engine.session.violations)
    blocked = engine.bus.publish(signal)
    after = len(engine.session.violations)
    return SignalResult(
        blocked=blocked,
        violation_recorded=after > before,
        violation_count=after,
        display_status=engine.display_status,
        monitored=engine.bus.subscriber_count() > 0,
    )


@router.post("/{attempt_ref}/submit", response_model=SessionRead)
async def submit_session(
    attempt_ref: str,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    """Manual submit; also the manual retry after a failed submission."""
    engine = _owned_engine(attempt_ref, current_user, sessions)
    await engine.submit()
    return _to_read(engine)


@router.delete("/{attempt_ref}", response_model=SuccessResponse)
async def close_session(
    attempt_ref: str,
    current_user: Identity = Depends(require_student),
    sessions: SessionRegistry = Depends(get_sessions),
):
    _owned_engine(attempt_ref, current_user, sessions)
    engine = sessions.close(attempt_ref)
    return SuccessResponse(
        message="Session closed",
        data={"attempt_ref": attempt_ref, "status": engine.display_status},
    )
