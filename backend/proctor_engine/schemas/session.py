"""Gateway request/response schemas for live attempt sessions and monitors."""

from pydantic import BaseModel

from proctor_engine.schemas.attempt import (
    AttemptStatus,
    AutoSubmitReason,
    Question,
    SubmissionResult,
)
from proctor_engine.schemas.monitoring import MonitoringSnapshot


class FullscreenRequest(BaseModel):
    """POST /api/sessions/{ref}/fullscreen — result of requestFullscreen()."""

    granted: bool


class AnswerUpdate(BaseModel):
    value: str  # selected option id


class NavigateRequest(BaseModel):
    index: int
    save_current: bool = False  # "Next" saves the current answer before moving


class SessionRead(BaseModel):
    """What the exam page needs to render one attempt."""

    attempt_ref: str
    test_ref: str
    status: AttemptStatus
    display_status: str  # status, or "SubmissionPending" while submitting
    remaining_seconds: float | None = None
    remaining_display: str = ""
    time_warning: bool = False
    violation_count: int = 0
    max_violations: int | None = None
    current_question_index: int = 0
    question_count: int = 0
    current_question: Question | None = None
    answers: dict[str, str] = {}
    unsaved: list[str] = []
    warning: str | None = None
    error: str | None = None
    auto_submit_reason: AutoSubmitReason | None = None
    result: SubmissionResult | None = None


class SaveResult(BaseModel):
    question_id: str
    saved: bool
    warning: str | None = None


class SignalResult(BaseModel):
    """Reply to a raw environment signal."""

    blocked: bool  # client should preventDefault()
    violation_recorded: bool
    violation_count: int
    display_status: str
    monitored: bool  # false once the detector has detached


class MonitorRead(BaseModel):
    test_ref: str
    running: bool
    poll_in_flight: bool
    skipped_polls: int = 0
    last_error: str | None = None
    snapshot: MonitoringSnapshot | None = None
