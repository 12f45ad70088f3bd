"""Attempt schemas — test definitions, attempt state and grading results."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from proctor_engine.schemas.violation import ViolationEvent


class AttemptStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    AWAITING_FULLSCREEN = "AwaitingFullscreen"
    IN_PROGRESS = "InProgress"
    SUBMITTED = "Submitted"
    AUTO_SUBMITTED = "AutoSubmitted"
    TERMINATED = "Terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {AttemptStatus.SUBMITTED, AttemptStatus.AUTO_SUBMITTED, AttemptStatus.TERMINATED}
)


class AutoSubmitReason(str, Enum):
    TIME_EXPIRED = "time_expired"
    VIOLATIONS = "violations"


class Option(BaseModel):
    id: str
    text: str


class Question(BaseModel):
    """A question as delivered to the engine (never carries the answer key)."""

    id: str
    prompt: str
    options: list[Option] = []
    marks: float = 1.0


class TestDefinition(BaseModel):
    """Immutable test configuration supplied when the attempt starts."""

    __test__ = False  # not a pytest test class

    id: str
    title: str = ""
    questions: list[Question] = []
    duration_seconds: int | None = None  # None → untimed
    passing_percentage: float = 0.0
    proctoring_enabled: bool = True
    max_violations: int = Field(default=3, ge=1)
    randomize_questions: bool = False
    randomize_options: bool = False

    model_config = {"frozen": True}


class AttemptSession(BaseModel):
    """Mutable attempt state, owned by exactly one ``AttemptEngine``."""

    attempt_ref: str
    test_ref: str
    student_id: str | None = None
    status: AttemptStatus = AttemptStatus.NOT_STARTED
    start_time: datetime | None = None
    answers: dict[str, str] = {}  # {question_id: selected option id}
    violations: list[ViolationEvent] = []
    current_question_index: int = 0


class SubmissionResult(BaseModel):
    """Grading signal returned by the collaborator's submit operation."""

    final_score: float
    passed: bool
    percentage: float | None = None


class AttemptSummary(BaseModel):
    """One row of ``list_attempts`` — what the supervisor monitor sees."""

    attempt_ref: str
    student_id: str | None = None
    student_name: str | None = None
    status: AttemptStatus
    violation_count: int = 0
    violations: list[ViolationEvent] = []
    auto_submit_reason: AutoSubmitReason | None = None
    score: float | None = None
    start_time: datetime | None = None


class AttemptList(BaseModel):
    """Response of ``list_attempts(test_ref)``."""

    test_ref: str
    max_violations: int = Field(default=3, ge=1)
    attempts: list[AttemptSummary] = []
