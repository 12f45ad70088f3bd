"""Supervisor monitoring schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from proctor_engine.schemas.attempt import AttemptStatus, AutoSubmitReason
from proctor_engine.schemas.violation import ViolationEvent


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class MonitoringEntry(BaseModel):
    """Derived per-attempt row; rebuilt on every poll."""

    attempt_ref: str
    student_id: str | None = None
    student_name: str | None = None
    status: AttemptStatus
    violation_count: int
    risk_level: RiskLevel
    fraud_score: int = 0
    auto_submit_reason: AutoSubmitReason | None = None
    score: float | None = None  # only for Submitted / AutoSubmitted
    violations: list[ViolationEvent] = []


class StatusCounts(BaseModel):
    active: int = 0
    submitted: int = 0
    auto_submitted: int = 0
    terminated: int = 0


class MonitoringSnapshot(BaseModel):
    """Complete view of one test, replaced wholesale on each poll."""

    test_ref: str
    max_violations: int
    polled_at: datetime
    entries: list[MonitoringEntry] = []
    counts: StatusCounts = StatusCounts()
