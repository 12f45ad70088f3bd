"""Pydantic schemas — re‑exported for convenience."""

from proctor_engine.schemas.common import ErrorResponse, SuccessResponse  # noqa: F401
from proctor_engine.schemas.attempt import (  # noqa: F401
    AttemptList,
    AttemptSession,
    AttemptStatus,
    AttemptSummary,
    AutoSubmitReason,
    Option,
    Question,
    SubmissionResult,
    TestDefinition,
)
from proctor_engine.schemas.violation import (  # noqa: F401
    ClipboardAction,
    EnvironmentSignal,
    SignalKind,
    ViolationEvent,
    ViolationType,
)
from proctor_engine.schemas.monitoring import (  # noqa: F401
    MonitoringEntry,
    MonitoringSnapshot,
    RiskLevel,
    StatusCounts,
)
