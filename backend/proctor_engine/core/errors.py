"""Error taxonomy shared by the engine, the grading client and the gateway.

Every error carries a stable ``code`` (rendered as ``error_code`` in the
``ErrorResponse`` envelope) and the HTTP status the gateway answers with.

Retry policy by class
---------------------
* ``TransientNetworkError`` — retried with bounded backoff on the submit path,
  reported as a warning everywhere else.
* ``FatalAttemptError`` (``AttemptNotFound``, ``AttemptAlreadyTerminal``) —
  never retried; the attempt moves to Terminated.
* ``PayloadValidationError`` — surfaced to the caller, attempt stays InProgress.
* ``ClockSkewDetected`` — logged, remaining time is treated as zero.
"""

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    http_status = 500

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}


class TransientNetworkError(EngineError):
    code = "transient_network_error"
    http_status = 503


class FatalAttemptError(EngineError):
    """Collaborator says the attempt can no longer be worked on."""

    code = "fatal_attempt_error"
    http_status = 409


class AttemptNotFound(FatalAttemptError):
    code = "attempt_not_found"
    http_status = 404


class AttemptAlreadyTerminal(FatalAttemptError):
    code = "attempt_already_terminal"
    http_status = 409


class PayloadValidationError(EngineError):
    """A payload was rejected as invalid (collaborator 400/422 or a bad local request)."""

    code = "validation_error"
    http_status = 422


class ClockSkewDetected(EngineError):
    code = "clock_skew_detected"
    http_status = 500


class SubmissionFailed(EngineError):
    """Submit retries were exhausted; local state is intact for a manual retry."""

    code = "submission_failed"
    http_status = 503

    def __init__(self, message: str = "", *, attempts: int = 0, last_error: Exception | None = None) -> None:
        super().__init__(
            message or f"Submission failed after {attempts} attempt(s)",
            details={"attempts": attempts, "last_error": str(last_error) if last_error else None},
        )
        self.attempts = attempts
        self.last_error = last_error


class InvalidTransition(EngineError):
    """An action is not allowed in the session's current status."""

    code = "invalid_transition"
    http_status = 409


class SessionNotFound(EngineError):
    code = "session_not_found"
    http_status = 404
