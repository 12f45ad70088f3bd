"""HTTP client for the remote test/grading collaborator (singleton).

Every call is scoped to exactly one attempt reference (or, for the monitor,
one test reference). HTTP failures are translated into the engine's error
taxonomy so callers never see raw ``httpx`` exceptions.
"""

import logging
from datetime import datetime
from typing import Any

import httpx

from proctor_engine.config import settings
from proctor_engine.core.errors import (
    AttemptAlreadyTerminal,
    AttemptNotFound,
    EngineError,
    PayloadValidationError,
    TransientNetworkError,
)
from proctor_engine.schemas.attempt import (
    AttemptList,
    AttemptSession,
    AutoSubmitReason,
    SubmissionResult,
    TestDefinition,
)
from proctor_engine.schemas.violation import ViolationType

logger = logging.getLogger(__name__)


def _unwrap(payload: Any) -> Any:
    """Strip the ``{"success": ..., "data": ...}`` envelope when present."""
    if isinstance(payload, dict) and "data" in payload and "success" in payload:
        return payload["data"]
    return payload


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or body)
    return str(body)


def _raise_for_status(response: httpx.Response, ref: str) -> None:
    code = response.status_code
    if code < 400:
        return
    detail = _detail(response)
    if code == 404:
        raise AttemptNotFound(f"{ref}: {detail}")
    if code in (409, 410):
        raise AttemptAlreadyTerminal(f"{ref}: {detail}")
    if code in (400, 422):
        raise PayloadValidationError(f"{ref}: {detail}")
    if code == 429 or code >= 500:
        raise TransientNetworkError(f"{ref}: HTTP {code} {detail}")
    raise EngineError(f"{ref}: unexpected HTTP {code} {detail}")


class GradingClient:
    """Thin async wrapper around the grading collaborator's HTTP API."""

    def __init__(
        self,
        base_url: str = settings.GRADING_SERVICE_URL,
        *,
        timeout: float = settings.GRADING_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._http = httpx.AsyncClient(base_url=self._base, timeout=timeout, transport=transport)

    async def _request(self, method: str, path: str, ref: str, **kwargs: Any) -> Any:
        try:
            r = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{ref}: {exc.__class__.__name__}: {exc}") from exc
        _raise_for_status(r, ref)
        if not r.content:
            return None
        return _unwrap(r.json())

    # ── attempt lifecycle ─────────────────────────────────────────────────

    async def fetch_attempt(self, attempt_ref: str) -> tuple[AttemptSession, TestDefinition]:
        data = await self._request("GET", f"/attempts/{attempt_ref}", attempt_ref)
        try:
            test = TestDefinition.model_validate(data["test"])
            attempt = AttemptSession.model_validate(
                {"attempt_ref": attempt_ref, "test_ref": test.id, **data["attempt"]}
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PayloadValidationError(f"{attempt_ref}: malformed attempt payload: {exc}") from exc
        return attempt, test

    async def save_answer(
        self,
        attempt_ref: str,
        question_id: str,
        value: str,
        *,
        time_spent: float = 0.0,
    ) -> None:
        await self._request(
            "POST",
            f"/attempts/{attempt_ref}/answers",
            attempt_ref,
            json={"question_id": question_id, "answer": value, "time_spent": round(time_spent, 3)},
        )

    async def report_violation(
        self,
        attempt_ref: str,
        violation_type: ViolationType,
        evidence: str,
        *,
        timestamp: datetime | None = None,
    ) -> None:
        payload: dict[str, Any] = {"type": violation_type.value, "evidence": evidence}
        if timestamp is not None:
            payload["timestamp"] = timestamp.isoformat()
        await self._request("POST", f"/attempts/{attempt_ref}/violations", attempt_ref, json=payload)

    async def submit_attempt(
        self,
        attempt_ref: str,
        *,
        reason: AutoSubmitReason | None = None,
    ) -> SubmissionResult:
        """Idempotent on the remote side — repeat calls return the same grade."""
        data = await self._request(
            "POST",
            f"/attempts/{attempt_ref}/submit",
            attempt_ref,
            json={"reason": reason.value if reason else "manual"},
        )
        try:
            return SubmissionResult.model_validate(data)
        except ValueError as exc:
            raise PayloadValidationError(f"{attempt_ref}: malformed grading payload: {exc}") from exc

    # ── monitoring ────────────────────────────────────────────────────────

    async def list_attempts(self, test_ref: str) -> AttemptList:
        data = await self._request("GET", f"/tests/{test_ref}/attempts", test_ref)
        if isinstance(data, list):
            data = {"test_ref": test_ref, "attempts": data}
        return AttemptList.model_validate({"test_ref": test_ref, **data})

    async def aclose(self) -> None:
        await self._http.aclose()


# ── singleton accessor ────────────────────────────────────────────────────────

_instance: GradingClient | None = None


def get_grading_client() -> GradingClient:
    global _instance
    if _instance is None:
        _instance = GradingClient()
        logger.info("Grading client initialised → %s", _instance._base)
    return _instance


async def close_grading_client() -> None:
    global _instance
    if _instance is not None:
        await _instance.aclose()
        _instance = None
