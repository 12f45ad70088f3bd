"""Answer store — local answer state plus save/flush against the collaborator.

The in-memory answer is always the source of truth. A failed save never
changes it, and a slow save never overwrites a newer local value:

* every ``set_answer`` bumps a per-question version;
* a save snapshots ``(version, value)`` when it starts and records that
  snapshot as "saved" only if nothing newer has been confirmed meanwhile;
* saves of the same question run one at a time (per-question lock), saves of
  different questions are independent.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from proctor_engine.core.errors import PayloadValidationError, TransientNetworkError

logger = logging.getLogger(__name__)

# (question_id, value, time_spent) -> None; raises engine errors on failure
RemoteSave = Callable[[str, str, float], Awaitable[None]]


@dataclass
class _Entry:
    value: str
    version: int
    saved_value: str | None = None
    saved_version: int = 0
    time_spent: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def dirty(self) -> bool:
        return self.saved_value != self.value


class AnswerStore:
    def __init__(self, remote_save: RemoteSave) -> None:
        self._remote_save = remote_save
        self._entries: dict[str, _Entry] = {}
        self._clock = 0  # global call-order counter → last-write-wins by call order
        self._time_before_answer: dict[str, float] = {}

    # ── local state ───────────────────────────────────────────────────────

    def set_answer(self, question_id: str, value: str) -> None:
        """Overwrite the local answer. Pure local mutation; always succeeds."""
        self._clock += 1
        entry = self._entries.get(question_id)
        if entry is None:
            self._entries[question_id] = _Entry(
                value=value,
                version=self._clock,
                time_spent=self._time_before_answer.pop(question_id, 0.0),
            )
        else:
            entry.value = value
            entry.version = self._clock

    def seed_saved(self, answers: dict[str, str]) -> None:
        """Load answers the collaborator already holds (resume after disconnect)."""
        for question_id, value in answers.items():
            self._clock += 1
            self._entries[question_id] = _Entry(
                value=value, version=self._clock, saved_value=value, saved_version=self._clock
            )

    def add_time_spent(self, question_id: str, seconds: float) -> None:
        if seconds <= 0:
            return
        entry = self._entries.get(question_id)
        if entry is None:
            self._time_before_answer[question_id] = self._time_before_answer.get(question_id, 0.0) + seconds
        else:
            entry.time_spent += seconds

    def get(self, question_id: str) -> str | None:
        entry = self._entries.get(question_id)
        return entry.value if entry else None

    def answers(self) -> dict[str, str]:
        return {qid: e.value for qid, e in self._entries.items()}

    def saved_answers(self) -> dict[str, str]:
        return {qid: e.saved_value for qid, e in self._entries.items() if e.saved_value is not None}

    def unsaved(self) -> list[str]:
        return [qid for qid, e in self._entries.items() if e.dirty]

    def time_spent(self, question_id: str) -> float:
        entry = self._entries.get(question_id)
        if entry is None:
            return self._time_before_answer.get(question_id, 0.0)
        return entry.time_spent

    # ── remote operations ─────────────────────────────────────────────────

    async def save_answer(self, question_id: str) -> bool:
        """Push the current local value of one question. Returns success."""
        entry = self._entries.get(question_id)
        if entry is None:
            return False
        async with entry.lock:
            version, value = entry.version, entry.value
            if entry.saved_version >= version:
                return True  # this exact value is already confirmed
            try:
                await self._remote_save(question_id, value, self.time_spent(question_id))
            except (TransientNetworkError, PayloadValidationError) as exc:
                logger.warning("Save failed for question %s (kept locally): %s", question_id, exc)
                return False
            if version > entry.saved_version:
                entry.saved_version = version
                entry.saved_value = value
            else:
                logger.debug("Discarding stale save response for question %s", question_id)
            return True

    async def flush_all(self) -> dict[str, bool]:
        """Save every question whose local value differs from its saved value.

        Failures are per-question; fatal collaborator errors are re-raised
        after every save has finished.
        """
        pending = self.unsaved()
        if not pending:
            return {}
        results = await asyncio.gather(
            *(self.save_answer(qid) for qid in pending), return_exceptions=True
        )
        outcome: dict[str, bool] = {}
        fatal: BaseException | None = None
        for qid, result in zip(pending, results):
            if isinstance(result, BaseException):
                fatal = fatal or result
                outcome[qid] = False
            else:
                outcome[qid] = result
        if fatal is not None:
            raise fatal
        return outcome
