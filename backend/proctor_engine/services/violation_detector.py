"""Violation detector — maps raw browser signals to typed violation events.

The detector is capability-scoped: it only hears signals published on the
``SignalBus`` it was attached to, and ``detach()`` removes every handler it
registered. Two sessions therefore never leak events into each other, even
inside one process.

The detector does not decide anything about the attempt. It calls ``emit``
with a ``ViolationEvent`` and leaves escalation to the attempt engine.
"""

import logging
from collections import defaultdict
from datetime import timezone
from typing import Callable

from pydantic import BaseModel

from proctor_engine.config import settings
from proctor_engine.schemas.violation import (
    EnvironmentSignal,
    SignalKind,
    ViolationEvent,
    ViolationType,
)
from proctor_engine.services.attempt_clock import Now, utcnow

logger = logging.getLogger(__name__)

# A handler returns True when the client should suppress the default action
# (the browser's preventDefault).
SignalHandler = Callable[[EnvironmentSignal], bool]


class SignalBus:
    """Per-session fan-out of raw environment signals."""

    def __init__(self) -> None:
        self._handlers: dict[SignalKind, list[SignalHandler]] = defaultdict(list)

    def subscribe(self, kind: SignalKind, handler: SignalHandler) -> Callable[[], None]:
        self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[kind].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, signal: EnvironmentSignal) -> bool:
        """Deliver ``signal``; True if any handler asked to block it."""
        blocked = False
        for handler in list(self._handlers.get(signal.kind, ())):
            blocked = handler(signal) or blocked
        return blocked

    def subscriber_count(self) -> int:
        return sum(len(h) for h in self._handlers.values())


class ViolationPolicy(BaseModel):
    """Which signals escalate to violations."""

    count_window_blur: bool = settings.PROCTOR_COUNT_WINDOW_BLUR
    block_clipboard: bool = settings.PROCTOR_BLOCK_CLIPBOARD


class ViolationDetector:
    def __init__(
        self,
        emit: Callable[[ViolationEvent], None],
        *,
        policy: ViolationPolicy | None = None,
        now: Now = utcnow,
    ) -> None:
        self._emit = emit
        self.policy = policy or ViolationPolicy()
        self._now = now
        self._unsubscribers: list[Callable[[], None]] = []
        self._last_ts = None

    @property
    def attached(self) -> bool:
        return bool(self._unsubscribers)

    def attach(self, bus: SignalBus) -> None:
        if self.attached:
            return
        self._unsubscribers = [
            bus.subscribe(SignalKind.FULLSCREEN_CHANGE, self._on_fullscreen_change),
            bus.subscribe(SignalKind.VISIBILITY_CHANGE, self._on_visibility_change),
            bus.subscribe(SignalKind.WINDOW_BLUR, self._on_window_blur),
            bus.subscribe(SignalKind.CLIPBOARD, self._on_clipboard),
            bus.subscribe(SignalKind.CONTEXT_MENU, self._on_context_menu),
        ]
        logger.debug("Violation detector attached")

    def detach(self) -> None:
        unsubscribers, self._unsubscribers = self._unsubscribers, []
        for unsubscribe in unsubscribers:
            unsubscribe()
        if unsubscribers:
            logger.debug("Violation detector detached")

    # ── signal handlers ───────────────────────────────────────────────────

    def _on_fullscreen_change(self, signal: EnvironmentSignal) -> bool:
        if signal.fullscreen is False:
            self._raise(ViolationType.FULLSCREEN_EXIT, "User exited fullscreen mode", signal)
        return False

    def _on_visibility_change(self, signal: EnvironmentSignal) -> bool:
        if signal.hidden:
            self._raise(ViolationType.TAB_SWITCH, "User switched tabs or minimized window", signal)
        return False

    def _on_window_blur(self, signal: EnvironmentSignal) -> bool:
        if self.policy.count_window_blur:
            self._raise(ViolationType.FOCUS_LOST, "Window lost focus", signal)
        return False

    def _on_clipboard(self, signal: EnvironmentSignal) -> bool:
        if not self.policy.block_clipboard:
            return False
        action = signal.action.value if signal.action else "clipboard"
        self._raise(ViolationType.CLIPBOARD_ATTEMPT, f"Blocked {action} attempt", signal)
        return True

    def _on_context_menu(self, signal: EnvironmentSignal) -> bool:
        if not self.policy.block_clipboard:
            return False
        self._raise(ViolationType.CLIPBOARD_ATTEMPT, "Blocked context menu (right-click)", signal)
        return True

    def _raise(self, violation_type: ViolationType, evidence: str, signal: EnvironmentSignal) -> None:
        if not self.attached:
            return
        ts = signal.timestamp or self._now()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        # Client timestamps are monotonic per session.
        if self._last_ts is not None and ts < self._last_ts:
            ts = self._last_ts
        self._last_ts = ts
        self._emit(ViolationEvent(type=violation_type, evidence=evidence, timestamp=ts))
