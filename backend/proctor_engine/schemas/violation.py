"""Violation and raw environment-signal schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class ViolationType(str, Enum):
    FULLSCREEN_EXIT = "FULLSCREEN_EXIT"
    TAB_SWITCH = "TAB_SWITCH"
    CLIPBOARD_ATTEMPT = "CLIPBOARD_ATTEMPT"
    FOCUS_LOST = "FOCUS_LOST"  # only emitted when window-blur counting is on


class ViolationEvent(BaseModel):
    """A single proctoring incident.

    ``timestamp`` is the client clock — kept for audit and display, never used
    for grading decisions.
    """

    type: ViolationType
    evidence: str
    timestamp: datetime


class SignalKind(str, Enum):
    FULLSCREEN_CHANGE = "fullscreen_change"
    VISIBILITY_CHANGE = "visibility_change"
    WINDOW_BLUR = "window_blur"
    CLIPBOARD = "clipboard"
    CONTEXT_MENU = "context_menu"


class ClipboardAction(str, Enum):
    COPY = "copy"
    CUT = "cut"
    PASTE = "paste"


class EnvironmentSignal(BaseModel):
    """Raw signal observed in the student's browser."""

    kind: SignalKind
    fullscreen: bool | None = None  # fullscreen_change: state after the change
    hidden: bool | None = None  # visibility_change: document.hidden
    action: ClipboardAction | None = None  # clipboard
    timestamp: datetime | None = None
