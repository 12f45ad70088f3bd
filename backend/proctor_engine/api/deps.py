"""FastAPI dependencies shared across routes.

Authentication happens upstream; this service only receives the resulting
opaque identity and role as request headers.
"""

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel

from proctor_engine.services.registry import (
    MonitorRegistry,
    SessionRegistry,
    get_monitor_registry,
    get_session_registry,
)

SUPERVISOR_ROLES = {"teacher", "admin"}


class Identity(BaseModel):
    user_id: str
    role: str


def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Identity:
    """Return the caller's identity, or 401 when the auth layer sent none."""
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing identity headers",
        )
    return Identity(user_id=x_user_id, role=x_user_role.lower())


def require_student(current_user: Identity = Depends(get_current_user)) -> Identity:
    """Raise 403 unless the caller is a student."""
    if current_user.role != "student":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Student access required"
        )
    return current_user


def require_supervisor(current_user: Identity = Depends(get_current_user)) -> Identity:
    """Raise 403 unless the caller is a teacher or admin."""
    if current_user.role not in SUPERVISOR_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Supervisor access required"
        )
    return current_user


def get_sessions() -> SessionRegistry:
    return get_session_registry()


def get_monitors() -> MonitorRegistry:
    return get_monitor_registry()
