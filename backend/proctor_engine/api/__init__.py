"""API route package — imports all routers for main.py."""

from proctor_engine.api.health import router as health_router  # noqa: F401
from proctor_engine.api.sessions import router as sessions_router  # noqa: F401
from proctor_engine.api.monitor import router as monitor_router  # noqa: F401
