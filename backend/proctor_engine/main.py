"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from proctor_engine.config import settings
from proctor_engine.core.errors import EngineError
from proctor_engine.api import health_router, monitor_router, sessions_router
from proctor_engine.schemas.common import ErrorResponse
from proctor_engine.services.grading_client import close_grading_client
from proctor_engine.services.registry import get_monitor_registry, get_session_registry

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Proctor engine starting (grading service at %s)…", settings.GRADING_SERVICE_URL)
    yield
    await get_monitor_registry().stop_all()
    get_session_registry().close_all()
    await close_grading_client()
    logger.info("✅ Proctor engine shut down")


app = FastAPI(
    title="Proctor Engine API",
    description="Client-side session engine for proctored, timed assessments",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)

# ── Error handling ────────────────────────────────────────────────────────────


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    body = ErrorResponse(error_code=exc.code, message=exc.message, details=exc.details)
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))


# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(sessions_router, prefix="/api/sessions", tags=["Sessions"])
app.include_router(monitor_router, prefix="/api/monitor", tags=["Monitor"])


@app.get("/")
async def root():
    return {
        "name": "Proctor Engine API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
