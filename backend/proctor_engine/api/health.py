"""Health check endpoint."""

from fastapi import APIRouter

from proctor_engine.services.registry import get_session_registry

router = APIRouter()


@router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "proctor-engine",
        "live_sessions": len(get_session_registry()),
    }
