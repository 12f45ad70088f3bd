"""Engine configuration loaded from environment variables."""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings

# Always resolve .env relative to this file, no matter where uvicorn is started from
_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """Application settings — all values sourced from env / .env file."""

    # ── Server ──────────────────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    ENV: str = "development"

    # ── CORS ────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["*"]
    ALLOWED_HOSTS: List[str] = ["*"]

    # ── Grading collaborator ────────────────────────────────────────────
    GRADING_SERVICE_URL: str = "http://localhost:8002"
    GRADING_TIMEOUT_SECONDS: float = 15.0

    # ── Attempt clock ───────────────────────────────────────────────────
    CLOCK_TICK_SECONDS: float = 1.0
    TIME_WARNING_SECONDS: int = 600  # highlight the timer under 10 minutes

    # ── Submission retries (delay = base * 2**n) ────────────────────────
    SUBMIT_MAX_ATTEMPTS: int = 3
    SUBMIT_BACKOFF_BASE_SECONDS: float = 0.5

    # ── Proctoring policy ───────────────────────────────────────────────
    # Window blur fires on legitimate interactions in some browsers, so it
    # is not a violation unless explicitly switched on.
    PROCTOR_COUNT_WINDOW_BLUR: bool = False
    PROCTOR_BLOCK_CLIPBOARD: bool = True

    # ── Supervisor monitor ──────────────────────────────────────────────
    MONITOR_POLL_INTERVAL_SECONDS: float = 10.0

    # ── Session registry ────────────────────────────────────────────────
    # Finished engines stay readable this long before the next open drops them.
    SESSION_RETENTION_SECONDS: float = 900.0

    model_config = {"env_file": str(_ENV_FILE), "case_sensitive": True, "extra": "ignore"}


settings = Settings()
