"""
backend/betsettle/config.py

Purpose:
    Central settings loading for the settlement service.

Dependencies:
    - pydantic-settings
    - pathlib
"""

from pathlib import Path

from pydantic_settings import BaseSettings

# Prefer backend/.env, fallback to project-root .env.
_BACKEND_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"
_ROOT_ENV_FILE = Path(__file__).resolve().parent.parent.parent / ".env"


class Settings(BaseSettings):
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB: str = "betsettle"
    BACKEND_CORS_ORIGINS: str = "http://localhost:5173"

    # Fixture result gateway (Sportmonks v3)
    SM_API_KEY: str = ""
    SPORTMONKS_BASE_URL: str = "https://api.sportmonks.com/v3"
    FIXTURE_FETCH_TIMEOUT_SECONDS: float = 15.0
    FIXTURE_FETCH_MAX_RETRIES: int = 2
    FIXTURE_RESULT_LIVE_TTL_SECONDS: int = 60
    FIXTURE_RESULT_FINAL_TTL_SECONDS: int = 86400  # finished results are authoritative

    # Kickoff + buffer used by callers to derive estimated_resolution_at (football)
    RESOLUTION_BUFFER_MINUTES: int = 125

    # Settlement scheduler
    SETTLEMENT_TICK_SECONDS: int = 30
    SETTLEMENT_BATCH_SIZE: int = 200
    SETTLEMENT_WORKER_CONCURRENCY: int = 8
    SETTLEMENT_LEASE_SECONDS: int = 120
    SETTLEMENT_NOT_FINISHED_RETRY_MINUTES: int = 10
    SETTLEMENT_TRANSIENT_RETRY_MINUTES: int = 5
    SETTLEMENT_MAX_ATTEMPTS: int = 300
    SETTLEMENT_MAX_WAIT_HOURS: int = 48

    # Recovery sweep
    RECOVERY_SWEEP_INTERVAL_MINUTES: int = 30  # 0 disables the periodic safety net
    ORPHAN_STAKE_GRACE_MINUTES: int = 15

    # Accounts and admission
    DEFAULT_INITIAL_BALANCE: float = 1000.0
    COMBINATION_MIN_LEGS: int = 2
    COMBINATION_MAX_LEGS: int = 20

    model_config = {
        "env_file": (str(_BACKEND_ENV_FILE), str(_ROOT_ENV_FILE)),
        "extra": "ignore",
    }


settings = Settings()
