"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables, with an optional .env file
as a fallback. Secrets stay out of source code: the .env file is gitignored.

Pydantic Settings automatically:
  1. Reads from environment variables (highest priority)
  2. Falls back to .env file values
  3. Uses defaults defined here (lowest priority)

Usage:
    from app.config import settings
    print(settings.HEARTBEAT_TTL_SECONDS)
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for the Operations Ledger API.

    Required fields (no defaults) MUST be set in .env or environment:
      - SECRET_KEY: Used to sign JWT tokens

    Shared secrets for machine callers are optional at load time but the
    endpoints that need them refuse to run when they are missing:
      - CRON_SECRET: bearer credential for the scheduled sweeps
      - WORKER_SECRET: bearer credential for Automation Worker callbacks
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # --- Application ---
    APP_NAME: str = "Operations Ledger API"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # --- Database ---
    # SQLite for development; swap to a PostgreSQL (asyncpg) URL for production
    DATABASE_URL: str = "sqlite+aiosqlite:///./data/operations.db"

    # --- Authentication ---
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # --- Machine callers ---
    CRON_SECRET: str | None = None
    WORKER_SECRET: str | None = None

    # --- CORS ---
    ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

    # --- External lock store (Redis) ---
    REDIS_URL: str = "redis://localhost:6379/0"
    LOCK_KEY_PREFIX: str = "provider:account:lock:"
    HEARTBEAT_KEY_PREFIX: str = "operation:heartbeat:"

    # --- Liveness monitor ---
    # The heartbeat window and the never-heartbeated grace period are kept
    # independent on purpose; do not derive one from the other.
    HEARTBEAT_TTL_SECONDS: int = 60
    HEARTBEAT_GRACE_PERIOD_SECONDS: int = 30
    SWEEP_INTERVAL_SECONDS: int = 10
    RUN_SWEEP_IN_PROCESS: bool = False

    # --- Stuck worker-driven operations ---
    PROCESSING_TIMEOUT_MINUTES: int = 5
    COMPLETING_TIMEOUT_MINUTES: int = 5


# Singleton: import this instance everywhere instead of creating new Settings()
settings = Settings()
