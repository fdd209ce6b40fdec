"""
Server configuration: all environment variables in one place.

Read from environment at runtime. Never hardcode secrets.
"""

from __future__ import annotations

import os


class Settings:
    """Application settings from environment variables."""

    # Store: "memory" (single process) or "postgres"
    STORE_BACKEND: str = os.environ.get("STORE_BACKEND", "memory")

    # Database
    DATABASE_URL: str = os.environ.get("DATABASE_URL", "")
    DATABASE_POOL_MIN: int = int(os.environ.get("DATABASE_POOL_MIN", "2"))
    DATABASE_POOL_MAX: int = int(os.environ.get("DATABASE_POOL_MAX", "20"))

    # Aggregate transactions
    TRANSACTION_MAX_ATTEMPTS: int = int(os.environ.get("TRANSACTION_MAX_ATTEMPTS", "5"))

    # Realtime: results buffered per subscription before the oldest is dropped
    WATCH_BUFFER_SIZE: int = int(os.environ.get("WATCH_BUFFER_SIZE", "16"))

    # R2 / S3 media storage for restaurant photos
    R2_ENDPOINT: str = os.environ.get("R2_ENDPOINT", "")
    R2_ACCESS_KEY: str = os.environ.get("R2_ACCESS_KEY", "")
    R2_SECRET_KEY: str = os.environ.get("R2_SECRET_KEY", "")
    R2_MEDIA_BUCKET: str = os.environ.get("R2_MEDIA_BUCKET", "restaurant-images")
    R2_PUBLIC_URL: str = os.environ.get("R2_PUBLIC_URL", "")

    # Application
    ENVIRONMENT: str = os.environ.get("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

    @property
    def media_configured(self) -> bool:
        return bool(self.R2_ENDPOINT and self.R2_ACCESS_KEY and self.R2_SECRET_KEY)


# Singleton instance
settings = Settings()

if settings.STORE_BACKEND not in ("memory", "postgres"):
    raise RuntimeError(f"STORE_BACKEND must be 'memory' or 'postgres', got {settings.STORE_BACKEND!r}")
if settings.STORE_BACKEND == "postgres" and not settings.DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is required for the postgres store")
