"""Application configuration settings."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Runtime toggles -----------------------------------------------------
# Execution environment: "dev" | "test" | "staging" | "prod"
ENV = os.getenv("AUDITKIT_ENV", "dev").lower()

KEY_REUSE_FORBID = "forbid"
KEY_REUSE_RESTART = "restart"


class Settings(BaseSettings):
    """Environment configuration for the revision store."""

    app_env: str = ENV
    database_url: str = "sqlite:///auditkit.db"
    LOG_LEVEL: str = "INFO"

    # --- Revision history ------------------------------------------------
    REVISION_KEY_REUSE: Literal["forbid", "restart"] = KEY_REUSE_FORBID
    REVISION_HISTORY_BATCH_SIZE: int = 100

    # --- Write path ------------------------------------------------------
    WRITE_RETRY_ATTEMPTS: int = 3
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env", env_prefix="", env_file_encoding="utf-8"
    )

    @field_validator("REVISION_HISTORY_BATCH_SIZE", "WRITE_RETRY_ATTEMPTS")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("LOG_LEVEL")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()


__all__ = [
    "ENV",
    "KEY_REUSE_FORBID",
    "KEY_REUSE_RESTART",
    "Settings",
    "get_settings",
]
