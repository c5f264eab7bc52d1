"""
settings.py

Runtime configuration, read from the environment (prefix SCHEDULE_ENGINE_,
case-insensitive) and an optional .env file.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- Logging ---
    log_level: str = "INFO"

    # --- HTTP surface ---
    api_title: str = "Project Scheduling & Cost-Baseline Engine"
    api_version: str = "1.0.0"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    host: str = "127.0.0.1"
    port: int = 8000
    reload: bool = False
    enable_mcp: bool = True

    # --- Engine policy ---
    baseline_version_max_attempts: int = Field(3, ge=1)
    template_task_warning_threshold: int = Field(5000, ge=1)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="SCHEDULE_ENGINE_",
    )

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
