"""
settings.py

Configuration for the CFS Receive-Plan engine.

Settings are loaded from environment variables (prefix ``RECEIVE_PLAN_``)
or a `.env` file, with defaults suitable for local development.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    app_name: str = Field(default="CFS Receive Planning API")

    # Prefix of generated plan codes, e.g. RP-001
    plan_code_prefix: str = Field(default="RP", min_length=1, max_length=10)

    # Server
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000)
    reload: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="RECEIVE_PLAN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
