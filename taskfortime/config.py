"""Application configuration utilities."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings(BaseModel):
    """Strongly typed configuration loaded from the environment."""

    session_secret: str = Field(default="dev-secret")
    openai_api_key: Optional[str] = None
    openai_model: str = Field(default="gpt-4o-mini")
    resend_api_key: Optional[str] = None
    email_from: str = Field(default="Task For Time <noreply@taskfortime.com>")
    app_url: str = Field(default="https://taskfortime.com")
    cron_secret: Optional[str] = None
    owner_email: str = Field(default="")
    trials_enabled: bool = Field(default=True)
    trial_days: int = Field(default=30, ge=0)
    coaching_lookback_days: int = Field(default=14, ge=1)

    @property
    def text_generation_enabled(self) -> bool:
        return bool(self.openai_api_key)


def load_settings() -> Settings:
    """Build settings from environment variables, falling back to defaults."""

    return Settings(
        session_secret=os.getenv("SESSION_SECRET", "dev-secret"),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        email_from=os.getenv("EMAIL_FROM", "Task For Time <noreply@taskfortime.com>"),
        app_url=os.getenv("APP_URL", "https://taskfortime.com").rstrip("/"),
        cron_secret=os.getenv("CRON_SECRET") or None,
        owner_email=os.getenv("OWNER_EMAIL", ""),
        trials_enabled=_env_flag("TRIALS_ENABLED", True),
        trial_days=int(os.getenv("TRIAL_DAYS", "30")),
        coaching_lookback_days=int(os.getenv("COACHING_LOOKBACK_DAYS", "14")),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
