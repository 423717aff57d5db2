"""Pydantic-based configuration helpers for the security relay bot."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator


class AppSettings(BaseModel):
    """Settings required to run the Slack bot, its store and housekeeping."""

    bot_token: str = Field(..., alias="SLACK_BOT_TOKEN")
    signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")
    database_url: str = Field(..., alias="DATABASE_URL")
    organization_team_id: str = Field(..., alias="ORGANIZATION_TEAM_ID")
    organization_name: str = Field("Security Operations", alias="ORGANIZATION_NAME")
    override_user_ids: List[str] = Field(default_factory=list, alias="OVERRIDE_USER_IDS")
    inactivity_threshold_days: int = Field(30, alias="INACTIVITY_THRESHOLD_DAYS")
    sweep_initial_delay_seconds: int = Field(3600, alias="SWEEP_INITIAL_DELAY_SECONDS")
    sweep_interval_seconds: int = Field(86400, alias="SWEEP_INTERVAL_SECONDS")
    activity_sweep_enabled: bool = Field(True, alias="ACTIVITY_SWEEP_ENABLED")

    @field_validator("override_user_ids", mode="before")
    @classmethod
    def _split_ids(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, list):
            return [item.strip() for item in value if item.strip()]
        return [item.strip() for item in value.split(",") if item.strip()]

    @field_validator("organization_team_id")
    @classmethod
    def _strip_team(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("ORGANIZATION_TEAM_ID must not be blank")
        return cleaned

    @field_validator("inactivity_threshold_days", "sweep_interval_seconds")
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Thresholds and intervals must be greater than zero")
        return value

    @field_validator("sweep_initial_delay_seconds")
    @classmethod
    def _ensure_not_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("Initial sweep delay cannot be negative")
        return value


def _format_missing(fields: Iterable[str]) -> str:
    """Return a human-friendly comma-separated list of missing env vars."""

    unique: List[str] = []
    for field in fields:
        if field not in unique:
            unique.append(field)
    return ", ".join(unique)


@lru_cache()
def get_settings() -> AppSettings:
    """Fetch and cache settings from environment variables."""

    try:
        return AppSettings.model_validate(os.environ)
    except ValidationError as exc:  # pragma: no cover - exercised via tests
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if not missing:
            invalid = [str(error["loc"][0]) for error in exc.errors()]
            raise RuntimeError(f"Invalid environment variables: {_format_missing(invalid)}") from exc
        message = (
            "Missing required environment variables: "
            f"{_format_missing(missing)}"
        )
        raise RuntimeError(message) from exc
