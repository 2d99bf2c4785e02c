"""Pydantic-based configuration helpers for the Slack Bugsnag bridge."""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_BUGSNAG_API_URL = "https://api.bugsnag.com"


class AppSettings(BaseModel):
    """Settings required to initialise the Slack bot, the store and Bugsnag access."""

    bot_token: str = Field(..., alias="SLACK_BOT_TOKEN")
    signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")
    database_url: str = Field(..., alias="DATABASE_URL")
    bugsnag_api_token: str = Field("", alias="BUGSNAG_API_TOKEN")
    bugsnag_organization_id: str = Field("", alias="BUGSNAG_ORGANIZATION_ID")
    bugsnag_api_url: str = Field(DEFAULT_BUGSNAG_API_URL, alias="BUGSNAG_API_URL")
    webhook_token: str = Field("", alias="WEBHOOK_TOKEN")
    webhook_secret: str = Field("", alias="WEBHOOK_SECRET")
    sync_interval_seconds: int = Field(300, alias="SYNC_INTERVAL_SECONDS")
    kv_namespace: str = Field("bugsnag-slack", alias="KV_NAMESPACE")

    @field_validator(
        "bugsnag_api_token",
        "bugsnag_organization_id",
        "webhook_token",
        "webhook_secret",
        "kv_namespace",
        mode="before",
    )
    @classmethod
    def _strip(cls, value: str | None) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("bugsnag_api_url")
    @classmethod
    def _ensure_url(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned.startswith(("http://", "https://")):
            raise ValueError("BUGSNAG_API_URL must start with http:// or https://")
        return cleaned

    @property
    def expected_webhook_token(self) -> str:
        """Token webhook callers must present; empty when authentication is disabled."""

        return self.webhook_token or self.webhook_secret


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
    except ValidationError as exc:
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if not missing:
            raise RuntimeError(f"Invalid configuration: {exc}") from exc
        message = (
            "Missing required environment variables: "
            f"{_format_missing(missing)}"
        )
        raise RuntimeError(message) from exc
