"""Pydantic models for the records persisted in the key-value store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import List

from pydantic import BaseModel, Field, field_validator


def _clean_values(value: List[str] | str | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    cleaned: List[str] = []
    for item in value:
        text = str(item or "").strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


class RoutingRule(BaseModel):
    """Send a project's events to *channel_id* when every non-empty filter matches."""

    project_id: str
    channel_id: str
    environments: List[str] = Field(default_factory=list)
    severities: List[str] = Field(default_factory=list)
    events: List[str] = Field(default_factory=list)

    @field_validator("project_id", "channel_id")
    @classmethod
    def _require(cls, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("routing rules need a project_id and a channel_id")
        return cleaned

    @field_validator("environments", "severities", "events", mode="before")
    @classmethod
    def _clean(cls, value):
        return _clean_values(value)


class UserMapping(BaseModel):
    """Links a Slack user to a Bugsnag collaborator by id and/or email."""

    chat_user_id: str = ""
    bugsnag_user_id: str = ""
    bugsnag_email: str = ""

    @field_validator("chat_user_id", "bugsnag_user_id", "bugsnag_email", mode="before")
    @classmethod
    def _strip(cls, value: str | None) -> str:
        return (value or "").strip()


class CardMapping(BaseModel):
    """Where the card for one Bugsnag error lives in Slack."""

    project_id: str
    error_id: str
    channel_id: str
    message_ts: str


class ActiveError(BaseModel):
    """Registry entry for an error the reconciliation loop keeps refreshing."""

    project_id: str
    error_id: str
    channel_id: str
    message_ts: str
    last_synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def identity(self) -> tuple[str, str]:
        return (self.project_id, self.error_id)
