"""Translate between Slack users and Bugsnag collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from slack_bugsnag_bridge.events import Collaborator
from slack_bugsnag_bridge.store.records import UserMapping


@dataclass(frozen=True)
class BugsnagIdentity:
    user_id: str = ""
    email: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.user_id and not self.email


def _same_email(left: str, right: str) -> bool:
    return bool(left) and bool(right) and left.strip().lower() == right.strip().lower()


def resolve_bugsnag_identity(
    mappings: Iterable[UserMapping], *, chat_user_id: str, chat_email: str = ""
) -> BugsnagIdentity | None:
    """Find the Bugsnag identity for a Slack user.

    A mapping keyed by the Slack user id wins; otherwise the first mapping
    whose Bugsnag email equals the user's Slack email (case-insensitive).
    """

    mappings = list(mappings)
    for mapping in mappings:
        if mapping.chat_user_id and mapping.chat_user_id == chat_user_id:
            identity = BugsnagIdentity(user_id=mapping.bugsnag_user_id, email=mapping.bugsnag_email)
            if not identity.is_empty:
                return identity

    if chat_email:
        for mapping in mappings:
            if _same_email(mapping.bugsnag_email, chat_email):
                return BugsnagIdentity(user_id=mapping.bugsnag_user_id, email=mapping.bugsnag_email)
    return None


def resolve_chat_user(mappings: Iterable[UserMapping], *, bugsnag_user_id: str, bugsnag_email: str) -> str:
    """Return the Slack user id mapped to a Bugsnag collaborator, or ``""``."""

    mappings = list(mappings)
    if bugsnag_user_id:
        for mapping in mappings:
            if mapping.chat_user_id and mapping.bugsnag_user_id == bugsnag_user_id:
                return mapping.chat_user_id
    for mapping in mappings:
        if mapping.chat_user_id and _same_email(mapping.bugsnag_email, bugsnag_email):
            return mapping.chat_user_id
    return ""


def describe_assignee(mappings: Iterable[UserMapping], collaborator: Collaborator | None) -> str:
    """Mention the mapped Slack user, else fall back to email, name or id."""

    if collaborator is None:
        return ""
    chat_user = resolve_chat_user(mappings, bugsnag_user_id=collaborator.id, bugsnag_email=collaborator.email)
    if chat_user:
        return f"<@{chat_user}>"
    return collaborator.email or collaborator.name or collaborator.id
