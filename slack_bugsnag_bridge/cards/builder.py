"""Build and update error cards from Bugsnag events and user actions."""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List

from slack_bugsnag_bridge.cards.models import Card, CardAction, CardField, clip_text
from slack_bugsnag_bridge.events import ErrorEvent

ACTION_ASSIGN = "assign_me"
ACTION_RESOLVE = "resolve"
ACTION_IGNORE = "ignore"
ACTION_OPEN = "open_in_browser"

STATUS_FIXED = "fixed"
STATUS_IGNORED = "ignored"

DEFAULT_COLOR = "#4949E4"
SEVERITY_COLORS = {
    "error": "#D9534F",
    "warning": "#F0AD4E",
    "info": "#5BC0DE",
}
SEVERITY_MARKERS = {
    "error": "🔴",
    "warning": "🟡",
    "info": "🔵",
}
DEFAULT_MARKER = "⚪"

SYNC_SEPARATOR = "\n\n"
# Leaves room for the sync line inside a 3000 character section.
MAX_MESSAGE_CHARS = 2800


def build_headline(event: ErrorEvent) -> str:
    if event.exception_class and event.message:
        return f":rotating_light: *{event.exception_class}*: {event.message}"
    if event.exception_class:
        return f":rotating_light: *{event.exception_class}*"
    if event.message:
        return f":rotating_light: {event.message}"
    if event.trigger_message:
        return f":rotating_light: {event.trigger_message}"
    return ":rotating_light: Bugsnag error"


def severity_color(severity: str) -> str:
    return SEVERITY_COLORS.get((severity or "").strip().lower(), DEFAULT_COLOR)


def severity_marker(severity: str) -> str:
    return SEVERITY_MARKERS.get((severity or "").strip().lower(), DEFAULT_MARKER)


def build_fields(event: ErrorEvent, *, assignee_label: str = "") -> List[CardField]:
    candidates = [
        ("Severity", f"{severity_marker(event.severity)} {event.severity}" if event.severity else ""),
        ("Environment", event.environment),
        ("Status", event.status),
        ("Assigned", assignee_label),
        ("Context", event.context),
        ("App Version", event.app_version),
        ("Last seen", event.received_at),
        ("Project", event.project_name),
    ]
    return [CardField(title=title, value=value) for title, value in candidates if value]


def build_actions(
    *,
    project_id: str,
    error_id: str,
    error_url: str = "",
    status: str = "",
    assignee_label: str = "",
) -> List[CardAction]:
    """Return the card buttons; each carries the context the action handler needs."""

    def context(action: str) -> Dict[str, Any]:
        return {"action": action, "error_id": error_id, "project_id": project_id, "error_url": error_url}

    if assignee_label:
        assign = CardAction(
            action_id=ACTION_ASSIGN,
            label=f"Assigned to {assignee_label}",
            context=context(ACTION_ASSIGN),
            disabled=True,
        )
    else:
        assign = CardAction(
            action_id=ACTION_ASSIGN, label="Assign to me", style="primary", context=context(ACTION_ASSIGN)
        )

    normalized = (status or "").strip().lower()
    actions = [
        assign,
        CardAction(
            action_id=ACTION_RESOLVE,
            label="✓ Resolved" if normalized == STATUS_FIXED else "✓ Resolve",
            style="primary",
            context=context(ACTION_RESOLVE),
            disabled=normalized == STATUS_FIXED,
        ),
        CardAction(
            action_id=ACTION_IGNORE,
            label="✕ Ignored" if normalized == STATUS_IGNORED else "✕ Ignore",
            context=context(ACTION_IGNORE),
            disabled=normalized == STATUS_IGNORED,
        ),
    ]
    if error_url:
        actions.append(
            CardAction(
                action_id=ACTION_OPEN,
                label="Open in Bugsnag",
                context={"action": ACTION_OPEN, "error_url": error_url},
                url=error_url,
            )
        )
    return actions


def build_card(event: ErrorEvent, *, assignee_label: str = "") -> Card:
    """Render a fresh card for *event*."""

    return Card(
        headline=build_headline(event),
        title=event.exception_class,
        title_link=event.error_url,
        body=clip_text(event.message, MAX_MESSAGE_CHARS),
        color=severity_color(event.severity),
        fields=build_fields(event, assignee_label=assignee_label),
        footer=f"Bugsnag • {event.project_name or event.project_id}",
        actions=build_actions(
            project_id=event.project_id,
            error_id=event.error_id,
            error_url=event.error_url,
            status=event.status,
            assignee_label=assignee_label,
        ),
    )


def _is_sync_line(text: str) -> bool:
    return text.startswith("Status: ") and " | Synced: " in text


def _split_body(body: str) -> tuple[str, str]:
    base, sep, tail = body.rpartition(SYNC_SEPARATOR)
    if sep and _is_sync_line(tail):
        return base, tail
    if _is_sync_line(body):
        return "", body
    return body, ""


def rebuild_card(existing: Card, event: ErrorEvent, *, assignee_label: str = "") -> Card:
    """Refresh *existing* from a newer delivery of the same error.

    Status and assignee fall back to what the card already shows when the
    event does not carry them, and the last sync line is kept.
    """

    status = event.status or existing.status
    assignee = assignee_label or existing.field_value("Assigned")
    fresh = build_card(replace(event, status=status), assignee_label=assignee)

    _, sync_line = _split_body(existing.body)
    if sync_line:
        fresh = replace(fresh, body=f"{fresh.body}{SYNC_SEPARATOR}{sync_line}" if fresh.body else sync_line)
    return fresh


def _action_identity(card: Card) -> tuple[str, str, str]:
    project_id = error_id = ""
    error_url = card.title_link
    for action in card.actions:
        project_id = project_id or str(action.context.get("project_id") or "")
        error_id = error_id or str(action.context.get("error_id") or "")
        error_url = error_url or str(action.context.get("error_url") or action.url or "")
    return project_id, error_id, error_url


def refresh_actions(card: Card, *, project_id: str = "", error_id: str = "") -> Card:
    """Rebuild the buttons from the card's Status and Assigned fields."""

    found_project, found_error, error_url = _action_identity(card)
    actions = build_actions(
        project_id=found_project or project_id,
        error_id=found_error or error_id,
        error_url=error_url,
        status=card.status,
        assignee_label=card.field_value("Assigned"),
    )
    return replace(card, actions=actions)


def apply_status(card: Card, status: str, *, project_id: str = "", error_id: str = "") -> Card:
    """Show *status* on the card and disable the matching button."""

    updated = card.with_field("Status", status, after="Environment")
    return refresh_actions(updated, project_id=project_id, error_id=error_id)


def apply_assignee(card: Card, assignee_label: str, *, project_id: str = "", error_id: str = "") -> Card:
    """Show the assignee and swap the assign button for a disabled label."""

    updated = card.with_field("Assigned", assignee_label, after="Status")
    return refresh_actions(updated, project_id=project_id, error_id=error_id)


def apply_sync_line(card: Card, sync_line: str) -> Card:
    """Replace the previous reconciliation line in the card body."""

    base, _ = _split_body(card.body)
    body = f"{base}{SYNC_SEPARATOR}{sync_line}" if base else sync_line
    return replace(card, body=body)
