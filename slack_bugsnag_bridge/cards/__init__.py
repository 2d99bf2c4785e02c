"""Error card model, builders and Slack rendering."""

from .builder import (
    ACTION_ASSIGN,
    ACTION_IGNORE,
    ACTION_OPEN,
    ACTION_RESOLVE,
    STATUS_FIXED,
    STATUS_IGNORED,
    apply_assignee,
    apply_status,
    apply_sync_line,
    build_card,
    rebuild_card,
)
from .models import Card, CardAction, CardField
from .slack import CardFormatError, normalize_card, render_message

__all__ = [
    "ACTION_ASSIGN",
    "ACTION_IGNORE",
    "ACTION_OPEN",
    "ACTION_RESOLVE",
    "STATUS_FIXED",
    "STATUS_IGNORED",
    "Card",
    "CardAction",
    "CardField",
    "CardFormatError",
    "apply_assignee",
    "apply_status",
    "apply_sync_line",
    "build_card",
    "normalize_card",
    "rebuild_card",
    "render_message",
]
