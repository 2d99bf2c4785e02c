"""Convert cards to Slack message payloads and back."""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping

from slack_bugsnag_bridge.cards.builder import refresh_actions
from slack_bugsnag_bridge.cards.models import STATUS_SUFFIX, Card, CardAction, CardField, clip_text

TITLE_BLOCK_ID = "card_title"
BODY_BLOCK_ID = "card_body"
FIELDS_BLOCK_ID = "card_fields"
FOOTER_BLOCK_ID = "card_footer"
ACTIONS_BLOCK_ID = "card_actions"
ACTION_STATE_BLOCK_ID = "card_action_state"

# Block Kit limits.
MAX_SECTION_CHARS = 3000
MAX_FIELD_CHARS = 2000
MAX_BUTTON_LABEL_CHARS = 75
MAX_CONTEXT_CHARS = 3000

_LINKED_TITLE = re.compile(r"^\*<(?P<url>[^|>]+)\|(?P<title>.*)>\*$", re.DOTALL)


class CardFormatError(ValueError):
    """Raised when a stored message cannot be read back as a card."""


def _mrkdwn(text: str, limit: int = MAX_SECTION_CHARS) -> Dict[str, str]:
    return {"type": "mrkdwn", "text": clip_text(text, limit)}


def _button(action: CardAction) -> Dict[str, Any]:
    button: Dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": clip_text(action.label, MAX_BUTTON_LABEL_CHARS), "emoji": True},
        "action_id": action.action_id,
        "value": json.dumps(action.context, separators=(",", ":")),
    }
    if action.style:
        button["style"] = action.style
    if action.url:
        button["url"] = action.url
    return button


def render_attachment(card: Card) -> Dict[str, Any]:
    """Render *card* as Block Kit; buttons that no longer apply become context text."""

    blocks: List[Dict[str, Any]] = []
    if card.title:
        title = f"*<{card.title_link}|{card.title}>*" if card.title_link else f"*{card.title}*"
        blocks.append({"type": "section", "block_id": TITLE_BLOCK_ID, "text": _mrkdwn(title)})
    if card.body:
        blocks.append({"type": "section", "block_id": BODY_BLOCK_ID, "text": _mrkdwn(card.body)})
    if card.fields:
        blocks.append(
            {
                "type": "section",
                "block_id": FIELDS_BLOCK_ID,
                "fields": [_mrkdwn(f"*{item.title}*\n{item.value}", MAX_FIELD_CHARS) for item in card.fields],
            }
        )
    if card.footer:
        blocks.append(
            {"type": "context", "block_id": FOOTER_BLOCK_ID, "elements": [_mrkdwn(card.footer, MAX_CONTEXT_CHARS)]}
        )

    enabled = [item for item in card.actions if not item.disabled]
    disabled = [item for item in card.actions if item.disabled]
    if disabled:
        blocks.append(
            {
                "type": "context",
                "block_id": ACTION_STATE_BLOCK_ID,
                "elements": [_mrkdwn(item.label, MAX_CONTEXT_CHARS) for item in disabled],
            }
        )
    if enabled:
        blocks.append(
            {"type": "actions", "block_id": ACTIONS_BLOCK_ID, "elements": [_button(item) for item in enabled]}
        )
    return {"color": card.color, "fallback": card.text, "blocks": blocks}


def render_message(card: Card) -> Dict[str, Any]:
    """Return the ``text``/``attachments`` pair used to post or update a card."""

    return {"text": card.text, "attachments": [render_attachment(card)]}


def _split_headline(text: str) -> tuple[str, str]:
    headline, sep, status = (text or "").rpartition(STATUS_SUFFIX)
    if not sep:
        return text or "", ""
    return headline, status.strip()


def _parse_context(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        if isinstance(parsed, dict):
            return parsed
    return {}


def _parse_button(element: Mapping[str, Any]) -> CardAction:
    label = element.get("text")
    if isinstance(label, Mapping):
        label = label.get("text")
    context = _parse_context(element.get("value"))
    integration = element.get("integration")
    if not context and isinstance(integration, Mapping):
        context = _parse_context(integration.get("context"))
    return CardAction(
        action_id=str(element.get("action_id") or element.get("id") or element.get("name") or context.get("action") or ""),
        label=str(label or element.get("name") or ""),
        style=str(element.get("style") or ""),
        context=context,
        url=str(element.get("url") or ""),
        disabled=bool(element.get("disabled", False)),
    )


def _parse_field_text(text: str) -> CardField:
    title, _, value = text.partition("\n")
    return CardField(title=title.strip().strip("*"), value=value)


def _block_text(block: Mapping[str, Any]) -> str:
    text = block.get("text")
    if isinstance(text, Mapping):
        return str(text.get("text") or "")
    return str(text or "")


def _card_from_blocks(attachment: Mapping[str, Any], headline: str) -> Card:
    values: Dict[str, Any] = {"headline": headline, "color": str(attachment.get("color") or "")}
    has_action_state = False
    for block in attachment.get("blocks") or []:
        if not isinstance(block, Mapping):
            continue
        block_id = block.get("block_id")
        block_type = block.get("type")
        if block_id == FIELDS_BLOCK_ID or (block_type == "section" and block.get("fields")):
            values["fields"] = [
                _parse_field_text(item.get("text", "") if isinstance(item, Mapping) else str(item))
                for item in block.get("fields") or []
            ]
        elif block_id == TITLE_BLOCK_ID:
            text = _block_text(block)
            match = _LINKED_TITLE.match(text)
            if match:
                values["title"] = match.group("title")
                values["title_link"] = match.group("url")
            else:
                values["title"] = text.strip("*")
        elif block_id == ACTION_STATE_BLOCK_ID:
            has_action_state = True
        elif block_id == BODY_BLOCK_ID or (block_type == "section" and "body" not in values):
            values["body"] = _block_text(block)
        elif block_id == FOOTER_BLOCK_ID or block_type == "context":
            elements = block.get("elements") or []
            values["footer"] = " ".join(
                str(item.get("text") or "") for item in elements if isinstance(item, Mapping)
            )
        elif block_id == ACTIONS_BLOCK_ID or block_type == "actions":
            values["actions"] = [
                _parse_button(item) for item in block.get("elements") or [] if isinstance(item, Mapping)
            ]

    card = Card(**values)
    if has_action_state:
        # Inactive buttons are rendered as text; derive them again from the fields.
        card = refresh_actions(card)
    return card


def _card_from_legacy(attachment: Mapping[str, Any], headline: str) -> Card:
    fields = [
        CardField(title=str(item.get("title") or ""), value=str(item.get("value") or ""), short=bool(item.get("short", True)))
        for item in attachment.get("fields") or []
        if isinstance(item, Mapping)
    ]
    actions = [_parse_button(item) for item in attachment.get("actions") or [] if isinstance(item, Mapping)]
    return Card(
        headline=headline,
        title=str(attachment.get("title") or ""),
        title_link=str(attachment.get("title_link") or ""),
        body=str(attachment.get("text") or ""),
        color=str(attachment.get("color") or ""),
        fields=fields,
        footer=str(attachment.get("footer") or ""),
        actions=actions,
    )


def _card_from_attachment(attachment: Mapping[str, Any], text: str = "") -> Card:
    headline, status = _split_headline(text or str(attachment.get("fallback") or attachment.get("pretext") or ""))
    if attachment.get("blocks"):
        card = _card_from_blocks(attachment, headline)
    else:
        card = _card_from_legacy(attachment, headline)
    if status and not card.status:
        card = card.with_field("Status", status)
    return card


def normalize_card(raw: Any) -> Card:
    """Read a card out of any attachment-like representation.

    Accepts a ``Card``, a Slack message (``text`` plus ``attachments``), a list
    of attachments, a single attachment with blocks, a legacy attachment with
    ``title``/``fields``/``actions``, or a JSON string of any of these.
    """

    if isinstance(raw, Card):
        return raw
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise CardFormatError("card payload is not valid JSON") from exc
        return normalize_card(raw)
    if isinstance(raw, list):
        attachments = [item for item in raw if isinstance(item, Mapping)]
        if not attachments:
            raise CardFormatError("no attachment found")
        return _card_from_attachment(attachments[0])
    if isinstance(raw, Mapping):
        if "attachments" in raw:
            attachments = [item for item in raw.get("attachments") or [] if isinstance(item, Mapping)]
            if not attachments:
                raise CardFormatError("message has no attachments")
            return _card_from_attachment(attachments[0], str(raw.get("text") or ""))
        return _card_from_attachment(raw)
    raise CardFormatError(f"unsupported card payload: {type(raw).__name__}")
