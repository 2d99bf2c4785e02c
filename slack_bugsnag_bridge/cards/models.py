"""In-process model of an error card."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List

STATUS_SUFFIX = " · Status: "
ELLIPSIS = "…"


def clip_text(text: str, limit: int) -> str:
    """Shorten *text* to at most *limit* characters, marking the cut with an ellipsis."""

    if len(text) <= limit:
        return text
    return text[: max(limit - len(ELLIPSIS), 0)] + ELLIPSIS


@dataclass(frozen=True)
class CardField:
    title: str
    value: str
    short: bool = True


@dataclass(frozen=True)
class CardAction:
    action_id: str
    label: str
    style: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    url: str = ""
    disabled: bool = False


@dataclass(frozen=True)
class Card:
    """A Bugsnag error card; ``text`` carries the headline plus the current status."""

    headline: str = ""
    title: str = ""
    title_link: str = ""
    body: str = ""
    color: str = ""
    fields: List[CardField] = field(default_factory=list)
    footer: str = ""
    actions: List[CardAction] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.field_value("Status")

    @property
    def text(self) -> str:
        if self.status:
            return f"{self.headline}{STATUS_SUFFIX}{self.status}"
        return self.headline

    def field_value(self, title: str) -> str:
        for item in self.fields:
            if item.title == title:
                return item.value
        return ""

    def with_field(self, title: str, value: str, *, after: str | None = None) -> "Card":
        """Return a copy with *title* set to *value*, inserted after *after* when new."""

        fields = list(self.fields)
        for index, item in enumerate(fields):
            if item.title == title:
                fields[index] = replace(item, value=value)
                return replace(self, fields=fields)

        position = len(fields)
        if after is not None:
            for index, item in enumerate(fields):
                if item.title == after:
                    position = index + 1
                    break
        fields.insert(position, CardField(title=title, value=value))
        return replace(self, fields=fields)
