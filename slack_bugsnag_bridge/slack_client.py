"""Thin wrapper utilities around the Slack WebClient."""

from __future__ import annotations

from typing import Any, Mapping

from slack_sdk import WebClient

from slack_bugsnag_bridge.cards import Card, normalize_card, render_message


class SlackClient:
    """Encapsulate the Slack calls the bridge makes, for easier testing."""

    def __init__(self, *, token: str | None = None, client: WebClient | None = None) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")

        self._client = client or WebClient(token=token)

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def post_card(self, *, channel: str, card: Card) -> str:
        """Post *card* to *channel* and return the message timestamp."""

        response = self._client.chat_postMessage(channel=channel, **render_message(card))
        return str(response["ts"])

    def update_card(self, *, channel: str, ts: str, card: Card) -> Mapping[str, Any]:
        """Replace the message at *ts* with the rendered *card*."""

        return self._client.chat_update(channel=channel, ts=ts, **render_message(card))

    def fetch_card(self, *, channel: str, ts: str) -> Card:
        """Load the message at *ts* and read it back as a card."""

        response = self._client.conversations_history(channel=channel, latest=ts, inclusive=True, limit=1)
        messages = response.get("messages") or []
        for message in messages:
            if message.get("ts") == ts:
                return normalize_card(message)
        raise LookupError(f"message {ts} not found in {channel}")

    def post_reply(self, *, channel: str, thread_ts: str, text: str) -> Mapping[str, Any]:
        return self._client.chat_postMessage(channel=channel, thread_ts=thread_ts, text=text)

    def delete_message(self, *, channel: str, ts: str) -> Mapping[str, Any]:
        return self._client.chat_delete(channel=channel, ts=ts)

    def post_ephemeral(self, *, channel: str, user: str, text: str) -> Mapping[str, Any]:
        return self._client.chat_postEphemeral(channel=channel, user=user, text=text)

    def user_email(self, user_id: str) -> str | None:
        """Return the user's profile email, ``""`` when hidden, or None for unknown users."""

        response = self._client.users_info(user=user_id)
        user = response.get("user") or {}
        if not user:
            return None
        return str((user.get("profile") or {}).get("email") or "")

    def channel_exists(self, channel_id: str) -> bool:
        response = self._client.conversations_info(channel=channel_id)
        return bool(response.get("channel"))
