"""Bugsnag webhook ingestion: authenticate, decode, route and upsert cards."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping

import structlog
from slack_sdk.errors import SlackApiError

from slack_bugsnag_bridge.cards import CardFormatError, build_card, rebuild_card
from slack_bugsnag_bridge.events import ErrorEvent, PayloadError, format_stacktrace, parse_webhook_body
from slack_bugsnag_bridge.identities import describe_assignee
from slack_bugsnag_bridge.models import OptimisticLockError, StoreError
from slack_bugsnag_bridge.routing import ordered_destinations
from slack_bugsnag_bridge.security import WebhookAuthError, validate_webhook_token
from slack_bugsnag_bridge.slack_client import SlackClient
from slack_bugsnag_bridge.store import ActiveError, BridgeRepository, CardMapping, KeyedLocks, UserMapping
from slack_bugsnag_bridge.store.repository import card_mapping_key

CHANNEL_PARAM = "channel_id"

UPSERT_ERRORS = (SlackApiError, StoreError, OptimisticLockError, CardFormatError, LookupError)


def _slack_error(exc: SlackApiError) -> str:
    return exc.response.get("error") if getattr(exc, "response", None) else str(exc)


@dataclass
class WebhookResult:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


class WebhookProcessor:
    """Turn one webhook delivery into created or updated cards."""

    def __init__(
        self,
        *,
        repository: BridgeRepository,
        slack: SlackClient,
        locks: KeyedLocks,
        expected_token: str = "",
    ) -> None:
        self._repository = repository
        self._slack = slack
        self._locks = locks
        self._expected_token = expected_token

    def handle(self, *, body: bytes, query: Mapping[str, str], headers: Mapping[str, str]) -> WebhookResult:
        log = structlog.get_logger().bind(component="webhook")

        try:
            validate_webhook_token(self._expected_token, query=query, headers=headers)
        except WebhookAuthError as exc:
            log.warning("webhook_rejected", reason=str(exc))
            return WebhookResult(401, {"error": str(exc)})

        try:
            event = parse_webhook_body(body)
        except PayloadError as exc:
            log.warning("webhook_payload_invalid", reason=str(exc))
            return WebhookResult(400, {"error": str(exc)})

        log = log.bind(project_id=event.project_id, error_id=event.error_id)

        explicit_channel = (query.get(CHANNEL_PARAM) or "").strip()
        if explicit_channel and not self._channel_exists(explicit_channel, log):
            return WebhookResult(400, {"error": "invalid channel_id"})

        try:
            rules = self._repository.load_routing_rules()
        except StoreError as exc:
            log.error("routing_rules_load_failed", error=str(exc))
            return WebhookResult(500, {"error": "cannot load channel mappings"})

        mappings = self._load_user_mappings(log)
        destinations = ordered_destinations(rules, event)
        log.info("webhook_received", trigger=event.trigger_type, destinations=len(destinations))

        processed = 0
        for channel_id in destinations:
            try:
                self.upsert_card(channel_id, event, mappings)
            except UPSERT_ERRORS as exc:
                error = _slack_error(exc) if isinstance(exc, SlackApiError) else str(exc)
                log.error("card_upsert_failed", channel_id=channel_id, error=error)
                continue
            processed += 1

        if explicit_channel:
            try:
                self.upsert_card(explicit_channel, event, mappings)
            except UPSERT_ERRORS as exc:
                error = _slack_error(exc) if isinstance(exc, SlackApiError) else str(exc)
                log.error("card_upsert_failed", channel_id=explicit_channel, error=error)
                return WebhookResult(500, {"error": "failed to create post"})
            processed += 1

        log.info("webhook_processed", processed=processed)
        return WebhookResult(202, {"status": "accepted", "processed": processed})

    def _channel_exists(self, channel_id: str, log) -> bool:
        try:
            return self._slack.channel_exists(channel_id)
        except SlackApiError as exc:
            log.warning("channel_lookup_failed", channel_id=channel_id, error=_slack_error(exc))
            return False

    def _load_user_mappings(self, log) -> List[UserMapping]:
        try:
            return self._repository.load_user_mappings()
        except StoreError as exc:
            log.warning("user_mappings_load_failed", error=str(exc))
            return []

    def upsert_card(self, channel_id: str, event: ErrorEvent, mappings: List[UserMapping]) -> None:
        """Create the card for *event* or refresh the one that already exists."""

        log = structlog.get_logger().bind(
            component="webhook", project_id=event.project_id, error_id=event.error_id, channel_id=channel_id
        )
        assignee_label = describe_assignee(mappings, event.assignee)

        with self._locks.hold(card_mapping_key(event.project_id, event.error_id)):
            mapping = self._repository.get_card_mapping(event.project_id, event.error_id)
            if mapping is not None:
                self._update_existing(mapping, event, assignee_label, log)
                return

            card = build_card(event, assignee_label=assignee_label)
            ts = self._slack.post_card(channel=channel_id, card=card)
            created = CardMapping(
                project_id=event.project_id, error_id=event.error_id, channel_id=channel_id, message_ts=ts
            )
            if not self._repository.create_card_mapping(created):
                log.warning("card_mapping_race_lost", message_ts=ts)
                self._slack.delete_message(channel=channel_id, ts=ts)
                winner = self._repository.get_card_mapping(event.project_id, event.error_id)
                if winner is None:
                    raise StoreError("card mapping disappeared after a concurrent create")
                self._update_existing(winner, event, assignee_label, log)
                return

            log.info("card_created", message_ts=ts)
            self._post_stacktrace(created, event, log)
            self._register_active(created, log)

    def _update_existing(self, mapping: CardMapping, event: ErrorEvent, assignee_label: str, log) -> None:
        existing = self._slack.fetch_card(channel=mapping.channel_id, ts=mapping.message_ts)
        card = rebuild_card(existing, event, assignee_label=assignee_label)
        self._slack.update_card(channel=mapping.channel_id, ts=mapping.message_ts, card=card)
        log.info("card_updated", message_ts=mapping.message_ts)

        if not event.trigger_type:
            return
        text = f":arrows_counterclockwise: *Update*: {event.trigger_message}"
        try:
            self._slack.post_reply(channel=mapping.channel_id, thread_ts=mapping.message_ts, text=text)
        except SlackApiError as exc:
            log.warning("update_reply_failed", error=_slack_error(exc))

    def _post_stacktrace(self, mapping: CardMapping, event: ErrorEvent, log) -> None:
        text = format_stacktrace(event.stacktrace)
        if not text:
            return
        try:
            self._slack.post_reply(channel=mapping.channel_id, thread_ts=mapping.message_ts, text=text)
        except SlackApiError as exc:
            log.warning("stacktrace_reply_failed", error=_slack_error(exc))

    def _register_active(self, mapping: CardMapping, log) -> None:
        entry = ActiveError(
            project_id=mapping.project_id,
            error_id=mapping.error_id,
            channel_id=mapping.channel_id,
            message_ts=mapping.message_ts,
        )
        try:
            self._repository.upsert_active_error(entry)
        except (StoreError, OptimisticLockError) as exc:
            log.warning("active_error_register_failed", error=str(exc))
