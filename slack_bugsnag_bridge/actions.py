"""Interactive card actions: Bugsnag mutation, card update and audit reply."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import structlog
from slack_sdk.errors import SlackApiError

from slack_bugsnag_bridge.bugsnag_client import DEFAULT_TIMEOUT, BugsnagApiError, ErrorBackend, best_assignee
from slack_bugsnag_bridge.cards import (
    ACTION_ASSIGN,
    ACTION_IGNORE,
    ACTION_OPEN,
    ACTION_RESOLVE,
    STATUS_FIXED,
    STATUS_IGNORED,
    CardFormatError,
    apply_assignee,
    apply_status,
)
from slack_bugsnag_bridge.identities import resolve_bugsnag_identity
from slack_bugsnag_bridge.models import StoreError
from slack_bugsnag_bridge.slack_client import SlackClient
from slack_bugsnag_bridge.store import BridgeRepository, CardMapping, KeyedLocks, UserMapping
from slack_bugsnag_bridge.store.repository import card_mapping_key

STATUS_ACTIONS = {
    ACTION_RESOLVE: STATUS_FIXED,
    ACTION_IGNORE: STATUS_IGNORED,
}


class ActionRequestError(ValueError):
    """Raised when an action request is rejected before anything is changed."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ActionRequest:
    """Who pressed which button on which error."""

    user_id: str
    action: str
    error_id: str = ""
    project_id: str = ""
    error_url: str = ""


@dataclass(frozen=True)
class ActionOutcome:
    status_code: int
    text: str = ""
    card_updated: bool = False
    open_url: str = ""

    def to_body(self) -> Dict[str, Any]:
        if self.open_url:
            return {"type": "ok", "open_in_browser": self.open_url}
        return {"text": self.text, "card_updated": self.card_updated}


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_action_request(payload: Any) -> ActionRequest:
    """Read ``{user_id, context: {...}}`` or the same keys flattened."""

    if not isinstance(payload, Mapping):
        raise ActionRequestError("invalid interactive action payload")

    context = payload.get("context")
    merged: Dict[str, Any] = dict(payload)
    if isinstance(context, Mapping):
        merged.update(context)

    action = _text(merged.get("action"))
    if not action:
        raise ActionRequestError("missing action")

    return ActionRequest(
        user_id=_text(merged.get("user_id")),
        action=action,
        error_id=_text(merged.get("error_id")),
        project_id=_text(merged.get("project_id")),
        error_url=_text(merged.get("error_url")),
    )


def parse_action_value(raw_value: str) -> Dict[str, Any]:
    """Parse the JSON context carried in a Slack button value."""

    try:
        payload = json.loads(raw_value)
    except (TypeError, json.JSONDecodeError) as exc:
        raise ActionRequestError("invalid interactive action payload") from exc

    if not isinstance(payload, dict):
        raise ActionRequestError("invalid interactive action payload")
    return payload


def _slack_error(exc: SlackApiError) -> str:
    return exc.response.get("error") if getattr(exc, "response", None) else str(exc)


class ActionHandler:
    """Run a card button press against Bugsnag and reflect the result on the card."""

    def __init__(
        self,
        *,
        repository: BridgeRepository,
        slack: SlackClient,
        backend: ErrorBackend | None,
        locks: KeyedLocks,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._repository = repository
        self._slack = slack
        self._backend = backend
        self._locks = locks
        self._timeout = timeout

    def handle(self, request: ActionRequest) -> ActionOutcome:
        log = structlog.get_logger().bind(
            component="actions",
            user_id=request.user_id,
            action=request.action,
            project_id=request.project_id,
            error_id=request.error_id,
        )
        log.info("action_received")

        if not request.action:
            raise ActionRequestError("missing action")

        email = self._lookup_user(request.user_id, log)

        if request.action == ACTION_OPEN:
            if not request.error_url:
                raise ActionRequestError("no URL available")
            return ActionOutcome(status_code=200, open_url=request.error_url)

        if request.action != ACTION_ASSIGN and request.action not in STATUS_ACTIONS:
            raise ActionRequestError("unsupported action")

        mappings = self._load_user_mappings(log)
        identity = resolve_bugsnag_identity(mappings, chat_user_id=request.user_id, chat_email=email)

        parts: List[str] = [f'<@{request.user_id}> requested action "{request.action}"']
        if identity is not None and not identity.is_empty:
            parts.append(f"mapped to Bugsnag user {best_assignee(identity)}")
        if request.error_url:
            parts.append(f"source: {request.error_url}")

        if request.action == ACTION_ASSIGN:
            succeeded = self._assign(request, identity, parts, log)
        else:
            succeeded = self._set_status(request, STATUS_ACTIONS[request.action], parts, log)

        note = " · ".join(parts)
        card_updated = False
        if succeeded:
            card_updated = self._update_card(request, note, log)

        log.info("action_completed", succeeded=succeeded, card_updated=card_updated)
        return ActionOutcome(status_code=202, text=note, card_updated=card_updated)

    def _lookup_user(self, user_id: str, log) -> str:
        if not user_id:
            raise ActionRequestError("invalid user")
        try:
            email = self._slack.user_email(user_id)
        except SlackApiError as exc:
            log.warning("action_user_lookup_failed", error=_slack_error(exc))
            raise ActionRequestError("invalid user") from exc
        if email is None:
            raise ActionRequestError("invalid user")
        return email

    def _load_user_mappings(self, log) -> List[UserMapping]:
        try:
            return self._repository.load_user_mappings()
        except StoreError as exc:
            log.error("user_mappings_load_failed", error=str(exc))
            return []

    def _assign(self, request: ActionRequest, identity, parts: List[str], log) -> bool:
        assignee = best_assignee(identity) if identity is not None else ""
        if not assignee:
            parts.append("no Bugsnag mapping available for assignment")
            return False
        if self._backend is None:
            parts.append("Bugsnag client unavailable, assignment skipped")
            return False
        try:
            self._backend.assign_error(request.project_id, request.error_id, assignee, timeout=self._timeout)
        except BugsnagApiError as exc:
            log.warning("bugsnag_assign_failed", error=str(exc), status_code=exc.status_code)
            parts.append(f"Bugsnag assign failed: {exc}")
            return False
        parts.append(f"assigned to {assignee} in Bugsnag")
        return True

    def _set_status(self, request: ActionRequest, status: str, parts: List[str], log) -> bool:
        if self._backend is None:
            parts.append(f"Bugsnag client unavailable, {request.action} skipped")
            return False
        try:
            self._backend.update_error_status(request.project_id, request.error_id, status, timeout=self._timeout)
        except BugsnagApiError as exc:
            log.warning("bugsnag_status_update_failed", error=str(exc), status_code=exc.status_code)
            parts.append(f"Bugsnag {request.action} failed: {exc}")
            return False
        parts.append(f"status set to {status} in Bugsnag")
        return True

    def _update_card(self, request: ActionRequest, note: str, log) -> bool:
        """Refresh the card and post *note* in its thread; False when there is no card."""

        key = card_mapping_key(request.project_id, request.error_id)
        with self._locks.hold(key):
            try:
                mapping = self._repository.get_card_mapping(request.project_id, request.error_id)
            except StoreError as exc:
                log.error("card_mapping_load_failed", error=str(exc))
                return False
            if mapping is None:
                log.info("card_mapping_missing")
                return False

            try:
                self._refresh_card(mapping, request)
            except (SlackApiError, CardFormatError, LookupError) as exc:
                error = _slack_error(exc) if isinstance(exc, SlackApiError) else str(exc)
                log.warning("action_card_update_failed", error=error)
                return False

        try:
            self._slack.post_reply(channel=mapping.channel_id, thread_ts=mapping.message_ts, text=note)
        except SlackApiError as exc:
            log.warning("action_audit_reply_failed", error=_slack_error(exc))
        return True

    def _refresh_card(self, mapping: CardMapping, request: ActionRequest) -> None:
        card = self._slack.fetch_card(channel=mapping.channel_id, ts=mapping.message_ts)
        if request.action == ACTION_ASSIGN:
            card = apply_assignee(
                card, f"<@{request.user_id}>", project_id=request.project_id, error_id=request.error_id
            )
        else:
            card = apply_status(
                card,
                STATUS_ACTIONS[request.action],
                project_id=request.project_id,
                error_id=request.error_id,
            )
        self._slack.update_card(channel=mapping.channel_id, ts=mapping.message_ts, card=card)
