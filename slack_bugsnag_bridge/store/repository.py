"""Typed access to the JSON records kept in the key-value store."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Sequence, Tuple, Type, TypeVar

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from slack_bugsnag_bridge.models import OptimisticLockError, StoreError
from slack_bugsnag_bridge.store.kv import KVStore
from slack_bugsnag_bridge.store.records import ActiveError, CardMapping, RoutingRule, UserMapping

ROUTING_RULES_KEY = "bugsnag:project-channel-mappings"
USER_MAPPINGS_KEY = "bugsnag:user-mappings"
ACTIVE_ERRORS_KEY = "bugsnag:active-errors"
CARD_MAPPING_PREFIX = "bugsnag:error-post:"

MAX_CAS_ATTEMPTS = 5

T = TypeVar("T", bound=BaseModel)


def card_mapping_key(project_id: str, error_id: str) -> str:
    return f"{CARD_MAPPING_PREFIX}{project_id}:{error_id}"


def upsert_item(items: Sequence[T], item: T, identity: Callable[[T], object]) -> List[T]:
    """Replace the element sharing *item*'s identity, or append it."""

    key = identity(item)
    updated: List[T] = []
    replaced = False
    for existing in items:
        if not replaced and identity(existing) == key:
            updated.append(item)
            replaced = True
        else:
            updated.append(existing)
    if not replaced:
        updated.append(item)
    return updated


def _encode_list(items: Iterable[BaseModel]) -> bytes:
    return json.dumps([item.model_dump(mode="json") for item in items]).encode("utf-8")


def coerce_legacy_rules(data: object) -> object:
    """Flatten the ``{project_id: [rule, ...]}`` shape into a list of rules."""

    if not isinstance(data, dict):
        return data
    flattened = []
    for project_id, rules in data.items():
        for rule in rules or []:
            if isinstance(rule, dict):
                flattened.append({"project_id": project_id, **rule})
    return flattened


class BridgeRepository:
    """Read and write routing rules, user mappings, card mappings and the active registry."""

    def __init__(self, kv: KVStore) -> None:
        self._kv = kv
        self._log = structlog.get_logger().bind(component="repository")

    def _decode_list(self, key: str, raw: bytes | None, model: Type[T]) -> List[T]:
        if raw is None:
            return []
        try:
            data = json.loads(raw)
            if data is None:
                return []
            return TypeAdapter(List[model]).validate_python(data)
        except (ValueError, ValidationError) as exc:
            raise StoreError(f"decode {key}: {exc}") from exc

    def _load_list(self, key: str, model: Type[T]) -> List[T]:
        return self._decode_list(key, self._kv.get(key), model)

    def update_list(self, key: str, model: Type[T], mutate: Callable[[List[T]], List[T]]) -> List[T]:
        """Apply *mutate* to the stored list, retrying when a concurrent writer wins."""

        for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
            raw, version = self._kv.get_versioned(key)
            current = self._decode_list(key, raw, model)
            updated = mutate(list(current))
            try:
                self._kv.compare_and_set(key, _encode_list(updated), version)
            except OptimisticLockError:
                self._log.info("kv_list_conflict", key=key, attempt=attempt)
                continue
            return updated
        raise OptimisticLockError(f"Gave up updating {key} after {MAX_CAS_ATTEMPTS} attempts")

    def load_routing_rules(self) -> List[RoutingRule]:
        """Return the valid routing rules; entries that fail validation are logged and skipped."""

        raw = self._kv.get(ROUTING_RULES_KEY)
        if raw is None:
            return []
        try:
            data = coerce_legacy_rules(json.loads(raw))
        except ValueError as exc:
            raise StoreError(f"decode {ROUTING_RULES_KEY}: {exc}") from exc
        if data is None:
            return []
        if not isinstance(data, list):
            raise StoreError(f"decode {ROUTING_RULES_KEY}: expected a list, got {type(data).__name__}")

        rules: List[RoutingRule] = []
        for index, item in enumerate(data):
            try:
                rules.append(RoutingRule.model_validate(item))
            except ValidationError as exc:
                self._log.warning("routing_rule_skipped", index=index, error=exc.errors()[0]["msg"])
        return rules

    def save_routing_rules(self, rules: Sequence[RoutingRule]) -> None:
        self._kv.set(ROUTING_RULES_KEY, _encode_list(rules))

    def load_user_mappings(self) -> List[UserMapping]:
        return self._load_list(USER_MAPPINGS_KEY, UserMapping)

    def save_user_mappings(self, mappings: Sequence[UserMapping]) -> None:
        self._kv.set(USER_MAPPINGS_KEY, _encode_list(mappings))

    def get_card_mapping(self, project_id: str, error_id: str) -> CardMapping | None:
        key = card_mapping_key(project_id, error_id)
        raw = self._kv.get(key)
        if raw is None:
            return None
        try:
            return CardMapping.model_validate_json(raw)
        except ValidationError as exc:
            raise StoreError(f"decode {key}: {exc}") from exc

    def create_card_mapping(self, mapping: CardMapping) -> bool:
        """Store *mapping* unless one already exists; return whether it was created."""

        key = card_mapping_key(mapping.project_id, mapping.error_id)
        try:
            self._kv.compare_and_set(key, mapping.model_dump_json().encode("utf-8"), None)
        except OptimisticLockError:
            return False
        return True

    def list_active_errors(self) -> List[ActiveError]:
        return self._load_list(ACTIVE_ERRORS_KEY, ActiveError)

    def upsert_active_error(self, entry: ActiveError) -> None:
        self.update_list(
            ACTIVE_ERRORS_KEY,
            ActiveError,
            lambda items: upsert_item(items, entry, lambda item: item.identity),
        )

    def mark_synced(self, synced: Dict[Tuple[str, str], datetime]) -> None:
        """Rewrite ``last_synced_at`` for the given ``(project_id, error_id)`` pairs."""

        if not synced:
            return

        def apply(items: List[ActiveError]) -> List[ActiveError]:
            return [
                item.model_copy(update={"last_synced_at": synced[item.identity]})
                if item.identity in synced
                else item
                for item in items
            ]

        self.update_list(ACTIVE_ERRORS_KEY, ActiveError, apply)
