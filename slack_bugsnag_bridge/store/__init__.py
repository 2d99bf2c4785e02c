"""Key-value persistence for routing rules, mappings and the active error registry."""

from .kv import KeyedLocks, KVStore
from .records import ActiveError, CardMapping, RoutingRule, UserMapping
from .repository import (
    ACTIVE_ERRORS_KEY,
    ROUTING_RULES_KEY,
    USER_MAPPINGS_KEY,
    BridgeRepository,
    card_mapping_key,
    upsert_item,
)

__all__ = [
    "KVStore",
    "KeyedLocks",
    "ActiveError",
    "CardMapping",
    "RoutingRule",
    "UserMapping",
    "BridgeRepository",
    "ACTIVE_ERRORS_KEY",
    "ROUTING_RULES_KEY",
    "USER_MAPPINGS_KEY",
    "card_mapping_key",
    "upsert_item",
]
