"""Tests for the key-value store and the typed repository on top of it."""

from datetime import UTC, datetime
import json
import threading

import pytest
from structlog.testing import capture_logs

from slack_bugsnag_bridge.db import session_scope
from slack_bugsnag_bridge.models import KVEntry, OptimisticLockError, StoreError
from slack_bugsnag_bridge.store import (
    ACTIVE_ERRORS_KEY,
    ROUTING_RULES_KEY,
    ActiveError,
    BridgeRepository,
    CardMapping,
    KeyedLocks,
    KVStore,
    RoutingRule,
    UserMapping,
    card_mapping_key,
    upsert_item,
)


def test_get_returns_none_for_missing_key(kv_store):
    assert kv_store.get("absent") is None
    assert kv_store.get_versioned("absent") == (None, None)


def test_set_and_get_round_trip_under_namespace(kv_store):
    kv_store.set("greeting", b"hello")
    kv_store.set("greeting", b"hello again")

    assert kv_store.get("greeting") == b"hello again"
    assert kv_store.get_versioned("greeting") == (b"hello again", 2)

    with session_scope() as session:
        assert session.get(KVEntry, "test:greeting") is not None
        assert session.get(KVEntry, "greeting") is None


def test_namespaces_are_isolated(bridge_env):
    first = KVStore(namespace="one")
    second = KVStore(namespace="two")

    first.set("key", b"1")

    assert second.get("key") is None


def test_compare_and_set_requires_absent_key_for_none(kv_store):
    assert kv_store.compare_and_set("fresh", b"a", None) == 1

    with pytest.raises(OptimisticLockError):
        kv_store.compare_and_set("fresh", b"b", None)

    assert kv_store.get("fresh") == b"a"


def test_compare_and_set_rejects_stale_version(kv_store):
    kv_store.compare_and_set("counter", b"1", None)
    assert kv_store.compare_and_set("counter", b"2", 1) == 2

    with pytest.raises(OptimisticLockError):
        kv_store.compare_and_set("counter", b"stale", 1)

    assert kv_store.get_versioned("counter") == (b"2", 2)


def test_store_errors_are_wrapped(bridge_env):
    class BrokenScope:
        def __enter__(self):
            from sqlalchemy.exc import OperationalError

            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        def __exit__(self, *exc_info):
            return False

    store = KVStore(namespace="x", scope=BrokenScope)

    with pytest.raises(StoreError):
        store.get("anything")
    with pytest.raises(StoreError):
        store.set("anything", b"1")


def test_upsert_item_replaces_or_appends():
    first = ActiveError(project_id="P1", error_id="E1", channel_id="C1", message_ts="1.0")
    second = ActiveError(project_id="P1", error_id="E2", channel_id="C1", message_ts="2.0")
    replacement = first.model_copy(update={"message_ts": "3.0"})

    items = upsert_item([first], second, lambda item: item.identity)
    items = upsert_item(items, replacement, lambda item: item.identity)

    assert [(item.error_id, item.message_ts) for item in items] == [("E1", "3.0"), ("E2", "2.0")]


def test_routing_rules_accept_legacy_shape(kv_store, repository):
    legacy = {"P1": [{"channel_id": "C1", "environments": ["production"]}], "P2": [{"channel_id": "C2"}]}
    kv_store.set(ROUTING_RULES_KEY, json.dumps(legacy).encode("utf-8"))

    rules = repository.load_routing_rules()

    assert [(rule.project_id, rule.channel_id) for rule in rules] == [("P1", "C1"), ("P2", "C2")]
    assert rules[0].environments == ["production"]


def test_routing_rules_round_trip(repository):
    repository.save_routing_rules([RoutingRule(project_id="P1", channel_id="C1", severities="error, warning")])

    rules = repository.load_routing_rules()

    assert rules[0].severities == ["error", "warning"]


def test_corrupt_record_raises_store_error(kv_store, repository):
    kv_store.set(ROUTING_RULES_KEY, b"{not json")

    with pytest.raises(StoreError):
        repository.load_routing_rules()


def test_invalid_routing_rules_are_skipped(kv_store):
    stored = [
        {"project_id": "P1", "channel_id": "C1"},
        {"project_id": "P2", "channel_id": ""},
        {"channel_id": "C3"},
    ]
    kv_store.set(ROUTING_RULES_KEY, json.dumps(stored).encode("utf-8"))

    with capture_logs() as logs:
        rules = BridgeRepository(kv_store).load_routing_rules()

    assert [(rule.project_id, rule.channel_id) for rule in rules] == [("P1", "C1")]
    assert [log["index"] for log in logs if log["event"] == "routing_rule_skipped"] == [1, 2]


def test_routing_rules_must_be_a_list(kv_store, repository):
    kv_store.set(ROUTING_RULES_KEY, b"\"P1\"")

    with pytest.raises(StoreError):
        repository.load_routing_rules()


def test_user_mappings_round_trip(repository):
    repository.save_user_mappings([UserMapping(chat_user_id="U1", bugsnag_email=" dev@example.com ")])

    assert repository.load_user_mappings() == [UserMapping(chat_user_id="U1", bugsnag_email="dev@example.com")]


def test_card_mapping_is_created_once(repository):
    mapping = CardMapping(project_id="P1", error_id="E1", channel_id="C1", message_ts="1.0")
    duplicate = mapping.model_copy(update={"channel_id": "C2", "message_ts": "2.0"})

    assert repository.create_card_mapping(mapping) is True
    assert repository.create_card_mapping(duplicate) is False
    assert repository.get_card_mapping("P1", "E1") == mapping
    assert repository.get_card_mapping("P1", "missing") is None
    assert card_mapping_key("P1", "E1") == "bugsnag:error-post:P1:E1"


def test_active_error_upsert_and_mark_synced(repository):
    first = ActiveError(project_id="P1", error_id="E1", channel_id="C1", message_ts="1.0")
    second = ActiveError(project_id="P1", error_id="E2", channel_id="C1", message_ts="2.0")
    repository.upsert_active_error(first)
    repository.upsert_active_error(second)
    repository.upsert_active_error(first.model_copy(update={"channel_id": "C9"}))

    synced_at = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
    repository.mark_synced({("P1", "E2"): synced_at})

    entries = repository.list_active_errors()
    assert [(entry.error_id, entry.channel_id) for entry in entries] == [("E1", "C9"), ("E2", "C1")]
    assert entries[1].last_synced_at == synced_at


def test_update_list_retries_after_conflict(kv_store, repository):
    original = kv_store.compare_and_set
    attempts = {"count": 0}

    def flaky(key, value, expected_version):
        attempts["count"] += 1
        if attempts["count"] == 1:
            kv_store.set(key, json.dumps([]).encode("utf-8"))
        return original(key, value, expected_version)

    kv_store.compare_and_set = flaky
    entry = ActiveError(project_id="P1", error_id="E1", channel_id="C1", message_ts="1.0")

    repository.upsert_active_error(entry)

    assert attempts["count"] == 2
    assert [item.error_id for item in repository.list_active_errors()] == ["E1"]
    assert kv_store.get(ACTIVE_ERRORS_KEY) is not None


def test_keyed_locks_serialise_same_key():
    locks = KeyedLocks()
    order = []
    entered = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("k"):
            entered.set()
            release.wait(timeout=2)
            order.append("first")

    thread = threading.Thread(target=holder)
    thread.start()
    entered.wait(timeout=2)

    with locks.hold("other"):
        order.append("other")

    release.set()
    with locks.hold("k"):
        order.append("second")
    thread.join(timeout=2)

    assert order == ["other", "first", "second"]


def test_keyed_locks_release_idle_keys():
    locks = KeyedLocks()

    with locks.hold("P1:E1"):
        with locks.hold("P1:E2"):
            assert len(locks) == 2
        assert len(locks) == 1

    assert len(locks) == 0

    with pytest.raises(RuntimeError):
        with locks.hold("P1:E3"):
            raise RuntimeError("boom")
    assert len(locks) == 0
