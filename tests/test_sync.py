"""Tests for the reconciliation scheduler."""

import threading
from datetime import UTC, datetime

import pytest

from slack_bugsnag_bridge.bugsnag_client import ErrorDetails
from slack_bugsnag_bridge.cards import Card
from slack_bugsnag_bridge.models import StoreError
from slack_bugsnag_bridge.slack_client import SlackClient
from slack_bugsnag_bridge.store import ActiveError, KeyedLocks
from slack_bugsnag_bridge.sync import ReconciliationScheduler, sync_line, sync_reply

from conftest import FakeBackend, FakeWebClient

OLD_SYNC = datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture
def web_client():
    return FakeWebClient()


@pytest.fixture
def backend():
    return FakeBackend()


def _details(error_id, status="open", events=5):
    return ErrorDetails(id=error_id, status=status, events=events, events_last_24h=2, last_seen="2024-05-01T10:00:00Z")


def _register(repository, web_client, error_id, *, body="boom"):
    ts = SlackClient(client=web_client).post_card(channel="C1", card=Card(headline=f"card {error_id}", body=body))
    repository.upsert_active_error(
        ActiveError(project_id="P1", error_id=error_id, channel_id="C1", message_ts=ts, last_synced_at=OLD_SYNC)
    )
    return ts


def _scheduler(repository, web_client, backend, **kwargs):
    return ReconciliationScheduler(
        repository=repository, slack=SlackClient(client=web_client), backend=backend, locks=KeyedLocks(), **kwargs
    )


def test_sync_line_and_reply_format():
    details = _details("E1", status="fixed", events=12)
    synced_at = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)

    assert sync_line(details, synced_at) == (
        "Status: fixed | Events (total/24h): 12/2 | Last seen: 2024-05-01T10:00:00Z | Synced: 2024-05-01T12:30:00Z"
    )
    assert sync_reply(details) == (
        "[sync] Status: fixed, events (total/24h): 12/2, last seen: 2024-05-01T10:00:00Z"
    )


def test_tick_updates_card_posts_reply_and_marks_synced(repository, web_client, backend):
    ts = _register(repository, web_client, "E1")
    backend.details[("P1", "E1")] = _details("E1")

    summary = _scheduler(repository, web_client, backend).tick()

    assert summary == {"processed": 1, "failed": 0, "skipped": 0}
    card = SlackClient(client=web_client).fetch_card(channel="C1", ts=ts)
    body, sync_text = card.body.split("\n\n")
    assert body == "boom"
    assert sync_text.startswith("Status: open | Events (total/24h): 5/2")
    assert web_client.replies_for("C1", ts) == [sync_reply(backend.details[("P1", "E1")])]
    assert repository.list_active_errors()[0].last_synced_at > OLD_SYNC


def test_repeated_ticks_replace_the_sync_line(repository, web_client, backend):
    ts = _register(repository, web_client, "E1")
    scheduler = _scheduler(repository, web_client, backend)

    backend.details[("P1", "E1")] = _details("E1", events=5)
    scheduler.tick()
    backend.details[("P1", "E1")] = _details("E1", status="fixed", events=9)
    scheduler.tick()

    body = SlackClient(client=web_client).fetch_card(channel="C1", ts=ts).body
    assert body.count("Synced: ") == 1
    assert "Status: fixed | Events (total/24h): 9/2" in body
    assert body.startswith("boom\n\n")


def test_one_failing_entry_does_not_stop_the_tick(repository, web_client, backend):
    _register(repository, web_client, "E-missing")
    ts = _register(repository, web_client, "E2")
    backend.details[("P1", "E2")] = _details("E2")

    summary = _scheduler(repository, web_client, backend).tick()

    assert summary == {"processed": 1, "failed": 1, "skipped": 0}
    assert len(web_client.replies_for("C1", ts)) == 1
    synced = {entry.error_id: entry.last_synced_at for entry in repository.list_active_errors()}
    assert synced["E-missing"] == OLD_SYNC
    assert synced["E2"] > OLD_SYNC


def test_missing_slack_message_counts_as_failure(repository, web_client, backend):
    repository.upsert_active_error(ActiveError(project_id="P1", error_id="E1", channel_id="C1", message_ts="9.9"))
    backend.details[("P1", "E1")] = _details("E1")

    summary = _scheduler(repository, web_client, backend).tick()

    assert summary["failed"] == 1


def test_tick_skipped_when_registry_cannot_load(repository, web_client, backend, monkeypatch):
    def broken():
        raise StoreError("database unavailable")

    monkeypatch.setattr(repository, "list_active_errors", broken)

    assert _scheduler(repository, web_client, backend).tick() == {"processed": 0, "failed": 0, "skipped": 0}
    assert backend.calls == []


def test_tick_skipped_without_backend(repository, web_client):
    _register(repository, web_client, "E1")

    assert _scheduler(repository, web_client, None).tick() == {"processed": 0, "failed": 0, "skipped": 0}
    assert web_client.updates == []


def test_entries_past_the_deadline_are_skipped(repository, web_client, backend):
    _register(repository, web_client, "E1")
    _register(repository, web_client, "E2")
    backend.details[("P1", "E1")] = _details("E1")
    backend.details[("P1", "E2")] = _details("E2")
    readings = iter([0.0, 1.0, 30.0])

    scheduler = _scheduler(repository, web_client, backend, clock=lambda: next(readings, 30.0))
    summary = scheduler.tick(deadline_seconds=10)

    assert summary == {"processed": 1, "failed": 0, "skipped": 1}
    assert [call[2] for call in backend.calls] == ["E1"]


def test_non_positive_interval_does_not_start(repository, web_client, backend):
    scheduler = _scheduler(repository, web_client, backend)

    assert scheduler.start(0) is False
    assert scheduler.start(-5) is False
    assert scheduler.is_running is False


def test_start_stop_is_idempotent(repository, web_client, backend):
    scheduler = _scheduler(repository, web_client, backend)

    assert scheduler.start(3600) is True
    assert scheduler.start(3600) is False
    assert scheduler.is_running is True
    assert scheduler.interval == 3600

    scheduler.stop()
    scheduler.stop()
    assert scheduler.is_running is False


def test_restart_applies_new_interval(repository, web_client, backend):
    scheduler = _scheduler(repository, web_client, backend)
    scheduler.start(3600)

    assert scheduler.restart(1800) is True
    assert scheduler.interval == 1800
    assert scheduler.is_running is True

    scheduler.stop()


def test_started_loop_ticks_until_stopped(repository, web_client, backend):
    _register(repository, web_client, "E1")
    backend.details[("P1", "E1")] = _details("E1")
    ticked = threading.Event()
    fetch = backend.get_error

    def get_error(*args, **kwargs):
        ticked.set()
        return fetch(*args, **kwargs)

    backend.get_error = get_error
    scheduler = _scheduler(repository, web_client, backend)

    assert scheduler.start(0.05) is True
    thread = scheduler._thread
    try:
        assert ticked.wait(2.0) is True
    finally:
        scheduler.stop()

    assert thread.is_alive() is False
    assert scheduler.is_running is False
