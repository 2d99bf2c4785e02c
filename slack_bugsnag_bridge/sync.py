"""Background reconciliation of card state against Bugsnag."""

from __future__ import annotations

import threading
import time
from datetime import UTC, datetime
from typing import Callable, Dict, Tuple
from uuid import uuid4

import structlog
from slack_sdk.errors import SlackApiError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from slack_bugsnag_bridge.bugsnag_client import DEFAULT_TIMEOUT, BugsnagApiError, ErrorBackend, ErrorDetails
from slack_bugsnag_bridge.cards import CardFormatError, apply_sync_line
from slack_bugsnag_bridge.models import OptimisticLockError, StoreError
from slack_bugsnag_bridge.slack_client import SlackClient
from slack_bugsnag_bridge.store import ActiveError, BridgeRepository, KeyedLocks
from slack_bugsnag_bridge.store.repository import card_mapping_key

ENTRY_ERRORS = (BugsnagApiError, SlackApiError, CardFormatError, LookupError)


def _format_time(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def sync_line(details: ErrorDetails, synced_at: datetime) -> str:
    return (
        f"Status: {details.status} | Events (total/24h): {details.events}/{details.events_last_24h} "
        f"| Last seen: {details.last_seen} | Synced: {_format_time(synced_at)}"
    )


def sync_reply(details: ErrorDetails) -> str:
    return (
        f"[sync] Status: {details.status}, events (total/24h): "
        f"{details.events}/{details.events_last_24h}, last seen: {details.last_seen}"
    )


class ReconciliationScheduler:
    """Owns the single thread that periodically re-checks active errors."""

    def __init__(
        self,
        *,
        repository: BridgeRepository,
        slack: SlackClient,
        backend: ErrorBackend | None,
        locks: KeyedLocks,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._slack = slack
        self._backend = backend
        self._locks = locks
        self._clock = clock
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None
        self._interval = 0.0
        self._log = structlog.get_logger().bind(component="sync")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    @property
    def interval(self) -> float:
        return self._interval

    def start(self, interval: float) -> bool:
        """Start the loop; a non-positive interval leaves it stopped. Returns True if started."""

        with self._lock:
            if self._thread is not None:
                return False
            if interval <= 0:
                self._log.info("sync_disabled", interval=interval)
                return False
            self._interval = float(interval)
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop_event, self._interval), name="bugsnag-sync", daemon=True
            )
            self._thread.start()
            self._log.info("sync_started", interval=self._interval)
            return True

    def stop(self) -> None:
        """Signal the loop to exit and wait for it; safe to call repeatedly."""

        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if thread is None or stop_event is None:
            return
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        self._log.info("sync_stopped")

    def restart(self, interval: float) -> bool:
        self.stop()
        return self.start(interval)

    def _run(self, stop_event: threading.Event, interval: float) -> None:
        while not stop_event.wait(interval):
            try:
                self.tick(deadline_seconds=interval)
            except Exception:  # pragma: no cover - keep the loop alive
                self._log.exception("sync_tick_crashed")

    def tick(self, *, deadline_seconds: float | None = None) -> Dict[str, int]:
        """Reconcile every registry entry once and return processed/failed/skipped counts."""

        summary = {"processed": 0, "failed": 0, "skipped": 0}
        trace_id = str(uuid4())
        bind_contextvars(trace_id=trace_id)
        try:
            if self._backend is None:
                self._log.info("sync_tick_skipped", reason="bugsnag_client_unavailable")
                return summary

            try:
                entries = self._repository.list_active_errors()
            except StoreError as exc:
                self._log.error("active_errors_load_failed", error=str(exc))
                return summary

            budget = deadline_seconds if deadline_seconds is not None else self._interval
            deadline = self._clock() + budget if budget and budget > 0 else None
            synced: Dict[Tuple[str, str], datetime] = {}

            for entry in entries:
                remaining = None if deadline is None else deadline - self._clock()
                if remaining is not None and remaining <= 0:
                    summary["skipped"] += 1
                    continue
                try:
                    synced_at = self._sync_entry(entry, remaining)
                except ENTRY_ERRORS as exc:
                    summary["failed"] += 1
                    self._log.warning(
                        "sync_entry_failed",
                        project_id=entry.project_id,
                        error_id=entry.error_id,
                        error=str(exc),
                    )
                    continue
                synced[entry.identity] = synced_at
                summary["processed"] += 1

            if synced:
                try:
                    self._repository.mark_synced(synced)
                except (StoreError, OptimisticLockError) as exc:
                    self._log.error("active_errors_save_failed", error=str(exc))

            self._log.info("sync_tick_completed", **summary)
            return summary
        finally:
            unbind_contextvars("trace_id")

    def _sync_entry(self, entry: ActiveError, remaining: float | None) -> datetime:
        timeout = DEFAULT_TIMEOUT if remaining is None else min(DEFAULT_TIMEOUT, remaining)
        details = self._backend.get_error(entry.project_id, entry.error_id, timeout=timeout)
        synced_at = datetime.now(UTC)

        with self._locks.hold(card_mapping_key(entry.project_id, entry.error_id)):
            card = self._slack.fetch_card(channel=entry.channel_id, ts=entry.message_ts)
            card = apply_sync_line(card, sync_line(details, synced_at))
            self._slack.update_card(channel=entry.channel_id, ts=entry.message_ts, card=card)

        try:
            self._slack.post_reply(channel=entry.channel_id, thread_ts=entry.message_ts, text=sync_reply(details))
        except SlackApiError as exc:
            error = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
            self._log.warning("sync_reply_failed", project_id=entry.project_id, error_id=entry.error_id, error=error)
        return synced_at
