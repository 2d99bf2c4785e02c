"""Shared fixtures and fakes for the bridge test-suite."""

from __future__ import annotations

import copy
from pathlib import Path
import sys
from typing import Any, Dict, List, Tuple

import pytest
from slack_sdk.errors import SlackApiError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover
    sys.path.insert(0, str(ROOT))

from slack_bugsnag_bridge import config  # noqa: E402
from slack_bugsnag_bridge.bugsnag_client import BugsnagApiError, ErrorDetails  # noqa: E402
from slack_bugsnag_bridge.db import create_schema, get_engine, get_session_factory  # noqa: E402
from slack_bugsnag_bridge.store import BridgeRepository, KVStore  # noqa: E402


class DummyResponse(dict):
    def __init__(self, error: str = "invalid", status_code: int = 400) -> None:
        super().__init__(ok=False, error=error)
        self.status_code = status_code

    @property
    def data(self) -> dict[str, Any]:
        return dict(self)


def slack_error(code: str) -> SlackApiError:
    return SlackApiError(code, DummyResponse(error=code))


class FakeWebClient:
    """In-memory stand-in for the parts of ``slack_sdk.WebClient`` the bridge calls."""

    def __init__(self, *, users: Dict[str, str] | None = None, channels: set[str] | None = None) -> None:
        self.messages: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.replies: List[Dict[str, Any]] = []
        self.deleted: List[Tuple[str, str]] = []
        self.ephemeral: List[Dict[str, Any]] = []
        self.updates: List[Tuple[str, str]] = []
        self.users = {"U1": "dev@example.com"} if users is None else users
        self.channels = {"C1", "C2"} if channels is None else channels
        self.fail_post_channels: set[str] = set()
        self._counter = 0

    def _next_ts(self) -> str:
        self._counter += 1
        return f"1700000000.{self._counter:06d}"

    def chat_postMessage(self, *, channel, text, attachments=None, thread_ts=None, **_kwargs):
        if channel in self.fail_post_channels:
            raise slack_error("channel_not_found")
        ts = self._next_ts()
        if thread_ts:
            self.replies.append({"channel": channel, "thread_ts": thread_ts, "text": text, "ts": ts})
        else:
            self.messages[(channel, ts)] = {
                "ts": ts,
                "text": text,
                "attachments": copy.deepcopy(attachments or []),
            }
        return {"ok": True, "channel": channel, "ts": ts}

    def chat_update(self, *, channel, ts, text, attachments=None, **_kwargs):
        if (channel, ts) not in self.messages:
            raise slack_error("message_not_found")
        self.messages[(channel, ts)] = {"ts": ts, "text": text, "attachments": copy.deepcopy(attachments or [])}
        self.updates.append((channel, ts))
        return {"ok": True, "channel": channel, "ts": ts}

    def conversations_history(self, *, channel, latest, inclusive=True, limit=1):
        message = self.messages.get((channel, latest))
        return {"ok": True, "messages": [copy.deepcopy(message)] if message else []}

    def chat_delete(self, *, channel, ts):
        self.messages.pop((channel, ts), None)
        self.deleted.append((channel, ts))
        return {"ok": True}

    def chat_postEphemeral(self, *, channel, user, text):
        self.ephemeral.append({"channel": channel, "user": user, "text": text})
        return {"ok": True}

    def users_info(self, *, user):
        if user not in self.users:
            raise slack_error("user_not_found")
        return {"ok": True, "user": {"id": user, "profile": {"email": self.users[user]}}}

    def conversations_info(self, *, channel):
        if channel not in self.channels:
            raise slack_error("channel_not_found")
        return {"ok": True, "channel": {"id": channel}}

    def replies_for(self, channel: str, ts: str) -> List[str]:
        return [reply["text"] for reply in self.replies if reply["channel"] == channel and reply["thread_ts"] == ts]


class FakeBackend:
    """Records Bugsnag calls; failures are configured per operation name."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, BugsnagApiError] = {}
        self.details: Dict[Tuple[str, str], ErrorDetails] = {}

    def get_error(self, project_id, error_id, *, timeout=None):
        self.calls.append(("get_error", project_id, error_id))
        if "get_error" in self.failures:
            raise self.failures["get_error"]
        try:
            return self.details[(project_id, error_id)]
        except KeyError:
            raise BugsnagApiError("Not Found", status_code=404) from None

    def update_error_status(self, project_id, error_id, status, *, timeout=None):
        self.calls.append(("update_error_status", project_id, error_id, status, timeout))
        if "update_error_status" in self.failures:
            raise self.failures["update_error_status"]

    def assign_error(self, project_id, error_id, collaborator, *, timeout=None):
        self.calls.append(("assign_error", project_id, error_id, collaborator, timeout))
        if "assign_error" in self.failures:
            raise self.failures["assign_error"]


def find_action(card, action_id: str):
    return next((item for item in card.actions if item.action_id == action_id), None)


def sample_payload(**error_overrides: Any) -> Dict[str, Any]:
    error = {
        "id": "event-1",
        "errorId": "E1",
        "exceptionClass": "NoMethodError",
        "message": "undefined method `name' for nil",
        "context": "UsersController#show",
        "receivedAt": "2024-05-01T10:00:00Z",
        "url": "https://app.bugsnag.com/acme/api/errors/E1",
        "severity": "error",
        "status": "open",
        "unhandled": True,
        "app": {"version": "1.4.2", "releaseStage": "production"},
        "exceptions": [
            {
                "errorClass": "NoMethodError",
                "message": "undefined method",
                "stacktrace": [
                    {"file": "app/controllers/users_controller.rb", "lineNumber": 12, "method": "show", "inProject": True},
                    {"file": "gems/actionpack/metal.rb", "lineNumber": 190, "method": "dispatch", "inProject": False},
                ],
            }
        ],
    }
    error.update(error_overrides)
    return {
        "trigger": {"type": "firstException", "message": "1st exception"},
        "error": error,
        "project": {"id": "P1", "name": "API"},
    }


def _clear_caches() -> None:
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


@pytest.fixture
def bridge_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "xoxb-test")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'bridge.db'}")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "0")
    for var in (
        "WEBHOOK_TOKEN",
        "WEBHOOK_SECRET",
        "BUGSNAG_API_TOKEN",
        "BUGSNAG_ORGANIZATION_ID",
        "KV_NAMESPACE",
    ):
        monkeypatch.delenv(var, raising=False)
    _clear_caches()
    create_schema()
    yield monkeypatch
    _clear_caches()


@pytest.fixture
def kv_store(bridge_env):
    return KVStore(namespace="test")


@pytest.fixture
def repository(kv_store):
    return BridgeRepository(kv_store)
