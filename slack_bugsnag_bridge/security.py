"""Request authentication for Slack callbacks and Bugsnag webhooks."""

from __future__ import annotations

import hmac
import time
from hashlib import sha256
from typing import Mapping


SLACK_SIGNATURE_HEADER = "X-Slack-Signature"
SLACK_TIMESTAMP_HEADER = "X-Slack-Request-Timestamp"
VERSION = "v0"
DEFAULT_TOLERANCE = 60 * 5  # five minutes

WEBHOOK_TOKEN_PARAM = "token"
WEBHOOK_TOKEN_HEADER = "X-Bugsnag-Token"


class WebhookAuthError(Exception):
    """Raised when a webhook call does not carry the configured token."""


def compute_signature(signing_secret: str, timestamp: str, body: str) -> str:
    """Return Slack-compatible signature for the provided payload."""

    basestring = f"{VERSION}:{timestamp}:{body}".encode("utf-8")
    secret = signing_secret.encode("utf-8")
    digest = hmac.new(secret, basestring, sha256).hexdigest()
    return f"{VERSION}={digest}"


def is_valid_slack_request(
    *, signing_secret: str, timestamp: str, body: str, signature: str, tolerance: int = DEFAULT_TOLERANCE
) -> bool:
    """Validate Slack signature and timestamp to guard against replay attacks."""

    if not timestamp or not signature:
        return False

    try:
        request_ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    current_ts = int(time.time())
    if abs(current_ts - request_ts) > tolerance:
        return False

    expected = compute_signature(signing_secret, timestamp, body)
    return hmac.compare_digest(expected, signature)


def validate_webhook_token(expected: str, *, query: Mapping[str, str], headers: Mapping[str, str]) -> None:
    """Check the webhook token from the query string or header.

    An empty *expected* token disables the check.
    """

    expected = (expected or "").strip()
    if not expected:
        return

    provided = (query.get(WEBHOOK_TOKEN_PARAM) or "").strip()
    if not provided:
        provided = (headers.get(WEBHOOK_TOKEN_HEADER) or "").strip()
    if not provided:
        raise WebhookAuthError("missing webhook token")

    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise WebhookAuthError("invalid webhook token")
