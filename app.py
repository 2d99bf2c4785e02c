"""Application entry point for the Slack Bugsnag bridge."""

from __future__ import annotations

import atexit
from dataclasses import dataclass
from uuid import uuid4

from flask import Flask, copy_current_request_context, jsonify, request
from slack_bolt import App as SlackApp
from slack_bolt.adapter.flask import SlackRequestHandler
from slack_sdk.errors import SlackApiError
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

from slack_bugsnag_bridge import __version__
from slack_bugsnag_bridge.actions import (
    ActionHandler,
    ActionRequestError,
    parse_action_request,
    parse_action_value,
)
from slack_bugsnag_bridge.background import run_async
from slack_bugsnag_bridge.bugsnag_client import BugsnagClient, ErrorBackend
from slack_bugsnag_bridge.cards import ACTION_ASSIGN, ACTION_IGNORE, ACTION_OPEN, ACTION_RESOLVE
from slack_bugsnag_bridge.config import AppSettings, get_settings
from slack_bugsnag_bridge.db import create_schema, session_scope
from slack_bugsnag_bridge.logging_config import configure_logging
from slack_bugsnag_bridge.security import (
    SLACK_SIGNATURE_HEADER,
    SLACK_TIMESTAMP_HEADER,
    is_valid_slack_request,
)
from slack_bugsnag_bridge.slack_client import SlackClient
from slack_bugsnag_bridge.store import BridgeRepository, KeyedLocks, KVStore
from slack_bugsnag_bridge.sync import ReconciliationScheduler
from slack_bugsnag_bridge.webhooks import WebhookProcessor

EXTENSION_KEY = "bugsnag_bridge"
CARD_ACTION_IDS = (ACTION_ASSIGN, ACTION_RESOLVE, ACTION_IGNORE, ACTION_OPEN)


@dataclass
class BridgeServices:
    """Collaborators shared by the HTTP routes, Slack listeners and the scheduler."""

    repository: BridgeRepository
    slack: SlackClient
    backend: ErrorBackend | None
    webhooks: WebhookProcessor
    actions: ActionHandler
    scheduler: ReconciliationScheduler


def _build_services(
    settings: AppSettings,
    *,
    slack_client: SlackClient | None = None,
    backend: ErrorBackend | None = None,
) -> BridgeServices:
    slack = slack_client or SlackClient(token=settings.bot_token)
    if backend is None and settings.bugsnag_api_token:
        backend = BugsnagClient(token=settings.bugsnag_api_token, base_url=settings.bugsnag_api_url)

    repository = BridgeRepository(KVStore(namespace=settings.kv_namespace))
    locks = KeyedLocks()
    return BridgeServices(
        repository=repository,
        slack=slack,
        backend=backend,
        webhooks=WebhookProcessor(
            repository=repository,
            slack=slack,
            locks=locks,
            expected_token=settings.expected_webhook_token,
        ),
        actions=ActionHandler(repository=repository, slack=slack, backend=backend, locks=locks),
        scheduler=ReconciliationScheduler(repository=repository, slack=slack, backend=backend, locks=locks),
    )


def _create_bolt_app(settings: AppSettings) -> SlackApp:
    """Initialise the Slack Bolt application using validated settings."""

    return SlackApp(
        token=settings.bot_token,
        signing_secret=settings.signing_secret,
        token_verification_enabled=False,
    )


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        if isinstance(error, HTTPException):
            response = jsonify({"error": error.name.lower().replace(" ", "_")})
            response.status_code = error.code or 500
            return response

        trace_id = str(uuid4())
        flask_app.logger.exception(
            "Unhandled application error", extra={"trace_id": trace_id}, exc_info=error
        )
        response = jsonify({"error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def _handle_card_action(services: BridgeServices, ack, body, logger) -> None:
    ack()
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)

    try:
        user_id = (body.get("user") or {}).get("id", "")
        channel_id = (body.get("channel") or {}).get("id", "")
        actions = body.get("actions") or []
        if not actions:
            log.warning("card_action_payload_empty")
            return

        action_payload = actions[0]
        try:
            context = parse_action_value(action_payload.get("value", ""))
            context.setdefault("action", action_payload.get("action_id"))
            outcome = services.actions.handle(parse_action_request({"user_id": user_id, "context": context}))
        except ActionRequestError as exc:
            log.warning("card_action_rejected", reason=str(exc), user_id=user_id)
            message = f"Unable to process this action: {exc}."
        else:
            if outcome.open_url:
                return
            message = outcome.text

        if not channel_id or not user_id:
            return
        try:
            services.slack.post_ephemeral(channel=channel_id, user=user_id, text=message)
        except SlackApiError as exc:
            error_code = exc.response.get("error") if getattr(exc, "response", None) else str(exc)
            log.warning("card_action_ephemeral_failed", error=error_code)
            logger.warning("Failed to post action result", extra={"user_id": user_id, "error": error_code})
    finally:
        unbind_contextvars("trace_id")


def _register_action_handlers(bolt_app: SlackApp, services: BridgeServices) -> None:
    def handle_card_action(ack, body, logger):
        _handle_card_action(services, ack=ack, body=body, logger=logger)

    for action_id in CARD_ACTION_IDS:
        bolt_app.action(action_id)(handle_card_action)


_LOGGING_CONFIGURED = False


def create_app(
    *,
    slack_client: SlackClient | None = None,
    backend: ErrorBackend | None = None,
    start_scheduler: bool = True,
) -> Flask:
    """Create and configure the Flask application."""

    global _LOGGING_CONFIGURED
    if not _LOGGING_CONFIGURED:
        configure_logging()
        _LOGGING_CONFIGURED = True

    settings = get_settings()
    create_schema()
    services = _build_services(settings, slack_client=slack_client, backend=backend)

    bolt_app = _create_bolt_app(settings)
    handler = SlackRequestHandler(bolt_app)

    flask_app = Flask(__name__)
    flask_app.config["APP_VERSION"] = __version__
    flask_app.extensions[EXTENSION_KEY] = services
    flask_app.logger.setLevel("INFO")

    _register_error_handlers(flask_app)
    _register_action_handlers(bolt_app, services)

    if start_scheduler and services.scheduler.start(settings.sync_interval_seconds):
        atexit.register(services.scheduler.stop)

    @flask_app.route("/webhook", methods=["POST"])
    def bugsnag_webhook():
        bind_contextvars(trace_id=str(uuid4()))
        try:
            result = services.webhooks.handle(
                body=request.get_data(),
                query=request.args,
                headers=request.headers,
            )
            return jsonify(result.body), result.status_code
        finally:
            unbind_contextvars("trace_id")

    @flask_app.route("/actions", methods=["POST"])
    def card_actions():
        bind_contextvars(trace_id=str(uuid4()))
        try:
            try:
                action_request = parse_action_request(request.get_json(silent=True))
                outcome = services.actions.handle(action_request)
            except ActionRequestError as exc:
                return jsonify({"error": str(exc)}), exc.status_code
            return jsonify(outcome.to_body()), outcome.status_code
        finally:
            unbind_contextvars("trace_id")

    @flask_app.route("/slack/events", methods=["POST"])
    def slack_events():
        raw_body = request.get_data(as_text=True)
        timestamp = request.headers.get(SLACK_TIMESTAMP_HEADER, "")
        signature = request.headers.get(SLACK_SIGNATURE_HEADER, "")

        if not is_valid_slack_request(
            signing_secret=settings.signing_secret,
            timestamp=timestamp,
            body=raw_body,
            signature=signature,
        ):
            response = jsonify({"error": "invalid_signature"})
            response.status_code = 401
            return response

        trace_id = str(uuid4())

        @copy_current_request_context
        def process_request():
            handler.handle(request)

        run_async(process_request, trace_id=trace_id)
        return "", 200

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        health: dict[str, object] = {"ok": True}
        health["version"] = flask_app.config.get("APP_VERSION", "unknown")
        health["scheduler"] = "running" if services.scheduler.is_running else "stopped"
        health["bugsnag"] = "configured" if services.backend is not None else "disabled"
        if settings.bugsnag_organization_id:
            health["bugsnag_organization_id"] = settings.bugsnag_organization_id

        try:
            get_settings()
            health["config"] = "valid"
        except RuntimeError as exc:
            health["config"] = "invalid"
            health["config_error"] = str(exc)
            health["ok"] = False

        try:
            with session_scope() as session:
                session.execute(text("SELECT 1"))
            health["db"] = "up"
        except Exception as exc:
            health["db"] = "down"
            health["db_error"] = str(exc)
            health["ok"] = False

        status = 200 if health["ok"] else 503
        return jsonify(health), status

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000, debug=True)
