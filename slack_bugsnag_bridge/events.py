"""Parsing of Bugsnag webhook payloads into a normalised error event."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

STACKTRACE_MAX_FRAMES = 15


class PayloadError(ValueError):
    """Raised when a webhook body cannot be turned into an error event."""


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class StackFrame(_Payload):
    in_project: bool = Field(False, alias="inProject")
    line_number: Any = Field(None, alias="lineNumber")
    column_number: Any = Field(None, alias="columnNumber")
    file: str = ""
    method: str = ""


class ExceptionInfo(_Payload):
    error_class: str = Field("", alias="errorClass")
    message: str = ""
    stacktrace: List[StackFrame] = Field(default_factory=list)


class Collaborator(_Payload):
    id: str = ""
    name: str = ""
    email: str = ""


class AppInfo(_Payload):
    version: str = ""
    release_stage: str = Field("", alias="releaseStage")


class TriggerInfo(_Payload):
    type: str = ""
    message: str = ""
    rate: int | None = None
    state_change: str = Field("", alias="stateChange")


class ProjectInfo(_Payload):
    id: str = ""
    name: str = ""
    url: str = ""


class ErrorInfo(_Payload):
    id: str = ""
    error_id: str = Field("", alias="errorId")
    exception_class: str = Field("", alias="exceptionClass")
    message: str = ""
    context: str = ""
    received_at: str = Field("", alias="receivedAt")
    url: str = ""
    severity: str = ""
    status: str = ""
    unhandled: bool = False
    assigned_collaborator: Optional[Collaborator] = None
    app: Optional[AppInfo] = None
    exceptions: List[ExceptionInfo] = Field(default_factory=list)
    stack_trace: List[StackFrame] = Field(default_factory=list, alias="stackTrace")


class WebhookPayload(_Payload):
    trigger: TriggerInfo = Field(default_factory=TriggerInfo)
    error: Optional[ErrorInfo] = None
    project: Optional[ProjectInfo] = None


@dataclass(frozen=True)
class ErrorEvent:
    """Flattened view over a webhook payload used by routing and card rendering."""

    project_id: str
    error_id: str
    project_name: str = ""
    severity: str = ""
    environment: str = ""
    status: str = ""
    exception_class: str = ""
    message: str = ""
    context: str = ""
    error_url: str = ""
    app_version: str = ""
    received_at: str = ""
    unhandled: bool = False
    trigger_type: str = ""
    trigger_message: str = ""
    assignee: Optional[Collaborator] = None
    stacktrace: List[StackFrame] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: WebhookPayload) -> "ErrorEvent":
        error = payload.error or ErrorInfo()
        project = payload.project or ProjectInfo()
        app = error.app or AppInfo()

        frames: List[StackFrame] = []
        if error.exceptions and error.exceptions[0].stacktrace:
            frames = list(error.exceptions[0].stacktrace)
        elif error.stack_trace:
            frames = list(error.stack_trace)

        return cls(
            project_id=project.id.strip(),
            error_id=(error.error_id or error.id).strip(),
            project_name=project.name,
            severity=error.severity,
            environment=app.release_stage,
            status=error.status,
            exception_class=error.exception_class,
            message=error.message,
            context=error.context,
            error_url=error.url,
            app_version=app.version,
            received_at=error.received_at,
            unhandled=error.unhandled,
            trigger_type=payload.trigger.type,
            trigger_message=payload.trigger.message,
            assignee=error.assigned_collaborator,
            stacktrace=frames,
        )


def parse_webhook_body(raw: bytes | str) -> ErrorEvent:
    """Decode a webhook body, raising ``PayloadError`` for anything unusable."""

    try:
        data = json.loads(raw or b"")
    except ValueError as exc:
        raise PayloadError("invalid JSON payload") from exc

    if not isinstance(data, dict):
        raise PayloadError("payload must be a JSON object")

    try:
        payload = WebhookPayload.model_validate(data)
    except ValidationError as exc:
        raise PayloadError(f"invalid payload: {exc.errors()[0]['msg']}") from exc

    event = ErrorEvent.from_payload(payload)
    if not event.project_id or not event.error_id:
        raise PayloadError("missing project or error id")
    return event


def format_stacktrace(frames: List[StackFrame], max_frames: int = STACKTRACE_MAX_FRAMES) -> str:
    """Render frames as a code block, marking in-project frames with an arrow."""

    if not frames:
        return ""

    limit = len(frames)
    if max_frames > 0:
        limit = min(limit, max_frames)

    lines = ["*Stacktrace:*", "```"]
    for frame in frames[:limit]:
        prefix = "→ " if frame.in_project else "  "
        location = frame.file or "<unknown>"
        if frame.line_number is not None:
            location = f"{location}:{frame.line_number}"
        lines.append(f"{prefix}{location} in {frame.method or '<anonymous>'}")

    if len(frames) > limit:
        lines.append(f"  ... and {len(frames) - limit} more frames")
    lines.append("```")
    return "\n".join(lines)
