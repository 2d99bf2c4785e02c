"""HTTP client for the parts of the Bugsnag data access API the bridge uses."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from slack_bugsnag_bridge.config import DEFAULT_BUGSNAG_API_URL
from slack_bugsnag_bridge.identities import BugsnagIdentity

DEFAULT_TIMEOUT = 8.0

STATUS_OPERATIONS = {
    "fixed": "fix",
    "ignored": "ignore",
    "open": "open",
}


class BugsnagApiError(Exception):
    """Raised for non-2xx responses and transport failures talking to Bugsnag."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class _Resource(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Organization(_Resource):
    id: str
    name: str = ""
    slug: str = ""


class Project(_Resource):
    id: str
    name: str = ""
    organization_id: str = ""


class Collaborator(_Resource):
    id: str
    name: str = ""
    email: str = ""


class ErrorDetails(_Resource):
    id: str
    project_id: str = ""
    error_class: str = ""
    message: str = ""
    context: str = ""
    status: str = ""
    severity: str = ""
    events: int = 0
    events_last_24h: int = 0
    first_seen: str = ""
    last_seen: str = ""
    assignee_id: Optional[str] = None
    url: str = ""


class ErrorBackend(Protocol):
    """What the action handler and scheduler need from Bugsnag."""

    def get_error(self, project_id: str, error_id: str, *, timeout: float | None = None) -> ErrorDetails:
        ...

    def update_error_status(
        self, project_id: str, error_id: str, status: str, *, timeout: float | None = None
    ) -> None:
        ...

    def assign_error(
        self, project_id: str, error_id: str, collaborator: str, *, timeout: float | None = None
    ) -> None:
        ...


def best_assignee(identity: BugsnagIdentity) -> str:
    """Prefer the Bugsnag user id, fall back to the email."""

    return identity.user_id or identity.email


class BugsnagClient:
    """Bugsnag REST client authenticated with a personal auth token."""

    def __init__(
        self,
        *,
        token: str,
        base_url: str = DEFAULT_BUGSNAG_API_URL,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not token.strip():
            raise ValueError("A Bugsnag API token is required.")
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"token {token.strip()}",
                "X-Version": "2",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._log = structlog.get_logger().bind(component="bugsnag_client")

    def close(self) -> None:
        self._http.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        kwargs: Dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = self._http.request(method, endpoint, **kwargs)
        except httpx.HTTPError as exc:
            self._log.warning("bugsnag_request_failed", method=method, endpoint=endpoint, error=str(exc))
            raise BugsnagApiError(f"{method} {endpoint}: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            snippet = response.text[:200]
            self._log.warning(
                "bugsnag_request_rejected", method=method, endpoint=endpoint, status_code=response.status_code
            )
            raise BugsnagApiError(
                f"Bugsnag API {method} {endpoint} returned {response.status_code}: {snippet}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BugsnagApiError(f"{method} {endpoint}: invalid JSON response") from exc

    def list_organizations(self) -> List[Organization]:
        return [Organization.model_validate(item) for item in self._request("GET", "/user/organizations") or []]

    def list_projects(self, organization_id: str) -> List[Project]:
        data = self._request("GET", f"/organizations/{organization_id}/projects") or []
        return [Project.model_validate(item) for item in data]

    def list_collaborators(self, organization_id: str) -> List[Collaborator]:
        data = self._request("GET", f"/organizations/{organization_id}/collaborators") or []
        return [Collaborator.model_validate(item) for item in data]

    def get_error(self, project_id: str, error_id: str, *, timeout: float | None = None) -> ErrorDetails:
        data = self._request("GET", f"/projects/{project_id}/errors/{error_id}", timeout=timeout)
        if not isinstance(data, dict):
            raise BugsnagApiError(f"error {error_id} returned an unexpected body")
        return ErrorDetails.model_validate(data)

    def update_error_status(
        self, project_id: str, error_id: str, status: str, *, timeout: float | None = None
    ) -> None:
        """Move the error to ``fixed``, ``ignored`` or ``open``."""

        operation = STATUS_OPERATIONS.get(status)
        if operation is None:
            raise ValueError(f"Unsupported Bugsnag status: {status}")
        self._request(
            "PATCH",
            f"/projects/{project_id}/errors/{error_id}",
            json={"operation": operation},
            timeout=timeout,
        )

    def assign_error(
        self, project_id: str, error_id: str, collaborator: str, *, timeout: float | None = None
    ) -> None:
        self._request(
            "PATCH",
            f"/projects/{project_id}/errors/{error_id}",
            json={"assigned_collaborator_id": collaborator},
            timeout=timeout,
        )
