"""
Client for the remote provisioning API: create, list, delete and transfer projects.
Upstream responses come in two shapes (project bundle and flat database array); they are
normalized into ResourceHandle here and never passed further raw.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

from db_server.config import INTEGRATION_TOKEN, PROVISIONING_API_URL, PROVISIONING_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

ERROR_RATE_LIMIT = "rate_limit_exceeded"
ERROR_INVALID_RESPONSE = "invalid_response"
ERROR_API = "api_error"

DELETE_DELETED = "deleted"
DELETE_ALREADY_GONE = "already_gone"

# Delete against a project that no longer exists (or left the pool) is a success
_DELETE_IDEMPOTENT_STATUSES = {404, 410}


class ProvisioningError(Exception):
    """Non-2xx or transport failure from the provisioning API."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status = status
        self.body = body


@dataclass
class ResourceHandle:
    id: str
    connection_string: str | None
    region: str
    name: str
    database_id: str | None = None


@dataclass
class ProvisionError:
    error: str  # rate_limit_exceeded | invalid_response | api_error
    message: str
    status: int | None = None
    raw: str | None = None
    details: Any = None


@dataclass
class TransferResult:
    success: bool
    status: int | None
    data: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class ProjectPage:
    projects: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


def _direct_connection_string(direct: dict[str, Any] | None) -> str | None:
    if not direct or not direct.get("host"):
        return None
    user = quote(str(direct.get("user") or ""), safe="")
    password = quote(str(direct.get("pass") or ""), safe="")
    port = f":{direct['port']}" if direct.get("port") else ""
    database = direct.get("database") or "postgres"
    return f"postgresql://{user}:{password}@{direct['host']}{port}/{database}?sslmode=require"


def normalize_project_response(payload: dict[str, Any], region: str, name: str) -> ResourceHandle:
    """
    Canonical handle from either upstream shape:
    bundle {"data": {"id", "database": {...}}} or flat {"id", "databases": [{...}]}.
    """
    bundle = payload.get("data")
    if isinstance(bundle, dict):
        project_id = bundle.get("id") or ""
        database = bundle.get("database") or {}
        api_keys = database.get("apiKeys") or []
        direct = api_keys[0].get("directConnection") if api_keys else database.get("directConnection")
    else:
        project_id = payload.get("id") or ""
        databases = payload.get("databases") or []
        database = databases[0] if databases else {}
        api_keys = database.get("apiKeys") or []
        direct = api_keys[0].get("ppgDirectConnection") if api_keys else None

    connection_string = (
        _direct_connection_string(direct)
        or database.get("connectionString")
        or payload.get("connectionString")
    )
    region_info = database.get("region")
    if isinstance(region_info, dict):
        region = region_info.get("id") or region
    elif isinstance(region_info, str) and region_info:
        region = region_info
    return ResourceHandle(
        id=str(project_id),
        connection_string=connection_string,
        region=region,
        name=database.get("name") or name,
        database_id=database.get("id"),
    )


class ProvisioningClient:
    """Provisioning API authenticated with the service integration token."""

    def __init__(
        self,
        base_url: str = PROVISIONING_API_URL,
        token: str = INTEGRATION_TOKEN,
        timeout: float = PROVISIONING_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def create_project(self, region: str, name: str) -> ResourceHandle | ProvisionError:
        """Create a project. 429 is returned as an error, never retried here."""
        try:
            r = self._client.post("/projects", json={"region": region, "name": name})
        except httpx.HTTPError as e:
            logger.warning("create project request failed: %s", e)
            return ProvisionError(ERROR_API, f"Provisioning API unreachable: {e}")

        if r.status_code == 429:
            return ProvisionError(
                ERROR_RATE_LIMIT,
                "We're experiencing a high volume of requests. Please try again later.",
                status=429,
            )

        raw = r.text
        try:
            payload = json.loads(raw)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return ProvisionError(
                ERROR_INVALID_RESPONSE,
                "Unexpected response from provisioning API.",
                status=r.status_code,
                raw=raw,
            )

        error = payload.get("error")
        if error or r.status_code >= 400:
            error_obj = error if isinstance(error, dict) else {"message": error or raw}
            return ProvisionError(
                ERROR_API,
                error_obj.get("message") or "Unknown error",
                status=error_obj.get("status") or r.status_code,
                details=error_obj,
            )

        handle = normalize_project_response(payload, region, name)
        if not handle.id:
            return ProvisionError(
                ERROR_INVALID_RESPONSE,
                "Provisioning API response has no project id.",
                status=r.status_code,
                raw=raw,
            )
        return handle

    def list_regions(self) -> tuple[int, Any]:
        """Pass-through of GET /regions/postgres: (status, parsed body or raw text)."""
        try:
            r = self._client.get("/regions/postgres")
        except httpx.HTTPError as e:
            logger.warning("list regions request failed: %s", e)
            return 502, {"error": ERROR_API, "message": f"Provisioning API unreachable: {e}"}
        try:
            return r.status_code, r.json()
        except ValueError:
            return r.status_code, r.text

    def get_project(self, project_id: str) -> dict[str, Any]:
        try:
            r = self._client.get(f"/projects/{quote(project_id, safe='')}")
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Project check request failed: {e}") from e
        if r.status_code != 200:
            raise ProvisioningError(
                f"Project check failed - Status: {r.status_code}, Response: {r.text}",
                status=r.status_code,
                body=r.text,
            )
        return r.json()

    def list_projects(self, limit: int, cursor: str | None = None) -> ProjectPage:
        params: dict[str, Any] = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        try:
            r = self._client.get("/projects", params=params)
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Failed to fetch projects: {e}") from e
        if r.status_code != 200:
            raise ProvisioningError(
                f"Failed to fetch projects: {r.status_code}", status=r.status_code, body=r.text
            )
        data = r.json()
        pagination = data.get("pagination") or {}
        return ProjectPage(
            projects=list(data.get("data") or []),
            next_cursor=pagination.get("nextCursor"),
            has_more=bool(pagination.get("hasMore")),
        )

    def delete_project(self, project_id: str) -> str:
        """
        Delete a project. Returns "deleted" or "already_gone" (404/410).
        Raises ProvisioningError on any other failure so the caller can retry.
        """
        try:
            r = self._client.delete(f"/projects/{quote(project_id, safe='')}")
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Delete request for project {project_id} failed: {e}") from e
        if r.is_success:
            return DELETE_DELETED
        if r.status_code in _DELETE_IDEMPOTENT_STATUSES:
            logger.info("project %s already gone (status %s)", project_id, r.status_code)
            return DELETE_ALREADY_GONE
        raise ProvisioningError(
            f"Failed to delete project {project_id}: {r.status_code} {r.reason_phrase}",
            status=r.status_code,
            body=r.text,
        )

    def transfer_project(self, project_id: str, recipient_access_token: str) -> TransferResult:
        """Transfer ownership to the account behind recipient_access_token."""
        try:
            r = self._client.post(
                f"/projects/{quote(project_id, safe='')}/transfer",
                json={"recipientAccessToken": recipient_access_token},
            )
        except httpx.HTTPError as e:
            return TransferResult(success=False, status=None, error=f"Transfer request failed: {e}")
        if not r.is_success:
            return TransferResult(success=False, status=r.status_code, error=r.text)
        data = None
        if r.text:
            try:
                data = r.json()
            except ValueError:
                logger.info("transfer response for %s is not JSON", project_id)
                data = {"rawResponse": r.text}
        return TransferResult(success=True, status=r.status_code, data=data)


_client: ProvisioningClient | None = None


def get_provisioning_client() -> ProvisioningClient:
    """Dependency: shared provisioning client."""
    global _client
    if _client is None:
        _client = ProvisioningClient()
    return _client
