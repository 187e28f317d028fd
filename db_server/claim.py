"""
Claim flow: transfer a temporary database to the user's own account.
GET /claim starts the OAuth authorize redirect; GET /claim-callback exchanges the code,
validates the database and transfers it. Every outcome is a redirect to /success or /error.
"""
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db_server.analytics import (
    EVENT_CLAIM_FAILED,
    EVENT_CLAIM_SUCCESSFUL,
    EventCapture,
    get_event_capture,
    write_data_point,
)
from db_server.config import (
    CLAIM_BASE_URL,
    CLAIM_CLIENT_ID,
    CLAIM_SCOPE,
    CLAIM_VALIDATE_RESOURCE,
    IDP_URL,
    RATE_LIMIT_ROUTE_PER_WINDOW,
    RATE_LIMIT_WINDOW_SECONDS,
)
from db_server.database import get_db
from db_server.models import OWNER_CLAIMED, OWNER_DELETED
from db_server.oauth import (
    InvalidStateError,
    TokenExchangeError,
    build_authorize_url,
    exchange_code_for_token,
    issue_state,
    verify_state,
)
from db_server.pages import error_page, redirect_to_error, redirect_to_success
from db_server.provisioning import ProvisioningClient, ProvisioningError, get_provisioning_client
from db_server.rate_limit import build_route_key, get_rate_limiter
from db_server.resources import begin_claim, get_owner_state, mark_claimed, release_claim
from db_server.workflows.delete_db import cancel_deletion
from db_server.workflows.engine import WorkflowEngine, get_workflow_engine

logger = logging.getLogger(__name__)
router = APIRouter()

STATUS_PENDING = "pending"
STATUS_TOKEN_EXCHANGED = "tokenExchanged"
STATUS_VALIDATED = "validated"
STATUS_TRANSFERRED = "transferred"
STATUS_FAILED = "failed"

_PROGRESSION = [STATUS_PENDING, STATUS_TOKEN_EXCHANGED, STATUS_VALIDATED, STATUS_TRANSFERRED]


@dataclass
class ClaimAttempt:
    """One pass through the callback. Lives only for the request."""
    auth_code: str | None
    state: str | None
    resource_id: str | None
    access_token: str | None = None
    status: str = STATUS_PENDING
    error: str | None = None

    def advance(self, status: str) -> None:
        if self.status == STATUS_FAILED:
            raise ValueError("claim attempt already failed")
        if _PROGRESSION.index(status) <= _PROGRESSION.index(self.status):
            raise ValueError(f"cannot move claim attempt from {self.status} to {status}")
        self.status = status

    def fail(self, error: str) -> None:
        self.status = STATUS_FAILED
        self.error = error


def callback_redirect_uri(resource_id: str) -> str:
    return f"{CLAIM_BASE_URL}/claim-callback?{urlencode({'resourceId': resource_id})}"


def _extract_workspace_id(transfer_data: dict | None) -> str | None:
    if not isinstance(transfer_data, dict):
        return None
    data = transfer_data.get("data") if isinstance(transfer_data.get("data"), dict) else transfer_data
    workspace = data.get("workspace")
    if isinstance(workspace, dict) and workspace.get("id"):
        return str(workspace["id"])
    workspace_id = data.get("workspaceId") or data.get("workspace_id")
    return str(workspace_id) if workspace_id else None


def _request_context(request: Request) -> dict:
    return {"$current_url": str(request.url), "$user_agent": request.headers.get("user-agent")}


@router.get("/claim")
def claim_start(resourceId: str | None = None, projectID: str | None = None):
    """Redirect to the identity provider's authorize endpoint for this database."""
    resource_id = resourceId or projectID
    if not resource_id:
        return redirect_to_error(
            "Missing Resource ID",
            "Please open the claim link you received when the database was created.",
            "The resourceId parameter is required to claim your database.",
        )
    url = build_authorize_url(
        idp_url=IDP_URL,
        client_id=CLAIM_CLIENT_ID,
        redirect_uri=callback_redirect_uri(resource_id),
        scope=CLAIM_SCOPE,
        state=issue_state(resource_id),
    )
    return RedirectResponse(url=url, status_code=302)


@router.get("/claim-callback")
def claim_callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    resourceId: str | None = None,
    projectID: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    db: Session = Depends(get_db),
    client: ProvisioningClient = Depends(get_provisioning_client),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    capture: EventCapture = Depends(get_event_capture),
):
    attempt = ClaimAttempt(auth_code=code, state=state, resource_id=resourceId or projectID)
    try:
        return _run_claim(request, attempt, error, error_description, db, client, engine, capture)
    except Exception as e:
        logger.exception("claim callback failed for resource %s", attempt.resource_id)
        attempt.fail(str(e))
        return redirect_to_error(
            "Unexpected Error",
            "An unexpected error occurred. Please try again.",
            str(e),
        )


def _run_claim(
    request: Request,
    attempt: ClaimAttempt,
    idp_error: str | None,
    idp_error_description: str | None,
    db: Session,
    client: ProvisioningClient,
    engine: WorkflowEngine,
    capture: EventCapture,
):
    # 1. Local input checks; no network calls on any of these paths
    if not attempt.state:
        attempt.fail("missing state")
        return redirect_to_error(
            "Missing State Parameter",
            "The state parameter is missing. Please start the claim again.",
            "The state parameter is required for security purposes.",
        )
    if not attempt.resource_id:
        attempt.fail("missing resourceId")
        return redirect_to_error(
            "Missing Resource ID",
            "Please ensure you are accessing this page with a valid claim link.",
            "The resourceId parameter is required to claim your database.",
        )
    resource_id = attempt.resource_id
    if idp_error:
        attempt.fail(idp_error)
        return redirect_to_error(
            "Authorization Denied",
            "The database was not claimed because authorization was not granted.",
            idp_error_description or idp_error,
        )
    if not attempt.auth_code:
        attempt.fail("missing code")
        return redirect_to_error(
            "Missing Authorization Code",
            "Please start the claim again.",
            "The code parameter is required to complete the claim.",
        )
    try:
        verify_state(attempt.state, resource_id)
    except InvalidStateError as e:
        attempt.fail(str(e))
        return redirect_to_error(
            "Invalid State Parameter",
            "This claim link could not be verified. Please start the claim again.",
            str(e),
        )

    # 2. Per-route rate limit, before any OAuth call
    allowed, retry_after = get_rate_limiter().check_and_consume(
        build_route_key(request), RATE_LIMIT_ROUTE_PER_WINDOW, RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        attempt.fail("rate limited")
        response = error_page(
            "Rate Limited",
            "We're experiencing high demand. Please try again later.",
            status_code=429,
        )
        response.headers["Retry-After"] = str(retry_after)
        return response

    def fail(title: str, message: str, details: str, **properties):
        attempt.fail(details)
        capture.capture(
            EVENT_CLAIM_FAILED,
            {"project-id": resource_id, "error": details, **properties, **_request_context(request)},
        )
        return redirect_to_error(title, message, details)

    # 3. Authorization code -> user access token
    try:
        attempt.access_token = exchange_code_for_token(attempt.auth_code, callback_redirect_uri(resource_id))
    except TokenExchangeError as e:
        logger.warning("token exchange failed for resource %s: status=%s", resource_id, e.status)
        return fail(
            "Authentication Failed",
            "Failed to authenticate. Please try again.",
            str(e),
            status=e.status,
        )
    attempt.advance(STATUS_TOKEN_EXCHANGED)

    # 4. The database must still exist and still be in the temporary pool
    if CLAIM_VALIDATE_RESOURCE:
        if get_owner_state(db, resource_id) == OWNER_DELETED:
            return fail(
                "Database Expired",
                "This database has already been deleted and can no longer be claimed.",
                f"Resource {resource_id} was deleted after its time-to-live elapsed.",
            )
        try:
            client.get_project(resource_id)
        except ProvisioningError as e:
            return fail(
                "Project Not Found",
                "The project you're trying to claim doesn't exist or you don't have access to it.",
                str(e),
                status=e.status,
            )
    attempt.advance(STATUS_VALIDATED)

    # 5. Lock the resource against deletion, then transfer ownership
    locked = begin_claim(db, resource_id)
    if not locked:
        owner_state = get_owner_state(db, resource_id)
        if owner_state == OWNER_DELETED:
            return fail(
                "Database Expired",
                "This database has already been deleted and can no longer be claimed.",
                f"Resource {resource_id} was deleted after its time-to-live elapsed.",
            )
        if owner_state == OWNER_CLAIMED:
            return fail(
                "Already Claimed",
                "This database has already been claimed.",
                f"Resource {resource_id} is no longer temporary.",
            )
        if owner_state is not None:
            return fail(
                "Claim In Progress",
                "This database is being claimed in another window. Please wait and check your account.",
                f"Resource {resource_id} is locked by another claim.",
            )
        # Not recorded locally; the provisioning API is the only authority
        logger.warning("claiming resource %s with no local record", resource_id)

    try:
        result = client.transfer_project(resource_id, attempt.access_token)
    except Exception:
        if locked:
            release_claim(db, resource_id)
        raise
    if not result.success:
        logger.warning("transfer failed for resource %s: status=%s", resource_id, result.status)
        if locked:
            release_claim(db, resource_id)
        return fail(
            "Transfer Failed",
            "Failed to transfer the project. Please try again.",
            f"Status: {result.status}\nResponse: {result.error}",
            status=result.status,
        )
    attempt.advance(STATUS_TRANSFERRED)

    # 6. Success: the database left the temporary pool
    try:
        if not mark_claimed(db, resource_id) and locked:
            logger.error("claim lock on resource %s was lost before the transfer was recorded", resource_id)
        if cancel_deletion(db, engine, resource_id):
            logger.info("pending deletion cancelled for claimed resource %s", resource_id)
    except SQLAlchemyError:
        # The transfer already happened; the delete step's 404 handling covers the stale schedule
        db.rollback()
        logger.exception("could not record claim of resource %s locally", resource_id)
    capture.capture(EVENT_CLAIM_SUCCESSFUL, {"project-id": resource_id, **_request_context(request)})
    write_data_point(db, "claim_successful", resource_id=resource_id)
    return redirect_to_success(resource_id, _extract_workspace_id(result.data))
