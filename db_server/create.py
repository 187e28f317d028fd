"""
Database creation: POST /create, GET /regions, GET /resources/{id}.
Every created database gets its deletion scheduled in the same local transaction.
"""
import logging
from datetime import timedelta
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db_server.analytics import (
    EVENT_DATABASE_CREATED,
    EVENT_DATABASE_CREATION_FAILED,
    EventCapture,
    get_event_capture,
    write_data_point,
)
from db_server.config import (
    CLAIM_BASE_URL,
    RATE_LIMIT_CREATE_GLOBAL_PER_WINDOW,
    RATE_LIMIT_ROUTE_PER_WINDOW,
    RATE_LIMIT_WINDOW_SECONDS,
)
from db_server.database import get_db
from db_server.models import Resource, as_utc
from db_server.provisioning import (
    ERROR_RATE_LIMIT,
    ProvisionError,
    ProvisioningClient,
    ProvisioningError,
    ResourceHandle,
    get_provisioning_client,
)
from db_server.rate_limit import GLOBAL_CREATE_KEY, build_route_key, get_rate_limiter
from db_server.resources import record_resource
from db_server.ttl import MAX_TTL_MS, MIN_TTL_MS, clamp_ttl_ms, is_ttl_ms_in_range, parse_ttl, parse_ttl_ms_input
from db_server.workflows.delete_db import WORKFLOW_NAME as DELETE_WORKFLOW, schedule_deletion
from db_server.workflows.engine import WorkflowEngine, get_workflow_engine

logger = logging.getLogger(__name__)
router = APIRouter()


class CreateDatabaseRequest(BaseModel):
    region: str | None = None
    name: str | None = None
    ttlMs: float | None = None
    ttl: str | None = None  # "30m", "1h", ...
    utm_source: str | None = None


def claim_url(resource_id: str, utm_source: str | None = None) -> str:
    params = {"resourceId": resource_id}
    if utm_source:
        params["utm_source"] = utm_source
    return f"{CLAIM_BASE_URL}/claim?{urlencode(params)}"


def _rate_limited(retry_after: int | None, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": ERROR_RATE_LIMIT, "message": message, "retryAfter": retry_after},
        headers={"Retry-After": str(retry_after or RATE_LIMIT_WINDOW_SECONDS)},
    )


def _check_rate_limits(request: Request, *, global_limit: bool) -> JSONResponse | None:
    limiter = get_rate_limiter()
    allowed, retry_after = limiter.check_and_consume(
        build_route_key(request), RATE_LIMIT_ROUTE_PER_WINDOW, RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        return _rate_limited(retry_after, f"Rate limit exceeded for {request.url.path}. Please try again later.")
    if global_limit:
        allowed, retry_after = limiter.check_and_consume(
            GLOBAL_CREATE_KEY, RATE_LIMIT_CREATE_GLOBAL_PER_WINDOW, RATE_LIMIT_WINDOW_SECONDS
        )
        if not allowed:
            return _rate_limited(
                retry_after, "We're experiencing a high volume of requests. Please try again later."
            )
    return None


def _requested_ttl_ms(body: CreateDatabaseRequest) -> int | None:
    """Explicit TTL from the body, None when absent. Out of range raises 400."""
    if body.ttl is not None:
        ttl_ms = parse_ttl(body.ttl)
        if ttl_ms is None:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "invalid_ttl",
                    "message": "ttl must be minutes or hours like 30m or 1h, between 30m and 24h.",
                },
            )
        return ttl_ms
    if body.ttlMs is not None:
        ttl_ms = parse_ttl_ms_input(body.ttlMs)
        if ttl_ms is None or not is_ttl_ms_in_range(ttl_ms):
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "invalid_ttl",
                    "message": f"ttlMs must be between {MIN_TTL_MS} and {MAX_TTL_MS}.",
                },
            )
        return ttl_ms
    return None


def provision_resource(
    db: Session,
    client: ProvisioningClient,
    engine: WorkflowEngine,
    region: str,
    name: str,
    ttl_ms: int | None,
) -> tuple[ResourceHandle | ProvisionError, Resource | None]:
    """
    Create the remote project, then record it and schedule its deletion in one transaction.
    If the local transaction fails the remote project is deleted again.
    """
    result = client.create_project(region, name)
    if isinstance(result, ProvisionError):
        return result, None

    effective_ttl = clamp_ttl_ms(ttl_ms)
    try:
        resource = record_resource(db, result.id, result.name, result.region, effective_ttl)
        schedule_deletion(db, engine, result.id, effective_ttl, commit=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("could not schedule deletion for project %s, deleting it", result.id)
        try:
            client.delete_project(result.id)
        except ProvisioningError:
            logger.error("project %s exists without a scheduled deletion; the stale sweep will remove it", result.id)
        raise
    return result, resource


@router.post("/create")
def create_database(
    request: Request,
    body: CreateDatabaseRequest,
    db: Session = Depends(get_db),
    client: ProvisioningClient = Depends(get_provisioning_client),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    capture: EventCapture = Depends(get_event_capture),
):
    """Create a temporary database. It is deleted after its TTL unless claimed."""
    limited = _check_rate_limits(request, global_limit=True)
    if limited is not None:
        capture.capture(EVENT_DATABASE_CREATION_FAILED, {"region": body.region, "error-type": "rate_limit"})
        return limited

    if not body.region or not body.name:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_request", "message": "Missing region or name in request body"},
        )
    ttl_ms = _requested_ttl_ms(body)

    result, resource = provision_resource(db, client, engine, body.region, body.name, ttl_ms)
    if isinstance(result, ProvisionError):
        capture.capture(
            EVENT_DATABASE_CREATION_FAILED,
            {"region": body.region, "error-type": result.error, "status-code": result.status},
        )
        write_data_point(db, "database_creation_failed", region=body.region, error=result.error)
        if result.error == ERROR_RATE_LIMIT:
            return _rate_limited(None, result.message)
        return JSONResponse(
            status_code=500,
            content={
                "error": result.error,
                "message": result.message,
                "details": result.details if result.details is not None else result.raw,
                "status": result.status,
            },
        )

    capture.capture(
        EVENT_DATABASE_CREATED,
        {"project-id": result.id, "region": result.region, "ttl-ms": resource.ttl_ms, "utm_source": body.utm_source},
    )
    write_data_point(db, "database_created", resource_id=result.id, region=result.region)
    created_at = as_utc(resource.created_at)
    return {
        "id": result.id,
        "connectionString": result.connection_string,
        "region": result.region,
        "name": result.name,
        "ttlMs": resource.ttl_ms,
        "deletionAt": (created_at + timedelta(milliseconds=resource.ttl_ms)).isoformat(),
        "claimUrl": claim_url(result.id, body.utm_source),
    }


@router.get("/regions")
def list_regions(request: Request, client: ProvisioningClient = Depends(get_provisioning_client)):
    limited = _check_rate_limits(request, global_limit=False)
    if limited is not None:
        return limited
    status, payload = client.list_regions()
    return JSONResponse(status_code=status, content=payload)


@router.get("/resources/{resource_id}")
def get_resource(
    resource_id: str,
    db: Session = Depends(get_db),
    engine: WorkflowEngine = Depends(get_workflow_engine),
):
    """Local lifecycle state and deletion schedule of a database created here."""
    resource = db.get(Resource, resource_id)
    if resource is None:
        raise HTTPException(status_code=404, detail={"error": "not_found", "message": "Unknown resource"})
    instance = engine.get(db, DELETE_WORKFLOW, resource_id)
    created_at = as_utc(resource.created_at)
    return {
        "id": resource.id,
        "name": resource.name,
        "region": resource.region,
        "ownerState": resource.owner_state,
        "ttlMs": resource.ttl_ms,
        "createdAt": created_at.isoformat(),
        "deletionAt": (created_at + timedelta(milliseconds=resource.ttl_ms)).isoformat(),
        "deletion": None
        if instance is None
        else {
            "workflowId": instance.id,
            "status": instance.status,
            "ttlMs": instance.get_params().get("ttl_ms"),
            "wakeAt": as_utc(instance.wake_at).isoformat() if instance.wake_at else None,
            "error": instance.error,
        },
    }
