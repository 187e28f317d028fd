"""
Stale sweep: list every project in the pool and delete those older than the maximum TTL.
Catches databases whose scheduled deletion was lost or failed. Runs once per interval slot.
"""
import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db_server.config import SWEEP_INTERVAL_SECONDS, SWEEP_MAX_PAGES, SWEEP_PAGE_SIZE
from db_server.models import WorkflowInstance
from db_server.provisioning import ProvisioningClient, get_provisioning_client
from db_server.ttl import MAX_TTL_MS
from db_server.workflows.delete_db import delete_resource
from db_server.workflows.engine import StepFailedError, StepPendingError, WorkflowContext, WorkflowEngine

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "delete_stale"


def sweep_slot_key(now: datetime, interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> str:
    return f"sweep-{int(now.timestamp()) // interval_seconds}"


def ensure_sweep(
    db: Session,
    engine: WorkflowEngine,
    now: datetime,
    interval_seconds: int = SWEEP_INTERVAL_SECONDS,
) -> WorkflowInstance | None:
    """Create this interval's sweep unless another worker already did."""
    key = sweep_slot_key(now, interval_seconds)
    if engine.get(db, WORKFLOW_NAME, key) is not None:
        return None
    try:
        return engine.create(db, WORKFLOW_NAME, key, {"scheduled_for": now.isoformat()})
    except IntegrityError:
        db.rollback()
        return None


def fetch_projects(
    client: ProvisioningClient,
    page_size: int = SWEEP_PAGE_SIZE,
    max_pages: int = SWEEP_MAX_PAGES,
) -> list[dict[str, Any]]:
    projects: list[dict[str, Any]] = []
    cursor = None
    for _ in range(max_pages):
        page = client.list_projects(limit=page_size, cursor=cursor)
        projects.extend(
            {"id": p.get("id"), "name": p.get("name"), "createdAt": p.get("createdAt")}
            for p in page.projects
            if p.get("id")
        )
        if not page.has_more or not page.next_cursor:
            break
        cursor = page.next_cursor
    else:
        logger.warning("stale sweep stopped after %d pages; remaining projects wait for the next sweep", max_pages)
    return projects


def _parse_created_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def find_stale(projects: list[dict[str, Any]], now: datetime, max_age_ms: int = MAX_TTL_MS) -> list[dict[str, Any]]:
    max_age = timedelta(milliseconds=max_age_ms)
    stale = []
    for project in projects:
        created_at = _parse_created_at(project.get("createdAt"))
        if created_at is None:
            logger.warning("project %s has unusable createdAt %r, skipping", project.get("id"), project.get("createdAt"))
            continue
        if now - created_at > max_age:
            stale.append(project)
    return stale


def delete_stale_workflow(ctx: WorkflowContext, params: dict[str, Any]) -> dict[str, Any]:
    client = get_provisioning_client()
    projects = ctx.do("fetch-projects", lambda: fetch_projects(client))
    stale = ctx.do("find-stale", lambda: find_stale(projects, ctx.now))
    logger.info("Total projects: %d, stale projects: %d", len(projects), len(stale))

    pending: list[StepPendingError] = []
    failed: list[str] = []
    for project in stale:
        project_id = project["id"]
        try:
            ctx.do(
                f"delete-project-{project_id}",
                lambda project_id=project_id: delete_resource(ctx.db, client, project_id),
            )
        except StepPendingError as e:
            pending.append(e)
        except StepFailedError:
            failed.append(project_id)

    if pending:
        raise min(pending, key=lambda e: e.wake_at)
    if failed:
        raise StepFailedError("delete-stale", f"could not delete stale projects: {', '.join(failed)}")
    logger.info("Finished deleting %d stale projects", len(stale))
    return {"total": len(projects), "stale": len(stale)}
