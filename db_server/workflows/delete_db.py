"""
Scheduled deletion of a temporary database: sleep for its TTL, then delete it.
One instance per resource id. Deleting something already gone or already claimed is a success.
A resource with a claim in flight is retried later, never deleted under the claim.
"""
import logging
import math
from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from db_server.config import CLAIM_LOCK_TIMEOUT_SECONDS
from db_server.models import OWNER_CLAIMED, OWNER_CLAIMING, OWNER_DELETED, WorkflowInstance
from db_server.provisioning import ProvisioningClient, get_provisioning_client
from db_server.resources import expire_stale_claim, get_owner_state, mark_deleted
from db_server.ttl import clamp_ttl_ms
from db_server.workflows.engine import WorkflowContext, WorkflowEngine

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "delete_db"

OUTCOME_SKIPPED_CLAIMED = "skipped_claimed"
OUTCOME_SKIPPED_DELETED = "skipped_deleted"


class ResourceBusyError(Exception):
    """A claim holds the resource; the delete step fails and is retried with backoff."""

    def __init__(self, resource_id: str):
        super().__init__(f"resource {resource_id} has a claim in progress")
        self.resource_id = resource_id


def schedule_deletion(
    db: Session,
    engine: WorkflowEngine,
    resource_id: str,
    ttl_ms: int | None,
    *,
    commit: bool = True,
) -> WorkflowInstance:
    return engine.create(
        db,
        WORKFLOW_NAME,
        resource_id,
        {"resource_id": resource_id, "ttl_ms": clamp_ttl_ms(ttl_ms)},
        commit=commit,
    )


def cancel_deletion(db: Session, engine: WorkflowEngine, resource_id: str) -> bool:
    return engine.cancel(db, WORKFLOW_NAME, resource_id)


def delete_resource(db: Session, client: ProvisioningClient, resource_id: str) -> dict[str, Any]:
    """
    Idempotent delete. Re-checks local ownership first; a claimed resource is never deleted.
    Raises ProvisioningError for failures worth retrying, ResourceBusyError while a claim is in flight.
    """
    owner_state = get_owner_state(db, resource_id)
    if owner_state == OWNER_CLAIMED:
        logger.info("resource %s was claimed, skipping deletion", resource_id)
        return {"resource_id": resource_id, "outcome": OUTCOME_SKIPPED_CLAIMED}
    if owner_state == OWNER_DELETED:
        return {"resource_id": resource_id, "outcome": OUTCOME_SKIPPED_DELETED}
    if owner_state == OWNER_CLAIMING and not expire_stale_claim(
        db, resource_id, timedelta(seconds=CLAIM_LOCK_TIMEOUT_SECONDS)
    ):
        raise ResourceBusyError(resource_id)

    outcome = client.delete_project(resource_id)
    if not mark_deleted(db, resource_id) and owner_state is not None:
        # A claim started while the delete call was in flight
        current = get_owner_state(db, resource_id)
        if current == OWNER_CLAIMING:
            raise ResourceBusyError(resource_id)
        if current == OWNER_CLAIMED:
            logger.warning("resource %s was claimed during deletion (%s)", resource_id, outcome)
            return {"resource_id": resource_id, "outcome": OUTCOME_SKIPPED_CLAIMED}
    logger.info("deleted project %s (%s)", resource_id, outcome)
    return {"resource_id": resource_id, "outcome": outcome}


def delete_db_workflow(ctx: WorkflowContext, params: dict[str, Any]) -> dict[str, Any]:
    resource_id = params.get("resource_id")
    if not resource_id:
        raise ValueError("No resource_id provided.")

    ttl_seconds = math.ceil(clamp_ttl_ms(params.get("ttl_ms")) / 1000)
    ctx.sleep("wait-ttl", ttl_seconds)

    client = get_provisioning_client()
    return ctx.do("delete-project", lambda: delete_resource(ctx.db, client, resource_id))
