"""
Resource ownership transitions.
temporary -> claiming -> claimed, claiming -> temporary (failed transfer), temporary -> deleted.
Transitions are conditional updates so a claim and a deletion racing each other cannot both win.
"""
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from db_server.models import OWNER_CLAIMED, OWNER_CLAIMING, OWNER_DELETED, OWNER_TEMPORARY, Resource

logger = logging.getLogger(__name__)


def record_resource(db: Session, resource_id: str, name: str, region: str, ttl_ms: int) -> Resource:
    """Add a temporary resource to the session; the caller commits."""
    resource = Resource(id=resource_id, name=name, region=region, ttl_ms=ttl_ms, owner_state=OWNER_TEMPORARY)
    db.add(resource)
    return resource


def _transition(db: Session, resource_id: str, from_states: tuple[str, ...], new_state: str, *criteria) -> bool:
    result = db.execute(
        update(Resource)
        .where(Resource.id == resource_id, Resource.owner_state.in_(from_states), *criteria)
        .values(owner_state=new_state, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    changed = result.rowcount == 1
    if changed:
        logger.info("resource %s -> %s", resource_id, new_state)
    return changed


def begin_claim(db: Session, resource_id: str) -> bool:
    """Lock a temporary resource for an ownership transfer. False if it is not temporary (or unknown)."""
    return _transition(db, resource_id, (OWNER_TEMPORARY,), OWNER_CLAIMING)


def release_claim(db: Session, resource_id: str) -> bool:
    """Transfer did not happen: the resource is temporary again and can be deleted."""
    return _transition(db, resource_id, (OWNER_CLAIMING,), OWNER_TEMPORARY)


def expire_stale_claim(db: Session, resource_id: str, older_than: timedelta) -> bool:
    """Release a claim lock whose holder never finished (crashed mid-transfer)."""
    cutoff = datetime.now(timezone.utc) - older_than
    released = _transition(db, resource_id, (OWNER_CLAIMING,), OWNER_TEMPORARY, Resource.updated_at <= cutoff)
    if released:
        logger.warning("stale claim lock on resource %s released", resource_id)
    return released


def mark_claimed(db: Session, resource_id: str) -> bool:
    """True if this call moved the resource to claimed."""
    return _transition(db, resource_id, (OWNER_CLAIMING, OWNER_TEMPORARY), OWNER_CLAIMED)


def mark_deleted(db: Session, resource_id: str) -> bool:
    """True if this call moved the resource to deleted. Only a temporary resource can be deleted."""
    return _transition(db, resource_id, (OWNER_TEMPORARY,), OWNER_DELETED)


def get_owner_state(db: Session, resource_id: str) -> str | None:
    """Current owner state, None for resources this service does not know about."""
    resource = db.get(Resource, resource_id, populate_existing=True)
    return resource.owner_state if resource is not None else None
