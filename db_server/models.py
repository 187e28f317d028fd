"""
SQLAlchemy models for the database service: provisioned resources, durable workflow state,
and the analytics dataset.
"""
import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

OWNER_TEMPORARY = "temporary"
# Transfer in flight; deletion waits until the claim finishes or its lock goes stale
OWNER_CLAIMING = "claiming"
OWNER_CLAIMED = "claimed"
OWNER_DELETED = "deleted"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on the way back; all stored times are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class Resource(Base):
    """A provisioned temporary database (project at the provisioning API)."""
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str] = mapped_column(String(64), nullable=False)
    ttl_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    # temporary | claiming | claimed | deleted
    owner_state: Mapped[str] = mapped_column(String(16), nullable=False, default=OWNER_TEMPORARY, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)


class WorkflowInstance(Base):
    __tablename__ = "workflow_instances"
    __table_args__ = (UniqueConstraint("workflow", "instance_key", name="uq_workflow_instance_key"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # Resource id for deletions, interval slot for sweeps
    instance_key: Mapped[str] = mapped_column(String(255), nullable=False)
    params: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON object
    # scheduled | sleeping | running | retrying | done | failed | cancelled
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    wake_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Identifies the runner holding the lease; its writes are discarded once another runner takes over
    lease_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, onupdate=_utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep", back_populates="instance", cascade="all"
    )

    def get_params(self) -> dict[str, Any]:
        return json.loads(self.params or "{}")


class WorkflowStep(Base):
    """Checkpoint for one named step of a workflow instance."""
    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("instance_id", "name", name="uq_workflow_step_name"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(ForeignKey("workflow_instances.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # do | sleep
    # pending | completed | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    # Sleep deadline, or next retry time for a pending step
    wake_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    instance: Mapped["WorkflowInstance"] = relationship("WorkflowInstance", back_populates="steps")


class AnalyticsDataPoint(Base):
    """Analytics dataset row. Never stores tokens or connection strings."""
    __tablename__ = "analytics_data_points"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    event: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    index: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    properties: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON
