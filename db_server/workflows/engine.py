"""
Durable workflow engine backed by the service database.

A workflow is a plain function run(ctx, params). Each named step is checkpointed in
workflow_steps, so when an instance is re-run (after a sleep, a retry, or a process restart)
completed steps return their stored result instead of executing again. Sleeps store their
deadline; a worker re-runs the instance once it is due. Steps execute at least once.
Each run holds a lease token; a runner whose lease was taken over cannot write the instance state.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db_server.config import (
    WORKFLOW_BATCH_SIZE,
    WORKFLOW_LEASE_SECONDS,
    WORKFLOW_RETRY_DELAY_SECONDS,
    WORKFLOW_STEP_RETRIES,
)
from db_server.database import SessionLocal
from db_server.models import WorkflowInstance, WorkflowStep, as_utc

logger = logging.getLogger(__name__)

STATUS_SCHEDULED = "scheduled"
STATUS_SLEEPING = "sleeping"
STATUS_RUNNING = "running"
STATUS_RETRYING = "retrying"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

# Waiting for the runner; can be picked up once wake_at has passed
ACTIVE_STATUSES = (STATUS_SCHEDULED, STATUS_SLEEPING, STATUS_RETRYING)
TERMINAL_STATUSES = (STATUS_DONE, STATUS_FAILED, STATUS_CANCELLED)

STEP_PENDING = "pending"
STEP_COMPLETED = "completed"
STEP_FAILED = "failed"

KIND_DO = "do"
KIND_SLEEP = "sleep"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowSuspended(Exception):
    """Raised inside a workflow to park the instance until wake_at."""

    def __init__(self, wake_at: datetime, reason: str):
        super().__init__(reason)
        self.wake_at = wake_at


class StepPendingError(WorkflowSuspended):
    """A step failed and has a retry scheduled at wake_at."""

    def __init__(self, wake_at: datetime, step: str, error: str):
        super().__init__(wake_at, f"step {step} failed, retry at {wake_at.isoformat()}: {error}")
        self.step = step
        self.error = error


class LeaseLostError(Exception):
    """Another runner took over the instance; this run must stop without writing."""


class StepFailedError(Exception):
    """A step exhausted its retries."""

    def __init__(self, step: str, error: str):
        super().__init__(f"step {step} failed permanently: {error}")
        self.step = step
        self.error = error


@dataclass
class RetryPolicy:
    limit: int = WORKFLOW_STEP_RETRIES  # retries after the first attempt
    delay_seconds: int = WORKFLOW_RETRY_DELAY_SECONDS
    backoff: str = "exponential"  # exponential | linear | constant

    def delay_for(self, failed_attempts: int) -> timedelta:
        n = max(1, failed_attempts)
        if self.backoff == "exponential":
            seconds = self.delay_seconds * (2 ** (n - 1))
        elif self.backoff == "linear":
            seconds = self.delay_seconds * n
        else:
            seconds = self.delay_seconds
        return timedelta(seconds=seconds)


WorkflowFn = Callable[["WorkflowContext", dict[str, Any]], Any]


class WorkflowContext:
    """Step API handed to a running workflow. Bound to one instance and one run."""

    def __init__(
        self,
        db: Session,
        instance: WorkflowInstance,
        now: datetime,
        retry: RetryPolicy,
        renew_lease: Callable[[], bool] | None = None,
    ):
        self.db = db
        self.instance = instance
        self.now = now
        self._retry = retry
        self._renew_lease = renew_lease
        self._steps = {s.name: s for s in instance.steps}

    @property
    def instance_id(self) -> str:
        return self.instance.id

    def _new_step(self, name: str, kind: str) -> WorkflowStep:
        step = WorkflowStep(instance_id=self.instance.id, name=name, kind=kind, status=STEP_PENDING, attempts=0)
        self.db.add(step)
        self._steps[name] = step
        return step

    def sleep(self, name: str, seconds: float) -> None:
        """Durable sleep: the deadline is fixed the first time this step is reached."""
        step = self._steps.get(name)
        if step is None:
            step = self._new_step(name, KIND_SLEEP)
            step.wake_at = self.now + timedelta(seconds=max(0, seconds))
            self.db.commit()
        if step.status == STEP_COMPLETED:
            return
        wake_at = as_utc(step.wake_at)
        if wake_at is not None and wake_at > self.now:
            raise WorkflowSuspended(wake_at, f"sleep {name} until {wake_at.isoformat()}")
        step.status = STEP_COMPLETED
        step.completed_at = self.now
        self.db.commit()

    def do(self, name: str, fn: Callable[[], Any], retry: RetryPolicy | None = None) -> Any:
        """
        Run fn once per instance and checkpoint its JSON-serializable result.
        Failures are retried with backoff on later runs; exhaustion raises StepFailedError.
        """
        step = self._steps.get(name)
        if step is not None:
            if step.status == STEP_COMPLETED:
                return json.loads(step.result) if step.result is not None else None
            if step.status == STEP_FAILED:
                raise StepFailedError(name, step.error or "")
            wake_at = as_utc(step.wake_at)
            if wake_at is not None and wake_at > self.now:
                raise StepPendingError(wake_at, name, step.error or "")

        # Heartbeat before each step that does real work
        if self._renew_lease is not None and not self._renew_lease():
            raise LeaseLostError(f"lease on workflow {self.instance.id} lost before step {name}")
        if step is None:
            step = self._new_step(name, KIND_DO)

        policy = retry or self._retry
        try:
            result = fn()
        except Exception as e:
            # Uncommitted writes of the failed attempt are discarded
            self.db.rollback()
            if step not in self.db:
                self.db.add(step)
            step.attempts += 1
            step.error = str(e)
            if step.attempts > policy.limit:
                step.status = STEP_FAILED
                step.wake_at = None
                self.db.commit()
                raise StepFailedError(name, str(e)) from e
            step.wake_at = self.now + policy.delay_for(step.attempts)
            self.db.commit()
            logger.warning(
                "workflow %s step %s attempt %d failed, retrying at %s: %s",
                self.instance.id,
                name,
                step.attempts,
                step.wake_at.isoformat(),
                e,
            )
            raise StepPendingError(step.wake_at, name, str(e)) from e

        step.attempts += 1
        step.status = STEP_COMPLETED
        step.result = json.dumps(result)
        step.error = None
        step.wake_at = None
        step.completed_at = self.now
        self.db.commit()
        return result


class WorkflowEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        retry: RetryPolicy | None = None,
        lease_seconds: int = WORKFLOW_LEASE_SECONDS,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._session_factory = session_factory
        self._retry = retry or RetryPolicy()
        self._lease = timedelta(seconds=lease_seconds)
        self._clock = clock
        self._workflows: dict[str, WorkflowFn] = {}

    def register(self, name: str, fn: WorkflowFn) -> None:
        self._workflows[name] = fn

    @property
    def workflows(self) -> list[str]:
        return sorted(self._workflows)

    def create(
        self,
        db: Session,
        workflow: str,
        instance_key: str,
        params: dict[str, Any],
        *,
        commit: bool = True,
    ) -> WorkflowInstance:
        """Enqueue an instance. (workflow, instance_key) is unique; a duplicate raises IntegrityError."""
        if workflow not in self._workflows:
            raise ValueError(f"Unknown workflow: {workflow}")
        instance = WorkflowInstance(
            id=uuid.uuid4().hex,
            workflow=workflow,
            instance_key=instance_key,
            params=json.dumps(params),
            status=STATUS_SCHEDULED,
        )
        db.add(instance)
        if commit:
            db.commit()
        else:
            db.flush()
        logger.info("workflow %s scheduled: key=%s id=%s", workflow, instance_key, instance.id)
        return instance

    def get(self, db: Session, workflow: str, instance_key: str) -> WorkflowInstance | None:
        return db.execute(
            select(WorkflowInstance).where(
                WorkflowInstance.workflow == workflow,
                WorkflowInstance.instance_key == instance_key,
            )
        ).scalar_one_or_none()

    def cancel(self, db: Session, workflow: str, instance_key: str) -> bool:
        """Cancel a waiting instance. A running instance is left alone."""
        now = self._clock()
        result = db.execute(
            update(WorkflowInstance)
            .where(
                WorkflowInstance.workflow == workflow,
                WorkflowInstance.instance_key == instance_key,
                WorkflowInstance.status.in_(ACTIVE_STATUSES),
            )
            .values(status=STATUS_CANCELLED, completed_at=now, wake_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        cancelled = result.rowcount == 1
        if cancelled:
            logger.info("workflow %s cancelled: key=%s", workflow, instance_key)
        return cancelled

    def _due_clause(self, now: datetime):
        return or_(
            and_(
                WorkflowInstance.status.in_(ACTIVE_STATUSES),
                or_(WorkflowInstance.wake_at.is_(None), WorkflowInstance.wake_at <= now),
            ),
            # Lease ran out: the runner that held it died mid-run
            and_(
                WorkflowInstance.status == STATUS_RUNNING,
                WorkflowInstance.lease_expires_at <= now,
            ),
        )

    def _acquire(self, db: Session, instance_id: str, now: datetime) -> str | None:
        """Take the lease. Returns the token that fences this run, None if another runner has it."""
        token = uuid.uuid4().hex
        result = db.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == instance_id, self._due_clause(now))
            .values(status=STATUS_RUNNING, lease_token=token, lease_expires_at=now + self._lease, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return token if result.rowcount == 1 else None

    def run_due(self, now: datetime | None = None, limit: int = WORKFLOW_BATCH_SIZE) -> int:
        """Run every instance that is due. Returns the number of instances run."""
        now = now or self._clock()
        db = self._session_factory()
        try:
            ids = db.execute(
                select(WorkflowInstance.id)
                .where(self._due_clause(now))
                .order_by(WorkflowInstance.wake_at, WorkflowInstance.created_at)
                .limit(limit)
            ).scalars().all()
            ran = 0
            for instance_id in ids:
                token = self._acquire(db, instance_id, now)
                if token is not None:
                    self._run(db, instance_id, now, token)
                    ran += 1
            return ran
        finally:
            db.close()

    def run_instance(self, instance_id: str, now: datetime | None = None) -> str | None:
        """Run one instance if it is due. Returns its status afterwards, None if not found."""
        now = now or self._clock()
        db = self._session_factory()
        try:
            token = self._acquire(db, instance_id, now)
            if token is not None:
                self._run(db, instance_id, now, token)
            instance = db.get(WorkflowInstance, instance_id, populate_existing=True)
            return instance.status if instance is not None else None
        finally:
            db.close()

    def _renew(self, db: Session, instance_id: str, token: str, now: datetime) -> bool:
        # The run's now is logical time; never let the lease end earlier than it was granted
        expires = max(now, self._clock()) + self._lease
        result = db.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == instance_id, WorkflowInstance.lease_token == token)
            .values(lease_expires_at=expires)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _run(self, db: Session, instance_id: str, now: datetime, token: str) -> None:
        instance = db.get(WorkflowInstance, instance_id, populate_existing=True)
        workflow, key = instance.workflow, instance.instance_key
        fn = self._workflows.get(workflow)
        if fn is None:
            self._finish(db, instance_id, token, STATUS_FAILED, now, error=f"Unknown workflow: {workflow}")
            logger.error("workflow %s has no registered implementation (id=%s)", workflow, instance_id)
            return

        ctx = WorkflowContext(db, instance, now, self._retry, lambda: self._renew(db, instance_id, token, now))
        try:
            fn(ctx, instance.get_params())
        except StepPendingError as e:
            self._park(db, instance_id, token, STATUS_RETRYING, e.wake_at, now, error=str(e))
        except WorkflowSuspended as e:
            self._park(db, instance_id, token, STATUS_SLEEPING, e.wake_at, now)
        except StepFailedError as e:
            self._finish(db, instance_id, token, STATUS_FAILED, now, error=str(e))
            logger.error("workflow %s failed: key=%s id=%s: %s", workflow, key, instance_id, e)
        except LeaseLostError as e:
            db.rollback()
            logger.warning("workflow %s stopped: key=%s id=%s: %s", workflow, key, instance_id, e)
        except IntegrityError as e:
            # Another runner checkpointed the same step; replay from the stored checkpoints
            db.rollback()
            self._park(db, instance_id, token, STATUS_RETRYING, now, now, error=f"step checkpoint conflict: {e.orig}")
            logger.warning("workflow %s step checkpoint conflict: key=%s id=%s", workflow, key, instance_id)
        except Exception as e:
            db.rollback()
            self._finish(db, instance_id, token, STATUS_FAILED, now, error=f"{type(e).__name__}: {e}")
            logger.exception("workflow %s crashed: key=%s id=%s", workflow, key, instance_id)
        else:
            if self._finish(db, instance_id, token, STATUS_DONE, now):
                logger.info("workflow %s done: key=%s id=%s", workflow, key, instance_id)

    def _release(self, db: Session, instance_id: str, token: str, now: datetime, **values) -> bool:
        """Write the outcome of a run and drop the lease, only if this run still holds it."""
        result = db.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == instance_id, WorkflowInstance.lease_token == token)
            .values(lease_token=None, lease_expires_at=None, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount != 1:
            logger.warning("workflow %s lease lost; discarding %s", instance_id, values.get("status"))
            return False
        return True

    def _park(
        self,
        db: Session,
        instance_id: str,
        token: str,
        status: str,
        wake_at: datetime,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        return self._release(db, instance_id, token, now, status=status, wake_at=wake_at, error=error)

    def _finish(
        self,
        db: Session,
        instance_id: str,
        token: str,
        status: str,
        now: datetime,
        error: str | None = None,
    ) -> bool:
        return self._release(
            db, instance_id, token, now, status=status, wake_at=None, error=error, completed_at=now
        )


_engine: WorkflowEngine | None = None


def build_engine(**kwargs) -> WorkflowEngine:
    """Engine with the service's workflows registered."""
    from db_server.workflows import delete_db, delete_stale

    engine = WorkflowEngine(**kwargs)
    engine.register(delete_db.WORKFLOW_NAME, delete_db.delete_db_workflow)
    engine.register(delete_stale.WORKFLOW_NAME, delete_stale.delete_stale_workflow)
    return engine


def get_workflow_engine() -> WorkflowEngine:
    """Dependency: process-wide engine."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
