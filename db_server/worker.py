"""
Workflow worker: runs due deletion workflows and starts the periodic stale sweep.
Run standalone with `python -m db_server.worker`, or embedded in the web process
(WORKFLOW_RUNNER_EMBEDDED). Any number of workers may share one database.
"""
import logging
import threading
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from db_server.config import LOG_LEVEL, SWEEP_INTERVAL_SECONDS, WORKFLOW_POLL_INTERVAL_SECONDS
from db_server.database import SessionLocal, init_db
from db_server.workflows.delete_stale import ensure_sweep
from db_server.workflows.engine import WorkflowEngine, get_workflow_engine

logger = logging.getLogger(__name__)


def tick(engine: WorkflowEngine, now: datetime | None = None, sweep_interval: int = SWEEP_INTERVAL_SECONDS) -> int:
    """One pass: make sure this interval's sweep exists, then run everything due."""
    now = now or datetime.now(timezone.utc)
    db = SessionLocal()
    try:
        if ensure_sweep(db, engine, now, sweep_interval) is not None:
            logger.info("stale sweep scheduled")
    finally:
        db.close()
    return engine.run_due(now=now)


class WorkflowRunner:
    """Polls the workflow tables on a background thread."""

    def __init__(self, engine: WorkflowEngine, poll_interval: float = WORKFLOW_POLL_INTERVAL_SECONDS):
        self._engine = engine
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def run_forever(self) -> None:
        logger.info("workflow runner started (poll every %ss)", self._poll_interval)
        while not self._stop.is_set():
            try:
                ran = tick(self._engine)
                if ran:
                    logger.debug("ran %d workflow instances", ran)
            except SQLAlchemyError:
                # Database hiccup: the instances stay due and are picked up on the next poll
                logger.exception("workflow poll failed")
            self._stop.wait(self._poll_interval)
        logger.info("workflow runner stopped")

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run_forever, name="workflow-runner", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


def main() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    runner = WorkflowRunner(get_workflow_engine())
    try:
        runner.run_forever()
    except KeyboardInterrupt:
        logger.info("interrupted")


if __name__ == "__main__":
    main()
