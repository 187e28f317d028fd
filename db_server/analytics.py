"""
Analytics events. Best effort: a failed capture is logged and never fails the request.
Events go to PostHog's capture API on a small thread pool; flush() bounds the wait on shutdown.
A copy of each event can be written to the local analytics dataset table.
"""
import json
import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db_server.config import ANALYTICS_TIMEOUT_SECONDS, POSTHOG_API_HOST, POSTHOG_API_KEY
from db_server.models import AnalyticsDataPoint

logger = logging.getLogger(__name__)

EVENT_CLAIM_SUCCESSFUL = "create_db:claim_successful"
EVENT_CLAIM_FAILED = "create_db:claim_failed"
EVENT_DATABASE_CREATED = "create_db:database_created"
EVENT_DATABASE_CREATION_FAILED = "create_db:database_creation_failed"

DATASET_INDEX = "create_db"


class EventCaptureError(Exception):
    def __init__(self, event: str, status_code: int, reason: str):
        super().__init__(f"Failed to submit PostHog event '{event}': {status_code} {reason}")
        self.event = event
        self.status_code = status_code


class EventCapture:
    """PostHog capture client. Disabled (no-op) when host or key is missing."""

    def __init__(
        self,
        host: str = POSTHOG_API_HOST,
        api_key: str = POSTHOG_API_KEY,
        timeout: float = ANALYTICS_TIMEOUT_SECONDS,
        max_workers: int = 2,
    ):
        self._host = host.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="analytics")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self._host and self._api_key)

    def send(self, event: str, properties: dict[str, Any]) -> None:
        """Synchronous capture. Raises on transport errors and non-2xx."""
        payload = {
            "api_key": self._api_key,
            "event": event,
            "distinct_id": str(uuid.uuid4()),
            "properties": {"$process_person_profile": False, **properties},
        }
        r = httpx.post(f"{self._host}/capture", json=payload, timeout=self._timeout)
        if not r.is_success:
            raise EventCaptureError(event, r.status_code, r.reason_phrase)
        logger.debug("%s: captured", event)

    def _send_logged(self, event: str, properties: dict[str, Any]) -> None:
        try:
            self.send(event, properties)
        except (httpx.HTTPError, EventCaptureError) as e:
            logger.warning("%s: capture failed - %s", event, e)

    def capture(self, event: str, properties: dict[str, Any] | None = None) -> None:
        """Queue an event without waiting for delivery."""
        if not self.enabled:
            return
        future = self._executor.submit(self._send_logged, event, dict(properties or {}))
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: float) -> int:
        """Wait up to timeout seconds for queued events. Returns how many are still outstanding."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return 0
        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning("analytics flush timed out with %d events outstanding", len(not_done))
        return len(not_done)

    def shutdown(self, timeout: float) -> None:
        self.flush(timeout)
        self._executor.shutdown(wait=False, cancel_futures=True)


def write_data_point(db: Session, event: str, resource_id: str | None = None, **properties: Any) -> bool:
    """Side-channel dataset write. Returns False (and logs) instead of raising."""
    try:
        db.add(
            AnalyticsDataPoint(
                event=event,
                index=DATASET_INDEX,
                resource_id=resource_id,
                properties=json.dumps(properties, default=str),
            )
        )
        db.commit()
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("analytics dataset write failed for %s: %s", event, e)
        return False


_capture: EventCapture | None = None


def get_event_capture() -> EventCapture:
    """Dependency: process-wide event capture."""
    global _capture
    if _capture is None:
        _capture = EventCapture()
    return _capture
