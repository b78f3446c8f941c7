# device_loans/events/publisher.py
import threading
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

import requests
from loguru import logger

from device_loans.models.loan import Loan

EVENT_TYPE = "LoanStatusChanged"
DATA_VERSION = "1.0"


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def build_status_event(
    before: Loan,
    after: Loan,
    correlation_id: Optional[str] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Event Grid envelope for one committed transition."""
    changed_at = after.updated_at or datetime.now(timezone.utc)
    data = {
        "loanId": after.id,
        "deviceId": after.device_id,
        "userId": after.user_id,
        "from": _iso(after.from_),
        "till": _iso(after.till),
        "previousStatus": before.status.value if before.status else None,
        "newStatus": after.status.value if after.status else None,
        "statusChangedAt": _iso(changed_at),
        "collectedAt": _iso(after.collected_at),
        "returnedAt": _iso(after.returned_at),
        "reason": reason,
        "correlationId": correlation_id or str(uuid.uuid4()),
    }
    return {
        "id": str(uuid.uuid4()),
        "eventType": EVENT_TYPE,
        "subject": f"/loans/{after.id}",
        "eventTime": data["statusChangedAt"],
        "dataVersion": DATA_VERSION,
        "data": data,
    }


class LoanEventPublisher:
    """
    Best-effort, at-most-once publisher of loan lifecycle events.

    `emit` only enqueues and never raises. `flush` (run by the scheduler, off
    the request path) posts queued events in batches with bounded retry; a
    batch that still fails is logged and dropped.
    """

    def __init__(
        self,
        endpoint: Optional[str],
        key: Optional[str],
        max_queue_size: int = 1000,
        max_retries: int = 3,
        timeout_seconds: int = 10,
        batch_size: int = 50,
        backoff_seconds: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.key = key
        self.max_retries = max(1, max_retries)
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self.backoff_seconds = backoff_seconds
        self._session = session or requests.Session()
        self._queue: Deque[Dict[str, Any]] = deque(maxlen=max_queue_size)
        self._flush_lock = threading.Lock()
        self._missing_config_logged = False
        self.dropped = 0
        self.published = 0

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.key)

    @property
    def pending(self) -> int:
        return len(self._queue)

    def emit(self, event: Dict[str, Any]) -> None:
        try:
            if not self.configured:
                if not self._missing_config_logged:
                    logger.warning(
                        "Event Grid configuration missing (EVENT_GRID_TOPIC_ENDPOINT / EVENT_GRID_TOPIC_KEY); "
                        "skipping publish."
                    )
                    self._missing_config_logged = True
                self.dropped += 1
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
                logger.warning(f"Event queue full ({self._queue.maxlen}); dropping oldest event.")
            self._queue.append(event)
            logger.debug(f"Queued {event.get('eventType')} for {event.get('subject')}")
        except Exception as e:
            logger.exception(f"Failed to queue loan event: {e}")

    def flush(self) -> int:
        """Drain the queue. Returns the number of events delivered."""
        if not self._flush_lock.acquire(blocking=False):
            return 0
        delivered = 0
        try:
            while self._queue:
                batch: List[Dict[str, Any]] = []
                while self._queue and len(batch) < self.batch_size:
                    batch.append(self._queue.popleft())
                if self._send(batch):
                    delivered += len(batch)
                else:
                    self.dropped += len(batch)
        finally:
            self._flush_lock.release()
        self.published += delivered
        return delivered

    def _send(self, batch: List[Dict[str, Any]]) -> bool:
        for attempt in range(self.max_retries):
            try:
                response = self._session.post(
                    self.endpoint,
                    json=batch,
                    headers={"Content-Type": "application/json", "aeg-sas-key": self.key},
                    timeout=self.timeout_seconds,
                )
                if 200 <= response.status_code < 300:
                    logger.info(f"Published {len(batch)} loan event(s) to Event Grid.")
                    return True
                logger.error(
                    f"Event Grid publish failed ({response.status_code}): {response.text} "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    break
            except requests.RequestException as e:
                logger.error(f"Unexpected error while publishing to Event Grid (attempt {attempt + 1}): {e}")

            if attempt < self.max_retries - 1:
                time.sleep(self.backoff_seconds * (2 ** attempt))

        logger.error(f"Dropping {len(batch)} loan event(s) after {self.max_retries} attempt(s).")
        return False
