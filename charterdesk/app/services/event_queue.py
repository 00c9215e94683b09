from __future__ import annotations

import hashlib
import json
import logging
import time
from threading import RLock
from typing import Callable, Optional

from charterdesk.app.errors import PersistenceError
from charterdesk.app.models import AnalyticsEventRecord, AnalyticsEventRequest, utc_now
from charterdesk.app.services.status import Store
from charterdesk.app.store import new_id

logger = logging.getLogger("charterdesk.analytics")


def event_fingerprint(
    request: AnalyticsEventRequest,
    *,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> str:
    seed = json.dumps(
        {
            "event_name": request.event_name,
            "event_data": request.event_data,
            "session_id": request.session_id,
            "page_path": request.page_path,
            "client": f"{ip_address or 'unknown'}-{user_agent or 'unknown'}",
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


class AnalyticsEventQueue:
    """Batches public analytics events in memory before writing them to the store.

    The queue is owned by the application instance and must be drained on
    shutdown; nothing here runs on a timer.
    """

    def __init__(
        self,
        store: Store,
        *,
        batch_size: int = 10,
        dedup_window_seconds: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.batch_size = max(1, batch_size)
        self.dedup_window_seconds = max(0, dedup_window_seconds)
        self._clock = clock
        self._lock = RLock()
        self._pending: list[AnalyticsEventRecord] = []
        self._seen: dict[str, float] = {}

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def _is_duplicate(self, fingerprint: str, now: float) -> bool:
        expired = [
            key for key, seen_at in self._seen.items() if now - seen_at >= self.dedup_window_seconds
        ]
        for key in expired:
            del self._seen[key]
        if fingerprint in self._seen:
            return True
        self._seen[fingerprint] = now
        return False

    def enqueue(
        self,
        request: AnalyticsEventRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Queue an event; returns False when it repeats one seen inside the window."""
        fingerprint = event_fingerprint(request, ip_address=ip_address, user_agent=user_agent)
        with self._lock:
            if self.dedup_window_seconds and self._is_duplicate(fingerprint, self._clock()):
                return False
            self._pending.append(
                AnalyticsEventRecord(
                    id=new_id("evt"),
                    event_name=request.event_name,
                    event_data=request.event_data,
                    session_id=request.session_id,
                    page_path=request.page_path,
                    referrer=request.referrer,
                    locale=request.locale,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    occurred_at=utc_now(),
                )
            )
            should_flush = len(self._pending) >= self.batch_size
        if should_flush:
            try:
                self.flush()
            except PersistenceError:
                logger.warning("analytics_flush_deferred pending=%s", self.pending_count)
        return True

    def flush(self) -> int:
        """Write one batch. On failure the batch goes back to the front of the queue."""
        with self._lock:
            batch = self._pending[: self.batch_size]
            del self._pending[: self.batch_size]
            if not batch:
                return 0
            try:
                written = self.store.insert_analytics_events(batch)
            except PersistenceError:
                self._pending[:0] = batch
                raise
        logger.info("analytics_batch_flushed events=%s", written)
        return written

    def drain(self) -> int:
        total = 0
        while self.pending_count:
            total += self.flush()
        return total
