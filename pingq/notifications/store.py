"""
Bounded, newest-first notification store.

Records are addressed by id. Background enrichment never holds a reference
into the collection across an ``await``; it calls ``mutate(id, fn)``, which
is a no-op once the record has been evicted. Readers receive copies taken
under the lock, so they never observe a half-applied mutation.
"""

from __future__ import annotations

import copy
import threading
from collections import deque
from collections.abc import Callable
from itertools import islice

from pingq.config import MAX_NOTIFICATIONS
from pingq.notifications.models import Notification, Page
from pingq.observability.logging import get_logger
from pingq.observability.telemetry import counter

logger = get_logger(__name__)

Mutation = Callable[[Notification], None]


class NotificationStore:
    """Ordered (newest first), capacity-bounded collection keyed by id."""

    def __init__(self, capacity: int = MAX_NOTIFICATIONS):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._order: deque[Notification] = deque()
        self._index: dict[str, Notification] = {}
        self._lock = threading.RLock()

    def prepend(self, record: Notification) -> list[str]:
        """
        Insert ``record`` at the head and evict from the tail down to capacity.

        Returns:
            Ids of evicted records (oldest last)

        Side Effects:
            - Mutates the in-memory order/index
            - Increments store.evicted counter per eviction
        """
        evicted: list[str] = []
        with self._lock:
            existing = self._index.pop(record.id, None)
            if existing is not None:
                # Re-delivered id: keep the index one-to-one with the order.
                self._order.remove(existing)

            self._order.appendleft(record)
            self._index[record.id] = record

            while len(self._order) > self.capacity:
                oldest = self._order.pop()
                del self._index[oldest.id]
                evicted.append(oldest.id)

        if evicted:
            counter("store.evicted", len(evicted))
            logger.debug("Evicted %d notification(s) at capacity %d", len(evicted), self.capacity)
        return evicted

    def get_by_id(self, notification_id: str) -> Notification | None:
        """Copy of the record, or None if it was evicted or never inserted."""
        with self._lock:
            record = self._index.get(notification_id)
            return copy.copy(record) if record is not None else None

    def __contains__(self, notification_id: object) -> bool:
        with self._lock:
            return notification_id in self._index

    def mutate(self, notification_id: str, fn: Mutation) -> Notification | None:
        """
        Apply ``fn`` to the stored record if it is still present.

        ``fn`` runs against a working copy; the copy replaces the stored record
        only if ``fn`` returns normally, so an exception leaves the record untouched.

        Returns:
            Copy of the updated record, or None when the id is absent (no-op)
        """
        with self._lock:
            current = self._index.get(notification_id)
            if current is None:
                counter("store.mutate_missing")
                return None

            working = copy.copy(current)
            fn(working)
            # Swap in place so the record keeps its position in the order.
            current.__dict__.update(working.__dict__)
            return copy.copy(current)

    def page(self, page_number: int, page_size: int) -> Page:
        """
        Cumulative page read: ``records[0 .. page_number * page_size)`` from the head.

        Page numbers are 1-based.
        """
        if page_number < 1:
            raise ValueError(f"page numbers are 1-based, got {page_number}")
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")

        end = page_number * page_size
        with self._lock:
            total = len(self._order)
            records = [copy.copy(r) for r in islice(self._order, end)]
        return Page(records=records, has_more=end < total, total=total)

    def size(self) -> int:
        with self._lock:
            return len(self._order)

    def __len__(self) -> int:
        return self.size()
