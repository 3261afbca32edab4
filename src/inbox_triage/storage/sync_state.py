"""In-memory sync watermark and pending classification queue.

Both live for the lifetime of one pipeline instance and are shared between the
mailbox watcher and the drain worker, so every operation takes a lock.
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Iterable

from inbox_triage.core.models import MailRecord


class SyncWatermark:
    """Highest UID whose unclassified index write succeeded. Never decreases."""

    def __init__(self, initial: int = 0) -> None:
        self._value = initial
        self._lock = threading.Lock()

    @property
    def last_seen_uid(self) -> int:
        with self._lock:
            return self._value

    def advance(self, uid: int) -> int:
        """Set the watermark to ``max(current, uid)`` and return the result."""
        with self._lock:
            if uid > self._value:
                self._value = uid
            return self._value


class PendingQueue:
    """FIFO of records awaiting classification.

    A record already waiting is not enqueued twice. Failed batches go back to
    the front in their original order.
    """

    def __init__(self) -> None:
        self._items: deque[MailRecord] = deque()
        self._uids: set[int] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def enqueue(self, record: MailRecord) -> bool:
        """Append ``record`` to the tail. Returns False if its uid is already queued."""
        with self._lock:
            if record.uid in self._uids:
                return False
            self._items.append(record)
            self._uids.add(record.uid)
            return True

    def drain(self, batch_size: int) -> list[MailRecord]:
        """Atomically remove up to ``batch_size`` records from the head."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        with self._lock:
            batch = [self._items.popleft() for _ in range(min(batch_size, len(self._items)))]
            for record in batch:
                self._uids.discard(record.uid)
            return batch

    def requeue_front(self, records: Iterable[MailRecord]) -> None:
        """Put ``records`` back at the head, preserving their relative order."""
        with self._lock:
            for record in reversed(list(records)):
                if record.uid in self._uids:
                    continue
                self._items.appendleft(record)
                self._uids.add(record.uid)

    def snapshot(self) -> list[MailRecord]:
        """Copy of the queue contents, head first."""
        with self._lock:
            return list(self._items)


class SyncState:
    """Watermark and queue owned together by one pipeline."""

    def __init__(
        self,
        watermark: SyncWatermark | None = None,
        queue: PendingQueue | None = None,
    ) -> None:
        self.watermark = watermark or SyncWatermark()
        self.queue = queue or PendingQueue()
