"""Bounded in-memory queue of pending retries, ordered by due time."""

import heapq
import itertools
from datetime import datetime
from typing import List
from typing import Tuple

from loguru import logger

from identity_sync.models.schedule import RetryState


class RetryQueue:
    """
    Min-heap of RetryState by ``next_attempt_at``.

    Pending retries are process-local and are lost on restart.
    """

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._heap: List[Tuple[datetime, int, RetryState]] = []
        # Tie-breaker so RetryState never gets compared
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._heap)

    def push(self, retry: RetryState) -> bool:
        """Queue a retry; False (and nothing queued) when the queue is full."""
        if len(self._heap) >= self.max_size:
            logger.warning(
                "Retry queue full, dropping retry",
                schedule_id=retry.schedule_id,
                chain_id=retry.chain_id,
                max_size=self.max_size,
            )
            return False
        heapq.heappush(self._heap, (retry.next_attempt_at, next(self._counter), retry))
        return True

    def pop_due(self, now: datetime) -> List[RetryState]:
        """Remove and return every retry due at or before ``now``, earliest first."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            due.append(heapq.heappop(self._heap)[2])
        return due

    def pending(self) -> List[RetryState]:
        return [item[2] for item in sorted(self._heap)]

    def discard(self, schedule_id: str) -> int:
        """Drop all pending retries of one schedule; returns how many were dropped."""
        kept = [item for item in self._heap if item[2].schedule_id != schedule_id]
        dropped = len(self._heap) - len(kept)
        if dropped:
            heapq.heapify(kept)
            self._heap = kept
        return dropped

    def clear(self) -> None:
        self._heap.clear()
