"""Time-ordered index of dispatchable queue items.

Two heaps replace a linear scan for ``next_attempt_at <= now``:

- a delayed heap keyed by ``next_attempt_at`` for items waiting on backoff
- a ready heap keyed by the dispatch total order for items that are due

Entries are invalidated lazily: every update draws a fresh sequence number
and stale heap entries are dropped when they surface or on compaction. Only
queued goals are tracked, so terminal items leave nothing behind.
"""

from __future__ import annotations

import heapq
import itertools
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .models import GoalQueueItem, GoalStatus, ensure_utc

PriorityKey = Tuple[int, int, datetime, str]

# (priority_key, version, due_at)
_ReadyEntry = Tuple[PriorityKey, int, Optional[datetime]]
# (due_at, priority_key, version)
_DelayedEntry = Tuple[datetime, PriorityKey, int]


class DueIndex:
    """Selects the highest-priority queued item whose backoff has elapsed."""

    def __init__(self) -> None:
        self._ready: List[_ReadyEntry] = []
        self._delayed: List[_DelayedEntry] = []
        self._sequence = itertools.count(1)
        self._live: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._live)

    def clear(self) -> None:
        self._ready.clear()
        self._delayed.clear()
        self._live.clear()

    def update(self, item: GoalQueueItem) -> None:
        """Track the item if it is queued, otherwise drop it from the index."""
        if item.status != GoalStatus.QUEUED:
            self.discard(item.goal_id)
            return

        version = next(self._sequence)
        self._live[item.goal_id] = version
        key = item.priority_key()
        if item.next_attempt_at is None:
            heapq.heappush(self._ready, (key, version, None))
        else:
            heapq.heappush(
                self._delayed, (ensure_utc(item.next_attempt_at), key, version)
            )
        self._maybe_compact()

    def discard(self, goal_id: str) -> None:
        self._live.pop(goal_id, None)
        self._maybe_compact()

    def entry_count(self) -> int:
        """Heap entries currently held, stale ones included."""
        return len(self._ready) + len(self._delayed)

    def peek_due(self, now: datetime) -> Optional[str]:
        """Return the goal id that should be dispatched next, if any."""
        now = ensure_utc(now)

        while self._delayed and self._delayed[0][0] <= now:
            due_at, key, version = heapq.heappop(self._delayed)
            if self._is_live(key, version):
                heapq.heappush(self._ready, (key, version, due_at))

        while self._ready:
            key, version, due_at = self._ready[0]
            if not self._is_live(key, version):
                heapq.heappop(self._ready)
                continue
            if due_at is not None and due_at > now:
                # Queried with an earlier clock than a previous promotion.
                heapq.heappop(self._ready)
                heapq.heappush(self._delayed, (due_at, key, version))
                continue
            return key[3]
        return None

    def _is_live(self, key: PriorityKey, version: int) -> bool:
        return self._live.get(key[3]) == version

    def _maybe_compact(self) -> None:
        limit = 2 * len(self._live) + 64
        if len(self._ready) + len(self._delayed) <= limit:
            return
        self._ready = [e for e in self._ready if self._is_live(e[0], e[1])]
        self._delayed = [e for e in self._delayed if self._is_live(e[1], e[2])]
        heapq.heapify(self._ready)
        heapq.heapify(self._delayed)
