"""Persistence contract for the goal pipeline and its in-memory implementation.

Every component receives a :class:`GoalStore` explicitly. Lease acquisition,
idempotency registration, status-guarded updates and goal release are atomic
operations of the store itself, so concurrent dispatch workers cannot race
between a read and a dependent write.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .due_index import DueIndex
from .models import (
    AutonomousGoalCandidate,
    GoalDlqItem,
    GoalExecutionCheckpoint,
    GoalIdempotencyRecord,
    GoalLeaseRecord,
    GoalLearningEpisode,
    GoalQueueItem,
    GoalStatus,
    GoalSuppressionRecord,
    ensure_utc,
)


class GoalStore(ABC):
    """Storage operations used by the generator, priority engine and orchestrator."""

    # -- candidates -------------------------------------------------------

    @abstractmethod
    def add_candidate(self, candidate: AutonomousGoalCandidate) -> None:
        """Persist a candidate, replacing an earlier write with the same id."""

    @abstractmethod
    def list_candidates(self, limit: int = 50) -> List[AutonomousGoalCandidate]:
        """Most recently written candidates first."""

    # -- queue ------------------------------------------------------------

    @abstractmethod
    def upsert_queue_item(self, item: GoalQueueItem) -> None:
        ...

    @abstractmethod
    def get_queue_item(self, goal_id: str) -> Optional[GoalQueueItem]:
        ...

    @abstractmethod
    def list_queue(
        self,
        limit: int = 100,
        statuses: Optional[Iterable[GoalStatus]] = None,
    ) -> List[GoalQueueItem]:
        """Queue items in dispatch order, optionally filtered by status."""

    @abstractmethod
    def next_due_item(self, now: datetime) -> Optional[GoalQueueItem]:
        """First queued item, in dispatch order, whose backoff has elapsed."""

    @abstractmethod
    def compare_and_update(
        self,
        goal_id: str,
        expected_statuses: Iterable[GoalStatus],
        updates: Mapping[str, Any],
    ) -> Optional[GoalQueueItem]:
        """Apply ``updates`` only if the item's status is one of ``expected_statuses``.

        Returns:
            The updated item, or None when the item is missing or the guard fails
        """

    # -- suppression ------------------------------------------------------

    @abstractmethod
    def add_suppression_record(self, record: GoalSuppressionRecord) -> None:
        ...

    @abstractmethod
    def list_suppression_records(self, limit: int = 50) -> List[GoalSuppressionRecord]:
        ...

    # -- dead-letter queue ------------------------------------------------

    @abstractmethod
    def add_dlq_item(self, item: GoalDlqItem) -> None:
        ...

    @abstractmethod
    def get_dlq_item(self, goal_id: str) -> Optional[GoalDlqItem]:
        ...

    @abstractmethod
    def list_dlq_items(self, limit: int = 50) -> List[GoalDlqItem]:
        ...

    @abstractmethod
    def remove_dlq_item(self, goal_id: str) -> bool:
        """Remove the DLQ entry for a goal; False when there was none."""

    # -- leases -----------------------------------------------------------

    @abstractmethod
    def get_lease(self, goal_id: str) -> Optional[GoalLeaseRecord]:
        ...

    @abstractmethod
    def try_acquire_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        """Atomically acquire a lease.

        Returns None when an unexpired lease exists. Otherwise replaces any
        stale lease and returns the new record with ``version`` incremented.
        """

    @abstractmethod
    def renew_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        """Extend a lease held by ``owner_id`` and stamp its heartbeat.

        Returns None when the lease is gone or another owner holds it.
        """

    # -- checkpoints ------------------------------------------------------

    @abstractmethod
    def set_checkpoint(self, checkpoint: GoalExecutionCheckpoint) -> None:
        ...

    @abstractmethod
    def get_checkpoint(self, goal_id: str) -> Optional[GoalExecutionCheckpoint]:
        ...

    @abstractmethod
    def clear_checkpoint(self, goal_id: str) -> None:
        ...

    # -- idempotency ------------------------------------------------------

    @abstractmethod
    def register_idempotency(self, record: GoalIdempotencyRecord, now: datetime) -> bool:
        """Atomic insert-if-absent; an expired record counts as absent."""

    @abstractmethod
    def get_idempotency(self, key: str) -> Optional[GoalIdempotencyRecord]:
        ...

    @abstractmethod
    def release_idempotency(self, key: str) -> None:
        ...

    # -- active goal pointer ----------------------------------------------

    @abstractmethod
    def get_active_goal_id(self) -> Optional[str]:
        ...

    @abstractmethod
    def set_active_goal_id(self, goal_id: Optional[str]) -> None:
        ...

    @abstractmethod
    def release_goal(self, goal_id: str, owner_id: Optional[str] = None) -> bool:
        """Delete lease and checkpoint and clear the active pointer if it names this goal.

        With ``owner_id`` nothing is touched while another owner holds the
        lease.

        Returns:
            False when the release was skipped for a foreign lease
        """

    # -- learning episodes ------------------------------------------------

    @abstractmethod
    def add_episode(self, episode: GoalLearningEpisode) -> None:
        ...

    @abstractmethod
    def list_episodes(self, limit: int = 500) -> List[GoalLearningEpisode]:
        ...

    @abstractmethod
    def clear_episodes(self) -> None:
        ...

    # -- lifecycle --------------------------------------------------------

    @abstractmethod
    def reset(self) -> None:
        """Drop all stored state."""

    def close(self) -> None:
        """Release underlying resources."""


def _newest_first(entries: List[Any], limit: int) -> List[Any]:
    if limit <= 0:
        return []
    return list(reversed(entries[-limit:]))


class InMemoryGoalStore(GoalStore):
    """Thread-safe process-local store.

    Returned models are copies, so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._due = DueIndex()
        self._init_state()

    def _init_state(self) -> None:
        self._candidates: Dict[str, AutonomousGoalCandidate] = {}
        self._queue: Dict[str, GoalQueueItem] = {}
        self._suppression: List[GoalSuppressionRecord] = []
        self._dlq: Dict[str, GoalDlqItem] = {}
        self._leases: Dict[str, GoalLeaseRecord] = {}
        self._checkpoints: Dict[str, GoalExecutionCheckpoint] = {}
        self._idempotency: Dict[str, GoalIdempotencyRecord] = {}
        self._episodes: List[GoalLearningEpisode] = []
        self._active_goal_id: Optional[str] = None
        self._due.clear()

    # candidates

    def add_candidate(self, candidate: AutonomousGoalCandidate) -> None:
        with self._lock:
            self._candidates.pop(candidate.id, None)
            self._candidates[candidate.id] = candidate.model_copy(deep=True)

    def list_candidates(self, limit: int = 50) -> List[AutonomousGoalCandidate]:
        with self._lock:
            entries = _newest_first(list(self._candidates.values()), limit)
            return [c.model_copy(deep=True) for c in entries]

    # queue

    def upsert_queue_item(self, item: GoalQueueItem) -> None:
        with self._lock:
            stored = item.model_copy(deep=True)
            self._queue[item.goal_id] = stored
            self._due.update(stored)

    def get_queue_item(self, goal_id: str) -> Optional[GoalQueueItem]:
        with self._lock:
            item = self._queue.get(goal_id)
            return item.model_copy(deep=True) if item else None

    def list_queue(
        self,
        limit: int = 100,
        statuses: Optional[Iterable[GoalStatus]] = None,
    ) -> List[GoalQueueItem]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            items = [
                item
                for item in self._queue.values()
                if wanted is None or item.status in wanted
            ]
            items.sort(key=lambda item: item.priority_key())
            return [item.model_copy(deep=True) for item in items[: max(0, limit)]]

    def next_due_item(self, now: datetime) -> Optional[GoalQueueItem]:
        with self._lock:
            goal_id = self._due.peek_due(now)
            if goal_id is None:
                return None
            return self._queue[goal_id].model_copy(deep=True)

    def compare_and_update(
        self,
        goal_id: str,
        expected_statuses: Iterable[GoalStatus],
        updates: Mapping[str, Any],
    ) -> Optional[GoalQueueItem]:
        with self._lock:
            current = self._queue.get(goal_id)
            if current is None or current.status not in set(expected_statuses):
                return None
            updated = current.model_copy(update=dict(updates), deep=True)
            self._queue[goal_id] = updated
            self._due.update(updated)
            return updated.model_copy(deep=True)

    # suppression

    def add_suppression_record(self, record: GoalSuppressionRecord) -> None:
        with self._lock:
            self._suppression.append(record)

    def list_suppression_records(self, limit: int = 50) -> List[GoalSuppressionRecord]:
        with self._lock:
            return _newest_first(self._suppression, limit)

    # DLQ

    def add_dlq_item(self, item: GoalDlqItem) -> None:
        with self._lock:
            self._dlq.pop(item.goal_id, None)
            self._dlq[item.goal_id] = item.model_copy(deep=True)

    def get_dlq_item(self, goal_id: str) -> Optional[GoalDlqItem]:
        with self._lock:
            item = self._dlq.get(goal_id)
            return item.model_copy(deep=True) if item else None

    def list_dlq_items(self, limit: int = 50) -> List[GoalDlqItem]:
        with self._lock:
            entries = _newest_first(list(self._dlq.values()), limit)
            return [item.model_copy(deep=True) for item in entries]

    def remove_dlq_item(self, goal_id: str) -> bool:
        with self._lock:
            return self._dlq.pop(goal_id, None) is not None

    # leases

    def get_lease(self, goal_id: str) -> Optional[GoalLeaseRecord]:
        with self._lock:
            return self._leases.get(goal_id)

    def try_acquire_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        now = ensure_utc(now)
        with self._lock:
            existing = self._leases.get(goal_id)
            if existing is not None and not existing.is_expired(now):
                return None
            lease = GoalLeaseRecord(
                goal_id=goal_id,
                owner_id=owner_id,
                leased_at=now,
                lease_expires_at=now + timedelta(seconds=ttl_seconds),
                heartbeat_at=now,
                version=(existing.version if existing else 0) + 1,
            )
            self._leases[goal_id] = lease
            return lease

    def renew_lease(
        self, goal_id: str, owner_id: str, now: datetime, ttl_seconds: int
    ) -> Optional[GoalLeaseRecord]:
        now = ensure_utc(now)
        with self._lock:
            existing = self._leases.get(goal_id)
            if existing is None or existing.owner_id != owner_id:
                return None
            lease = existing.model_copy(
                update={
                    "lease_expires_at": now + timedelta(seconds=ttl_seconds),
                    "heartbeat_at": now,
                }
            )
            self._leases[goal_id] = lease
            return lease

    # checkpoints

    def set_checkpoint(self, checkpoint: GoalExecutionCheckpoint) -> None:
        with self._lock:
            self._checkpoints[checkpoint.goal_id] = checkpoint

    def get_checkpoint(self, goal_id: str) -> Optional[GoalExecutionCheckpoint]:
        with self._lock:
            return self._checkpoints.get(goal_id)

    def clear_checkpoint(self, goal_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(goal_id, None)

    # idempotency

    def register_idempotency(self, record: GoalIdempotencyRecord, now: datetime) -> bool:
        with self._lock:
            existing = self._idempotency.get(record.key)
            if existing is not None and not existing.is_expired(now):
                return False
            self._idempotency[record.key] = record
            return True

    def get_idempotency(self, key: str) -> Optional[GoalIdempotencyRecord]:
        with self._lock:
            return self._idempotency.get(key)

    def release_idempotency(self, key: str) -> None:
        with self._lock:
            self._idempotency.pop(key, None)

    # active goal pointer

    def get_active_goal_id(self) -> Optional[str]:
        with self._lock:
            return self._active_goal_id

    def set_active_goal_id(self, goal_id: Optional[str]) -> None:
        with self._lock:
            self._active_goal_id = goal_id

    def release_goal(self, goal_id: str, owner_id: Optional[str] = None) -> bool:
        with self._lock:
            lease = self._leases.get(goal_id)
            if owner_id is not None and lease is not None and lease.owner_id != owner_id:
                return False
            self._leases.pop(goal_id, None)
            self._checkpoints.pop(goal_id, None)
            if self._active_goal_id == goal_id:
                self._active_goal_id = None
            return True

    # learning episodes

    def add_episode(self, episode: GoalLearningEpisode) -> None:
        with self._lock:
            self._episodes.append(episode)

    def list_episodes(self, limit: int = 500) -> List[GoalLearningEpisode]:
        with self._lock:
            return _newest_first(self._episodes, limit)

    def clear_episodes(self) -> None:
        with self._lock:
            self._episodes.clear()

    # lifecycle

    def reset(self) -> None:
        with self._lock:
            self._init_state()
