"""Status transition rules for goal queue items.

Every status change the orchestrator or manager makes is validated against
VALID_TRANSITIONS. Same-state updates are always allowed so retried writes
stay idempotent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from .exceptions import InvalidGoalTransitionError
from .models import GoalStatus, utcnow

logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[GoalStatus, Set[GoalStatus]] = {
    GoalStatus.QUEUED: {
        GoalStatus.SCHEDULED,  # Picked for dispatch
        GoalStatus.EXPIRED,  # TTL elapsed
    },
    GoalStatus.SCHEDULED: {
        GoalStatus.RUNNING,  # Lease and idempotency key acquired
        GoalStatus.FAILED,  # Idempotency stop
        GoalStatus.QUEUED,  # Abandoned, recovered after lease expiry
    },
    GoalStatus.RUNNING: {
        GoalStatus.COMPLETED,
        GoalStatus.FAILED,  # Policy block
        GoalStatus.QUEUED,  # Retry with backoff, or abandoned
        GoalStatus.DLQ,  # Retries exhausted
    },
    GoalStatus.DLQ: {
        GoalStatus.QUEUED,  # Replay
    },
    GoalStatus.COMPLETED: set(),
    GoalStatus.FAILED: set(),
    GoalStatus.EXPIRED: set(),
}

TERMINAL_STATUSES: Set[GoalStatus] = {
    GoalStatus.COMPLETED,
    GoalStatus.FAILED,
    GoalStatus.EXPIRED,
}

OPEN_STATUSES: Set[GoalStatus] = {
    GoalStatus.QUEUED,
    GoalStatus.SCHEDULED,
    GoalStatus.RUNNING,
}


def is_valid_transition(from_status: GoalStatus, to_status: GoalStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in VALID_TRANSITIONS.get(from_status, set())


@dataclass
class GoalTransition:
    """Records a validated status change for a goal."""

    goal_id: str
    from_status: GoalStatus
    to_status: GoalStatus
    timestamp: datetime
    reason: Optional[str] = None

    def is_idempotent(self) -> bool:
        return self.from_status == self.to_status


@dataclass
class GoalTransitionValidator:
    """Validates status changes and keeps a bounded in-memory history."""

    max_history: int = 1000
    _history: List[GoalTransition] = field(default_factory=list)

    def validate(
        self,
        goal_id: str,
        from_status: GoalStatus,
        to_status: GoalStatus,
        *,
        reason: Optional[str] = None,
    ) -> GoalTransition:
        """Validate a status change before it is written.

        Raises:
            InvalidGoalTransitionError: If the change is not allowed
        """
        if not is_valid_transition(from_status, to_status):
            logger.error(
                "Invalid goal status transition",
                extra={
                    "goal_id": goal_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidGoalTransitionError(
                f"Invalid transition for goal {goal_id}: "
                f"{from_status.value} -> {to_status.value}"
            )

        transition = GoalTransition(
            goal_id=goal_id,
            from_status=from_status,
            to_status=to_status,
            timestamp=utcnow(),
            reason=reason,
        )
        self._history.append(transition)
        if len(self._history) > self.max_history:
            del self._history[: len(self._history) - self.max_history]
        return transition

    def history(self, goal_id: Optional[str] = None) -> List[GoalTransition]:
        if goal_id is None:
            return list(self._history)
        return [t for t in self._history if t.goal_id == goal_id]
