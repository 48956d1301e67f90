"""Goal priority engine.

Scores candidates on four bounded axes (impact, urgency, confidence, policy
fit), applies suppression rules in a fixed precedence order, and converts
admitted candidates into queue items sorted by a deterministic total order:

1. ``score.total`` descending
2. risk rank descending (critical > high > medium > low)
3. ``enqueued_at`` ascending
4. ``goal_id`` ascending
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional, Sequence

from .config import PriorityPolicy
from .models import (
    AutonomousGoalCandidate,
    GoalIntent,
    GoalPriorityScore,
    GoalQueueItem,
    GoalRisk,
    GoalSignalSnapshot,
    GoalSource,
    GoalSuppressionRecord,
    SignalTrend,
    SuppressionReason,
    ensure_utc,
    round_half_up,
    utcnow,
)

logger = logging.getLogger(__name__)

RISK_BASE = {
    GoalRisk.LOW: 10,
    GoalRisk.MEDIUM: 18,
    GoalRisk.HIGH: 28,
    GoalRisk.CRITICAL: 35,
}

SOURCE_BONUS = {
    GoalSource.METRICS: 1,
    GoalSource.ANOMALY: 5,
    GoalSource.POLICY: 3,
    GoalSource.COST: 2,
    GoalSource.FAILOVER: 4,
    GoalSource.MEMORY: 2,
}

# (field, minimum, maximum)
_POLICY_BOUNDS = {
    "min_confidence": (0.0, 1.0),
    "dedup_window_minutes": (1, 1440),
    "stale_signal_minutes": (1, 1440),
    "default_ttl_minutes": (5, 1440),
}


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return min(maximum, max(minimum, value))


def policy_from_overrides(overrides: Optional[Mapping[str, float]] = None) -> PriorityPolicy:
    """Build a priority policy, clamping override values into their bounds."""
    values = {}
    for name, value in (overrides or {}).items():
        if value is None:
            continue
        if name not in _POLICY_BOUNDS:
            raise KeyError(f"Unknown priority policy field: {name}")
        minimum, maximum = _POLICY_BOUNDS[name]
        clamped = _clamp(value, minimum, maximum)
        values[name] = clamped if name == "min_confidence" else int(clamped)
    return PriorityPolicy(**values)


@dataclass
class PrioritizationResult:
    """Admitted queue items (sorted) and suppression audit records."""

    queued: List[GoalQueueItem] = field(default_factory=list)
    suppressed: List[GoalSuppressionRecord] = field(default_factory=list)


def _impact_score(candidate: AutonomousGoalCandidate, snapshot: GoalSignalSnapshot) -> int:
    score = RISK_BASE[candidate.risk] + SOURCE_BONUS[candidate.source]
    score += min(4, snapshot.anomalies.active_count)
    score += 2 if snapshot.anomalies.critical_count > 0 else 0
    return int(_clamp(score, 0, 40))


def _urgency_score(candidate: AutonomousGoalCandidate, snapshot: GoalSignalSnapshot) -> int:
    cpu = snapshot.metrics.latest_cpu_usage or 0.0
    tx_pool = snapshot.metrics.latest_tx_pool_pending or 0
    failover_recent = snapshot.failover.recent_count > 0
    anomaly_active = snapshot.anomalies.active_count > 0
    score = 5

    if candidate.intent == GoalIntent.STABILIZE:
        if cpu >= 90:
            score += 12
        elif cpu >= 75:
            score += 8
        elif cpu >= 60:
            score += 4
        if tx_pool >= 2000:
            score += 8
        elif tx_pool >= 1000:
            score += 5
        elif tx_pool >= 500:
            score += 3
        score += 2 if snapshot.metrics.tx_pool_trend == SignalTrend.RISING else 0
        score += 2 if failover_recent else 0

    elif candidate.intent == GoalIntent.INVESTIGATE:
        score += 8 if failover_recent else 0
        score += 5 if snapshot.memory.recent_incident_count >= 3 else 0
        score += 4 if anomaly_active else 0

    elif candidate.intent == GoalIntent.COST_OPTIMIZE:
        utilization = snapshot.cost.avg_utilization
        if utilization <= 25:
            score += 8
        elif utilization <= 40:
            score += 6
        else:
            score += 2
        score += 4 if snapshot.cost.data_point_count >= 72 else 1
        score -= 5 if anomaly_active else 0

    elif candidate.intent == GoalIntent.RECOVER:
        score += 10
        score += 5 if snapshot.anomalies.critical_count > 0 else 0
        score += 4 if failover_recent else 0

    return int(_clamp(score, 0, 25))


def _policy_fit_score(candidate: AutonomousGoalCandidate, snapshot: GoalSignalSnapshot) -> int:
    score = 12
    if snapshot.policy.read_only_mode:
        if candidate.intent == GoalIntent.RECOVER:
            score -= 8
        if candidate.intent == GoalIntent.STABILIZE:
            score -= 5
    if not snapshot.policy.auto_scaling_enabled and candidate.intent == GoalIntent.STABILIZE:
        score -= 4
    if candidate.source == GoalSource.COST:
        score += 1
    return int(_clamp(score, 0, 15))


def score_goal_candidate(
    candidate: AutonomousGoalCandidate, snapshot: GoalSignalSnapshot
) -> GoalPriorityScore:
    """Compute the bounded priority score of a candidate against a snapshot."""
    confidence = int(_clamp(round_half_up(candidate.confidence * 20), 0, 20))
    return GoalPriorityScore.from_parts(
        impact=_impact_score(candidate, snapshot),
        urgency=_urgency_score(candidate, snapshot),
        confidence=confidence,
        policy_fit=_policy_fit_score(candidate, snapshot),
    )


def sort_queue(items: Iterable[GoalQueueItem]) -> List[GoalQueueItem]:
    """Sort queue items into dispatch order."""
    return sorted(items, key=lambda item: item.priority_key())


class GoalPriorityEngine:
    """Scores, suppresses and admits candidates.

    The engine only ever creates new queue items; it never touches items that
    are already queued.
    """

    def __init__(self, policy: Optional[PriorityPolicy] = None) -> None:
        self._policy = policy or PriorityPolicy()

    @property
    def policy(self) -> PriorityPolicy:
        return self._policy

    def is_stale(self, snapshot: GoalSignalSnapshot, now: datetime) -> bool:
        age = ensure_utc(now) - ensure_utc(snapshot.collected_at)
        return age > timedelta(minutes=self._policy.stale_signal_minutes)

    def is_duplicate(
        self,
        candidate: AutonomousGoalCandidate,
        now: datetime,
        existing_queue: Sequence[GoalQueueItem],
        recent_candidates: Sequence[AutonomousGoalCandidate],
    ) -> bool:
        if any(item.signature == candidate.signature for item in existing_queue):
            return True

        cutoff = ensure_utc(now) - timedelta(minutes=self._policy.dedup_window_minutes)
        for entry in recent_candidates:
            if entry.signature != candidate.signature:
                continue
            seen_at = entry.updated_at or entry.created_at
            if ensure_utc(seen_at) >= cutoff:
                return True
        return False

    def evaluate_suppression(
        self,
        candidate: AutonomousGoalCandidate,
        snapshot: GoalSignalSnapshot,
        now: datetime,
        existing_queue: Sequence[GoalQueueItem] = (),
        recent_candidates: Sequence[AutonomousGoalCandidate] = (),
    ) -> Optional[SuppressionReason]:
        """Return the first matching suppression reason, or None to admit.

        Precedence is fixed: stale signal, low confidence, cooldown, policy
        block, duplicate.
        """
        if self.is_stale(snapshot, now):
            return SuppressionReason.STALE_SIGNAL

        if candidate.confidence < self._policy.min_confidence:
            return SuppressionReason.LOW_CONFIDENCE

        if (
            snapshot.metrics.cooldown_remaining > 0
            and candidate.intent == GoalIntent.STABILIZE
            and candidate.risk != GoalRisk.CRITICAL
        ):
            return SuppressionReason.COOLDOWN_ACTIVE

        if snapshot.policy.read_only_mode and candidate.intent in (
            GoalIntent.RECOVER,
            GoalIntent.STABILIZE,
        ):
            return SuppressionReason.POLICY_BLOCKED

        if self.is_duplicate(candidate, now, existing_queue, recent_candidates):
            return SuppressionReason.DUPLICATE_GOAL

        return None

    def _to_queue_item(
        self,
        candidate: AutonomousGoalCandidate,
        score: GoalPriorityScore,
        now: datetime,
    ) -> GoalQueueItem:
        return GoalQueueItem(
            goal_id=str(uuid.uuid4()),
            candidate_id=candidate.id,
            signal_snapshot_id=candidate.signal_snapshot_id,
            enqueued_at=now,
            expires_at=now + timedelta(minutes=self._policy.default_ttl_minutes),
            goal=candidate.goal,
            intent=candidate.intent,
            source=candidate.source,
            risk=candidate.risk,
            confidence=candidate.confidence,
            signature=candidate.signature,
            score=score,
            metadata=candidate.metadata,
        )

    def prioritize(
        self,
        snapshot: GoalSignalSnapshot,
        candidates: Sequence[AutonomousGoalCandidate],
        *,
        existing_queue: Sequence[GoalQueueItem] = (),
        recent_candidates: Sequence[AutonomousGoalCandidate] = (),
        now: Optional[datetime] = None,
    ) -> PrioritizationResult:
        """Split candidates into admitted queue items and suppression records.

        Args:
            snapshot: Snapshot the candidates were generated from
            candidates: Candidates to evaluate
            existing_queue: Open queue items used for the duplicate check
            recent_candidates: Recently persisted candidates for the duplicate window
            now: Evaluation time (default: current UTC time)

        Returns:
            Sorted queue items and suppression records
        """
        timestamp = ensure_utc(now) if now is not None else utcnow()
        result = PrioritizationResult()
        queued: List[GoalQueueItem] = []

        for candidate in candidates:
            reason = self.evaluate_suppression(
                candidate, snapshot, timestamp, existing_queue, recent_candidates
            )
            if reason is not None:
                result.suppressed.append(
                    GoalSuppressionRecord(
                        id=str(uuid.uuid4()),
                        timestamp=timestamp,
                        candidate_id=candidate.id,
                        signature=candidate.signature,
                        source=candidate.source,
                        risk=candidate.risk,
                        reason_code=reason,
                        details=f"candidate={candidate.goal}",
                    )
                )
                continue

            score = score_goal_candidate(candidate, snapshot)
            queued.append(self._to_queue_item(candidate, score, timestamp))

        result.queued = sort_queue(queued)
        logger.debug(
            "Prioritized goal candidates",
            extra={
                "snapshot_id": snapshot.snapshot_id,
                "queued": len(result.queued),
                "suppressed": len(result.suppressed),
            },
        )
        return result
