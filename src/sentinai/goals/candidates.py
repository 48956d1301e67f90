"""Candidate generation for the goal autonomy pipeline.

Turns a signal snapshot into rule-based goal proposals. Every rule is
evaluated independently and all matching rules fire; when nothing fires a
single low-risk baseline review goal is emitted. Output is deduplicated by
signature and capped at ``max_candidates``.

The optional text enhancer (see :mod:`sentinai.goals.enhancer`) may rephrase
goal and rationale text afterwards; it never touches intent, risk, confidence
or source.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, List, Optional

from .config import CandidateConfig
from .models import (
    AutonomousGoalCandidate,
    AutoscalingMetadata,
    BaselineMetadata,
    CandidateMetadata,
    CostMetadata,
    FailoverMetadata,
    GoalIntent,
    GoalRisk,
    GoalSignalSnapshot,
    GoalSource,
    IncidentMetadata,
    PressureMetadata,
    SignalTrend,
    ensure_utc,
    round_half_up,
    utcnow,
)

if TYPE_CHECKING:
    from .enhancer import GoalCandidateEnhancer

logger = logging.getLogger(__name__)

MAX_CANDIDATES_DEFAULT = 6
SIGNATURE_LENGTH = 32

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CandidateGenerationResult:
    """Candidates produced for one snapshot plus enhancer bookkeeping."""

    candidates: List[AutonomousGoalCandidate] = field(default_factory=list)
    llm_enhanced: bool = False
    llm_fallback_reason: Optional[str] = None


def normalize_goal_text(value: str) -> str:
    """Trim and collapse runs of whitespace to a single space."""
    return _WHITESPACE.sub(" ", value.strip())


def goal_signature(
    chain_type: str, source: GoalSource, intent: GoalIntent, goal: str
) -> str:
    """Deterministic dedup key for a goal.

    SHA-256 over ``chain|source|intent|normalized-lowercase-goal``, hex encoded
    and truncated to 32 characters.
    """
    payload = "|".join(
        [
            chain_type,
            GoalSource(source).value,
            GoalIntent(intent).value,
            normalize_goal_text(goal).lower(),
        ]
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:SIGNATURE_LENGTH]


def clamp_confidence(value: float) -> float:
    return min(0.99, max(0.05, round_half_up(value, 2)))


def clamp_max_candidates(value: Optional[int]) -> int:
    if value is None:
        return MAX_CANDIDATES_DEFAULT
    return min(20, max(1, int(value)))


def dedupe_candidates(
    candidates: Iterable[AutonomousGoalCandidate],
) -> List[AutonomousGoalCandidate]:
    """Collapse candidates sharing a signature onto the first occurrence."""
    seen = set()
    unique: List[AutonomousGoalCandidate] = []
    for candidate in candidates:
        if candidate.signature in seen:
            continue
        seen.add(candidate.signature)
        unique.append(candidate)
    return unique


def _number(value: float) -> str:
    """Render a number without a trailing ``.0`` for whole values."""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def _create_candidate(
    snapshot: GoalSignalSnapshot,
    now: datetime,
    *,
    source: GoalSource,
    intent: GoalIntent,
    risk: GoalRisk,
    confidence: float,
    goal: str,
    rationale: str,
    metadata: CandidateMetadata,
) -> AutonomousGoalCandidate:
    goal_text = normalize_goal_text(goal)
    return AutonomousGoalCandidate(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        source=source,
        goal=goal_text,
        intent=intent,
        risk=risk,
        confidence=clamp_confidence(confidence),
        signature=goal_signature(snapshot.chain_type, source, intent, goal_text),
        rationale=normalize_goal_text(rationale),
        signal_snapshot_id=snapshot.snapshot_id,
        metadata=metadata,
    )


def _build_rule_candidates(
    snapshot: GoalSignalSnapshot, now: datetime
) -> List[AutonomousGoalCandidate]:
    candidates: List[AutonomousGoalCandidate] = []
    metrics = snapshot.metrics
    anomalies = snapshot.anomalies
    failover = snapshot.failover
    cost = snapshot.cost
    memory = snapshot.memory

    cpu = metrics.latest_cpu_usage or 0.0
    tx_pool = metrics.latest_tx_pool_pending or 0

    high_pressure = (
        cpu >= 75
        or anomalies.active_count > 0
        or (metrics.tx_pool_trend == SignalTrend.RISING and tx_pool >= 500)
    )
    if high_pressure:
        risk = (
            GoalRisk.CRITICAL
            if anomalies.critical_count > 0 or cpu >= 90
            else GoalRisk.HIGH
        )
        confidence = (
            0.62
            + (0.14 if anomalies.active_count > 0 else 0)
            + (0.12 if cpu >= 85 else 0)
            + (0.1 if tx_pool >= 1000 else 0)
        )
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.ANOMALY if anomalies.active_count > 0 else GoalSource.METRICS,
                intent=GoalIntent.STABILIZE,
                risk=risk,
                confidence=confidence,
                goal="Stabilize L2 throughput and mitigate active anomaly signals",
                rationale=(
                    f"CPU={cpu:.1f}%, activeAnomaly={anomalies.active_count}, "
                    f"txPool={tx_pool}"
                ),
                metadata=PressureMetadata(
                    cpu=cpu,
                    active_anomaly_count=anomalies.active_count,
                    tx_pool_pending=tx_pool,
                ),
            )
        )

    if failover.recent_count > 0:
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.FAILOVER,
                intent=GoalIntent.INVESTIGATE,
                risk=GoalRisk.HIGH if failover.recent_count >= 2 else GoalRisk.MEDIUM,
                confidence=0.58 + min(0.24, failover.recent_count * 0.08),
                goal=(
                    "Investigate recent L1 RPC failover causes and define "
                    "recurrence prevention actions"
                ),
                rationale=(
                    f"failoverRecent={failover.recent_count}, "
                    f"activeL1Rpc={failover.active_l1_rpc_url}"
                ),
                metadata=FailoverMetadata(failover_recent_count=failover.recent_count),
            )
        )

    cost_optimizable = (
        anomalies.active_count == 0
        and failover.recent_count == 0
        and metrics.cooldown_remaining == 0
        and cost.data_point_count >= 24
        and cost.avg_vcpu >= 2
        and cost.avg_utilization <= 45
    )
    if cost_optimizable:
        confidence = (
            0.56
            + min(0.18, max(0.0, (45 - cost.avg_utilization) / 100))
            + min(0.12, cost.data_point_count / 1000)
        )
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.COST,
                intent=GoalIntent.COST_OPTIMIZE,
                risk=GoalRisk.MEDIUM,
                confidence=confidence,
                goal="Optimize execution resources for cost during idle windows",
                rationale=(
                    f"avgVcpu={_number(cost.avg_vcpu)}, "
                    f"avgUtil={_number(cost.avg_utilization)}%, "
                    f"data={cost.data_point_count}"
                ),
                metadata=CostMetadata(
                    avg_vcpu=cost.avg_vcpu,
                    avg_utilization=cost.avg_utilization,
                    data_point_count=cost.data_point_count,
                ),
            )
        )

    if memory.recent_incident_count >= 3 or memory.recent_high_severity_count >= 2:
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.MEMORY,
                intent=GoalIntent.INVESTIGATE,
                risk=(
                    GoalRisk.HIGH
                    if memory.recent_high_severity_count >= 2
                    else GoalRisk.MEDIUM
                ),
                confidence=0.53 + min(0.25, memory.recent_incident_count * 0.05),
                goal=(
                    "Analyze recurring incident patterns and define preventive "
                    "operational goals"
                ),
                rationale=(
                    f"incidentMemory={memory.recent_incident_count}, "
                    f"highSeverityMemory={memory.recent_high_severity_count}"
                ),
                metadata=IncidentMetadata(
                    recent_incident_count=memory.recent_incident_count,
                    recent_high_severity_count=memory.recent_high_severity_count,
                ),
            )
        )

    if not snapshot.policy.auto_scaling_enabled and (
        cpu >= 70 or anomalies.active_count > 0
    ):
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.POLICY,
                intent=GoalIntent.INVESTIGATE,
                risk=GoalRisk.HIGH,
                confidence=0.64,
                goal=(
                    "Assess risk from disabled autoscaling and restore a safe "
                    "operating path"
                ),
                rationale=(
                    f"autoScalingEnabled=false, cpu={cpu:.1f}%, "
                    f"activeAnomaly={anomalies.active_count}"
                ),
                metadata=AutoscalingMetadata(auto_scaling_enabled=False, cpu=cpu),
            )
        )

    if not candidates:
        candidates.append(
            _create_candidate(
                snapshot,
                now,
                source=GoalSource.METRICS,
                intent=GoalIntent.INVESTIGATE,
                risk=GoalRisk.LOW,
                confidence=0.42,
                goal="Review current operations and prepare next-cycle goals",
                rationale=(
                    "Generated a baseline inspection goal because no strong "
                    "anomaly signal was detected"
                ),
                metadata=BaselineMetadata(),
            )
        )

    return dedupe_candidates(candidates)


def generate_rule_based_candidates(
    snapshot: GoalSignalSnapshot,
    *,
    now: Optional[datetime] = None,
    max_candidates: Optional[int] = None,
) -> List[AutonomousGoalCandidate]:
    """Apply every generation rule to a snapshot.

    Args:
        snapshot: Signal snapshot to evaluate
        now: Creation timestamp for the candidates (default: current UTC time)
        max_candidates: Output cap, clamped to [1, 20] (default 6)

    Returns:
        Deduplicated candidates in rule order, truncated to the cap
    """
    timestamp = ensure_utc(now) if now is not None else utcnow()
    limit = clamp_max_candidates(max_candidates)
    return _build_rule_candidates(snapshot, timestamp)[:limit]


class GoalCandidateGenerator:
    """Produces candidates for a snapshot, optionally passing them through the enhancer."""

    def __init__(
        self,
        config: Optional[CandidateConfig] = None,
        enhancer: Optional["GoalCandidateEnhancer"] = None,
    ) -> None:
        self._config = config or CandidateConfig()
        self._enhancer = enhancer

    def generate(
        self,
        snapshot: GoalSignalSnapshot,
        *,
        now: Optional[datetime] = None,
        max_candidates: Optional[int] = None,
        llm_enhancer_enabled: Optional[bool] = None,
    ) -> CandidateGenerationResult:
        """Generate candidates for a snapshot.

        Args:
            snapshot: Signal snapshot to evaluate
            now: Creation timestamp for the candidates
            max_candidates: Override for the configured cap
            llm_enhancer_enabled: Override for the configured enhancer switch

        Returns:
            Candidates plus whether the enhancer changed them and, if not, why
        """
        rule_candidates = generate_rule_based_candidates(
            snapshot,
            now=now,
            max_candidates=(
                max_candidates
                if max_candidates is not None
                else self._config.max_candidates
            ),
        )
        if not rule_candidates:
            return CandidateGenerationResult(llm_fallback_reason="empty_rule_candidates")

        enabled = (
            llm_enhancer_enabled
            if llm_enhancer_enabled is not None
            else self._config.llm_enhancer_enabled
        )
        if not enabled:
            return CandidateGenerationResult(candidates=rule_candidates)
        if self._enhancer is None:
            return CandidateGenerationResult(
                candidates=rule_candidates, llm_fallback_reason="llm_unavailable"
            )

        result = self._enhancer.enhance(snapshot, rule_candidates)
        logger.debug(
            "Generated goal candidates",
            extra={
                "snapshot_id": snapshot.snapshot_id,
                "candidate_count": len(result.candidates),
                "llm_enhanced": result.llm_enhanced,
                "llm_fallback_reason": result.llm_fallback_reason,
            },
        )
        return result
