"""Domain models for the goal autonomy pipeline.

Covers the signal snapshot consumed from the collector, candidates produced
by the generator, the durable queue items owned by the orchestrator, and the
lease/checkpoint/idempotency/DLQ records that guard dispatch.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with ties going up, unlike Python's banker's ``round``."""
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


class GoalSource(str, Enum):
    """Signal family a goal was derived from."""

    METRICS = "metrics"
    ANOMALY = "anomaly"
    POLICY = "policy"
    COST = "cost"
    FAILOVER = "failover"
    MEMORY = "memory"


class GoalIntent(str, Enum):
    """Planner intent inferred for a goal."""

    STABILIZE = "stabilize"
    INVESTIGATE = "investigate"
    COST_OPTIMIZE = "cost-optimize"
    RECOVER = "recover"
    CUSTOM = "custom"


class GoalRisk(str, Enum):
    """Operational risk of acting on a goal."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return RISK_RANK[self]


RISK_RANK: Dict[GoalRisk, int] = {
    GoalRisk.CRITICAL: 4,
    GoalRisk.HIGH: 3,
    GoalRisk.MEDIUM: 2,
    GoalRisk.LOW: 1,
}


class CandidateStatus(str, Enum):
    CANDIDATE = "candidate"
    QUEUED = "queued"
    SUPPRESSED = "suppressed"


class GoalStatus(str, Enum):
    """Queue item lifecycle states."""

    QUEUED = "queued"  # Admitted, waiting for dispatch
    SCHEDULED = "scheduled"  # Picked by a worker, lease pending
    RUNNING = "running"  # Lease held, planner executing
    COMPLETED = "completed"
    FAILED = "failed"  # Terminal: policy block or idempotency stop
    DLQ = "dlq"  # Retries exhausted
    EXPIRED = "expired"  # TTL elapsed before dispatch


class SuppressionReason(str, Enum):
    """Admission-time rejection codes, in evaluation precedence order."""

    STALE_SIGNAL = "stale_signal"
    LOW_CONFIDENCE = "low_confidence"
    COOLDOWN_ACTIVE = "cooldown_active"
    POLICY_BLOCKED = "policy_blocked"
    DUPLICATE_GOAL = "duplicate_goal"


class SignalTrend(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class ExecutionPhase(str, Enum):
    """Dispatch phases recorded as forensic checkpoints."""

    SCHEDULED = "scheduled"
    LEASE_ACQUIRED = "lease_acquired"
    POLICY_CHECK = "policy_check"
    PLAN_STARTED = "plan_started"
    PLAN_COMPLETED = "plan_completed"
    VERIFY_COMPLETED = "verify_completed"
    REQUEUED = "requeued"
    FAILED = "failed"
    DLQ = "dlq"


class EpisodeStage(str, Enum):
    SELECTION = "selection"
    EXECUTION = "execution"


class EpisodeOutcome(str, Enum):
    QUEUED = "queued"
    SUPPRESSED = "suppressed"
    COMPLETED = "completed"
    FAILED = "failed"
    REQUEUED = "requeued"
    DLQ = "dlq"


# ---------------------------------------------------------------------------
# Signal snapshot
# ---------------------------------------------------------------------------


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class MetricsSignal(_FrozenModel):
    latest_cpu_usage: Optional[float] = None
    latest_tx_pool_pending: Optional[int] = None
    latest_gas_used_ratio: Optional[float] = None
    current_vcpu: float = 1
    cooldown_remaining: int = 0
    cpu_trend: SignalTrend = SignalTrend.STABLE
    tx_pool_trend: SignalTrend = SignalTrend.STABLE
    gas_trend: SignalTrend = SignalTrend.STABLE


class AnomalySignal(_FrozenModel):
    active_count: int = 0
    critical_count: int = 0
    latest_event_timestamp: Optional[datetime] = None


class FailoverSignal(_FrozenModel):
    recent_count: int = 0
    latest_event_timestamp: Optional[datetime] = None
    active_l1_rpc_url: str = ""


class CostSignal(_FrozenModel):
    avg_vcpu: float = 0
    peak_vcpu: float = 0
    avg_utilization: float = 0
    data_point_count: int = 0


class MemorySignal(_FrozenModel):
    recent_entry_count: int = 0
    recent_incident_count: int = 0
    recent_high_severity_count: int = 0
    latest_entry_timestamp: Optional[datetime] = None


class PolicySignal(_FrozenModel):
    read_only_mode: bool = False
    auto_scaling_enabled: bool = True


class GoalSignalSnapshot(_FrozenModel):
    """Point-in-time read of operational signals.

    Produced by the external collector and never mutated. Later entities
    refer to it by ``snapshot_id`` only.
    """

    snapshot_id: str
    collected_at: datetime
    chain_type: str
    sources: Tuple[GoalSource, ...] = ()
    metrics: MetricsSignal = Field(default_factory=MetricsSignal)
    anomalies: AnomalySignal = Field(default_factory=AnomalySignal)
    failover: FailoverSignal = Field(default_factory=FailoverSignal)
    cost: CostSignal = Field(default_factory=CostSignal)
    memory: MemorySignal = Field(default_factory=MemorySignal)
    policy: PolicySignal = Field(default_factory=PolicySignal)


# ---------------------------------------------------------------------------
# Typed candidate metadata (one variant per generation rule)
# ---------------------------------------------------------------------------


class PressureMetadata(_FrozenModel):
    kind: Literal["pressure"] = "pressure"
    cpu: float
    active_anomaly_count: int
    tx_pool_pending: int


class FailoverMetadata(_FrozenModel):
    kind: Literal["failover"] = "failover"
    failover_recent_count: int


class CostMetadata(_FrozenModel):
    kind: Literal["cost"] = "cost"
    avg_vcpu: float
    avg_utilization: float
    data_point_count: int


class IncidentMetadata(_FrozenModel):
    kind: Literal["incident"] = "incident"
    recent_incident_count: int
    recent_high_severity_count: int


class AutoscalingMetadata(_FrozenModel):
    kind: Literal["autoscaling"] = "autoscaling"
    auto_scaling_enabled: bool = False
    cpu: float


class BaselineMetadata(_FrozenModel):
    kind: Literal["baseline"] = "baseline"
    fallback: bool = True


CandidateMetadata = Annotated[
    Union[
        PressureMetadata,
        FailoverMetadata,
        CostMetadata,
        IncidentMetadata,
        AutoscalingMetadata,
        BaselineMetadata,
    ],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Candidates, scores, queue items
# ---------------------------------------------------------------------------


class GoalPriorityScore(_FrozenModel):
    """Bounded priority sub-scores and their exact sum."""

    impact: int = Field(ge=0, le=40)
    urgency: int = Field(ge=0, le=25)
    confidence: int = Field(ge=0, le=20)
    policy_fit: int = Field(ge=0, le=15)
    total: int = Field(ge=0, le=100)

    @model_validator(mode="after")
    def _check_total(self) -> "GoalPriorityScore":
        expected = self.impact + self.urgency + self.confidence + self.policy_fit
        if self.total != expected:
            raise ValueError(f"total {self.total} != sum of sub-scores {expected}")
        return self

    @classmethod
    def from_parts(
        cls, *, impact: int, urgency: int, confidence: int, policy_fit: int
    ) -> "GoalPriorityScore":
        return cls(
            impact=impact,
            urgency=urgency,
            confidence=confidence,
            policy_fit=policy_fit,
            total=impact + urgency + confidence + policy_fit,
        )


class AutonomousGoalCandidate(BaseModel):
    """A proposed goal before queue admission."""

    id: str
    created_at: datetime
    updated_at: datetime
    source: GoalSource
    status: CandidateStatus = CandidateStatus.CANDIDATE
    goal: str
    intent: GoalIntent
    risk: GoalRisk
    confidence: float = Field(ge=0.0, le=1.0)
    signature: str
    rationale: str
    signal_snapshot_id: str
    score: Optional[GoalPriorityScore] = None
    suppression_reason_code: Optional[SuppressionReason] = None
    metadata: Optional[CandidateMetadata] = None


class GoalQueueItem(BaseModel):
    """Durable unit of work owned by the orchestrator once enqueued."""

    goal_id: str
    candidate_id: str
    signal_snapshot_id: str
    enqueued_at: datetime
    scheduled_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    attempts: int = 0
    status: GoalStatus = GoalStatus.QUEUED
    goal: str
    intent: GoalIntent
    source: GoalSource
    risk: GoalRisk
    confidence: float = Field(ge=0.0, le=1.0)
    signature: str
    score: GoalPriorityScore
    last_error: Optional[str] = None
    plan_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    metadata: Optional[CandidateMetadata] = None

    def priority_key(self) -> Tuple[int, int, datetime, str]:
        """Sort key for the dispatch total order (ascending sorts best first)."""
        return (
            -self.score.total,
            -self.risk.rank,
            ensure_utc(self.enqueued_at),
            self.goal_id,
        )

    def is_dispatchable(self, now: datetime) -> bool:
        if self.status != GoalStatus.QUEUED:
            return False
        if self.next_attempt_at is None:
            return True
        return ensure_utc(self.next_attempt_at) <= ensure_utc(now)


class GoalSuppressionRecord(_FrozenModel):
    """Append-only audit entry for a suppressed candidate."""

    id: str
    timestamp: datetime
    candidate_id: str
    signature: str
    source: GoalSource
    risk: GoalRisk
    reason_code: SuppressionReason
    details: Optional[str] = None


# ---------------------------------------------------------------------------
# Dispatch guard records
# ---------------------------------------------------------------------------


class GoalLeaseRecord(_FrozenModel):
    goal_id: str
    owner_id: str
    leased_at: datetime
    lease_expires_at: datetime
    heartbeat_at: datetime
    version: int = Field(default=1, ge=1)

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.lease_expires_at) <= ensure_utc(now)


class GoalExecutionCheckpoint(_FrozenModel):
    goal_id: str
    phase: ExecutionPhase
    timestamp: datetime
    details: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GoalIdempotencyRecord(_FrozenModel):
    key: str
    goal_id: str
    owner_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return ensure_utc(self.expires_at) <= ensure_utc(now)


class GoalDlqItem(_FrozenModel):
    """Dead-lettered goal with the queue item snapshot taken at failure."""

    id: str
    goal_id: str
    moved_at: datetime
    reason: str
    attempts: int
    last_error: Optional[str] = None
    queue_item: GoalQueueItem


class GoalLearningEpisode(_FrozenModel):
    """Outcome telemetry appended for offline policy tuning."""

    id: str
    timestamp: datetime
    stage: EpisodeStage
    snapshot_id: str
    goal_id: Optional[str] = None
    candidate_id: Optional[str] = None
    intent: GoalIntent
    source: GoalSource
    risk: GoalRisk
    confidence: float = Field(ge=0.0, le=1.0)
    score_total: Optional[int] = None
    suppression_reason_code: Optional[SuppressionReason] = None
    outcome: EpisodeOutcome
    verification_passed: Optional[bool] = None
    rollback_triggered: Optional[bool] = None
    rollback_succeeded: Optional[bool] = None
    execution_latency_ms: Optional[int] = None
    details: Optional[str] = None
