"""Goal manager runtime.

Wires the pipeline together for periodic operation:
signal source -> candidate generator -> priority engine -> store -> orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .candidates import GoalCandidateGenerator
from .collaborators import GoalPlanner, InitiatedBy, SignalSource
from .config import GoalAutonomyConfig
from .enhancer import GoalCandidateEnhancer
from .exceptions import GoalNotFoundError
from .learning import GoalLearningRecorder
from .models import (
    AutonomousGoalCandidate,
    CandidateStatus,
    EpisodeOutcome,
    EpisodeStage,
    GoalDlqItem,
    GoalQueueItem,
    GoalSignalSnapshot,
    GoalStatus,
    GoalSuppressionRecord,
    ensure_utc,
    utcnow,
)
from .orchestrator import DispatchResult, GoalOrchestrator, ReplayResult
from .policy import PolicyEngine
from .priority import GoalPriorityEngine
from .state_machine import OPEN_STATUSES, GoalTransitionValidator
from .store import GoalStore

logger = logging.getLogger(__name__)

RECENT_CANDIDATE_LIMIT = 200


@dataclass
class GoalManagerTickResult:
    enabled: bool
    snapshot: Optional[GoalSignalSnapshot] = None
    generated_count: int = 0
    queued_count: int = 0
    suppressed_count: int = 0
    queue_depth: int = 0
    llm_enhanced: bool = False
    llm_fallback_reason: Optional[str] = None


@dataclass
class GoalManagerState:
    active_goal_id: Optional[str]
    queue: List[GoalQueueItem] = field(default_factory=list)
    candidates: List[AutonomousGoalCandidate] = field(default_factory=list)
    suppression: List[GoalSuppressionRecord] = field(default_factory=list)
    dlq: List[GoalDlqItem] = field(default_factory=list)


class GoalManager:
    """Runs tick (generate and admit) and dispatch cycles over a goal store."""

    def __init__(
        self,
        *,
        store: GoalStore,
        signal_source: SignalSource,
        orchestrator: GoalOrchestrator,
        config: Optional[GoalAutonomyConfig] = None,
        generator: Optional[GoalCandidateGenerator] = None,
        priority_engine: Optional[GoalPriorityEngine] = None,
        learning: Optional[GoalLearningRecorder] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._signal_source = signal_source
        self._orchestrator = orchestrator
        self._config = config or GoalAutonomyConfig()
        self._generator = generator or GoalCandidateGenerator(
            self._config.candidates, GoalCandidateEnhancer(self._config.enhancer)
        )
        self._priority = priority_engine or GoalPriorityEngine(self._config.priority)
        self._learning = learning or GoalLearningRecorder(store)
        self._clock = clock
        self._transitions = GoalTransitionValidator()

    @classmethod
    def from_config(
        cls,
        config: GoalAutonomyConfig,
        *,
        store: GoalStore,
        signal_source: SignalSource,
        planner: GoalPlanner,
        policy: Optional[PolicyEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "GoalManager":
        """Build a manager and its orchestrator from one configuration."""
        learning = GoalLearningRecorder(store)
        orchestrator = GoalOrchestrator(
            store=store,
            planner=planner,
            policy=policy,
            learning=learning,
            retry_policy=config.retry,
            lease_config=config.lease,
            read_only_mode=config.manager.read_only_mode,
            clock=clock,
        )
        return cls(
            store=store,
            signal_source=signal_source,
            orchestrator=orchestrator,
            config=config,
            learning=learning,
            clock=clock,
        )

    @property
    def config(self) -> GoalAutonomyConfig:
        return self._config

    @property
    def orchestrator(self) -> GoalOrchestrator:
        return self._orchestrator

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else ensure_utc(self._clock())

    def _queue_limit(self) -> int:
        return self._config.manager.queue_limit

    def expire_queue_items(self, now: Optional[datetime] = None) -> int:
        """Expire queued items whose TTL has elapsed.

        Returns:
            Number of items moved to ``expired``
        """
        now = self._now(now)
        expired = 0
        for item in self._store.list_queue(self._queue_limit(), statuses=[GoalStatus.QUEUED]):
            if item.expires_at is None or ensure_utc(item.expires_at) > now:
                continue
            self._transitions.validate(item.goal_id, item.status, GoalStatus.EXPIRED)
            updated = self._store.compare_and_update(
                item.goal_id,
                [GoalStatus.QUEUED],
                {"status": GoalStatus.EXPIRED, "finished_at": now},
            )
            if updated is not None:
                expired += 1
        if expired:
            logger.info("Expired goal queue items", extra={"expired": expired})
        return expired

    async def tick(self, now: Optional[datetime] = None) -> GoalManagerTickResult:
        """Collect signals, generate candidates and admit them to the queue."""
        if not self._config.manager.enabled:
            return GoalManagerTickResult(
                enabled=False, llm_fallback_reason="goal_manager_disabled"
            )

        now = self._now(now)
        self.expire_queue_items(now)

        snapshot = await self._signal_source.collect(now)
        generated = await asyncio.to_thread(
            self._generator.generate,
            snapshot,
            now=now,
            llm_enhancer_enabled=self._config.candidates.llm_enhancer_enabled,
        )

        open_items = self._store.list_queue(self._queue_limit(), statuses=OPEN_STATUSES)
        recent_candidates = self._store.list_candidates(RECENT_CANDIDATE_LIMIT)
        prioritized = self._priority.prioritize(
            snapshot,
            generated.candidates,
            existing_queue=open_items,
            recent_candidates=recent_candidates,
            now=now,
        )

        suppressed_by_candidate = {
            record.candidate_id: record.reason_code for record in prioritized.suppressed
        }
        queued_by_candidate = {item.candidate_id: item for item in prioritized.queued}

        for candidate in generated.candidates:
            reason = suppressed_by_candidate.get(candidate.id)
            queue_item = queued_by_candidate.get(candidate.id)
            if reason is not None:
                status = CandidateStatus.SUPPRESSED
                outcome = EpisodeOutcome.SUPPRESSED
            elif queue_item is not None:
                status = CandidateStatus.QUEUED
                outcome = EpisodeOutcome.QUEUED
            else:
                status = candidate.status
                outcome = EpisodeOutcome.SUPPRESSED

            self._store.add_candidate(
                candidate.model_copy(
                    update={
                        "status": status,
                        "score": queue_item.score if queue_item else None,
                        "suppression_reason_code": reason,
                        "updated_at": now,
                    }
                )
            )
            self._learning.record(
                timestamp=now,
                stage=EpisodeStage.SELECTION,
                snapshot_id=snapshot.snapshot_id,
                goal_id=queue_item.goal_id if queue_item else None,
                candidate_id=candidate.id,
                intent=candidate.intent,
                source=candidate.source,
                risk=candidate.risk,
                confidence=candidate.confidence,
                score_total=queue_item.score.total if queue_item else None,
                suppression_reason_code=reason,
                outcome=outcome,
            )

        for item in prioritized.queued:
            self._store.upsert_queue_item(item)
        for record in prioritized.suppressed:
            self._store.add_suppression_record(record)

        queue_depth = len(self._store.list_queue(self._queue_limit(), statuses=OPEN_STATUSES))
        result = GoalManagerTickResult(
            enabled=True,
            snapshot=snapshot,
            generated_count=len(generated.candidates),
            queued_count=len(prioritized.queued),
            suppressed_count=len(prioritized.suppressed),
            queue_depth=queue_depth,
            llm_enhanced=generated.llm_enhanced,
            llm_fallback_reason=generated.llm_fallback_reason,
        )
        logger.info(
            "Goal manager tick",
            extra={
                "snapshot_id": snapshot.snapshot_id,
                "generated": result.generated_count,
                "queued": result.queued_count,
                "suppressed": result.suppressed_count,
                "queue_depth": queue_depth,
            },
        )
        return result

    def get_goal(self, goal_id: str) -> GoalQueueItem:
        """Return a queue item.

        Raises:
            GoalNotFoundError: If no queue item has this id
        """
        item = self._store.get_queue_item(goal_id)
        if item is None:
            raise GoalNotFoundError(goal_id)
        return item

    def list_state(self, limit: int = 50) -> GoalManagerState:
        safe_limit = min(max(limit, 1), 500)
        return GoalManagerState(
            active_goal_id=self._store.get_active_goal_id(),
            queue=self._store.list_queue(safe_limit),
            candidates=self._store.list_candidates(safe_limit),
            suppression=self._store.list_suppression_records(safe_limit),
            dlq=self._store.list_dlq_items(safe_limit),
        )

    async def dispatch_top_goal(
        self,
        *,
        now: Optional[datetime] = None,
        dry_run: Optional[bool] = None,
        allow_writes: Optional[bool] = None,
        initiated_by: InitiatedBy = "scheduler",
    ) -> DispatchResult:
        """Recover abandoned goals, then dispatch the top queued goal."""
        manager_config = self._config.manager
        if not manager_config.enabled:
            return DispatchResult(
                dispatched=False, enabled=False, reason="goal_manager_disabled"
            )
        if not manager_config.dispatch_enabled:
            return DispatchResult(dispatched=False, reason="dispatch_disabled")

        now = self._now(now)
        self._orchestrator.recover_abandoned_goals(now)
        return await self._orchestrator.dispatch_next_goal(
            now=now,
            dry_run=manager_config.dispatch_dry_run if dry_run is None else dry_run,
            allow_writes=(
                manager_config.dispatch_allow_writes if allow_writes is None else allow_writes
            ),
            initiated_by=initiated_by,
        )

    def replay_dlq(self, goal_id: str, now: Optional[datetime] = None) -> ReplayResult:
        return self._orchestrator.replay_goal_from_dlq(goal_id, now)
