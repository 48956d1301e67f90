"""Durable goal dispatch with lease, idempotency, checkpoint, retry and DLQ.

One call to :meth:`GoalOrchestrator.dispatch_next_goal` processes at most one
queue item:

1. select the next due item in priority order (``queue_empty`` if none)
2. move it queued -> scheduled with a status-guarded update
3. acquire the per-goal lease (``lease_active`` if another worker holds it)
4. register the write-once idempotency key (``idempotency_duplicate`` stops)
5. move it to running and bump ``attempts``
6. consult the policy engine; anything but ``allow`` fails the goal and an
   exception is retried like a planner failure
7. delegate to the planner
8. complete, requeue with exponential backoff, or dead-letter

A heartbeat renews the lease while the goal runs. The lease, checkpoint and
active-goal pointer are released together before the call returns, whatever
the outcome, unless another worker has taken the lease over. Goal-level
outcomes are reported as :class:`DispatchResult` values and never raised.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .collaborators import GoalPlanner, InitiatedBy, PlanExecutionOptions
from .config import LeaseConfig
from .exceptions import GoalStoreError
from .learning import GoalLearningRecorder
from .models import (
    EpisodeOutcome,
    EpisodeStage,
    ExecutionPhase,
    GoalDlqItem,
    GoalExecutionCheckpoint,
    GoalIdempotencyRecord,
    GoalLeaseRecord,
    GoalQueueItem,
    GoalStatus,
    ensure_utc,
    utcnow,
)
from .policy import GoalExecutionPolicyInput, PolicyDecision, PolicyEngine, ReadOnlyWritePolicy
from .retry_policy import GoalRetryPolicy
from .state_machine import GoalTransitionValidator
from .store import GoalStore

logger = logging.getLogger(__name__)

IDEMPOTENCY_KEY_LENGTH = 40
RECOVERY_SCAN_LIMIT = 500


@dataclass
class DispatchResult:
    """Outcome of one dispatch attempt."""

    dispatched: bool
    goal_id: Optional[str] = None
    plan_id: Optional[str] = None
    status: Optional[GoalStatus] = None
    execution_log_count: Optional[int] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    enabled: bool = True


@dataclass
class ReplayResult:
    replayed: bool
    goal_id: Optional[str] = None
    reason: Optional[str] = None


def default_owner_id() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:6]}"


def build_idempotency_key(
    goal_id: str, signature: str, dry_run: bool, allow_writes: bool
) -> str:
    """Hash of the request parameters that make two dispatches equivalent."""
    payload = f"{goal_id}|{signature}|{str(dry_run).lower()}|{str(allow_writes).lower()}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:IDEMPOTENCY_KEY_LENGTH]


class GoalOrchestrator:
    """Dispatches queued goals to the planner exactly once per equivalent request."""

    def __init__(
        self,
        *,
        store: GoalStore,
        planner: GoalPlanner,
        policy: Optional[PolicyEngine] = None,
        learning: Optional[GoalLearningRecorder] = None,
        retry_policy: Optional[GoalRetryPolicy] = None,
        lease_config: Optional[LeaseConfig] = None,
        read_only_mode: bool = False,
        owner_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._planner = planner
        self._policy = policy or ReadOnlyWritePolicy()
        self._learning = learning
        self._retry = retry_policy or GoalRetryPolicy()
        self._lease = lease_config or LeaseConfig()
        self._read_only_mode = read_only_mode
        self._owner_id = owner_id or default_owner_id()
        self._clock = clock
        self._transitions = GoalTransitionValidator()

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def retry_policy(self) -> GoalRetryPolicy:
        return self._retry

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else ensure_utc(self._clock())

    # ------------------------------------------------------------------
    # Store helpers
    # ------------------------------------------------------------------

    def _transition(
        self,
        item: GoalQueueItem,
        to_status: GoalStatus,
        updates: Optional[Dict[str, Any]] = None,
        *,
        reason: Optional[str] = None,
    ) -> GoalQueueItem:
        self._transitions.validate(item.goal_id, item.status, to_status, reason=reason)
        changes: Dict[str, Any] = dict(updates or {})
        changes["status"] = to_status
        updated = self._store.compare_and_update(item.goal_id, [item.status], changes)
        if updated is None:
            raise GoalStoreError(
                f"Goal {item.goal_id} changed concurrently; expected status {item.status.value}"
            )
        logger.debug(
            "Goal status transition",
            extra={
                "goal_id": item.goal_id,
                "from_status": item.status.value,
                "to_status": to_status.value,
            },
        )
        return updated

    def _checkpoint(
        self,
        goal_id: str,
        phase: ExecutionPhase,
        now: datetime,
        details: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store.set_checkpoint(
            GoalExecutionCheckpoint(
                goal_id=goal_id,
                phase=phase,
                timestamp=now,
                details=details,
                metadata=metadata or {},
            )
        )
        logger.debug(
            "Goal checkpoint",
            extra={"goal_id": goal_id, "phase": phase.value, "details": details},
        )

    def _record_episode(
        self,
        item: GoalQueueItem,
        outcome: EpisodeOutcome,
        now: datetime,
        *,
        verification_passed: Optional[bool] = None,
        execution_latency_ms: Optional[int] = None,
        details: Optional[str] = None,
    ) -> None:
        if self._learning is None:
            return
        self._learning.record(
            timestamp=now,
            stage=EpisodeStage.EXECUTION,
            snapshot_id=item.signal_snapshot_id,
            goal_id=item.goal_id,
            candidate_id=item.candidate_id,
            intent=item.intent,
            source=item.source,
            risk=item.risk,
            confidence=item.confidence,
            score_total=item.score.total,
            outcome=outcome,
            verification_passed=verification_passed,
            execution_latency_ms=execution_latency_ms,
            details=details,
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch_next_goal(
        self,
        *,
        now: Optional[datetime] = None,
        dry_run: bool = True,
        allow_writes: bool = False,
        initiated_by: InitiatedBy = "scheduler",
    ) -> DispatchResult:
        """Dispatch the highest-priority due goal.

        Args:
            now: Dispatch time (default: orchestrator clock)
            dry_run: Ask the planner not to mutate infrastructure
            allow_writes: Permit write actions (subject to policy)
            initiated_by: Caller kind forwarded to the planner

        Returns:
            Structured outcome; ``dispatched`` is False only when nothing ran
        """
        now = self._now(now)

        item = self._store.next_due_item(now)
        if item is None:
            return DispatchResult(dispatched=False, reason="queue_empty")
        goal_id = item.goal_id

        self._transitions.validate(goal_id, item.status, GoalStatus.SCHEDULED)
        scheduled = self._store.compare_and_update(
            goal_id,
            [GoalStatus.QUEUED],
            {"status": GoalStatus.SCHEDULED, "scheduled_at": now},
        )
        if scheduled is None:
            logger.warning(
                "Goal picked by another worker",
                extra={"goal_id": goal_id, "reason": "lease_active"},
            )
            return DispatchResult(dispatched=False, goal_id=goal_id, reason="lease_active")
        self._checkpoint(goal_id, ExecutionPhase.SCHEDULED, now)

        lease = self._store.try_acquire_lease(
            goal_id, self._owner_id, now, self._lease.lease_ttl_seconds
        )
        if lease is None:
            self._checkpoint(goal_id, ExecutionPhase.FAILED, now, "lease_active")
            logger.warning(
                "Goal lease held by another worker",
                extra={"goal_id": goal_id, "reason": "lease_active"},
            )
            return DispatchResult(dispatched=False, goal_id=goal_id, reason="lease_active")

        heartbeat = asyncio.create_task(self._keep_lease_alive(goal_id))
        try:
            return await self._run_leased(
                scheduled,
                lease,
                now,
                dry_run=dry_run,
                allow_writes=allow_writes,
                initiated_by=initiated_by,
            )
        except GoalStoreError as exc:
            logger.error(
                "Goal dispatch aborted by store conflict",
                extra={"goal_id": goal_id, "error": str(exc)},
            )
            return DispatchResult(
                dispatched=False, goal_id=goal_id, reason="state_conflict", error=str(exc)
            )
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            if not self._store.release_goal(goal_id, self._owner_id):
                logger.warning(
                    "Goal lease taken over before release",
                    extra={"goal_id": goal_id, "owner_id": self._owner_id},
                )

    async def _keep_lease_alive(self, goal_id: str) -> None:
        """Renew the goal lease until cancelled or until another owner takes it."""
        ttl = self._lease.lease_ttl_seconds
        interval = min(self._lease.heartbeat_interval_seconds, ttl / 2)
        while True:
            await asyncio.sleep(interval)
            now = self._now(None)
            try:
                lease = self._store.renew_lease(goal_id, self._owner_id, now, ttl)
                if lease is not None:
                    self._store.compare_and_update(
                        goal_id,
                        [GoalStatus.SCHEDULED, GoalStatus.RUNNING],
                        {"lease_expires_at": lease.lease_expires_at},
                    )
            except Exception as exc:
                logger.warning(
                    "Goal lease renewal failed",
                    extra={"goal_id": goal_id, "error": str(exc)},
                    exc_info=True,
                )
                continue
            if lease is None:
                logger.warning(
                    "Goal lease lost while running",
                    extra={"goal_id": goal_id, "owner_id": self._owner_id},
                )
                return
            logger.debug(
                "Goal lease renewed",
                extra={"goal_id": goal_id, "lease_expires_at": lease.lease_expires_at.isoformat()},
            )

    async def _run_leased(
        self,
        item: GoalQueueItem,
        lease: GoalLeaseRecord,
        now: datetime,
        *,
        dry_run: bool,
        allow_writes: bool,
        initiated_by: InitiatedBy,
    ) -> DispatchResult:
        goal_id = item.goal_id
        self._store.set_active_goal_id(goal_id)
        self._checkpoint(
            goal_id,
            ExecutionPhase.LEASE_ACQUIRED,
            now,
            metadata={
                "owner_id": lease.owner_id,
                "lease_expires_at": lease.lease_expires_at.isoformat(),
                "version": lease.version,
            },
        )

        key = build_idempotency_key(goal_id, item.signature, dry_run, allow_writes)
        registered = self._store.register_idempotency(
            GoalIdempotencyRecord(
                key=key,
                goal_id=goal_id,
                owner_id=self._owner_id,
                created_at=now,
                expires_at=now + timedelta(seconds=self._lease.idempotency_ttl_seconds),
            ),
            now,
        )
        if not registered:
            message = "idempotency duplicate"
            failed = self._transition(
                item,
                GoalStatus.FAILED,
                {"finished_at": now, "last_error": message, "idempotency_key": key},
                reason="idempotency_duplicate",
            )
            self._checkpoint(goal_id, ExecutionPhase.FAILED, now, "idempotency_duplicate")
            self._record_episode(failed, EpisodeOutcome.FAILED, now, details=message)
            logger.warning(
                "Duplicate goal dispatch stopped",
                extra={"goal_id": goal_id, "idempotency_key": key},
            )
            return DispatchResult(
                dispatched=True,
                goal_id=goal_id,
                status=GoalStatus.FAILED,
                reason="idempotency_duplicate",
                error=message,
            )

        running = self._transition(
            item,
            GoalStatus.RUNNING,
            {
                "started_at": now,
                "attempts": item.attempts + 1,
                "idempotency_key": key,
                "lease_owner": lease.owner_id,
                "lease_expires_at": lease.lease_expires_at,
            },
        )

        try:
            evaluation = await self._policy.evaluate(
                GoalExecutionPolicyInput(
                    auto_execute=True,
                    allow_writes=allow_writes,
                    read_only_mode=self._read_only_mode,
                    risk=running.risk,
                    confidence=running.confidence,
                )
            )
        except Exception as exc:
            logger.warning(
                "Goal policy check raised",
                extra={"goal_id": goal_id, "error": str(exc)},
                exc_info=True,
            )
            self._checkpoint(goal_id, ExecutionPhase.POLICY_CHECK, now, "policy_error")
            return self._handle_failure(
                running,
                now,
                0.0,
                message=str(exc) or type(exc).__name__,
                dlq_reason="policy_error",
            )
        self._checkpoint(goal_id, ExecutionPhase.POLICY_CHECK, now, evaluation.reason_code)
        if evaluation.decision != PolicyDecision.ALLOW:
            failed = self._transition(
                running,
                GoalStatus.FAILED,
                {"finished_at": now, "last_error": evaluation.message},
                reason=evaluation.reason_code,
            )
            self._checkpoint(goal_id, ExecutionPhase.FAILED, now, evaluation.message)
            self._record_episode(failed, EpisodeOutcome.FAILED, now, details=evaluation.message)
            logger.info(
                "Goal blocked by policy",
                extra={
                    "goal_id": goal_id,
                    "decision": evaluation.decision.value,
                    "reason": evaluation.reason_code,
                },
            )
            return DispatchResult(
                dispatched=True,
                goal_id=goal_id,
                status=GoalStatus.FAILED,
                reason=evaluation.reason_code,
                error=evaluation.message,
            )

        self._checkpoint(goal_id, ExecutionPhase.PLAN_STARTED, now)
        started = time.perf_counter()
        try:
            execution = await self._planner.plan_and_execute(
                running.goal,
                PlanExecutionOptions(
                    dry_run=dry_run,
                    allow_writes=allow_writes,
                    initiated_by=initiated_by,
                ),
            )
        except Exception as exc:
            elapsed = time.perf_counter() - started
            logger.warning(
                "Goal planner raised",
                extra={"goal_id": goal_id, "error": str(exc)},
                exc_info=True,
            )
            return self._handle_failure(
                running,
                now,
                elapsed,
                message=str(exc) or type(exc).__name__,
                dlq_reason="runtime_exception",
            )
        elapsed = time.perf_counter() - started
        plan = execution.plan
        self._checkpoint(goal_id, ExecutionPhase.PLAN_COMPLETED, now, plan.status)

        if plan.status == "completed":
            completed = self._transition(
                running,
                GoalStatus.COMPLETED,
                {"finished_at": now + timedelta(seconds=elapsed), "plan_id": plan.plan_id},
            )
            self._checkpoint(goal_id, ExecutionPhase.VERIFY_COMPLETED, now)
            self._record_episode(
                completed,
                EpisodeOutcome.COMPLETED,
                now,
                verification_passed=True,
                execution_latency_ms=int(elapsed * 1000),
            )
            logger.info(
                "Goal completed",
                extra={"goal_id": goal_id, "plan_id": plan.plan_id, "attempts": completed.attempts},
            )
            return DispatchResult(
                dispatched=True,
                goal_id=goal_id,
                plan_id=plan.plan_id,
                status=GoalStatus.COMPLETED,
                execution_log_count=len(execution.execution_log),
            )

        return self._handle_failure(
            running,
            now,
            elapsed,
            message=execution.first_failure_message() or "goal execution failed",
            dlq_reason="max_retries_exceeded",
            plan_id=plan.plan_id,
            execution_log_count=len(execution.execution_log),
        )

    def _handle_failure(
        self,
        running: GoalQueueItem,
        now: datetime,
        elapsed: float,
        *,
        message: str,
        dlq_reason: str,
        plan_id: Optional[str] = None,
        execution_log_count: Optional[int] = None,
    ) -> DispatchResult:
        goal_id = running.goal_id
        failed_attempts = running.attempts
        latency_ms = int(elapsed * 1000)
        updates: Dict[str, Any] = {"last_error": message}
        if plan_id is not None:
            updates["plan_id"] = plan_id

        if self._retry.exhausted(failed_attempts):
            updates["finished_at"] = now
            dead = self._transition(running, GoalStatus.DLQ, updates, reason=dlq_reason)
            self._store.add_dlq_item(
                GoalDlqItem(
                    id=str(uuid.uuid4()),
                    goal_id=goal_id,
                    moved_at=now,
                    reason=dlq_reason,
                    attempts=dead.attempts,
                    last_error=message,
                    queue_item=dead,
                )
            )
            self._checkpoint(goal_id, ExecutionPhase.DLQ, now, message)
            self._record_episode(
                dead,
                EpisodeOutcome.DLQ,
                now,
                verification_passed=False,
                execution_latency_ms=latency_ms,
                details=message,
            )
            logger.warning(
                "Goal moved to dead-letter queue",
                extra={
                    "goal_id": goal_id,
                    "reason": dlq_reason,
                    "attempts": failed_attempts,
                    "error": message,
                },
            )
            return DispatchResult(
                dispatched=True,
                goal_id=goal_id,
                plan_id=plan_id,
                status=GoalStatus.DLQ,
                execution_log_count=execution_log_count,
                error=message,
            )

        backoff_ms = self._retry.calculate_backoff_ms(failed_attempts)
        updates.update(
            {
                "next_attempt_at": now + timedelta(milliseconds=backoff_ms),
                "started_at": None,
                "finished_at": None,
                "lease_owner": None,
                "lease_expires_at": None,
            }
        )
        requeued = self._transition(running, GoalStatus.QUEUED, updates, reason="requeued")
        if running.idempotency_key:
            self._store.release_idempotency(running.idempotency_key)
        self._checkpoint(
            goal_id, ExecutionPhase.REQUEUED, now, message, {"backoff_ms": backoff_ms}
        )
        self._record_episode(
            requeued,
            EpisodeOutcome.REQUEUED,
            now,
            verification_passed=False,
            execution_latency_ms=latency_ms,
            details=message,
        )
        logger.info(
            "Goal requeued with backoff",
            extra={
                "goal_id": goal_id,
                "attempts": failed_attempts,
                "backoff_ms": backoff_ms,
                "error": message,
            },
        )
        return DispatchResult(
            dispatched=True,
            goal_id=goal_id,
            plan_id=plan_id,
            status=GoalStatus.QUEUED,
            execution_log_count=execution_log_count,
            reason="requeued",
            error=message,
        )

    # ------------------------------------------------------------------
    # Replay and recovery
    # ------------------------------------------------------------------

    def replay_goal_from_dlq(
        self, goal_id: str, now: Optional[datetime] = None
    ) -> ReplayResult:
        """Put a dead-lettered goal back on the queue, due immediately."""
        now = self._now(now)
        target = self._store.get_dlq_item(goal_id)
        if target is None or not self._store.remove_dlq_item(goal_id):
            return ReplayResult(replayed=False, reason="dlq_item_not_found")

        snapshot = target.queue_item
        self._transitions.validate(goal_id, GoalStatus.DLQ, GoalStatus.QUEUED, reason="replay")
        replay = snapshot.model_copy(
            update={
                "status": GoalStatus.QUEUED,
                "next_attempt_at": now,
                "scheduled_at": None,
                "started_at": None,
                "finished_at": None,
                "expires_at": None,
                "lease_owner": None,
                "lease_expires_at": None,
                "last_error": None,
            }
        )
        self._store.upsert_queue_item(replay)
        if snapshot.idempotency_key:
            self._store.release_idempotency(snapshot.idempotency_key)
        self._store.release_goal(goal_id)

        logger.info("Replayed goal from dead-letter queue", extra={"goal_id": goal_id})
        return ReplayResult(replayed=True, goal_id=goal_id)

    def recover_abandoned_goals(self, now: Optional[datetime] = None) -> int:
        """Requeue scheduled/running goals whose worker went away.

        A goal is abandoned when it has no live lease and was scheduled more
        than one lease TTL ago. Its idempotency key is left in place, so a
        goal that had already reached the planner stops as
        ``idempotency_duplicate`` instead of executing twice.

        Returns:
            Number of goals returned to the queue
        """
        now = self._now(now)
        cutoff = now - timedelta(seconds=self._lease.lease_ttl_seconds)
        recovered = 0

        stuck = self._store.list_queue(
            RECOVERY_SCAN_LIMIT, statuses=[GoalStatus.SCHEDULED, GoalStatus.RUNNING]
        )
        for item in stuck:
            lease = self._store.get_lease(item.goal_id)
            if lease is not None and not lease.is_expired(now):
                continue
            if item.scheduled_at is not None and ensure_utc(item.scheduled_at) > cutoff:
                continue

            self._transitions.validate(item.goal_id, item.status, GoalStatus.QUEUED)
            updated = self._store.compare_and_update(
                item.goal_id,
                [item.status],
                {
                    "status": GoalStatus.QUEUED,
                    "scheduled_at": None,
                    "started_at": None,
                    "lease_owner": None,
                    "lease_expires_at": None,
                },
            )
            if updated is None:
                continue
            self._store.release_goal(item.goal_id)
            recovered += 1
            logger.warning(
                "Recovered abandoned goal",
                extra={"goal_id": item.goal_id, "from_status": item.status.value},
            )

        return recovered
