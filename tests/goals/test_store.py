"""Contract tests run against both goal store implementations."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from goal_factories import NOW, make_queue_item, make_snapshot
from sentinai.goals.candidates import generate_rule_based_candidates
from sentinai.goals.models import (
    EpisodeOutcome,
    EpisodeStage,
    ExecutionPhase,
    GoalDlqItem,
    GoalExecutionCheckpoint,
    GoalIdempotencyRecord,
    GoalIntent,
    GoalLearningEpisode,
    GoalRisk,
    GoalSource,
    GoalStatus,
    GoalSuppressionRecord,
    SuppressionReason,
)
from sentinai.goals.sqlite_store import SQLiteGoalStore
from sentinai.goals.store import GoalStore


def make_idempotency(key: str = "key-1", ttl_seconds: int = 60) -> GoalIdempotencyRecord:
    return GoalIdempotencyRecord(
        key=key,
        goal_id="goal-1",
        owner_id="worker-a",
        created_at=NOW,
        expires_at=NOW + timedelta(seconds=ttl_seconds),
    )


def make_suppression(record_id: str) -> GoalSuppressionRecord:
    return GoalSuppressionRecord(
        id=record_id,
        timestamp=NOW,
        candidate_id=f"cand-{record_id}",
        signature="sig",
        source=GoalSource.METRICS,
        risk=GoalRisk.LOW,
        reason_code=SuppressionReason.LOW_CONFIDENCE,
    )


def make_episode(episode_id: str) -> GoalLearningEpisode:
    return GoalLearningEpisode(
        id=episode_id,
        timestamp=NOW,
        stage=EpisodeStage.SELECTION,
        snapshot_id="snap-1",
        intent=GoalIntent.INVESTIGATE,
        source=GoalSource.METRICS,
        risk=GoalRisk.LOW,
        confidence=0.42,
        outcome=EpisodeOutcome.QUEUED,
    )


def test_queue_roundtrip_and_order(store: GoalStore) -> None:
    store.upsert_queue_item(make_queue_item("low", total=30))
    store.upsert_queue_item(make_queue_item("high", total=80))
    store.upsert_queue_item(make_queue_item("done", total=90, status=GoalStatus.COMPLETED))

    assert [i.goal_id for i in store.list_queue()] == ["done", "high", "low"]
    assert [i.goal_id for i in store.list_queue(statuses=[GoalStatus.QUEUED])] == [
        "high",
        "low",
    ]
    assert [i.goal_id for i in store.list_queue(limit=1)] == ["done"]
    assert store.list_queue(statuses=[]) == []

    fetched = store.get_queue_item("high")
    assert fetched == make_queue_item("high", total=80)
    assert store.get_queue_item("missing") is None


def test_next_due_item_respects_backoff_and_priority(store: GoalStore) -> None:
    store.upsert_queue_item(
        make_queue_item("backoff", total=80, next_attempt_at=NOW + timedelta(seconds=10))
    )
    store.upsert_queue_item(make_queue_item("ready", total=50))
    store.upsert_queue_item(make_queue_item("running", total=99, status=GoalStatus.RUNNING))

    assert store.next_due_item(NOW).goal_id == "ready"
    assert store.next_due_item(NOW + timedelta(seconds=10)).goal_id == "backoff"


def test_next_due_item_empty(store: GoalStore) -> None:
    assert store.next_due_item(NOW) is None
    store.upsert_queue_item(make_queue_item("later", next_attempt_at=NOW + timedelta(minutes=1)))
    assert store.next_due_item(NOW) is None


def test_compare_and_update_guards_status(store: GoalStore) -> None:
    store.upsert_queue_item(make_queue_item("goal-1"))

    assert store.compare_and_update("goal-1", [GoalStatus.SCHEDULED], {"attempts": 5}) is None
    assert store.compare_and_update("missing", [GoalStatus.QUEUED], {"attempts": 5}) is None

    updated = store.compare_and_update(
        "goal-1",
        [GoalStatus.QUEUED],
        {"status": GoalStatus.SCHEDULED, "scheduled_at": NOW},
    )

    assert updated is not None
    assert updated.status == GoalStatus.SCHEDULED
    assert store.get_queue_item("goal-1").scheduled_at == NOW
    assert store.next_due_item(NOW) is None


def test_lease_is_exclusive_until_expiry(store: GoalStore) -> None:
    first = store.try_acquire_lease("goal-1", "worker-a", NOW, 120)

    assert first is not None
    assert first.version == 1
    assert first.lease_expires_at == NOW + timedelta(seconds=120)
    assert store.try_acquire_lease("goal-1", "worker-b", NOW + timedelta(seconds=60), 120) is None

    second = store.try_acquire_lease("goal-1", "worker-b", NOW + timedelta(seconds=120), 120)

    assert second is not None
    assert second.owner_id == "worker-b"
    assert second.version == 2
    assert store.get_lease("goal-1") == second


def test_idempotency_is_write_once_until_expiry(store: GoalStore) -> None:
    assert store.register_idempotency(make_idempotency(), NOW) is True
    assert store.register_idempotency(make_idempotency(), NOW + timedelta(seconds=30)) is False
    assert store.register_idempotency(make_idempotency(), NOW + timedelta(seconds=60)) is True

    store.release_idempotency("key-1")

    assert store.get_idempotency("key-1") is None
    assert store.register_idempotency(make_idempotency(), NOW) is True
    assert store.get_idempotency("key-1").owner_id == "worker-a"


def test_release_goal_clears_lease_checkpoint_and_pointer(store: GoalStore) -> None:
    store.try_acquire_lease("goal-1", "worker-a", NOW, 120)
    store.set_checkpoint(
        GoalExecutionCheckpoint(goal_id="goal-1", phase=ExecutionPhase.PLAN_STARTED, timestamp=NOW)
    )
    store.set_active_goal_id("goal-1")

    store.release_goal("goal-1")

    assert store.get_lease("goal-1") is None
    assert store.get_checkpoint("goal-1") is None
    assert store.get_active_goal_id() is None


def test_release_goal_keeps_pointer_for_other_goal(store: GoalStore) -> None:
    store.set_active_goal_id("goal-2")

    store.release_goal("goal-1")

    assert store.get_active_goal_id() == "goal-2"


def test_release_goal_skips_foreign_lease(store: GoalStore) -> None:
    store.try_acquire_lease("goal-1", "worker-b", NOW, 120)
    store.set_checkpoint(
        GoalExecutionCheckpoint(goal_id="goal-1", phase=ExecutionPhase.PLAN_STARTED, timestamp=NOW)
    )
    store.set_active_goal_id("goal-1")

    assert store.release_goal("goal-1", "worker-a") is False
    assert store.get_lease("goal-1").owner_id == "worker-b"
    assert store.get_checkpoint("goal-1") is not None
    assert store.get_active_goal_id() == "goal-1"

    assert store.release_goal("goal-1", "worker-b") is True
    assert store.get_lease("goal-1") is None
    assert store.get_active_goal_id() is None


def test_renew_lease_extends_only_for_owner(store: GoalStore) -> None:
    assert store.renew_lease("goal-1", "worker-a", NOW, 120) is None

    store.try_acquire_lease("goal-1", "worker-a", NOW, 120)
    later = NOW + timedelta(seconds=100)

    renewed = store.renew_lease("goal-1", "worker-a", later, 120)

    assert renewed is not None
    assert renewed.lease_expires_at == later + timedelta(seconds=120)
    assert renewed.heartbeat_at == later
    assert renewed.leased_at == NOW
    assert renewed.version == 1
    assert store.renew_lease("goal-1", "worker-b", later, 120) is None
    assert store.try_acquire_lease("goal-1", "worker-b", NOW + timedelta(seconds=150), 120) is None


def test_checkpoint_is_replaced(store: GoalStore) -> None:
    for phase in (ExecutionPhase.SCHEDULED, ExecutionPhase.POLICY_CHECK):
        store.set_checkpoint(
            GoalExecutionCheckpoint(
                goal_id="goal-1", phase=phase, timestamp=NOW, metadata={"n": 1}
            )
        )

    checkpoint = store.get_checkpoint("goal-1")
    assert checkpoint.phase == ExecutionPhase.POLICY_CHECK
    assert checkpoint.metadata == {"n": 1}

    store.clear_checkpoint("goal-1")
    assert store.get_checkpoint("goal-1") is None


def test_dlq_add_list_remove(store: GoalStore) -> None:
    item = make_queue_item("goal-1", status=GoalStatus.DLQ, attempts=3)
    store.add_dlq_item(
        GoalDlqItem(
            id="dlq-1",
            goal_id="goal-1",
            moved_at=NOW,
            reason="max_retries_exceeded",
            attempts=3,
            last_error="boom",
            queue_item=item,
        )
    )

    assert store.get_dlq_item("goal-1").queue_item == item
    assert [d.goal_id for d in store.list_dlq_items()] == ["goal-1"]
    assert store.remove_dlq_item("goal-1") is True
    assert store.remove_dlq_item("goal-1") is False
    assert store.get_dlq_item("goal-1") is None


def test_candidates_newest_first_and_replaced_by_id(store: GoalStore) -> None:
    snapshot = make_snapshot(metrics={"latest_cpu_usage": 80}, failover={"recent_count": 1})
    first, second = generate_rule_based_candidates(snapshot, now=NOW)
    store.add_candidate(first)
    store.add_candidate(second)
    store.add_candidate(first.model_copy(update={"rationale": "rewritten"}))

    listed = store.list_candidates()

    assert [c.id for c in listed] == [first.id, second.id]
    assert listed[0].rationale == "rewritten"
    assert listed[0].metadata == first.metadata
    assert store.list_candidates(limit=1)[0].id == first.id


def test_suppression_and_episodes_newest_first(store: GoalStore) -> None:
    for record_id in ("s1", "s2", "s3"):
        store.add_suppression_record(make_suppression(record_id))
    store.add_episode(make_episode("e1"))
    store.add_episode(make_episode("e2"))

    assert [r.id for r in store.list_suppression_records(limit=2)] == ["s3", "s2"]
    assert [e.id for e in store.list_episodes()] == ["e2", "e1"]

    store.clear_episodes()
    assert store.list_episodes() == []


def test_reset_drops_everything(store: GoalStore) -> None:
    store.upsert_queue_item(make_queue_item("goal-1"))
    store.add_suppression_record(make_suppression("s1"))
    store.register_idempotency(make_idempotency(), NOW)
    store.set_active_goal_id("goal-1")

    store.reset()

    assert store.list_queue() == []
    assert store.list_suppression_records() == []
    assert store.get_idempotency("key-1") is None
    assert store.get_active_goal_id() is None
    assert store.next_due_item(NOW) is None


def test_sqlite_store_survives_reopen(tmp_path: Path) -> None:
    path = tmp_path / "goals.db"
    store = SQLiteGoalStore(path)
    store.upsert_queue_item(make_queue_item("goal-1", next_attempt_at=NOW))
    store.try_acquire_lease("goal-1", "worker-a", NOW, 120)
    store.close()

    reopened = SQLiteGoalStore(path)
    try:
        assert reopened.get_queue_item("goal-1").next_attempt_at == NOW
        assert reopened.get_lease("goal-1").owner_id == "worker-a"
        assert reopened.next_due_item(NOW).goal_id == "goal-1"
    finally:
        reopened.close()
