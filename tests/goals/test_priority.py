"""Tests for goal scoring, suppression and queue admission."""

from __future__ import annotations

from datetime import timedelta

import pytest

from goal_factories import NOW, make_pressure_snapshot, make_queue_item, make_snapshot
from sentinai.goals.candidates import generate_rule_based_candidates
from sentinai.goals.config import PriorityPolicy
from sentinai.goals.models import GoalRisk, GoalStatus, SuppressionReason
from sentinai.goals.priority import (
    GoalPriorityEngine,
    policy_from_overrides,
    score_goal_candidate,
    sort_queue,
)

SCORE_SNAPSHOTS = [
    make_pressure_snapshot(),
    make_snapshot(),
    make_snapshot(metrics={"latest_cpu_usage": 95, "latest_tx_pool_pending": 5000}),
    make_snapshot(failover={"recent_count": 3}, memory={"recent_incident_count": 9}),
    make_snapshot(cost={"avg_vcpu": 2, "avg_utilization": 10, "data_point_count": 200}),
    make_snapshot(
        metrics={"latest_cpu_usage": 72},
        anomalies={"active_count": 7, "critical_count": 2},
        policy={"read_only_mode": True, "auto_scaling_enabled": False},
    ),
]


def test_pressure_candidate_score_breakdown() -> None:
    snapshot = make_pressure_snapshot()
    (candidate,) = generate_rule_based_candidates(snapshot, now=NOW)

    score = score_goal_candidate(candidate, snapshot)

    assert score.impact == 40
    assert score.urgency == 20
    assert score.confidence == 20
    assert score.policy_fit == 12
    assert score.total == 92


@pytest.mark.parametrize("snapshot", SCORE_SNAPSHOTS)
def test_scores_stay_in_bounds(snapshot) -> None:
    for candidate in generate_rule_based_candidates(snapshot, now=NOW, max_candidates=20):
        score = score_goal_candidate(candidate, snapshot)
        assert 0 <= score.impact <= 40
        assert 0 <= score.urgency <= 25
        assert 0 <= score.confidence <= 20
        assert 0 <= score.policy_fit <= 15
        assert score.total == score.impact + score.urgency + score.confidence + score.policy_fit


def test_pressure_snapshot_is_admitted() -> None:
    snapshot = make_pressure_snapshot()
    candidates = generate_rule_based_candidates(snapshot, now=NOW)

    result = GoalPriorityEngine().prioritize(snapshot, candidates, now=NOW)

    assert len(result.queued) > 0
    assert result.suppressed == []
    item = result.queued[0]
    assert item.status == GoalStatus.QUEUED
    assert item.candidate_id == candidates[0].id
    assert item.signature == candidates[0].signature
    assert item.attempts == 0
    assert item.expires_at == NOW + timedelta(minutes=60)


def test_already_queued_signature_is_duplicate() -> None:
    snapshot = make_pressure_snapshot()
    engine = GoalPriorityEngine()
    first = engine.prioritize(
        snapshot, generate_rule_based_candidates(snapshot, now=NOW), now=NOW
    )

    second = engine.prioritize(
        snapshot,
        generate_rule_based_candidates(snapshot, now=NOW),
        existing_queue=first.queued,
        now=NOW,
    )

    assert second.queued == []
    assert [r.reason_code for r in second.suppressed] == [SuppressionReason.DUPLICATE_GOAL]


def test_forced_low_confidence_is_suppressed() -> None:
    snapshot = make_pressure_snapshot()
    (candidate,) = generate_rule_based_candidates(snapshot, now=NOW)
    weak = candidate.model_copy(update={"confidence": 0.2})

    result = GoalPriorityEngine(PriorityPolicy(min_confidence=0.5)).prioritize(
        snapshot, [weak], now=NOW
    )

    assert result.queued == []
    record = result.suppressed[0]
    assert record.reason_code == SuppressionReason.LOW_CONFIDENCE
    assert record.candidate_id == weak.id
    assert record.details == f"candidate={weak.goal}"


def test_six_hour_old_snapshot_is_stale() -> None:
    snapshot = make_pressure_snapshot(collected_at=NOW - timedelta(hours=6))
    engine = GoalPriorityEngine(policy_from_overrides({"stale_signal_minutes": 60}))

    result = engine.prioritize(
        snapshot, generate_rule_based_candidates(snapshot, now=NOW), now=NOW
    )

    assert [r.reason_code for r in result.suppressed] == [SuppressionReason.STALE_SIGNAL]


def test_stale_takes_precedence_over_low_confidence() -> None:
    snapshot = make_pressure_snapshot(collected_at=NOW - timedelta(minutes=120))
    (candidate,) = generate_rule_based_candidates(snapshot, now=NOW)
    weak = candidate.model_copy(update={"confidence": 0.3})

    reason = GoalPriorityEngine().evaluate_suppression(weak, snapshot, NOW)

    assert reason == SuppressionReason.STALE_SIGNAL


def test_cooldown_suppresses_non_critical_stabilize() -> None:
    engine = GoalPriorityEngine()
    high = make_snapshot(metrics={"latest_cpu_usage": 80, "cooldown_remaining": 120})
    critical = make_snapshot(metrics={"latest_cpu_usage": 95, "cooldown_remaining": 120})

    (high_candidate,) = generate_rule_based_candidates(high, now=NOW)
    (critical_candidate,) = generate_rule_based_candidates(critical, now=NOW)

    assert engine.evaluate_suppression(high_candidate, high, NOW) == (
        SuppressionReason.COOLDOWN_ACTIVE
    )
    assert engine.evaluate_suppression(critical_candidate, critical, NOW) is None


def test_read_only_mode_blocks_stabilize() -> None:
    snapshot = make_snapshot(
        metrics={"latest_cpu_usage": 92}, policy={"read_only_mode": True}
    )
    (candidate,) = generate_rule_based_candidates(snapshot, now=NOW)

    reason = GoalPriorityEngine().evaluate_suppression(candidate, snapshot, NOW)

    assert reason == SuppressionReason.POLICY_BLOCKED


def test_recent_candidate_window() -> None:
    snapshot = make_snapshot()
    (candidate,) = generate_rule_based_candidates(snapshot, now=NOW)
    recent = candidate.model_copy(update={"updated_at": NOW - timedelta(minutes=10)})
    old = candidate.model_copy(update={"updated_at": NOW - timedelta(minutes=31)})

    # Baseline confidence is 0.42, below the default threshold.
    engine = GoalPriorityEngine(PriorityPolicy(min_confidence=0.4, dedup_window_minutes=30))

    assert engine.is_duplicate(candidate, NOW, [], [recent]) is True
    assert engine.is_duplicate(candidate, NOW, [], [old]) is False
    assert engine.evaluate_suppression(candidate, snapshot, NOW, (), [old]) is None


def test_sort_queue_total_order() -> None:
    later = NOW + timedelta(seconds=5)
    items = [
        make_queue_item("d", total=70, risk=GoalRisk.HIGH, enqueued_at=later),
        make_queue_item("c", total=70, risk=GoalRisk.HIGH, enqueued_at=NOW),
        make_queue_item("b", total=70, risk=GoalRisk.CRITICAL, enqueued_at=later),
        make_queue_item("a", total=40, risk=GoalRisk.CRITICAL, enqueued_at=NOW),
        make_queue_item("e", total=70, risk=GoalRisk.HIGH, enqueued_at=NOW),
    ]

    ordered = [item.goal_id for item in sort_queue(items)]

    assert ordered == ["b", "c", "e", "d", "a"]


def test_policy_overrides_are_clamped() -> None:
    policy = policy_from_overrides(
        {"min_confidence": 1.7, "default_ttl_minutes": 1, "dedup_window_minutes": None}
    )

    assert policy.min_confidence == 1.0
    assert policy.default_ttl_minutes == 5
    assert policy.dedup_window_minutes == 30

    with pytest.raises(KeyError):
        policy_from_overrides({"bogus": 1})
