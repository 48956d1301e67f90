"""Tests for learning episode recording and policy suggestions."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from goal_factories import NOW
from sentinai.goals.exceptions import GoalStoreError
from sentinai.goals.learning import (
    AutonomyThresholds,
    GoalLearningRecorder,
    percentile,
)
from sentinai.goals.models import (
    EpisodeOutcome,
    EpisodeStage,
    GoalIntent,
    GoalRisk,
    GoalSource,
)
from sentinai.goals.store import InMemoryGoalStore


def record_execution(
    recorder: GoalLearningRecorder, outcome: EpisodeOutcome, confidence: float
) -> None:
    recorder.record(
        timestamp=NOW,
        stage=EpisodeStage.EXECUTION,
        snapshot_id="snap-1",
        goal_id="goal-1",
        intent=GoalIntent.STABILIZE,
        source=GoalSource.METRICS,
        risk=GoalRisk.HIGH,
        confidence=confidence,
        outcome=outcome,
    )


def test_record_assigns_id_and_clamps_confidence() -> None:
    recorder = GoalLearningRecorder(InMemoryGoalStore())

    episode = recorder.record(
        stage=EpisodeStage.SELECTION,
        snapshot_id="snap-1",
        intent=GoalIntent.INVESTIGATE,
        source=GoalSource.MEMORY,
        risk=GoalRisk.MEDIUM,
        confidence=1.4,
        outcome=EpisodeOutcome.QUEUED,
    )

    assert episode is not None
    assert episode.id
    assert episode.confidence == 1.0
    assert recorder.list_episodes() == [episode]


def test_record_never_raises() -> None:
    store = MagicMock()
    store.add_episode.side_effect = GoalStoreError("disk full")
    recorder = GoalLearningRecorder(store)

    assert recorder.record(
        stage=EpisodeStage.SELECTION,
        snapshot_id="snap-1",
        intent=GoalIntent.INVESTIGATE,
        source=GoalSource.MEMORY,
        risk=GoalRisk.MEDIUM,
        confidence=0.5,
        outcome=EpisodeOutcome.QUEUED,
    ) is None
    assert recorder.record(stage="bogus") is None


def test_suggestion_between_failure_and_success_bands() -> None:
    recorder = GoalLearningRecorder(InMemoryGoalStore())
    for confidence in (0.7, 0.8, 0.9):
        record_execution(recorder, EpisodeOutcome.COMPLETED, confidence)
    for confidence in (0.3, 0.4):
        record_execution(recorder, EpisodeOutcome.FAILED, confidence)

    suggestion = recorder.suggest_autonomy_policy()

    assert suggestion.sample_size == 5
    assert suggestion.suggested.min_confidence_write == pytest.approx(0.5)
    assert suggestion.suggested.min_confidence_dry_run == pytest.approx(0.3)
    assert suggestion.confidence == pytest.approx(0.01)
    assert "completedWrites=3" in suggestion.notes
    assert "failedWrites=2" in suggestion.notes
    assert any("sample size is small" in note for note in suggestion.notes)


def test_suggestion_without_episodes_keeps_current() -> None:
    recorder = GoalLearningRecorder(InMemoryGoalStore())
    current = AutonomyThresholds(min_confidence_write=0.7, min_confidence_dry_run=0.4)

    suggestion = recorder.suggest_autonomy_policy(current)

    assert suggestion.suggested.min_confidence_write == pytest.approx(0.7)
    assert suggestion.suggested.min_confidence_dry_run == pytest.approx(0.5)
    assert suggestion.current == current
    assert any("no failed write samples" in note for note in suggestion.notes)


def test_clear_removes_episodes() -> None:
    recorder = GoalLearningRecorder(InMemoryGoalStore())
    record_execution(recorder, EpisodeOutcome.COMPLETED, 0.8)

    recorder.clear()

    assert recorder.list_episodes() == []


def test_percentile() -> None:
    assert percentile([], 0.5) == 0.0
    assert percentile([0.1, 0.2, 0.3, 0.4, 0.5], 0.8) == 0.4
    assert percentile([0.1, 0.2, 0.3], 0.2) == 0.1
