"""Tests for goal status transition validation."""

from __future__ import annotations

import pytest

from sentinai.goals.exceptions import InvalidGoalTransitionError
from sentinai.goals.models import GoalStatus
from sentinai.goals.state_machine import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    GoalTransitionValidator,
    is_valid_transition,
)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (GoalStatus.QUEUED, GoalStatus.SCHEDULED),
        (GoalStatus.QUEUED, GoalStatus.EXPIRED),
        (GoalStatus.SCHEDULED, GoalStatus.RUNNING),
        (GoalStatus.SCHEDULED, GoalStatus.FAILED),
        (GoalStatus.RUNNING, GoalStatus.COMPLETED),
        (GoalStatus.RUNNING, GoalStatus.QUEUED),
        (GoalStatus.RUNNING, GoalStatus.DLQ),
        (GoalStatus.DLQ, GoalStatus.QUEUED),
    ],
)
def test_lifecycle_transitions_are_valid(from_status: GoalStatus, to_status: GoalStatus) -> None:
    assert is_valid_transition(from_status, to_status)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        (GoalStatus.QUEUED, GoalStatus.RUNNING),
        (GoalStatus.QUEUED, GoalStatus.COMPLETED),
        (GoalStatus.COMPLETED, GoalStatus.RUNNING),
        (GoalStatus.EXPIRED, GoalStatus.QUEUED),
        (GoalStatus.DLQ, GoalStatus.RUNNING),
    ],
)
def test_invalid_transitions_raise(from_status: GoalStatus, to_status: GoalStatus) -> None:
    validator = GoalTransitionValidator()

    with pytest.raises(InvalidGoalTransitionError):
        validator.validate("goal-1", from_status, to_status)

    assert validator.history() == []


def test_terminal_states_have_no_exits() -> None:
    for status in TERMINAL_STATUSES:
        assert VALID_TRANSITIONS[status] == set()


def test_same_state_is_idempotent() -> None:
    transition = GoalTransitionValidator().validate(
        "goal-1", GoalStatus.COMPLETED, GoalStatus.COMPLETED
    )

    assert transition.is_idempotent()


def test_history_is_bounded_and_filterable() -> None:
    validator = GoalTransitionValidator(max_history=3)
    for goal_id in ("a", "b", "a", "b"):
        validator.validate(goal_id, GoalStatus.QUEUED, GoalStatus.SCHEDULED, reason="pick")

    assert len(validator.history()) == 3
    assert [t.goal_id for t in validator.history("a")] == ["a"]
    assert validator.history("b")[-1].reason == "pick"
