"""Tests for goal retry backoff."""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from goal_factories import NOW
from sentinai.goals.retry_policy import GoalRetryPolicy


def test_backoff_doubles_until_cap() -> None:
    policy = GoalRetryPolicy()

    assert [policy.calculate_backoff_ms(n) for n in range(1, 7)] == [
        15_000,
        30_000,
        60_000,
        120_000,
        240_000,
        300_000,
    ]
    assert policy.calculate_backoff_ms(0) == 15_000


def test_retry_budget() -> None:
    policy = GoalRetryPolicy(max_retries=2)

    assert policy.exhausted(2) is False
    assert policy.exhausted(3) is True
    assert GoalRetryPolicy(max_retries=0).exhausted(1) is True


def test_next_attempt_at() -> None:
    policy = GoalRetryPolicy(base_backoff_ms=1000)

    assert policy.next_attempt_at(NOW, 2) == NOW + timedelta(seconds=2)


def test_bounds_are_enforced() -> None:
    with pytest.raises(ValidationError):
        GoalRetryPolicy(max_retries=11)
    with pytest.raises(ValidationError):
        GoalRetryPolicy(base_backoff_ms=10)
