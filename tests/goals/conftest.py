"""Fixtures for goal pipeline tests."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from sentinai.goals.sqlite_store import SQLiteGoalStore
from sentinai.goals.store import GoalStore, InMemoryGoalStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[GoalStore]:
    """Every store implementation, so contract tests run against both."""
    if request.param == "memory":
        goal_store: GoalStore = InMemoryGoalStore()
    else:
        goal_store = SQLiteGoalStore(tmp_path / "goals.db")
    yield goal_store
    goal_store.close()
