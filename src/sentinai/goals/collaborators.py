"""Contracts for the external collaborators of the goal pipeline.

The signal collector and the goal planner live outside this package. They are
consumed through the protocols below; any object with matching async methods
can be injected.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from .models import GoalSignalSnapshot

InitiatedBy = Literal["scheduler", "api", "mcp"]


class PlanExecutionOptions(BaseModel):
    dry_run: bool = True
    allow_writes: bool = False
    initiated_by: InitiatedBy = "scheduler"


class GoalPlan(BaseModel):
    plan_id: str
    status: Literal["completed", "failed"]
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class ExecutionLogEntry(BaseModel):
    step_id: str
    action: str
    status: str
    message: Optional[str] = None


class GoalExecutionResult(BaseModel):
    """Terminal plan plus the per-step execution log returned by the planner."""

    plan: GoalPlan
    execution_log: List[ExecutionLogEntry] = Field(default_factory=list)

    def first_failure_message(self) -> Optional[str]:
        for entry in self.execution_log:
            if entry.status == "failed":
                return entry.message or None
        return None


class SignalSource(Protocol):
    """Produces point-in-time signal snapshots."""

    async def collect(self, now: datetime) -> GoalSignalSnapshot:
        ...


class GoalPlanner(Protocol):
    """Builds and runs a remediation plan for a goal."""

    async def plan_and_execute(
        self, goal: str, options: PlanExecutionOptions
    ) -> GoalExecutionResult:
        ...


class StaticSignalSource:
    """Signal source that always returns the same snapshot.

    Useful for replaying a recorded snapshot through the pipeline.
    """

    def __init__(self, snapshot: GoalSignalSnapshot) -> None:
        self.snapshot = snapshot

    async def collect(self, now: datetime) -> GoalSignalSnapshot:
        return self.snapshot
