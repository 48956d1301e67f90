"""Execution policy contract consulted before a goal is handed to the planner."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from pydantic import BaseModel, Field

from .models import GoalRisk


class PolicyDecision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    REQUIRE_MULTI_APPROVAL = "require_multi_approval"


class GoalExecutionPolicyInput(BaseModel):
    auto_execute: bool = True
    allow_writes: bool = False
    read_only_mode: bool = False
    risk: GoalRisk
    confidence: float = Field(ge=0.0, le=1.0)


class PolicyEvaluation(BaseModel):
    decision: PolicyDecision
    reason_code: str
    message: str


class PolicyEngine(Protocol):
    """Decides whether a goal may run automatically.

    Implementations may call out to a remote policy service, so evaluation is
    awaited like the planner.
    """

    async def evaluate(self, request: GoalExecutionPolicyInput) -> PolicyEvaluation:
        ...


class ReadOnlyWritePolicy:
    """Default policy: deny automatic write execution while in read-only mode."""

    async def evaluate(self, request: GoalExecutionPolicyInput) -> PolicyEvaluation:
        if request.auto_execute and request.allow_writes and request.read_only_mode:
            return PolicyEvaluation(
                decision=PolicyDecision.DENY,
                reason_code="read_only_write_blocked",
                message="Write execution is blocked in read-only mode",
            )
        return PolicyEvaluation(
            decision=PolicyDecision.ALLOW,
            reason_code="allowed",
            message="allowed",
        )
