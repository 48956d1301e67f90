"""Learning episode recording and offline autonomy policy suggestions.

Selection and execution outcomes are appended as episodes. Recording is
fire-and-forget: a failing store never interrupts the control loop.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .models import EpisodeOutcome, EpisodeStage, GoalLearningEpisode, utcnow
from .store import GoalStore

logger = logging.getLogger(__name__)


class AutonomyThresholds(BaseModel):
    """Confidence thresholds gating autonomous execution."""

    min_confidence_write: float = Field(default=0.65, ge=0.0, le=1.0)
    min_confidence_dry_run: float = Field(default=0.35, ge=0.0, le=1.0)


class PolicySuggestion(BaseModel):
    generated_at: datetime
    sample_size: int
    current: AutonomyThresholds
    suggested: AutonomyThresholds
    confidence: float
    notes: List[str] = Field(default_factory=list)


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return min(maximum, max(minimum, value))


def percentile(sorted_values: List[float], fraction: float) -> float:
    """Lower nearest-rank percentile of an ascending list (0 when empty)."""
    if not sorted_values:
        return 0.0
    index = int(_clamp(int((len(sorted_values) - 1) * fraction), 0, len(sorted_values) - 1))
    return sorted_values[index]


class GoalLearningRecorder:
    """Appends learning episodes to the goal store."""

    def __init__(self, store: GoalStore) -> None:
        self._store = store

    def record(self, **fields: Any) -> Optional[GoalLearningEpisode]:
        """Record an episode, assigning an id and clamping confidence.

        Returns:
            The stored episode, or None if it could not be recorded
        """
        try:
            fields.setdefault("timestamp", utcnow())
            fields["confidence"] = _clamp(float(fields.get("confidence", 0.0)), 0.0, 1.0)
            episode = GoalLearningEpisode(id=str(uuid.uuid4()), **fields)
            self._store.add_episode(episode)
            return episode
        except Exception:
            logger.warning(
                "Failed to record learning episode",
                extra={
                    "goal_id": fields.get("goal_id"),
                    "stage": str(fields.get("stage")),
                },
                exc_info=True,
            )
            return None

    def list_episodes(self, limit: int = 500) -> List[GoalLearningEpisode]:
        return self._store.list_episodes(limit)

    def clear(self) -> None:
        self._store.clear_episodes()

    def suggest_autonomy_policy(
        self,
        current: Optional[AutonomyThresholds] = None,
        limit: int = 1000,
    ) -> PolicySuggestion:
        """Suggest confidence thresholds from recorded execution outcomes.

        The write threshold sits between the 80th percentile of failed
        confidences and the 20th percentile of successful ones. The dry-run
        threshold trails it by 0.2.
        """
        current = current or AutonomyThresholds()
        episodes = self.list_episodes(limit)

        completed = [
            e
            for e in episodes
            if e.stage == EpisodeStage.EXECUTION
            and e.outcome == EpisodeOutcome.COMPLETED
            and e.verification_passed is not False
            and e.confidence > 0
        ]
        failed = [
            e
            for e in episodes
            if e.stage == EpisodeStage.EXECUTION
            and e.outcome in (EpisodeOutcome.FAILED, EpisodeOutcome.DLQ)
            and e.confidence > 0
        ]

        completed_confidences = sorted(e.confidence for e in completed)
        failed_confidences = sorted(e.confidence for e in failed)

        high_failure_band = percentile(failed_confidences, 0.8)
        high_success_band = percentile(completed_confidences, 0.2)

        divisor = 2 if failed_confidences else 1
        raw_write = (high_failure_band + high_success_band) / divisor
        if not raw_write:
            raw_write = current.min_confidence_write
        suggested_write = _clamp(raw_write, 0.4, 0.95)
        suggested_dry_run = _clamp(suggested_write - 0.2, 0.2, 0.85)

        sample_size = len(episodes)
        notes = [
            f"episodes={sample_size}",
            f"completedWrites={len(completed)}",
            f"failedWrites={len(failed)}",
        ]
        if not failed:
            notes.append("no failed write samples; suggestion is conservative")
        if sample_size < 100:
            notes.append("sample size is small; review manually before applying")

        return PolicySuggestion(
            generated_at=utcnow(),
            sample_size=sample_size,
            current=current,
            suggested=AutonomyThresholds(
                min_confidence_write=round(suggested_write, 3),
                min_confidence_dry_run=round(suggested_dry_run, 3),
            ),
            confidence=round(_clamp(sample_size / 500, 0.0, 1.0), 3),
            notes=notes,
        )
