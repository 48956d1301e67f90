"""Goal autonomy pipeline: candidate generation, prioritization and durable dispatch."""

from .candidates import (
    CandidateGenerationResult,
    GoalCandidateGenerator,
    generate_rule_based_candidates,
    goal_signature,
)
from .collaborators import (
    ExecutionLogEntry,
    GoalExecutionResult,
    GoalPlan,
    GoalPlanner,
    PlanExecutionOptions,
    SignalSource,
    StaticSignalSource,
)
from .config import GoalAutonomyConfig, GoalConfigManager
from .enhancer import ChatCompletionClient, GoalCandidateEnhancer
from .exceptions import (
    ConfigurationError,
    EnhancerError,
    GoalNotFoundError,
    GoalStoreError,
    InvalidGoalTransitionError,
)
from .learning import AutonomyThresholds, GoalLearningRecorder, PolicySuggestion
from .manager import GoalManager, GoalManagerState, GoalManagerTickResult
from .models import (
    AutonomousGoalCandidate,
    GoalDlqItem,
    GoalPriorityScore,
    GoalQueueItem,
    GoalSignalSnapshot,
    GoalStatus,
    GoalSuppressionRecord,
    SuppressionReason,
)
from .orchestrator import DispatchResult, GoalOrchestrator, ReplayResult
from .policy import PolicyDecision, PolicyEngine, PolicyEvaluation, ReadOnlyWritePolicy
from .priority import GoalPriorityEngine, PrioritizationResult, score_goal_candidate
from .retry_policy import GoalRetryPolicy
from .scheduler import GoalAutonomyScheduler
from .sqlite_store import SQLiteGoalStore
from .store import GoalStore, InMemoryGoalStore

__all__ = [
    "AutonomousGoalCandidate",
    "AutonomyThresholds",
    "CandidateGenerationResult",
    "ChatCompletionClient",
    "ConfigurationError",
    "DispatchResult",
    "EnhancerError",
    "ExecutionLogEntry",
    "GoalAutonomyConfig",
    "GoalAutonomyScheduler",
    "GoalCandidateEnhancer",
    "GoalCandidateGenerator",
    "GoalConfigManager",
    "GoalDlqItem",
    "GoalExecutionResult",
    "GoalLearningRecorder",
    "GoalManager",
    "GoalManagerState",
    "GoalManagerTickResult",
    "GoalNotFoundError",
    "GoalOrchestrator",
    "GoalPlan",
    "GoalPlanner",
    "GoalPriorityEngine",
    "GoalPriorityScore",
    "GoalQueueItem",
    "GoalRetryPolicy",
    "GoalSignalSnapshot",
    "GoalStatus",
    "GoalStore",
    "GoalStoreError",
    "GoalSuppressionRecord",
    "InMemoryGoalStore",
    "InvalidGoalTransitionError",
    "PlanExecutionOptions",
    "PolicyDecision",
    "PolicyEngine",
    "PolicyEvaluation",
    "PolicySuggestion",
    "PrioritizationResult",
    "ReadOnlyWritePolicy",
    "ReplayResult",
    "SQLiteGoalStore",
    "SignalSource",
    "StaticSignalSource",
    "SuppressionReason",
    "generate_rule_based_candidates",
    "goal_signature",
    "score_goal_candidate",
]
