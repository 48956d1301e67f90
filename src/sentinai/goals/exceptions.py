"""Custom exceptions for the goal autonomy pipeline."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when goal autonomy configuration fails validation.

    Example:
        A YAML file setting ``retry.max_retries: 50`` is rejected because
        the retry budget is bounded to 0-10.
    """

    pass


class InvalidGoalTransitionError(ValueError):
    """Raised when a queue item status change violates the lifecycle.

    Example:
        Moving a ``completed`` goal back to ``running`` would raise this
        exception since completed is a terminal state.
    """

    pass


class GoalNotFoundError(KeyError):
    """Raised when an operation targets a goal id missing from the queue."""

    pass


class GoalStoreError(RuntimeError):
    """Raised when the persistence layer cannot read or write goal state."""

    pass


class EnhancerError(RuntimeError):
    """Raised by the chat completion client when a completion is unusable.

    The candidate generator catches this and falls back to the rule-based
    candidates, so it never escapes a generation call.
    """

    pass
