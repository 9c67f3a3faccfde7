"""
Error taxonomy for the orchestrator.

Provider-side errors (ProviderUnavailable, ProviderQuotaExceeded) live in
the llm package and are re-exported here so callers have one import site.
"""

from llm.src.models import (  # noqa: F401  (re-exported)
    ProviderError,
    ProviderQuotaExceeded,
    ProviderUnavailable,
    UnknownTierError,
)


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class PlanningError(OrchestratorError):
    """The request cannot be decomposed into an acyclic task graph. Never retried."""


class RequestNotFound(OrchestratorError, KeyError):
    """No active or archived request with this id."""

    def __str__(self) -> str:
        return f"Unknown request: {self.args[0]}" if self.args else "Unknown request"


class InvalidTransition(OrchestratorError):
    """A task state change not allowed by the lifecycle."""


class StaleVersionError(OrchestratorError):
    """A mutation was based on an older coordination-state version."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected version {expected}, state is at {actual}")
        self.expected = expected
        self.actual = actual


class ResourceConflict(OrchestratorError):
    """A named resource lock is held by another task. Recoverable: requeue."""

    def __init__(self, resource: str, holder: str, requester: str):
        super().__init__(f"Resource '{resource}' held by {holder}; requested by {requester}")
        self.resource = resource
        self.holder = holder
        self.requester = requester


class TaskExecutionError(OrchestratorError):
    """Base class for failures raised by an agent worker."""

    retryable = True


class AgentTimeoutError(TaskExecutionError):
    """The task exceeded its descriptor timeout. Treated like ProviderUnavailable."""


class ValidationError(TaskExecutionError):
    """Provider output did not match the agent's expected result schema."""

    retryable = False


class TaskCancelledError(TaskExecutionError):
    """The worker observed the task's cancellation flag."""

    retryable = False
