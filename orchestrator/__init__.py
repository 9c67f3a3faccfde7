"""
Wayfarer Orchestrator - multi-agent coordination for trip planning.

This module implements the orchestration core:
- Planner: trip request -> dependency-ordered task graph
- Dispatcher: ready-set, priority tie-breaks, bounded agent pools
- Resource locks with requeue on conflict
- Retries with backoff, quota downgrade and fallback tiers
- Write-behind snapshots and usage metrics
"""

from .models import (
    AgentDescriptor,
    AgentType,
    PriorityTier,
    RetryPolicy,
    Task,
    TaskGraph,
    TaskResult,
    TaskSpec,
    TaskState,
    TripRequest,
)
from .errors import (
    AgentTimeoutError,
    InvalidTransition,
    OrchestratorError,
    PlanningError,
    ProviderQuotaExceeded,
    ProviderUnavailable,
    RequestNotFound,
    ResourceConflict,
    StaleVersionError,
    TaskCancelledError,
    ValidationError,
)
from .planner import Planner
from .state import CoordinationState, StateStore
from .scheduler import Scheduler, FailureAction, compute_backoff
from .allocator import CapacityAllocator, AllocationResult
from .worker import AgentWorker
from .dispatcher import Dispatcher
from .results import OutcomeStatus, RequestOutcome, merge_results
from .metrics import UsageEvent, MetricsSink, LogMetricsSink, InMemoryMetricsSink
from .persistence import SnapshotWriter, FileSnapshotSink, HttpSnapshotSink
from .main import Orchestrator

__all__ = [
    # Models
    "AgentDescriptor",
    "AgentType",
    "PriorityTier",
    "RetryPolicy",
    "Task",
    "TaskGraph",
    "TaskResult",
    "TaskSpec",
    "TaskState",
    "TripRequest",
    # Errors
    "AgentTimeoutError",
    "InvalidTransition",
    "OrchestratorError",
    "PlanningError",
    "ProviderQuotaExceeded",
    "ProviderUnavailable",
    "RequestNotFound",
    "ResourceConflict",
    "StaleVersionError",
    "TaskCancelledError",
    "ValidationError",
    # Planning
    "Planner",
    # State
    "CoordinationState",
    "StateStore",
    # Scheduling
    "Scheduler",
    "FailureAction",
    "compute_backoff",
    "CapacityAllocator",
    "AllocationResult",
    # Execution
    "AgentWorker",
    "Dispatcher",
    # Results
    "OutcomeStatus",
    "RequestOutcome",
    "merge_results",
    # Collaborators
    "UsageEvent",
    "MetricsSink",
    "LogMetricsSink",
    "InMemoryMetricsSink",
    "SnapshotWriter",
    "FileSnapshotSink",
    "HttpSnapshotSink",
    # Main
    "Orchestrator",
]
