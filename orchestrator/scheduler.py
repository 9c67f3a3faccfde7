"""
Scheduler for the Orchestrator.

Pure scheduling policy used by the dispatcher:
- Ready-set promotion with cascading cancellation (to fixpoint)
- Deterministic ordering: priority tier, then creation sequence
- Retry policy: exponential backoff, quota downgrade, fallback tier
- Failure resolution: fallback or propagate

The scheduler reads coordination state and commits promotions through
it; it never runs tasks itself.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from shared.logging import get_logger

from .errors import (
    ProviderError,
    ProviderQuotaExceeded,
    TaskCancelledError,
    TaskExecutionError,
    ValidationError,
)
from .models import AgentDescriptor, RetryPolicy, Task, TaskState
from .state import CoordinationState

log = get_logger("orchestrator", "scheduler")


class FailureAction(str, Enum):
    """What the dispatcher does with a failed execution."""
    RETRY = "retry"          # back to ready after a backoff
    DOWNGRADE = "downgrade"  # quota refusal: retry on the fallback tier, attempt not counted
    FALLBACK = "fallback"    # retries exhausted: one more attempt on the fallback tier
    FAIL = "fail"            # terminal failure, dependents cascade
    CANCEL = "cancel"        # the task was cancelled while running


@dataclass
class FailureDecision:
    action: FailureAction
    delay: float = 0.0
    tier: Optional[str] = None
    # The dispatcher hands back the attempt (quota downgrades don't count)
    refund_attempt: bool = False
    validation_retry: bool = False
    reason: str = ""

    @property
    def retries(self) -> bool:
        return self.action in (FailureAction.RETRY, FailureAction.DOWNGRADE, FailureAction.FALLBACK)


def compute_backoff(policy: RetryPolicy, attempt: int) -> float:
    """delay = backoff_base ** attempt, capped at max_backoff_seconds."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    try:
        delay = policy.backoff_base ** attempt
    except OverflowError:
        delay = policy.max_backoff_seconds
    return min(delay, policy.max_backoff_seconds)


def is_retryable(error: BaseException) -> bool:
    """Transient provider failures and timeouts retry; everything else is terminal."""
    if isinstance(error, (ProviderError, TaskExecutionError)):
        return error.retryable
    return False


class Scheduler:
    """
    Priority-based task selection and failure policy.

    Stateless apart from counters; safe to share across requests.
    """

    def __init__(self, descriptors: dict):
        self.descriptors = descriptors
        self.promotions = 0
        self.cascaded = 0

    def promote(self, coord: CoordinationState) -> tuple[list[Task], list[Task]]:
        """
        Re-evaluate every pending task of a request until nothing changes.

        A pending task whose dependencies all completed becomes ready; one
        with a failed or cancelled dependency becomes cancelled. Running
        to fixpoint makes cancellation transitive.

        Returns (promoted, cancelled).
        """
        promoted: list[Task] = []
        cancelled: list[Task] = []

        changed = True
        while changed:
            changed = False
            for task in coord.tasks_in_state(TaskState.PENDING):
                dep_states = [coord.graph.tasks[d].state for d in task.depends_on]

                blocked_by = [
                    coord.graph.tasks[d].label
                    for d in task.depends_on
                    if coord.graph.tasks[d].state in (TaskState.FAILED, TaskState.CANCELLED)
                ]
                if blocked_by:
                    coord.transition(
                        task.id, TaskState.CANCELLED,
                        reason="upstream_failed",
                        error=f"Upstream not completed: {', '.join(sorted(blocked_by))}",
                        error_class="UpstreamFailed",
                    )
                    cancelled.append(task)
                    changed = True
                elif all(s == TaskState.COMPLETED for s in dep_states):
                    coord.transition(task.id, TaskState.READY, reason="dependencies_met")
                    promoted.append(task)
                    changed = True

        self.promotions += len(promoted)
        self.cascaded += len(cancelled)

        if cancelled:
            log.info("orchestrator.scheduler.cascade_cancelled",
                     request_id=coord.request_id,
                     tasks=[t.label for t in cancelled])
        return promoted, cancelled

    def ready_queue(self, states: Iterable[CoordinationState], now: float) -> list[Task]:
        """
        Eligible ready tasks across requests, in dispatch order.

        Order is priority tier then global creation sequence; identical
        inputs always give the same order.
        """
        eligible = []
        for coord in states:
            if coord.cancelled:
                continue
            eligible.extend(t for t in coord.tasks_in_state(TaskState.READY) if t.is_eligible(now))
        return sorted(eligible, key=lambda t: (t.priority, t.sequence))

    def next_wakeup(self, states: Iterable[CoordinationState], now: float) -> Optional[float]:
        """Earliest future next_eligible_at among ready tasks, if any."""
        times = [
            t.next_eligible_at
            for coord in states
            for t in coord.tasks_in_state(TaskState.READY)
            if t.next_eligible_at is not None and t.next_eligible_at > now
        ]
        return min(times) if times else None

    def active_tier(self, task: Task, descriptor: AgentDescriptor) -> str:
        return task.model_tier or descriptor.model_tier

    def decide_failure(
        self,
        task: Task,
        descriptor: AgentDescriptor,
        error: BaseException,
    ) -> FailureDecision:
        """
        Apply the descriptor's retry policy to a failed execution.

        ``task.attempts`` already counts the execution that just failed.
        """
        policy = descriptor.retry

        if task.cancel_requested or isinstance(error, TaskCancelledError):
            return FailureDecision(FailureAction.CANCEL, reason="cancelled")

        if isinstance(error, ValidationError):
            if (policy.retry_on_validation
                    and task.validation_retries == 0
                    and task.can_retry(policy.max_attempts)):
                return FailureDecision(
                    FailureAction.RETRY,
                    validation_retry=True,
                    reason="validation_retry",
                )
            return FailureDecision(FailureAction.FAIL, reason="validation")

        if isinstance(error, ProviderQuotaExceeded):
            current = self.active_tier(task, descriptor)
            if (descriptor.fallback_tier
                    and not task.fallback_used
                    and descriptor.fallback_tier != current):
                return FailureDecision(
                    FailureAction.DOWNGRADE,
                    tier=descriptor.fallback_tier,
                    refund_attempt=True,
                    reason="quota_downgrade",
                )
            if task.can_retry(policy.max_attempts):
                delay = compute_backoff(policy, task.attempts) * policy.quota_backoff_multiplier
                if error.retry_after:
                    delay = max(delay, error.retry_after)
                return FailureDecision(FailureAction.RETRY, delay=delay, reason="quota_backoff")
            return self._exhausted(task, descriptor)

        if not is_retryable(error):
            return FailureDecision(FailureAction.FAIL, reason="non_retryable")

        if task.can_retry(policy.max_attempts):
            return FailureDecision(
                FailureAction.RETRY,
                delay=compute_backoff(policy, task.attempts),
                reason="transient",
            )
        return self._exhausted(task, descriptor)

    def _exhausted(self, task: Task, descriptor: AgentDescriptor) -> FailureDecision:
        if descriptor.fallback_tier and not task.fallback_used:
            return FailureDecision(
                FailureAction.FALLBACK,
                tier=descriptor.fallback_tier,
                reason="retries_exhausted",
            )
        return FailureDecision(FailureAction.FAIL, reason="retries_exhausted")

    def get_queue_stats(self, states: Iterable[CoordinationState]) -> dict:
        """Get statistics about the task queue."""
        by_state: dict[str, int] = {}
        by_agent: dict[str, int] = {}
        by_priority: dict[str, int] = {}
        total = 0

        for coord in states:
            for task in coord.graph:
                total += 1
                by_state[task.state.value] = by_state.get(task.state.value, 0) + 1
                by_agent[task.agent_type.value] = by_agent.get(task.agent_type.value, 0) + 1
                by_priority[task.priority.name] = by_priority.get(task.priority.name, 0) + 1

        return {
            "total": total,
            "by_state": by_state,
            "by_agent": by_agent,
            "by_priority": by_priority,
            "promotions": self.promotions,
            "cascaded": self.cascaded,
        }
