"""
Result merging.

Once every task of a request is terminal the outcome is decided purely
by priority tier: a P0 task that did not complete makes the request an
error; any other incomplete task makes it partial.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from .models import AgentType, PriorityTier, TaskState
from .state import CoordinationState

UNRESOLVED_FLAG = "cancelled_or_failed"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class RequestOutcome:
    """Merged result of a finished request."""
    request_id: str
    status: OutcomeStatus
    # label -> result payload of completed tasks
    results: dict = field(default_factory=dict)
    # Components that did not complete
    unresolved: list[dict] = field(default_factory=list)
    itinerary: Optional[list] = None
    message: Optional[str] = None
    resolutions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "status": self.status.value,
            "results": self.results,
            "unresolved": self.unresolved,
            "itinerary": self.itinerary,
            "message": self.message,
            "resolutions": self.resolutions,
        }


def merge_results(coord: CoordinationState) -> RequestOutcome:
    """Build the outcome for a request whose tasks are all terminal."""
    if not coord.is_finished():
        raise ValueError(f"Request {coord.request_id} still has unfinished tasks")

    completed = {}
    unresolved = []
    critical_failures = []

    for task in coord.graph.topological_order():
        if task.state == TaskState.COMPLETED:
            completed[task.label] = task.result
            continue

        entry = {
            "task_id": task.id,
            "label": task.label,
            "agent_type": task.agent_type.value,
            "priority": task.priority.name,
            "state": task.state.value,
            "status": UNRESOLVED_FLAG,
            "error": task.error,
        }
        unresolved.append(entry)
        if task.priority == PriorityTier.P0:
            critical_failures.append(task.label)

    resolutions = [r.to_dict() for r in coord.resolutions]

    if coord.cancelled:
        return RequestOutcome(
            request_id=coord.request_id,
            status=OutcomeStatus.CANCELLED,
            results=completed,
            unresolved=unresolved,
            message="Request cancelled by caller",
            resolutions=resolutions,
        )

    if critical_failures:
        return RequestOutcome(
            request_id=coord.request_id,
            status=OutcomeStatus.ERROR,
            unresolved=unresolved,
            message=f"Critical tasks did not complete: {', '.join(critical_failures)}",
            resolutions=resolutions,
        )

    itinerary = None
    planning = coord.graph.by_agent(AgentType.PLANNING)
    if planning and planning[0].state == TaskState.COMPLETED and planning[0].result:
        itinerary = planning[0].result.get("itinerary")

    if unresolved:
        return RequestOutcome(
            request_id=coord.request_id,
            status=OutcomeStatus.PARTIAL,
            results=completed,
            unresolved=unresolved,
            itinerary=itinerary,
            message=f"{len(unresolved)} component(s) unresolved",
            resolutions=resolutions,
        )

    return RequestOutcome(
        request_id=coord.request_id,
        status=OutcomeStatus.SUCCESS,
        results=completed,
        itinerary=itinerary,
        resolutions=resolutions,
    )


def partial_results(coord: CoordinationState) -> dict:
    """label -> payload for tasks completed so far (usable mid-flight)."""
    return {
        task.label: task.result
        for task in coord.graph
        if task.state == TaskState.COMPLETED
    }
