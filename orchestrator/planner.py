"""
Planner - turns a structured trip request into a task graph.

Decomposition:
- per destination: location, accommodation, activity, weather
- once per trip: transport, budget (only with a budget), planning

Edges encode real data dependencies (accommodation needs the candidate
neighbourhoods from location analysis, budget needs priced options,
planning assembles everything except the weather outlook). Priority
tiers come from BASE_PRIORITIES unless the request states one.
"""

import copy
import itertools
import re
import uuid
from typing import Iterator, Optional

from shared.logging import get_logger

from .errors import PlanningError
from .models import (
    AgentType,
    PriorityTier,
    Task,
    TaskGraph,
    TaskSpec,
    TripRequest,
    get_base_priority,
)

log = get_logger("orchestrator", "planner")


# Agent types planned once per destination
PER_DESTINATION = frozenset({
    AgentType.LOCATION,
    AgentType.ACCOMMODATION,
    AgentType.ACTIVITY,
    AgentType.WEATHER,
})

# agent type -> agent types it consumes results from
DEPENDENCY_RULES: dict[AgentType, tuple[AgentType, ...]] = {
    AgentType.ACCOMMODATION: (AgentType.LOCATION,),
    AgentType.ACTIVITY: (AgentType.LOCATION,),
    AgentType.BUDGET: (AgentType.TRANSPORT, AgentType.ACCOMMODATION, AgentType.ACTIVITY),
    AgentType.PLANNING: (
        AgentType.LOCATION,
        AgentType.TRANSPORT,
        AgentType.ACCOMMODATION,
        AgentType.ACTIVITY,
        AgentType.BUDGET,
    ),
}

# Resources each agent type mutates
DEFAULT_LOCKS: dict[AgentType, tuple[str, ...]] = {
    AgentType.BUDGET: ("budget_total",),
}

DEFAULT_AGENTS = (
    AgentType.LOCATION,
    AgentType.TRANSPORT,
    AgentType.ACCOMMODATION,
    AgentType.ACTIVITY,
    AgentType.WEATHER,
    AgentType.BUDGET,
    AgentType.PLANNING,
)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "x"


class Planner:
    """
    Builds a sealed TaskGraph per request.

    The planner owns the global creation counter, so tasks across all
    requests planned by one instance have a total FIFO order.
    """

    def __init__(self, sequence: Optional[Iterator[int]] = None):
        self._sequence = sequence or itertools.count(1)

    def plan(self, request: TripRequest, request_id: Optional[str] = None) -> TaskGraph:
        """
        Decompose a request into a task graph.

        Raises PlanningError if the request is contradictory or the
        resulting graph has a cycle. No tasks exist if this raises.
        """
        self._validate(request)
        request_id = request_id or uuid.uuid4().hex
        specs = self._resolve_specs(request)

        graph = TaskGraph(request_id)
        # (agent_type, destination or None) -> task
        placed: dict[tuple[AgentType, Optional[str]], Task] = {}

        for spec in specs:
            destinations = request.destinations if spec.agent_type in PER_DESTINATION else [None]
            for destination in destinations:
                task = self._make_task(request, request_id, spec, destination)
                graph.add_task(task)
                placed[(spec.agent_type, destination)] = task

        present = {spec.agent_type for spec in specs}
        explicit = {spec.agent_type: spec.depends_on for spec in specs}

        for (agent_type, destination), task in placed.items():
            upstream_types = list(DEPENDENCY_RULES.get(agent_type, ()))
            for extra in explicit.get(agent_type, []):
                if extra not in present:
                    raise PlanningError(
                        f"{agent_type.value} depends on {extra.value}, which is not part of the plan"
                    )
                if extra not in upstream_types:
                    upstream_types.append(extra)

            for upstream in upstream_types:
                if upstream not in present:
                    continue
                for dep in self._upstream_tasks(placed, upstream, destination):
                    if dep.id not in task.depends_on:
                        task.depends_on.append(dep.id)

        graph.seal()

        log.info("orchestrator.planner.graph_planned",
                 request_id=request_id,
                 tasks=len(graph),
                 destinations=len(request.destinations),
                 agents=sorted(a.value for a in present))
        return graph

    def _validate(self, request: TripRequest):
        if not request.destinations:
            raise PlanningError("Request has no destinations")
        if len({_slug(d) for d in request.destinations}) != len(request.destinations):
            raise PlanningError("Duplicate destinations in request")
        if request.start_date and request.end_date and request.end_date < request.start_date:
            raise PlanningError(
                f"End date {request.end_date} is before start date {request.start_date}"
            )
        if request.travelers < 1:
            raise PlanningError("A trip needs at least one traveler")
        if request.budget is not None and request.budget < 0:
            raise PlanningError("Budget cannot be negative")

    def _resolve_specs(self, request: TripRequest) -> list[TaskSpec]:
        if request.priority_tasks:
            specs = list(request.priority_tasks)
        else:
            specs = [
                TaskSpec(agent_type=agent)
                for agent in DEFAULT_AGENTS
                if agent != AgentType.BUDGET or request.budget is not None
            ]

        seen = set()
        for spec in specs:
            if spec.agent_type in seen:
                raise PlanningError(f"Agent type {spec.agent_type.value} requested twice")
            seen.add(spec.agent_type)
            if spec.agent_type == AgentType.BUDGET and request.budget is None:
                raise PlanningError("Budget task requested but the request has no budget")
        return specs

    def _make_task(
        self,
        request: TripRequest,
        request_id: str,
        spec: TaskSpec,
        destination: Optional[str],
    ) -> Task:
        label = spec.agent_type.value
        if destination is not None:
            label = f"{label}:{_slug(destination)}"

        payload = {
            "destination": destination,
            "destinations": list(request.destinations),
            "start_date": request.start_date.isoformat() if request.start_date else None,
            "end_date": request.end_date.isoformat() if request.end_date else None,
            "travelers": request.travelers,
            "budget": request.budget,
            "currency": request.currency,
            "preferences": list(request.preferences),
            **copy.deepcopy(spec.payload),
        }

        locks = list(DEFAULT_LOCKS.get(spec.agent_type, ()))
        for lock in spec.locks:
            if lock not in locks:
                locks.append(lock)

        priority: PriorityTier = spec.priority if spec.priority is not None else get_base_priority(spec.agent_type)

        return Task(
            id=f"{request_id[:8]}-{uuid.uuid4().hex[:8]}",
            request_id=request_id,
            agent_type=spec.agent_type,
            priority=priority,
            label=label,
            sequence=next(self._sequence),
            payload=payload,
            locks=locks,
        )

    @staticmethod
    def _upstream_tasks(
        placed: dict[tuple[AgentType, Optional[str]], Task],
        upstream: AgentType,
        destination: Optional[str],
    ) -> list[Task]:
        # Same-destination edge when both sides are per-destination
        if destination is not None and (upstream, destination) in placed:
            return [placed[(upstream, destination)]]
        return [task for (agent, _), task in placed.items() if agent == upstream]
