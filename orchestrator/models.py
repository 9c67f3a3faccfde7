"""
Data models for the trip orchestrator.

Tasks, task graphs, trip requests and agent descriptors. Tasks live in
an arena keyed by id inside their TaskGraph; only the dispatcher mutates
their status fields once the graph is sealed.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Optional, Any

from .errors import PlanningError


class AgentType(str, Enum):
    """Agent kinds a trip request decomposes into."""
    PLANNING = "planning"
    LOCATION = "location"
    TRANSPORT = "transport"
    ACCOMMODATION = "accommodation"
    ACTIVITY = "activity"
    BUDGET = "budget"
    WEATHER = "weather"


class PriorityTier(IntEnum):
    """P0 is the critical path, P3 is optional. Lower value sorts first."""
    P0 = 0
    P1 = 1
    P2 = 2
    P3 = 3

    @classmethod
    def parse(cls, value: Any) -> "PriorityTier":
        if isinstance(value, PriorityTier):
            return value
        if isinstance(value, int):
            return cls(value)
        text = str(value).strip().upper()
        if not text.startswith("P"):
            text = f"P{text}"
        try:
            return cls[text]
        except KeyError:
            raise PlanningError(f"Unknown priority tier: {value!r}") from None


class TaskState(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})


@dataclass
class Task:
    """
    One agent invocation inside a request's task graph.

    Retry state is explicit: ``attempts`` counts dispatches that reached a
    worker, ``next_eligible_at`` gates a ready task until its backoff has
    elapsed.
    """
    # Globally unique identifier
    id: str

    # Owning request
    request_id: str

    agent_type: AgentType
    priority: PriorityTier

    # Human-readable name unique within the graph, e.g. "accommodation:tokyo"
    label: str = ""

    # Global creation order, used for FIFO tie-breaks within a tier
    sequence: int = 0

    state: TaskState = TaskState.PENDING

    # Task-specific input (destination, dates, ...)
    payload: dict = field(default_factory=dict)

    # Task ids that must complete first
    depends_on: list[str] = field(default_factory=list)

    # Named resources this task must hold exclusively while running
    locks: list[str] = field(default_factory=list)

    # Upstream results injected at dispatch, keyed by dependency label
    inputs: dict = field(default_factory=dict)

    # Retry tracking
    attempts: int = 0
    validation_retries: int = 0
    next_eligible_at: Optional[float] = None

    # Tier override after a quota downgrade or fallback (None = descriptor tier)
    model_tier: Optional[str] = None
    fallback_used: bool = False

    worker_id: Optional[str] = None
    cancel_requested: bool = False

    # Timestamps
    created_at: float = field(default_factory=lambda: datetime.now().timestamp())
    updated_at: float = field(default_factory=lambda: datetime.now().timestamp())
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    # Result storage
    result: Optional[dict] = None
    error: Optional[str] = None
    error_class: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize task to dictionary."""
        return {
            "id": self.id,
            "request_id": self.request_id,
            "agent_type": self.agent_type.value,
            "priority": self.priority.name,
            "label": self.label,
            "sequence": self.sequence,
            "state": self.state.value,
            "payload": self.payload,
            "depends_on": list(self.depends_on),
            "locks": list(self.locks),
            "attempts": self.attempts,
            "validation_retries": self.validation_retries,
            "next_eligible_at": self.next_eligible_at,
            "model_tier": self.model_tier,
            "fallback_used": self.fallback_used,
            "worker_id": self.worker_id,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
            "error_class": self.error_class,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        """Deserialize task from dictionary."""
        return cls(
            id=data["id"],
            request_id=data["request_id"],
            agent_type=AgentType(data["agent_type"]),
            priority=PriorityTier.parse(data["priority"]),
            label=data.get("label", ""),
            sequence=data.get("sequence", 0),
            state=TaskState(data.get("state", TaskState.PENDING.value)),
            payload=data.get("payload", {}),
            depends_on=list(data.get("depends_on", [])),
            locks=list(data.get("locks", [])),
            attempts=data.get("attempts", 0),
            validation_retries=data.get("validation_retries", 0),
            next_eligible_at=data.get("next_eligible_at"),
            model_tier=data.get("model_tier"),
            fallback_used=data.get("fallback_used", False),
            worker_id=data.get("worker_id"),
            cancel_requested=data.get("cancel_requested", False),
            created_at=data.get("created_at", datetime.now().timestamp()),
            updated_at=data.get("updated_at", datetime.now().timestamp()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            result=data.get("result"),
            error=data.get("error"),
            error_class=data.get("error_class"),
        )

    def is_eligible(self, now: float) -> bool:
        """Ready and past any retry backoff."""
        if self.state != TaskState.READY:
            return False
        return self.next_eligible_at is None or self.next_eligible_at <= now

    def can_retry(self, max_attempts: int) -> bool:
        return self.attempts < max_attempts


class TaskGraph:
    """
    Directed acyclic graph of tasks for one request.

    Tasks are stored by id in insertion order. Once ``seal()`` has been
    called the topology is frozen; only task fields change afterwards.
    """

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.tasks: dict[str, Task] = {}
        self._sealed = False

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self):
        return iter(self.tasks.values())

    def __contains__(self, task_id: str) -> bool:
        return task_id in self.tasks

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add_task(self, task: Task) -> Task:
        if self._sealed:
            raise PlanningError(f"Task graph {self.request_id} is sealed; cannot add {task.label or task.id}")
        if task.id in self.tasks:
            raise PlanningError(f"Duplicate task id: {task.id}")
        if task.request_id != self.request_id:
            raise PlanningError(f"Task {task.id} belongs to request {task.request_id}")
        self.tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def by_label(self, label: str) -> Optional[Task]:
        for task in self.tasks.values():
            if task.label == label:
                return task
        return None

    def by_agent(self, agent_type: AgentType) -> list[Task]:
        return [t for t in self.tasks.values() if t.agent_type == agent_type]

    def dependents(self, task_id: str) -> list[Task]:
        """Tasks that list task_id as a direct dependency."""
        return [t for t in self.tasks.values() if task_id in t.depends_on]

    def descendants(self, task_id: str) -> list[Task]:
        """All tasks that depend on task_id directly or transitively."""
        seen: dict[str, Task] = {}
        frontier = [task_id]
        while frontier:
            current = frontier.pop()
            for child in self.dependents(current):
                if child.id not in seen:
                    seen[child.id] = child
                    frontier.append(child.id)
        return list(seen.values())

    def topological_order(self) -> list[Task]:
        """
        Kahn's algorithm, stable in insertion order.

        Raises PlanningError on unknown dependencies or cycles.
        """
        indegree: dict[str, int] = {}
        for task in self.tasks.values():
            for dep in task.depends_on:
                if dep not in self.tasks:
                    raise PlanningError(f"Task {task.label or task.id} depends on unknown task {dep}")
                if dep == task.id:
                    raise PlanningError(f"Task {task.label or task.id} depends on itself")
            indegree[task.id] = len(set(task.depends_on))

        queue = [tid for tid, degree in indegree.items() if degree == 0]
        order: list[Task] = []
        while queue:
            tid = queue.pop(0)
            order.append(self.tasks[tid])
            for child in self.dependents(tid):
                indegree[child.id] -= 1
                if indegree[child.id] == 0:
                    queue.append(child.id)

        if len(order) != len(self.tasks):
            stuck = sorted(
                self.tasks[tid].label or tid for tid, degree in indegree.items() if degree > 0
            )
            raise PlanningError(f"Dependency cycle among tasks: {', '.join(stuck)}")
        return order

    def seal(self) -> "TaskGraph":
        """Validate acyclicity and freeze topology."""
        self.topological_order()
        self._sealed = True
        return self

    def is_finished(self) -> bool:
        return all(t.state.is_terminal for t in self.tasks.values())

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "sealed": self._sealed,
            "tasks": [t.to_dict() for t in self.tasks.values()],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskGraph":
        graph = cls(data["request_id"])
        for task_data in data.get("tasks", []):
            graph.add_task(Task.from_dict(task_data))
        if data.get("sealed"):
            graph.seal()
        return graph


@dataclass
class TaskSpec:
    """Explicit request for one agent task (optional; the planner has defaults)."""
    agent_type: AgentType
    priority: Optional[PriorityTier] = None
    locks: list[str] = field(default_factory=list)
    depends_on: list[AgentType] = field(default_factory=list)
    payload: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "TaskSpec":
        try:
            agent_type = AgentType(data["agent_type"])
            depends_on = [AgentType(a) for a in data.get("depends_on", [])]
        except (KeyError, ValueError) as e:
            raise PlanningError(f"Invalid task spec {data!r}: {e}") from None

        priority = data.get("priority")
        return cls(
            agent_type=agent_type,
            priority=PriorityTier.parse(priority) if priority is not None else None,
            locks=list(data.get("locks", [])),
            depends_on=depends_on,
            payload=dict(data.get("payload", {})),
        )


@dataclass
class TripRequest:
    """Structured, already-validated trip request."""
    destinations: list[str]
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    travelers: int = 1
    budget: Optional[float] = None
    currency: str = "USD"
    preferences: list[str] = field(default_factory=list)
    priority_tasks: list[TaskSpec] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "TripRequest":
        """Build from a JSON-style dict; bad field types raise PlanningError."""
        try:
            return cls(
                destinations=_string_list(data.get("destinations", []), "destinations"),
                start_date=_parse_date(data.get("start_date")),
                end_date=_parse_date(data.get("end_date")),
                travelers=int(data.get("travelers", 1)),
                budget=float(data["budget"]) if data.get("budget") is not None else None,
                currency=data.get("currency", "USD"),
                preferences=_string_list(data.get("preferences", []), "preferences"),
                priority_tasks=[TaskSpec.from_dict(t) for t in data.get("priority_tasks", [])],
            )
        except (TypeError, ValueError) as e:
            raise PlanningError(f"Malformed trip request: {e}") from None

    def to_dict(self) -> dict:
        return {
            "destinations": list(self.destinations),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "travelers": self.travelers,
            "budget": self.budget,
            "currency": self.currency,
            "preferences": list(self.preferences),
        }


def _string_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"{name} must be a list, got {type(value).__name__}")
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise TypeError(f"{name} entries must be non-empty strings, got {item!r}")
    return list(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass
class RetryPolicy:
    """Retry settings for one agent type."""
    max_attempts: int = 3
    backoff_base: float = 2.0
    max_backoff_seconds: float = 60.0
    # Extra multiplier applied when the provider reports a quota refusal
    quota_backoff_multiplier: float = 4.0
    # Allow exactly one retry after malformed provider output
    retry_on_validation: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_base=float(data.get("backoff_base", 2.0)),
            max_backoff_seconds=float(data.get("max_backoff_seconds", 60.0)),
            quota_backoff_multiplier=float(data.get("quota_backoff_multiplier", 4.0)),
            retry_on_validation=bool(data.get("retry_on_validation", False)),
        )


@dataclass(frozen=True)
class AgentDescriptor:
    """Static configuration for an agent type."""
    agent_type: AgentType
    capacity: int = 2
    timeout_seconds: float = 120.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    model_tier: str = "standard"
    fallback_tier: Optional[str] = None

    @classmethod
    def from_dict(cls, agent_type: AgentType, data: dict) -> "AgentDescriptor":
        capacity = int(data.get("capacity", 2))
        if capacity < 1:
            raise ValueError(f"{agent_type.value}: capacity must be >= 1")
        return cls(
            agent_type=agent_type,
            capacity=capacity,
            timeout_seconds=float(data.get("timeout_seconds", 120.0)),
            retry=RetryPolicy.from_dict(data.get("retry", {})),
            model_tier=data.get("model_tier", "standard"),
            fallback_tier=data.get("fallback_tier"),
        )

    def to_dict(self) -> dict:
        return {
            "agent_type": self.agent_type.value,
            "capacity": self.capacity,
            "timeout_seconds": self.timeout_seconds,
            "model_tier": self.model_tier,
            "fallback_tier": self.fallback_tier,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "backoff_base": self.retry.backoff_base,
                "max_backoff_seconds": self.retry.max_backoff_seconds,
                "quota_backoff_multiplier": self.retry.quota_backoff_multiplier,
                "retry_on_validation": self.retry.retry_on_validation,
            },
        }


@dataclass
class TaskResult:
    """What a worker hands back for a successful execution."""
    payload: dict
    status: str = "success"
    usage: Optional[dict] = None


# Static priority table keyed by agent type
BASE_PRIORITIES: dict[AgentType, PriorityTier] = {
    AgentType.LOCATION: PriorityTier.P0,
    AgentType.TRANSPORT: PriorityTier.P0,
    AgentType.ACCOMMODATION: PriorityTier.P1,
    AgentType.BUDGET: PriorityTier.P1,
    AgentType.PLANNING: PriorityTier.P1,
    AgentType.ACTIVITY: PriorityTier.P2,
    AgentType.WEATHER: PriorityTier.P3,
}


def get_base_priority(agent_type: AgentType) -> PriorityTier:
    """Get base priority tier for an agent type."""
    return BASE_PRIORITIES.get(agent_type, PriorityTier.P2)
