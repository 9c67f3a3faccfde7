"""
Coordination State Store.

One CoordinationState per active request holds its task graph, a
monotonically increasing version counter, the exclusive resource-lock
map, the conflict list and a transition history. Every committed
mutation goes through ``transition`` / lock methods and bumps the
version, so a reader holding version N can detect that anything changed.

The StateStore keeps the active and archived states and hands snapshots
to the write-behind persistence sink. Its correctness never depends on
a snapshot being written.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from shared.logging import get_logger

from .errors import InvalidTransition, RequestNotFound, ResourceConflict, StaleVersionError
from .models import Task, TaskGraph, TaskState
from .persistence import SnapshotWriter

log = get_logger("orchestrator", "state")


# Allowed lifecycle edges. READY -> READY is a lock-conflict requeue,
# RUNNING -> READY is a retry after backoff.
ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.READY, TaskState.CANCELLED}),
    TaskState.READY: frozenset({TaskState.READY, TaskState.RUNNING, TaskState.CANCELLED}),
    TaskState.RUNNING: frozenset({
        TaskState.COMPLETED,
        TaskState.FAILED,
        TaskState.READY,
        TaskState.CANCELLED,
    }),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


@dataclass
class TransitionRecord:
    """One committed state change."""
    version: int
    task_id: str
    label: str
    old_state: TaskState
    new_state: TaskState
    timestamp: float
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "task_id": self.task_id,
            "label": self.label,
            "old_state": self.old_state.value,
            "new_state": self.new_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass
class ConflictRecord:
    """A lock request that lost to the current holder."""
    resource: str
    holder: str
    requester: str
    version: int
    timestamp: float = field(default_factory=time.time)
    resolved: bool = False

    def to_dict(self) -> dict:
        return {
            "resource": self.resource,
            "holder": self.holder,
            "requester": self.requester,
            "version": self.version,
            "timestamp": self.timestamp,
            "resolved": self.resolved,
        }


@dataclass
class ResolutionRecord:
    """The dispatcher's decision for a task that failed terminally."""
    task_id: str
    label: str
    action: str  # "fallback" or "propagate"
    error: Optional[str]
    cancelled_dependents: list[str] = field(default_factory=list)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "label": self.label,
            "action": self.action,
            "error": self.error,
            "cancelled_dependents": list(self.cancelled_dependents),
            "timestamp": self.timestamp,
        }


class CoordinationState:
    """
    Mutable coordination record for one request.

    All methods are synchronous: on the dispatcher's event loop each call
    is applied atomically with respect to every other reader.
    """

    def __init__(self, graph: TaskGraph):
        self.graph = graph
        self.version = 0
        self.locks: dict[str, str] = {}
        self.conflicts: list[ConflictRecord] = []
        self.history: list[TransitionRecord] = []
        self.resolutions: list[ResolutionRecord] = []
        self.cancelled = False
        self.created_at = time.time()
        self.finished_at: Optional[float] = None

    @property
    def request_id(self) -> str:
        return self.graph.request_id

    def _commit(self, expected_version: Optional[int] = None) -> int:
        if expected_version is not None and expected_version != self.version:
            raise StaleVersionError(expected_version, self.version)
        self.version += 1
        return self.version

    def get_task(self, task_id: str) -> Task:
        task = self.graph.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    def transition(
        self,
        task_id: str,
        new_state: TaskState,
        *,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
        **updates,
    ) -> Task:
        """
        Move a task to ``new_state`` and apply field updates in one commit.

        Raises InvalidTransition for edges outside the lifecycle and
        StaleVersionError when ``expected_version`` is stale.
        """
        task = self.get_task(task_id)
        old_state = task.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransition(
                f"{task.label or task.id}: {old_state.value} -> {new_state.value} not allowed"
            )

        for key in updates:
            if not hasattr(task, key):
                raise AttributeError(f"Task has no field '{key}'")

        version = self._commit(expected_version)
        for key, value in updates.items():
            setattr(task, key, value)

        now = time.time()
        task.state = new_state
        task.updated_at = now
        if new_state == TaskState.RUNNING:
            task.started_at = now
        elif new_state.is_terminal:
            task.completed_at = now

        self.history.append(TransitionRecord(
            version=version,
            task_id=task.id,
            label=task.label,
            old_state=old_state,
            new_state=new_state,
            timestamp=now,
            reason=reason,
        ))

        if self.graph.is_finished() and self.finished_at is None:
            self.finished_at = now

        log.debug("orchestrator.state.task_state_changed",
                  request_id=self.request_id,
                  task_id=task.id,
                  label=task.label,
                  old_state=old_state.value,
                  new_state=new_state.value,
                  version=version,
                  reason=reason)
        return task

    def update_task(self, task_id: str, **updates) -> Task:
        """Update task fields without a state change (still a committed mutation)."""
        task = self.get_task(task_id)
        for key in updates:
            if not hasattr(task, key):
                raise AttributeError(f"Task has no field '{key}'")
        self._commit()
        for key, value in updates.items():
            setattr(task, key, value)
        task.updated_at = time.time()
        return task

    # ==================== Resource locks ====================

    def acquire_locks(self, task_id: str, resources: list[str]) -> None:
        """
        Grant every resource to task_id, or none of them.

        Locks are exclusive and non-reentrant: a resource held by anyone,
        including the requester, raises ResourceConflict (recorded in the
        conflict list).
        """
        for resource in resources:
            holder = self.locks.get(resource)
            if holder is not None:
                version = self._commit()
                self.conflicts.append(ConflictRecord(
                    resource=resource,
                    holder=holder,
                    requester=task_id,
                    version=version,
                ))
                log.info("orchestrator.state.lock_conflict",
                         request_id=self.request_id,
                         resource=resource,
                         holder=holder,
                         requester=task_id)
                raise ResourceConflict(resource, holder, task_id)

        if not resources:
            return

        self._commit()
        for resource in resources:
            self.locks[resource] = task_id

    def release_locks(self, task_id: str) -> list[str]:
        """Release every lock held by task_id; resolves conflicts it caused."""
        released = [r for r, holder in self.locks.items() if holder == task_id]
        if not released:
            return []

        self._commit()
        for resource in released:
            del self.locks[resource]
        for conflict in self.conflicts:
            if conflict.holder == task_id and conflict.resource in released:
                conflict.resolved = True
        return released

    def pending_conflicts(self) -> list[ConflictRecord]:
        return [c for c in self.conflicts if not c.resolved]

    def lock_holder(self, resource: str) -> Optional[str]:
        return self.locks.get(resource)

    # ==================== Queries ====================

    def mark_cancelled(self):
        self._commit()
        self.cancelled = True

    def add_resolution(self, record: ResolutionRecord):
        self._commit()
        self.resolutions.append(record)

    def tasks_in_state(self, *states: TaskState) -> list[Task]:
        return [t for t in self.graph if t.state in states]

    def is_finished(self) -> bool:
        return self.graph.is_finished()

    def state_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for task in self.graph:
            counts[task.state.value] = counts.get(task.state.value, 0) + 1
        return counts

    def transitions_for(self, task_id: str) -> list[TransitionRecord]:
        return [r for r in self.history if r.task_id == task_id]

    def snapshot(self) -> dict:
        """Serializable view of the whole coordination record."""
        return {
            "request_id": self.request_id,
            "version": self.version,
            "cancelled": self.cancelled,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "graph": self.graph.to_dict(),
            "locks": dict(self.locks),
            "conflicts": [c.to_dict() for c in self.conflicts],
            "resolutions": [r.to_dict() for r in self.resolutions],
            "history": [h.to_dict() for h in self.history],
        }


class StateStore:
    """
    Registry of coordination states, keyed by request id.

    Active states are mutated by the dispatcher; archived ones are
    read-only records of finished requests. Only the newest
    max_archived archived states stay in memory; older ones survive
    only as their final persisted snapshot.
    """

    def __init__(self, writer: Optional[SnapshotWriter] = None, max_archived: int = 1000):
        if max_archived < 1:
            raise ValueError("max_archived must be at least 1")
        self.writer = writer
        self.max_archived = max_archived
        self._active: dict[str, CoordinationState] = {}
        self._archived: dict[str, CoordinationState] = {}

    async def startup(self):
        if self.writer:
            await self.writer.start()
        log.info("orchestrator.state.started")

    async def shutdown(self):
        # Flush snapshots for anything still active
        for state in self._active.values():
            self.persist(state)
        if self.writer:
            await self.writer.stop()
        log.info("orchestrator.state.shutdown", active=len(self._active))

    def create(self, graph: TaskGraph) -> CoordinationState:
        if graph.request_id in self._active or graph.request_id in self._archived:
            raise ValueError(f"Request {graph.request_id} already registered")
        if not graph.sealed:
            graph.seal()

        state = CoordinationState(graph)
        self._active[graph.request_id] = state
        self.persist(state)

        log.info("orchestrator.state.request_registered",
                 request_id=graph.request_id, tasks=len(graph))
        return state

    def get(self, request_id: str) -> CoordinationState:
        """Active or archived state; raises RequestNotFound."""
        state = self._active.get(request_id) or self._archived.get(request_id)
        if state is None:
            raise RequestNotFound(request_id)
        return state

    def get_active(self, request_id: str) -> Optional[CoordinationState]:
        return self._active.get(request_id)

    def active_states(self) -> list[CoordinationState]:
        return list(self._active.values())

    def archived_states(self) -> list[CoordinationState]:
        return list(self._archived.values())

    def is_archived(self, request_id: str) -> bool:
        return request_id in self._archived

    def archive(self, request_id: str) -> CoordinationState:
        """Move a finished request out of the active set and persist it."""
        state = self._active.pop(request_id, None)
        if state is None:
            if request_id in self._archived:
                return self._archived[request_id]
            raise RequestNotFound(request_id)

        self._archived[request_id] = state
        self.persist(state)
        log.info("orchestrator.state.request_archived",
                 request_id=request_id, version=state.version)
        return state

    def trim_archive(self) -> list[str]:
        """Drop the oldest archived states beyond max_archived; return their ids."""
        evicted = []
        while len(self._archived) > self.max_archived:
            request_id = next(iter(self._archived))
            del self._archived[request_id]
            evicted.append(request_id)
        if evicted:
            log.debug("orchestrator.state.archive_trimmed",
                      evicted=evicted, retained=len(self._archived))
        return evicted

    def persist(self, state: CoordinationState):
        """Queue a snapshot for the write-behind sink (never blocks)."""
        if self.writer:
            self.writer.persist(state.snapshot())

    def find_task(self, task_id: str) -> Optional[tuple[CoordinationState, Task]]:
        for state in self._active.values():
            task = state.graph.get(task_id)
            if task is not None:
                return state, task
        return None
