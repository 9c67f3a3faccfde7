"""
Dispatcher for the Orchestrator.

The single writer of coordination state. One asyncio loop:
1. Promotes pending tasks whose dependencies completed (cascading cancels)
2. Walks eligible ready tasks in (priority, sequence) order
3. Takes a pool slot and every named lock, or leaves the task ready
4. Runs the worker as an asyncio task and applies its outcome through
   on_task_complete / on_task_failed

All state changes happen on the event loop, one notification at a time,
so no reader ever sees a half-applied mutation. The loop sleeps until
something changes or the earliest retry backoff elapses.
"""

import asyncio
import time
from typing import Callable, Optional

from shared.logging import correlation_context, get_logger

from .allocator import CapacityAllocator
from .errors import RequestNotFound, ResourceConflict, TaskCancelledError
from .models import AgentDescriptor, AgentType, Task, TaskGraph, TaskResult, TaskState
from .results import RequestOutcome, merge_results
from .scheduler import FailureAction, Scheduler
from .state import CoordinationState, ResolutionRecord, StateStore
from .worker import AgentWorker

log = get_logger("orchestrator", "dispatcher")


class Dispatcher:
    """
    Assigns ready tasks to agent pools and reacts to their results.

    Usage:
        dispatcher = Dispatcher(store, scheduler, allocator, worker, descriptors)
        await dispatcher.start()
        dispatcher.submit(graph)
        outcome = await dispatcher.wait_for_request(graph.request_id)
    """

    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        allocator: CapacityAllocator,
        worker: AgentWorker,
        descriptors: dict[AgentType, AgentDescriptor],
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        on_request_finished: Optional[Callable[[RequestOutcome], None]] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.allocator = allocator
        self.worker = worker
        self.descriptors = descriptors
        self.poll_interval = poll_interval
        self.clock = clock
        self.on_request_finished = on_request_finished

        self.outcomes: dict[str, RequestOutcome] = {}
        self._finished_events: dict[str, asyncio.Event] = {}
        self._running_tasks: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

        # Counters
        self.dispatched = 0
        self.retries = 0
        self.conflict_requeues = 0
        self.terminal_failures = 0

    # ==================== Lifecycle ====================

    async def start(self):
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        log.info("orchestrator.dispatcher.started",
                 pools={a.value: d.capacity for a, d in self.descriptors.items()})

    async def stop(self):
        """Stop the loop and cancel whatever is still running."""
        if not self._running:
            return
        self._running = False
        self._wakeup.set()

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        running = list(self._running_tasks.values())
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

        log.info("orchestrator.dispatcher.stopped",
                 dispatched=self.dispatched, retries=self.retries)

    @property
    def running(self) -> bool:
        return self._running

    def wake(self):
        self._wakeup.set()

    # ==================== Inbound operations ====================

    def submit(self, graph: TaskGraph) -> CoordinationState:
        """Register a planned graph and make its root tasks ready."""
        coord = self.store.create(graph)
        self._finished_events.setdefault(graph.request_id, asyncio.Event())

        promoted, _ = self.scheduler.promote(coord)
        log.info("orchestrator.dispatcher.request_submitted",
                 request_id=graph.request_id,
                 tasks=len(graph),
                 ready=[t.label for t in promoted])

        self._after_change(coord)
        return coord

    def on_task_complete(self, task_id: str, result: TaskResult):
        """Apply a successful execution."""
        located = self._locate_running(task_id, "complete")
        if located is None:
            return
        coord, task = located

        self._release(coord, task)

        if task.cancel_requested:
            coord.transition(task.id, TaskState.CANCELLED,
                             reason="result_discarded",
                             error="Cancelled while running; result discarded",
                             error_class="TaskCancelledError")
        else:
            coord.transition(task.id, TaskState.COMPLETED,
                             reason="completed",
                             result=result.payload,
                             error=None,
                             error_class=None)
            log.info("orchestrator.dispatcher.task_completed",
                     request_id=coord.request_id,
                     task_id=task.id,
                     label=task.label,
                     attempts=task.attempts)

        self._after_change(coord)

    def on_task_failed(self, task_id: str, error: BaseException):
        """Apply a failed execution: retry, downgrade, fall back, fail or cancel."""
        located = self._locate_running(task_id, "failed")
        if located is None:
            return
        coord, task = located

        self._release(coord, task)

        descriptor = self.descriptors[task.agent_type]
        decision = self.scheduler.decide_failure(task, descriptor, error)
        error_text = str(error) or type(error).__name__
        error_class = type(error).__name__
        now = self.clock()
        attempts = max(0, task.attempts - 1) if decision.refund_attempt else task.attempts
        if decision.retries:
            self.retries += 1

        log.info("orchestrator.dispatcher.task_failed",
                 request_id=coord.request_id,
                 task_id=task.id,
                 label=task.label,
                 attempts=task.attempts,
                 error=error_text,
                 error_class=error_class,
                 action=decision.action.value,
                 delay=round(decision.delay, 3))

        if decision.action == FailureAction.CANCEL:
            coord.transition(task.id, TaskState.CANCELLED,
                             reason="cancelled",
                             error=error_text,
                             error_class=error_class)

        elif decision.action == FailureAction.RETRY:
            coord.transition(
                task.id, TaskState.READY,
                reason=decision.reason,
                attempts=attempts,
                next_eligible_at=now + decision.delay if decision.delay > 0 else None,
                validation_retries=task.validation_retries + (1 if decision.validation_retry else 0),
                error=error_text,
                error_class=error_class,
            )

        elif decision.action == FailureAction.DOWNGRADE:
            coord.transition(
                task.id, TaskState.READY,
                reason=decision.reason,
                model_tier=decision.tier,
                fallback_used=True,
                attempts=attempts,
                next_eligible_at=None,
                error=error_text,
                error_class=error_class,
            )

        elif decision.action == FailureAction.FALLBACK:
            coord.add_resolution(ResolutionRecord(
                task_id=task.id,
                label=task.label,
                action="fallback",
                error=error_text,
            ))
            coord.transition(
                task.id, TaskState.READY,
                reason=decision.reason,
                model_tier=decision.tier,
                fallback_used=True,
                next_eligible_at=None,
                error=error_text,
                error_class=error_class,
            )
            log.info("orchestrator.dispatcher.fallback_scheduled",
                     request_id=coord.request_id,
                     label=task.label,
                     tier=decision.tier)

        else:
            self.terminal_failures += 1
            coord.transition(task.id, TaskState.FAILED,
                             reason=decision.reason,
                             error=error_text,
                             error_class=error_class)
            _, cascaded = self.scheduler.promote(coord)
            coord.add_resolution(ResolutionRecord(
                task_id=task.id,
                label=task.label,
                action="propagate",
                error=error_text,
                cancelled_dependents=[t.label for t in cascaded],
            ))
            log.warning("orchestrator.dispatcher.task_failed_terminal",
                        request_id=coord.request_id,
                        task_id=task.id,
                        label=task.label,
                        priority=task.priority.name,
                        cancelled_dependents=[t.label for t in cascaded])

        self._after_change(coord)

    def cancel(self, request_id: str) -> bool:
        """
        Cancel every non-terminal task of a request.

        Pending and ready tasks are cancelled at once; running ones are
        flagged and their worker coroutine is cancelled. Returns False if
        the request had already finished.
        """
        coord = self.store.get(request_id)
        if self.store.is_archived(request_id) or coord.is_finished():
            return False
        if coord.cancelled:
            return True

        coord.mark_cancelled()
        interrupted = []
        for task in coord.graph:
            if task.state in (TaskState.PENDING, TaskState.READY):
                coord.transition(task.id, TaskState.CANCELLED,
                                 reason="request_cancelled",
                                 error="Request cancelled",
                                 error_class="TaskCancelledError")
            elif task.state == TaskState.RUNNING:
                coord.update_task(task.id, cancel_requested=True)
                running = self._running_tasks.get(task.id)
                if running is not None:
                    running.cancel()
                interrupted.append(task.label)

        log.info("orchestrator.dispatcher.request_cancelled",
                 request_id=request_id, interrupted=interrupted)

        self._after_change(coord)
        return True

    async def wait_for_request(self, request_id: str, timeout: Optional[float] = None) -> RequestOutcome:
        """Wait until every task of a request is terminal and return the outcome."""
        if request_id in self.outcomes:
            return self.outcomes[request_id]
        self.store.get(request_id)

        event = self._finished_events.setdefault(request_id, asyncio.Event())
        await asyncio.wait_for(event.wait(), timeout=timeout)
        outcome = self.outcomes.get(request_id)
        if outcome is None:
            # Finished and already trimmed from the archive
            raise RequestNotFound(request_id)
        return outcome

    def get_outcome(self, request_id: str) -> Optional[RequestOutcome]:
        return self.outcomes.get(request_id)

    # ==================== Loop ====================

    async def _run_loop(self):
        """Main dispatch loop."""
        while self._running:
            try:
                self._wakeup.clear()
                self._dispatch_ready()

                timeout = self.poll_interval
                now = self.clock()
                next_at = self.scheduler.next_wakeup(self.store.active_states(), now)
                if next_at is not None:
                    timeout = min(timeout, max(0.0, next_at - now))

                try:
                    await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass

            except asyncio.CancelledError:
                break
            except Exception as e:
                log.exception(e, "orchestrator.dispatcher.loop_error", {})
                await asyncio.sleep(self.poll_interval)

    def _dispatch_ready(self) -> int:
        """One pass over the eligible ready tasks. Returns how many started."""
        started = 0
        now = self.clock()

        for task in self.scheduler.ready_queue(self.store.active_states(), now):
            coord = self.store.get_active(task.request_id)
            if coord is None or task.state != TaskState.READY:
                continue

            allocation = self.allocator.allocate(task.agent_type, task.id)
            if not allocation.granted:
                continue

            try:
                coord.acquire_locks(task.id, task.locks)
            except ResourceConflict as e:
                self.allocator.release(task.agent_type, task.id)
                self.conflict_requeues += 1
                coord.transition(task.id, TaskState.READY,
                                 reason=f"lock_conflict:{e.resource}")
                log.info("orchestrator.dispatcher.task_requeued",
                         request_id=coord.request_id,
                         task_id=task.id,
                         label=task.label,
                         resource=e.resource,
                         holder=e.holder)
                continue

            self._start_task(coord, task, allocation.slot)
            started += 1

        return started

    def _start_task(self, coord: CoordinationState, task: Task, slot: str):
        inputs = {
            coord.graph.tasks[dep].label: coord.graph.tasks[dep].result
            for dep in task.depends_on
        }
        coord.transition(task.id, TaskState.RUNNING,
                         reason="dispatched",
                         attempts=task.attempts + 1,
                         worker_id=slot,
                         inputs=inputs,
                         next_eligible_at=None)
        self.dispatched += 1

        log.info("orchestrator.dispatcher.task_dispatched",
                 request_id=coord.request_id,
                 task_id=task.id,
                 label=task.label,
                 priority=task.priority.name,
                 attempt=task.attempts,
                 worker_id=slot,
                 tier=task.model_tier or self.descriptors[task.agent_type].model_tier)

        descriptor = self.descriptors[task.agent_type]
        runner = asyncio.create_task(self._run_task(coord.request_id, task.id, descriptor))
        self._running_tasks[task.id] = runner
        runner.add_done_callback(lambda fut, task_id=task.id: self._on_runner_done(task_id, fut))

    async def _run_task(self, request_id: str, task_id: str, descriptor: AgentDescriptor):
        coord = self.store.get(request_id)
        task = coord.get_task(task_id)

        with correlation_context(request_id=request_id, task_id=task_id):
            try:
                result = await self.worker.execute(task, descriptor, tier=task.model_tier)
            except asyncio.CancelledError:
                self.on_task_failed(task_id, TaskCancelledError(f"Task {task.label} cancelled while running"))
                return
            except Exception as e:
                self.on_task_failed(task_id, e)
                return

            self.on_task_complete(task_id, result)

    def _on_runner_done(self, task_id: str, fut: asyncio.Task):
        self._running_tasks.pop(task_id, None)
        # A runner cancelled before its first step never reported back
        if fut.cancelled():
            self.on_task_failed(task_id, TaskCancelledError("Task cancelled before it started"))

    # ==================== Helpers ====================

    def _locate_running(self, task_id: str, event: str) -> Optional[tuple[CoordinationState, Task]]:
        located = self.store.find_task(task_id)
        if located is None:
            log.warning("orchestrator.dispatcher.unknown_task", task_id=task_id, notification=event)
            return None
        coord, task = located
        if task.state != TaskState.RUNNING:
            log.debug("orchestrator.dispatcher.stale_notification",
                      task_id=task_id, state=task.state.value, notification=event)
            return None
        return located

    def _release(self, coord: CoordinationState, task: Task):
        self.allocator.release(task.agent_type, task.id)
        coord.release_locks(task.id)

    def _after_change(self, coord: CoordinationState):
        self.scheduler.promote(coord)
        self.store.persist(coord)
        if coord.is_finished() and not self.store.is_archived(coord.request_id):
            self._finish(coord)
        self._wakeup.set()

    def _finish(self, coord: CoordinationState):
        outcome = merge_results(coord)
        self.outcomes[coord.request_id] = outcome
        self.store.archive(coord.request_id)

        event = self._finished_events.setdefault(coord.request_id, asyncio.Event())
        event.set()

        for evicted in self.store.trim_archive():
            self.outcomes.pop(evicted, None)
            self._finished_events.pop(evicted, None)

        log.info("orchestrator.dispatcher.request_finished",
                 request_id=coord.request_id,
                 status=outcome.status.value,
                 unresolved=[u["label"] for u in outcome.unresolved],
                 version=coord.version)

        if self.on_request_finished:
            try:
                self.on_request_finished(outcome)
            except Exception as e:
                log.exception(e, "orchestrator.dispatcher.finish_callback_error", {
                    "request_id": coord.request_id,
                })

    def get_status(self) -> dict:
        return {
            "running": self._running,
            "in_flight": len(self._running_tasks),
            "dispatched": self.dispatched,
            "retries": self.retries,
            "conflict_requeues": self.conflict_requeues,
            "terminal_failures": self.terminal_failures,
            "finished_requests": len(self.outcomes),
        }
