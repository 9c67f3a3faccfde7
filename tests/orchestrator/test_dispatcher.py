"""
Tests for orchestrator/dispatcher.py

These run the real dispatch loop against the scripted provider with
millisecond backoffs.
"""

import asyncio

import pytest
import pytest_asyncio

from orchestrator.allocator import CapacityAllocator
from orchestrator.dispatcher import Dispatcher
from orchestrator.errors import ProviderQuotaExceeded, ProviderUnavailable, RequestNotFound
from orchestrator.models import AgentType, PriorityTier, RetryPolicy, TaskResult, TaskState
from orchestrator.results import OutcomeStatus
from orchestrator.scheduler import Scheduler
from orchestrator.state import StateStore
from orchestrator.worker import AgentWorker


@pytest_asyncio.fixture
async def dispatcher_factory(gateway, metrics):
    """Builds started dispatchers over the scripted gateway; stops them afterwards."""
    created = []

    async def factory(descriptors, on_request_finished=None, store=None):
        dispatcher = Dispatcher(
            store=store or StateStore(),
            scheduler=Scheduler(descriptors),
            allocator=CapacityAllocator(descriptors),
            worker=AgentWorker(gateway, metrics=metrics),
            descriptors=descriptors,
            poll_interval=0.05,
            on_request_finished=on_request_finished,
        )
        await dispatcher.start()
        created.append(dispatcher)
        return dispatcher

    yield factory

    for dispatcher in created:
        await dispatcher.stop()


def _states(coord, task_id):
    return [(r.old_state, r.new_state) for r in coord.transitions_for(task_id)]


class TestOrdering:
    """Tests for priority and FIFO dispatch order."""

    @pytest.mark.asyncio
    async def test_p0_dispatched_before_p2_when_pool_is_full(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        """With one slot the P0 task runs first even though it was created later."""
        dispatcher = await dispatcher_factory(descriptor_factory({AgentType.ACTIVITY: {"capacity": 1}}))
        graph = graph_factory(
            task_factory("optional", priority=PriorityTier.P2, sequence=0),
            task_factory("critical", priority=PriorityTier.P0, sequence=1),
        )
        dispatcher.submit(graph)
        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert outcome.status == OutcomeStatus.SUCCESS
        assert [c["label"] for c in scripted_provider.calls] == ["critical", "optional"]

    @pytest.mark.asyncio
    async def test_fifo_within_a_tier(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        dispatcher = await dispatcher_factory(descriptor_factory({AgentType.ACTIVITY: {"capacity": 1}}))
        graph = graph_factory(
            task_factory("third", sequence=30),
            task_factory("first", sequence=10),
            task_factory("second", sequence=20),
        )
        dispatcher.submit(graph)
        await dispatcher.wait_for_request("req-1", timeout=3)

        assert [c["label"] for c in scripted_provider.calls] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_dependencies_run_in_order_and_receive_inputs(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider
    ):
        dispatcher = await dispatcher_factory(descriptors)
        graph = graph_factory(
            task_factory("loc", AgentType.LOCATION, PriorityTier.P0),
            task_factory("acc", AgentType.ACCOMMODATION, PriorityTier.P1, depends_on=["loc"]),
        )
        dispatcher.submit(graph)
        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert [c["label"] for c in scripted_provider.calls] == ["loc", "acc"]
        acc = dispatcher.store.get("req-1").get_task("acc")
        assert acc.inputs == {"loc": outcome.results["loc"]}


class TestRetries:
    """Tests for retry, downgrade and fallback handling."""

    @pytest.mark.asyncio
    async def test_fails_after_exactly_max_attempts(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider
    ):
        scripted_provider.always(AgentType.WEATHER, ProviderUnavailable("503"))
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("w", AgentType.WEATHER, PriorityTier.P3)))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)
        task = dispatcher.store.get("req-1").get_task("w")

        assert task.state == TaskState.FAILED
        assert task.attempts == descriptors[AgentType.WEATHER].retry.max_attempts
        assert len(scripted_provider.calls) == task.attempts
        assert outcome.status == OutcomeStatus.PARTIAL
        assert dispatcher.retries == task.attempts - 1

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider, wait_until
    ):
        """A failed task goes back to ready with next_eligible_at in the future."""
        descriptors = descriptor_factory({
            AgentType.WEATHER: {"retry": RetryPolicy(max_attempts=3, backoff_base=30.0, max_backoff_seconds=30.0)},
        })
        scripted_provider.script(AgentType.WEATHER, ProviderUnavailable("503"))
        dispatcher = await dispatcher_factory(descriptors)
        coord = dispatcher.submit(graph_factory(task_factory("w", AgentType.WEATHER)))
        task = coord.get_task("w")

        await wait_until(lambda: (TaskState.RUNNING, TaskState.READY) in _states(coord, "w"))
        await asyncio.sleep(0.1)

        assert task.state == TaskState.READY
        assert task.next_eligible_at > dispatcher.clock()
        assert len(scripted_provider.calls) == 1

    @pytest.mark.asyncio
    async def test_quota_refusal_downgrades_tier(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        """The downgraded retry doesn't consume an attempt."""
        descriptors = descriptor_factory({AgentType.ACCOMMODATION: {"fallback_tier": "economy"}})
        scripted_provider.script(AgentType.ACCOMMODATION, ProviderQuotaExceeded("429"))
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("acc", AgentType.ACCOMMODATION, PriorityTier.P1)))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)
        task = dispatcher.store.get("req-1").get_task("acc")

        assert outcome.status == OutcomeStatus.SUCCESS
        assert [c["model"] for c in scripted_provider.calls] == ["test/standard", "test/economy"]
        assert task.model_tier == "economy"
        assert task.attempts == 1

    @pytest.mark.asyncio
    async def test_exhausted_task_falls_back_once(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        descriptors = descriptor_factory({
            AgentType.WEATHER: {
                "fallback_tier": "economy",
                "retry": RetryPolicy(max_attempts=2, backoff_base=0.01, max_backoff_seconds=0.02),
            },
        })
        scripted_provider.script(AgentType.WEATHER, ProviderUnavailable("503"), ProviderUnavailable("503"))
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("w", AgentType.WEATHER)))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert outcome.status == OutcomeStatus.SUCCESS
        assert [c["model"] for c in scripted_provider.calls] == [
            "test/standard", "test/standard", "test/economy",
        ]
        assert [r["action"] for r in outcome.resolutions] == ["fallback"]

    @pytest.mark.asyncio
    async def test_fallback_failure_propagates(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        descriptors = descriptor_factory({
            AgentType.WEATHER: {
                "fallback_tier": "economy",
                "retry": RetryPolicy(max_attempts=1, backoff_base=0.01, max_backoff_seconds=0.02),
            },
        })
        scripted_provider.always(AgentType.WEATHER, ProviderUnavailable("503"))
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("w", AgentType.WEATHER, PriorityTier.P3)))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert len(scripted_provider.calls) == 2
        assert [r["action"] for r in outcome.resolutions] == ["fallback", "propagate"]
        assert outcome.status == OutcomeStatus.PARTIAL

    @pytest.mark.asyncio
    async def test_budget_validation_retried_once(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        descriptors = descriptor_factory({
            AgentType.BUDGET: {"retry": RetryPolicy(retry_on_validation=True, backoff_base=0.01)},
        })
        scripted_provider.script(AgentType.BUDGET, "not json at all")
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("b", AgentType.BUDGET, PriorityTier.P1)))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)
        task = dispatcher.store.get("req-1").get_task("b")

        assert outcome.status == OutcomeStatus.SUCCESS
        assert task.validation_retries == 1
        assert len(scripted_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_second_validation_failure_is_terminal(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider
    ):
        descriptors = descriptor_factory({
            AgentType.BUDGET: {"retry": RetryPolicy(retry_on_validation=True, backoff_base=0.01)},
        })
        scripted_provider.always(AgentType.BUDGET, '{"total": 100}')
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("b", AgentType.BUDGET, PriorityTier.P1)))

        await dispatcher.wait_for_request("req-1", timeout=3)
        task = dispatcher.store.get("req-1").get_task("b")

        assert task.state == TaskState.FAILED
        assert task.error_class == "ValidationError"
        assert len(scripted_provider.calls) == 2


class TestCascade:
    """Tests for failure propagation to dependents."""

    @pytest.mark.asyncio
    async def test_descendants_cancelled_and_never_run(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider
    ):
        scripted_provider.always(AgentType.LOCATION, "no idea")
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(
            task_factory("loc", AgentType.LOCATION, PriorityTier.P0),
            task_factory("acc", AgentType.ACCOMMODATION, PriorityTier.P1, depends_on=["loc"]),
            task_factory("plan", AgentType.PLANNING, PriorityTier.P1, depends_on=["acc"]),
            task_factory("wx", AgentType.WEATHER, PriorityTier.P3),
        ))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)
        coord = dispatcher.store.get("req-1")

        assert {c["label"] for c in scripted_provider.calls} == {"loc", "wx"}
        for tid in ("acc", "plan"):
            assert coord.get_task(tid).state == TaskState.CANCELLED
            assert TaskState.RUNNING not in [new for _, new in _states(coord, tid)]

        propagate = [r for r in outcome.resolutions if r["action"] == "propagate"]
        assert len(propagate) == 1
        assert set(propagate[0]["cancelled_dependents"]) == {"acc", "plan"}
        assert outcome.status == OutcomeStatus.ERROR
        assert outcome.results == {}


class TestPools:
    """Tests for independent per-agent-type pools."""

    @pytest.mark.asyncio
    async def test_saturated_pool_does_not_hold_back_other_pools(
        self, dispatcher_factory, descriptor_factory, task_factory, graph_factory, scripted_provider, wait_until
    ):
        """A full transport pool leaves the weather pool free to run; no order across pools is implied."""
        scripted_provider.always(AgentType.TRANSPORT, scripted_provider.HANG)
        dispatcher = await dispatcher_factory(descriptor_factory({AgentType.TRANSPORT: {"capacity": 1}}))
        coord = dispatcher.submit(graph_factory(
            task_factory("t1", AgentType.TRANSPORT, PriorityTier.P0, sequence=0),
            task_factory("t2", AgentType.TRANSPORT, PriorityTier.P0, sequence=1),
            task_factory("w", AgentType.WEATHER, PriorityTier.P3, sequence=2),
        ))

        await wait_until(lambda: coord.get_task("w").state == TaskState.COMPLETED)

        assert coord.get_task("t1").state == TaskState.RUNNING
        assert coord.get_task("t2").state == TaskState.READY
        assert dispatcher.allocator.in_use(AgentType.TRANSPORT) == 1
        assert dispatcher.allocator.in_use(AgentType.WEATHER) == 0


class TestLocks:
    """Tests for named resource locks across concurrent tasks."""

    @pytest.mark.asyncio
    async def test_conflicting_task_requeued_until_release(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider
    ):
        """Both want budget_total: one runs, the other goes ready -> ready and runs after."""
        scripted_provider.delay = 0.1
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(
            task_factory("a", locks=["budget_total"], sequence=0),
            task_factory("b", locks=["budget_total"], sequence=1),
        ))

        outcome = await dispatcher.wait_for_request("req-1", timeout=3)
        coord = dispatcher.store.get("req-1")

        assert outcome.status == OutcomeStatus.SUCCESS
        assert (TaskState.READY, TaskState.READY) in _states(coord, "b")
        assert any(r.reason == "lock_conflict:budget_total" for r in coord.transitions_for("b"))
        assert dispatcher.conflict_requeues >= 1

        # b started only after a completed and released the lock
        a_done = next(r.version for r in coord.transitions_for("a") if r.new_state == TaskState.COMPLETED)
        b_start = next(r.version for r in coord.transitions_for("b") if r.new_state == TaskState.RUNNING)
        assert b_start > a_done
        assert coord.locks == {}
        assert coord.pending_conflicts() == []

    @pytest.mark.asyncio
    async def test_unrelated_locks_run_concurrently(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider, wait_until
    ):
        scripted_provider.script(AgentType.ACTIVITY, scripted_provider.HANG, scripted_provider.HANG)
        dispatcher = await dispatcher_factory(descriptors)
        coord = dispatcher.submit(graph_factory(
            task_factory("a", locks=["x"]),
            task_factory("b", locks=["y"]),
        ))

        await wait_until(lambda: len(coord.tasks_in_state(TaskState.RUNNING)) == 2)
        assert coord.locks == {"x": "a", "y": "b"}


class TestCancellation:
    """Tests for request cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_interrupts_running_and_pending(
        self, dispatcher_factory, descriptors, task_factory, graph_factory, scripted_provider, wait_until
    ):
        scripted_provider.always(AgentType.LOCATION, scripted_provider.HANG)
        dispatcher = await dispatcher_factory(descriptors)
        coord = dispatcher.submit(graph_factory(
            task_factory("loc", AgentType.LOCATION, PriorityTier.P0),
            task_factory("acc", AgentType.ACCOMMODATION, depends_on=["loc"]),
        ))
        await wait_until(lambda: coord.get_task("loc").state == TaskState.RUNNING)

        assert dispatcher.cancel("req-1") is True
        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert outcome.status == OutcomeStatus.CANCELLED
        assert coord.get_task("loc").state == TaskState.CANCELLED
        assert coord.get_task("acc").state == TaskState.CANCELLED
        assert dispatcher.allocator.in_use(AgentType.LOCATION) == 0

    @pytest.mark.asyncio
    async def test_cancel_finished_request_returns_false(
        self, dispatcher_factory, descriptors, task_factory, graph_factory
    ):
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(task_factory("a")))
        await dispatcher.wait_for_request("req-1", timeout=3)

        assert dispatcher.cancel("req-1") is False

    @pytest.mark.asyncio
    async def test_late_result_of_cancelled_task_discarded(
        self, descriptors, task_factory, graph_factory, gateway
    ):
        """A result arriving after the cancel flag was set doesn't complete the task."""
        dispatcher = Dispatcher(
            StateStore(), Scheduler(descriptors), CapacityAllocator(descriptors),
            AgentWorker(gateway), descriptors,
        )
        coord = dispatcher.submit(graph_factory(task_factory("a")))
        coord.transition("a", TaskState.RUNNING, attempts=1)
        coord.update_task("a", cancel_requested=True)

        dispatcher.on_task_complete("a", TaskResult(payload={"activities": []}))

        assert coord.get_task("a").state == TaskState.CANCELLED
        assert coord.get_task("a").result is None


class TestNotifications:
    """Tests for completion notifications and request bookkeeping."""

    @pytest.mark.asyncio
    async def test_stale_notification_ignored(self, descriptors, task_factory, graph_factory, gateway):
        dispatcher = Dispatcher(
            StateStore(), Scheduler(descriptors), CapacityAllocator(descriptors),
            AgentWorker(gateway), descriptors,
        )
        coord = dispatcher.submit(graph_factory(task_factory("a")))
        version = coord.version

        dispatcher.on_task_complete("a", TaskResult(payload={}))
        dispatcher.on_task_failed("ghost", RuntimeError("x"))

        assert coord.get_task("a").state == TaskState.READY
        assert coord.version == version

    @pytest.mark.asyncio
    async def test_finished_callback_and_archive(
        self, dispatcher_factory, descriptors, task_factory, graph_factory
    ):
        finished = []
        dispatcher = await dispatcher_factory(descriptors, on_request_finished=finished.append)
        dispatcher.submit(graph_factory(task_factory("a")))
        outcome = await dispatcher.wait_for_request("req-1", timeout=3)

        assert finished == [outcome]
        assert dispatcher.store.is_archived("req-1")
        assert dispatcher.get_outcome("req-1") is outcome
        assert dispatcher.get_status()["finished_requests"] == 1

    @pytest.mark.asyncio
    async def test_oldest_archived_requests_evicted(
        self, dispatcher_factory, descriptors, task_factory, graph_factory
    ):
        dispatcher = await dispatcher_factory(descriptors, store=StateStore(max_archived=2))
        for n in range(1, 4):
            request_id = f"req-{n}"
            dispatcher.submit(graph_factory(task_factory(f"a{n}", request_id=request_id), request_id=request_id))
            await dispatcher.wait_for_request(request_id, timeout=3)

        assert [s.request_id for s in dispatcher.store.archived_states()] == ["req-2", "req-3"]
        assert dispatcher.get_outcome("req-1") is None
        assert "req-1" not in dispatcher._finished_events
        with pytest.raises(RequestNotFound):
            dispatcher.store.get("req-1")
        with pytest.raises(RequestNotFound):
            await dispatcher.wait_for_request("req-1", timeout=1)
        assert dispatcher.get_outcome("req-3").status == OutcomeStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_pool_slots_released_after_completion(
        self, dispatcher_factory, descriptors, task_factory, graph_factory
    ):
        dispatcher = await dispatcher_factory(descriptors)
        dispatcher.submit(graph_factory(*(task_factory(f"t{i}", sequence=i) for i in range(5))))
        await dispatcher.wait_for_request("req-1", timeout=3)

        assert dispatcher.allocator.in_use(AgentType.ACTIVITY) == 0
        assert dispatcher.allocator.total_allocations == 5
