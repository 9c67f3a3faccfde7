"""
Main Orchestrator Entry Point.

Ties together all orchestrator components:
- Planner: trip request -> task graph
- StateStore: per-request coordination state + write-behind snapshots
- Scheduler: ready-set promotion, ordering, retry policy
- CapacityAllocator: per-agent-type worker pools
- AgentWorker + ModelGateway: task execution
- Dispatcher: the single writer that drives everything
"""

import asyncio
import signal
import uuid
from pathlib import Path
from typing import Optional

from llm.src.client import OpenRouterProvider
from llm.src.gateway import ModelGateway, build_tiers
from shared.logging import correlation_context, get_logger

from .allocator import CapacityAllocator
from .config import load_agent_descriptors
from .dispatcher import Dispatcher
from .metrics import FanoutMetricsSink, InMemoryMetricsSink, LogMetricsSink, MetricsSink
from .models import AgentDescriptor, AgentType, TripRequest
from .persistence import FileSnapshotSink, HttpSnapshotSink, SnapshotSink, SnapshotWriter
from .planner import Planner
from .results import RequestOutcome, partial_results
from .scheduler import Scheduler
from .state import StateStore
from .worker import AgentWorker

log = get_logger("orchestrator", "main")


class Orchestrator:
    """
    Multi-agent trip planning orchestrator.

    Provides:
    - Request submission, status and cancellation
    - Priority- and dependency-aware dispatch into bounded agent pools
    - Retries with backoff, tier downgrade and fallback
    - Write-behind snapshots of every request
    - Usage and cost accounting

    All coordination runs on the event loop that called ``start()``.
    Other threads (the Flask API) must hop onto that loop.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        data_dir: Optional[str] = None,
        persistence_url: Optional[str] = None,
        gateway: Optional[ModelGateway] = None,
        descriptors: Optional[dict[AgentType, AgentDescriptor]] = None,
        metrics: Optional[MetricsSink] = None,
        snapshot_sink: Optional[SnapshotSink] = None,
    ):
        self.config = config or {}
        llm_config = self.config.get("llm", {}) or {}
        persistence_config = self.config.get("persistence", {}) or {}
        dispatcher_config = self.config.get("dispatcher", {}) or {}

        self.descriptors = descriptors or load_agent_descriptors(self.config)

        if gateway is None:
            openrouter_config = llm_config.get("openrouter", {}) or {}
            provider = OpenRouterProvider(
                base_url=openrouter_config.get("base_url", "https://openrouter.ai/api/v1"),
                rate_limits=llm_config.get("rate_limits"),
                request_timeout=float(openrouter_config.get("request_timeout", 300.0)),
            )
            gateway = ModelGateway({provider.name: provider}, build_tiers(llm_config.get("tiers", {})))
        self.gateway = gateway

        # Usage totals always land in memory; extra sinks fan out beside it
        self.usage = InMemoryMetricsSink()
        if metrics is None:
            metrics = LogMetricsSink()
        self.metrics = FanoutMetricsSink([self.usage, metrics])

        # Snapshot persistence
        data_dir = data_dir or persistence_config.get("data_dir")
        persistence_url = persistence_url or persistence_config.get("url")
        if snapshot_sink is None:
            if persistence_url:
                snapshot_sink = HttpSnapshotSink(persistence_url)
            elif data_dir:
                snapshot_sink = FileSnapshotSink(data_dir)
        self.data_dir = Path(data_dir) if data_dir else None
        self.writer = SnapshotWriter(snapshot_sink) if snapshot_sink else None

        # Components
        self.planner = Planner()
        self.store = StateStore(
            self.writer,
            max_archived=int(persistence_config.get("max_archived", 1000)),
        )
        self.scheduler = Scheduler(self.descriptors)
        self.allocator = CapacityAllocator(self.descriptors)
        self.worker = AgentWorker(self.gateway, metrics=self.metrics)
        self.dispatcher = Dispatcher(
            store=self.store,
            scheduler=self.scheduler,
            allocator=self.allocator,
            worker=self.worker,
            descriptors=self.descriptors,
            poll_interval=float(dispatcher_config.get("poll_interval", 1.0)),
        )

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the state store and the dispatch loop."""
        if self._running:
            return

        log.info("orchestrator.starting",
                 data_dir=str(self.data_dir) if self.data_dir else None,
                 tiers=self.gateway.list_tiers())

        self.loop = asyncio.get_running_loop()
        await self.store.startup()
        await self.dispatcher.start()

        self._running = True
        log.info("orchestrator.started",
                 pools={a.value: d.capacity for a, d in self.descriptors.items()})

    async def stop(self):
        """Stop the orchestrator gracefully."""
        if not self._running:
            return

        log.info("orchestrator.stopping")
        self._running = False

        await self.dispatcher.stop()
        await self.worker.drain_metrics()
        await self.store.shutdown()
        await self.gateway.close()

        log.info("orchestrator.stopped")

    # ==================== Public API ====================

    def submit_request(self, request: TripRequest | dict) -> str:
        """
        Plan a trip request and hand its graph to the dispatcher.

        Args:
            request: TripRequest or its dict form

        Returns:
            The new request id

        Raises:
            PlanningError: the request can't be decomposed (nothing is created)
        """
        if isinstance(request, dict):
            request = TripRequest.from_dict(request)

        request_id = uuid.uuid4().hex
        with correlation_context(request_id=request_id):
            graph = self.planner.plan(request, request_id=request_id)
            self.dispatcher.submit(graph)

        return request_id

    def get_status(self, request_id: str) -> dict:
        """
        Current graph state and partial results of a request.

        Raises RequestNotFound for unknown ids.
        """
        coord = self.store.get(request_id)
        labels = {t.id: t.label for t in coord.graph}
        outcome = self.dispatcher.get_outcome(request_id)

        return {
            "request_id": request_id,
            "version": coord.version,
            "finished": coord.is_finished(),
            "cancelled": coord.cancelled,
            "counts": coord.state_counts(),
            "graph_state": [
                {
                    "task_id": t.id,
                    "label": t.label,
                    "agent_type": t.agent_type.value,
                    "priority": t.priority.name,
                    "state": t.state.value,
                    "attempts": t.attempts,
                    "depends_on": [labels[d] for d in t.depends_on],
                    "model_tier": t.model_tier or self.descriptors[t.agent_type].model_tier,
                    "error": t.error,
                }
                for t in coord.graph.topological_order()
            ],
            "partial_results": partial_results(coord),
            "locks": dict(coord.locks),
            "pending_conflicts": [c.to_dict() for c in coord.pending_conflicts()],
            "resolutions": [r.to_dict() for r in coord.resolutions],
            "outcome": outcome.to_dict() if outcome else None,
        }

    def cancel_request(self, request_id: str) -> bool:
        """Cancel a request. Returns False if it had already finished."""
        with correlation_context(request_id=request_id):
            return self.dispatcher.cancel(request_id)

    async def wait_for_outcome(self, request_id: str, timeout: Optional[float] = None) -> RequestOutcome:
        """Wait for a request to finish and return its merged outcome."""
        return await self.dispatcher.wait_for_request(request_id, timeout=timeout)

    def get_outcome(self, request_id: str) -> Optional[RequestOutcome]:
        """Outcome of a finished request, None while it is still running."""
        self.store.get(request_id)
        return self.dispatcher.get_outcome(request_id)

    def get_system_status(self) -> dict:
        """Get full orchestrator status."""
        states = self.store.active_states() + self.store.archived_states()
        return {
            "running": self._running,
            "queue": self.scheduler.get_queue_stats(states),
            "pools": self.allocator.get_status(),
            "requests": {
                "active": len(self.store.active_states()),
                "archived": len(self.store.archived_states()),
            },
            "dispatcher": self.dispatcher.get_status(),
            "usage": self.usage.totals(),
            "persistence": self.writer.get_stats() if self.writer else None,
            "tiers": self.gateway.list_tiers(),
        }


async def run_orchestrator(
    orchestrator: Orchestrator,
    api_host: Optional[str] = None,
    api_port: Optional[int] = None,
):
    """
    Run the orchestrator (and optionally its HTTP API) until a signal arrives.
    """
    from .api import start_api_thread

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        log.info("orchestrator.signal_received")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await orchestrator.start()
        if api_port is not None:
            start_api_thread(orchestrator, host=api_host or "127.0.0.1", port=api_port)
        await stop_event.wait()
    except KeyboardInterrupt:
        log.info("orchestrator.keyboard_interrupt")
    finally:
        await orchestrator.stop()
