"""
Agent Worker for the Orchestrator.

A worker executes exactly one task attempt:
1. Build the provider payload with the agent type's adapter
2. Call the model gateway, bounded by the descriptor timeout
3. Parse and validate the response
4. Return a TaskResult or raise a typed error

Workers never retry and never touch coordination state; the dispatcher
owns both. Every execution emits one UsageEvent to the metrics sink.
"""

import asyncio
import time
from typing import Optional

from llm.src.gateway import ModelGateway
from llm.src.models import ProviderResponse
from shared.logging import get_logger

from .adapters import AGENT_ADAPTERS, AgentAdapter
from .errors import AgentTimeoutError, OrchestratorError, TaskCancelledError, ValidationError
from .metrics import MetricsSink, UsageEvent
from .models import AgentDescriptor, AgentType, Task, TaskResult

log = get_logger("orchestrator", "worker")


class AgentWorker:
    """
    Agent-agnostic executor: prepare -> call -> validate -> return/raise.

    One instance is shared by every pool; concurrency is bounded by the
    dispatcher's capacity allocator, not here.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        adapters: Optional[dict[AgentType, AgentAdapter]] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.gateway = gateway
        self.adapters = adapters or AGENT_ADAPTERS
        self.metrics = metrics
        self._pending_records: set[asyncio.Task] = set()
        self.executions = 0

    async def execute(
        self,
        task: Task,
        descriptor: AgentDescriptor,
        tier: Optional[str] = None,
    ) -> TaskResult:
        """
        Run one attempt of a task.

        Raises:
            TaskCancelledError: cancellation flag set before the call
            AgentTimeoutError: descriptor timeout expired
            ProviderUnavailable / ProviderQuotaExceeded / UnknownTierError: from the gateway
            ValidationError: response did not match the agent's schema
        """
        if task.cancel_requested:
            raise TaskCancelledError(f"Task {task.label} cancelled before execution")

        adapter = self.adapters.get(task.agent_type)
        if adapter is None:
            raise OrchestratorError(f"No adapter registered for {task.agent_type.value}")

        self.executions += 1
        payload = adapter.build_payload(task)
        tier_name = tier or task.model_tier or descriptor.model_tier
        started = time.monotonic()
        response: Optional[ProviderResponse] = None
        status = "error"
        error_class = None

        log.info("orchestrator.worker.executing",
                 task_id=task.id,
                 label=task.label,
                 agent_type=task.agent_type.value,
                 tier=tier_name,
                 attempt=task.attempts)

        try:
            try:
                response = await asyncio.wait_for(
                    self.gateway.call(descriptor, payload, tier=tier_name),
                    timeout=descriptor.timeout_seconds,
                )
            except asyncio.TimeoutError:
                raise AgentTimeoutError(
                    f"Task {task.label} timed out after {descriptor.timeout_seconds}s"
                ) from None

            try:
                parsed = adapter.parse_result(response.text)
            except ValueError as e:
                raise ValidationError(f"{task.agent_type.value} result invalid: {e}") from e

            status = "success"
            return TaskResult(payload=parsed, usage=response.to_dict())

        except asyncio.CancelledError:
            status = "cancelled"
            raise
        except Exception as e:
            error_class = type(e).__name__
            raise
        finally:
            self._emit(UsageEvent(
                request_id=task.request_id,
                task_id=task.id,
                agent_type=task.agent_type.value,
                tier=response.tier if response else tier_name,
                model=response.model if response else None,
                status=status,
                input_tokens=response.input_tokens if response else 0,
                output_tokens=response.output_tokens if response else 0,
                latency_seconds=time.monotonic() - started,
                cost_usd=response.cost_usd if response else 0.0,
                attempt=task.attempts,
                error_class=error_class,
            ))

    def _emit(self, event: UsageEvent):
        """Schedule the metrics record without waiting for it."""
        if self.metrics is None:
            return
        record = asyncio.ensure_future(self._record(event))
        self._pending_records.add(record)
        record.add_done_callback(self._pending_records.discard)

    async def _record(self, event: UsageEvent):
        try:
            await self.metrics.record(event)
        except Exception as e:
            log.exception(e, "orchestrator.worker.metrics_failed", {
                "task_id": event.task_id,
            })

    async def drain_metrics(self):
        """Wait for in-flight metric records (used on shutdown and in tests)."""
        if self._pending_records:
            await asyncio.gather(*self._pending_records, return_exceptions=True)
