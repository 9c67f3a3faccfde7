"""
Usage metrics.

Workers emit one UsageEvent per execution. Sinks are fire-and-forget:
the worker schedules ``record`` and never waits on it, and a failing sink
is logged, not raised.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from shared.logging import get_logger

log = get_logger("orchestrator", "metrics")


@dataclass
class UsageEvent:
    """Tokens, latency and cost of one task execution."""
    request_id: str
    task_id: str
    agent_type: str
    tier: Optional[str]
    model: Optional[str] = None
    status: str = "success"
    input_tokens: int = 0
    output_tokens: int = 0
    latency_seconds: float = 0.0
    cost_usd: float = 0.0
    attempt: int = 1
    error_class: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "task_id": self.task_id,
            "agent_type": self.agent_type,
            "tier": self.tier,
            "model": self.model,
            "status": self.status,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "latency_seconds": round(self.latency_seconds, 4),
            "cost_usd": round(self.cost_usd, 6),
            "attempt": self.attempt,
            "error_class": self.error_class,
            "timestamp": self.timestamp,
        }


class MetricsSink(ABC):
    """Receiver of usage events."""

    @abstractmethod
    async def record(self, event: UsageEvent):
        pass


class LogMetricsSink(MetricsSink):
    """Writes each usage event to the structured log."""

    async def record(self, event: UsageEvent):
        log.info("orchestrator.metrics.usage", **event.to_dict())


class FanoutMetricsSink(MetricsSink):
    """Forwards each event to several sinks; one failing sink doesn't stop the others."""

    def __init__(self, sinks: list[MetricsSink]):
        self.sinks = list(sinks)

    async def record(self, event: UsageEvent):
        for sink in self.sinks:
            try:
                await sink.record(event)
            except Exception as e:
                log.exception(e, "orchestrator.metrics.sink_failed", {
                    "sink": type(sink).__name__,
                })


class InMemoryMetricsSink(MetricsSink):
    """Keeps events and running totals per agent type and tier."""

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self.events: list[UsageEvent] = []
        self.by_agent: dict[str, dict] = {}
        self.by_tier: dict[str, dict] = {}

    async def record(self, event: UsageEvent):
        self.events.append(event)
        if len(self.events) > self.max_events:
            self.events = self.events[-self.max_events:]

        self._add(self.by_agent, event.agent_type, event)
        self._add(self.by_tier, event.tier or "unknown", event)

    @staticmethod
    def _add(table: dict, key: str, event: UsageEvent):
        totals = table.setdefault(key, {
            "executions": 0,
            "failures": 0,
            "input_tokens": 0,
            "output_tokens": 0,
            "cost_usd": 0.0,
        })
        totals["executions"] += 1
        if event.status != "success":
            totals["failures"] += 1
        totals["input_tokens"] += event.input_tokens
        totals["output_tokens"] += event.output_tokens
        totals["cost_usd"] += event.cost_usd

    def events_for(self, request_id: str) -> list[UsageEvent]:
        return [e for e in self.events if e.request_id == request_id]

    def totals(self) -> dict:
        return {
            "executions": sum(t["executions"] for t in self.by_agent.values()),
            "failures": sum(t["failures"] for t in self.by_agent.values()),
            "input_tokens": sum(t["input_tokens"] for t in self.by_agent.values()),
            "output_tokens": sum(t["output_tokens"] for t in self.by_agent.values()),
            "cost_usd": round(sum(t["cost_usd"] for t in self.by_agent.values()), 6),
            "by_agent": self.by_agent,
            "by_tier": self.by_tier,
        }
