"""
Shared fixtures for orchestrator tests.

Real models are never called: a ScriptedProvider serves every tier and
answers per agent type from a script of texts and exceptions.
"""

import asyncio
import json
from dataclasses import replace
from typing import Any, Optional

import pytest
import pytest_asyncio

from llm.src.client import Provider
from llm.src.gateway import ModelGateway
from llm.src.models import ModelTier, PromptPayload, ProviderCompletion, TierPricing
from orchestrator.main import Orchestrator
from orchestrator.metrics import InMemoryMetricsSink
from orchestrator.models import (
    AgentDescriptor,
    AgentType,
    PriorityTier,
    RetryPolicy,
    Task,
    TaskGraph,
)

# Marker: the provider call never returns (used to trigger timeouts)
HANG = object()

VALID_RESPONSES = {
    "location": json.dumps({"neighborhoods": [{"name": "Shinjuku", "why": "central"}], "summary": "ok"}),
    "transport": json.dumps({"options": [{"mode": "train", "route": "NRT-Tokyo", "price": 30}]}),
    "accommodation": json.dumps({"options": [{"name": "Hotel A", "neighborhood": "Shinjuku", "price_per_night": 120}]}),
    "activity": json.dumps({"activities": [{"name": "Meiji Shrine", "duration_hours": 2, "price": 0}]}),
    "budget": json.dumps({"allocation": {"transport": 300, "accommodation": 1200, "activities": 500}, "total": 2000}),
    "weather": json.dumps({"forecast": "Mild, some rain", "advice": ["umbrella"]}),
    "planning": json.dumps({"itinerary": [{"day": 1, "items": ["Arrive", "Shinjuku walk"]}], "notes": ""}),
}


class ScriptedProvider(Provider):
    """
    Provider whose answers are scripted per agent type.

    script(agent, *outcomes) queues outcomes consumed one per call;
    always(agent, outcome) sets the fallback once the queue is empty.
    An outcome is response text, an exception instance, or HANG.
    """

    name = "scripted"
    HANG = HANG
    RESPONSES = VALID_RESPONSES

    def __init__(self):
        self.scripts: dict[str, list] = {}
        self.defaults: dict[str, Any] = {}
        self.calls: list[dict] = []
        self.delay = 0.0
        self.closed = False

    def script(self, agent_type: AgentType, *outcomes):
        self.scripts.setdefault(agent_type.value, []).extend(outcomes)

    def always(self, agent_type: AgentType, outcome):
        self.defaults[agent_type.value] = outcome

    def calls_for(self, agent_type: AgentType) -> list[dict]:
        return [c for c in self.calls if c["agent_type"] == agent_type.value]

    async def complete(self, model: str, payload: PromptPayload) -> ProviderCompletion:
        agent = payload.metadata.get("agent_type")
        self.calls.append({
            "agent_type": agent,
            "label": payload.metadata.get("label"),
            "model": model,
        })

        queue = self.scripts.get(agent)
        if queue:
            outcome = queue.pop(0)
        else:
            outcome = self.defaults.get(agent, VALID_RESPONSES.get(agent, "{}"))

        if self.delay:
            await asyncio.sleep(self.delay)
        if outcome is HANG:
            await asyncio.sleep(3600)
        if isinstance(outcome, BaseException):
            raise outcome
        return ProviderCompletion(text=outcome, input_tokens=100, output_tokens=50)

    async def close(self):
        self.closed = True


FAST_RETRY = RetryPolicy(
    max_attempts=3,
    backoff_base=0.01,
    max_backoff_seconds=0.05,
    quota_backoff_multiplier=2.0,
)


def make_descriptors(overrides: Optional[dict[AgentType, dict]] = None) -> dict[AgentType, AgentDescriptor]:
    """Small, fast descriptors for every agent type; overrides replace fields."""
    descriptors = {
        agent: AgentDescriptor(
            agent_type=agent,
            capacity=2,
            timeout_seconds=1.0,
            retry=FAST_RETRY,
            model_tier="standard",
        )
        for agent in AgentType
    }
    for agent, fields in (overrides or {}).items():
        descriptors[agent] = replace(descriptors[agent], **fields)
    return descriptors


def make_task(
    task_id: str,
    agent_type: AgentType = AgentType.ACTIVITY,
    priority: PriorityTier = PriorityTier.P2,
    sequence: int = 0,
    depends_on: Optional[list[str]] = None,
    locks: Optional[list[str]] = None,
    request_id: str = "req-1",
) -> Task:
    return Task(
        id=task_id,
        request_id=request_id,
        agent_type=agent_type,
        priority=priority,
        label=task_id,
        sequence=sequence,
        depends_on=list(depends_on or []),
        locks=list(locks or []),
    )


def make_graph(*tasks: Task, request_id: str = "req-1", seal: bool = True) -> TaskGraph:
    graph = TaskGraph(request_id)
    for task in tasks:
        graph.add_task(task)
    if seal:
        graph.seal()
    return graph


@pytest.fixture
def scripted_provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def test_tiers() -> dict[str, ModelTier]:
    return {
        name: ModelTier(
            name=name,
            provider="scripted",
            model=f"test/{name}",
            pricing=TierPricing(input_per_1k=0.001, output_per_1k=0.002),
        )
        for name in ("premium", "standard", "economy")
    }


@pytest.fixture
def gateway(scripted_provider, test_tiers) -> ModelGateway:
    return ModelGateway({"scripted": scripted_provider}, test_tiers)


@pytest.fixture
def descriptors() -> dict[AgentType, AgentDescriptor]:
    return make_descriptors()


@pytest.fixture
def metrics() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest_asyncio.fixture
async def orchestrator(gateway, descriptors):
    """A started orchestrator over the scripted provider, no persistence."""
    orch = Orchestrator(
        config={"dispatcher": {"poll_interval": 0.05}},
        gateway=gateway,
        descriptors=descriptors,
        metrics=InMemoryMetricsSink(),
    )
    await orch.start()
    yield orch
    await orch.stop()


@pytest.fixture
def descriptor_factory():
    return make_descriptors


@pytest.fixture
def task_factory():
    return make_task


@pytest.fixture
def graph_factory():
    return make_graph


async def poll_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Yield to the loop until predicate() holds; fail the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached within timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return poll_until
