"""
Agent Adapters for the Orchestrator.

Each agent type maps to a pair of pure functions:
- build_payload(task) -> PromptPayload
- parse_result(text) -> dict

The worker looks the pair up in AGENT_ADAPTERS and stays agent-agnostic.
Parsing failures raise ValueError; the worker turns them into
ValidationError.
"""

import json
import re
from dataclasses import dataclass
from typing import Callable

from llm.src.models import PromptPayload

from .models import AgentType, Task

SYSTEM_PROMPT = (
    "You are a travel-planning specialist working inside a larger planning "
    "system. Reply with a single JSON object and nothing else."
)


@dataclass(frozen=True)
class AgentAdapter:
    """Prompt construction and result parsing for one agent type."""
    agent_type: AgentType
    build_payload: Callable[[Task], PromptPayload]
    parse_result: Callable[[str], dict]


# ==================== Shared helpers ====================

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str) -> dict:
    """
    Pull a JSON object out of a model response.

    Accepts bare JSON, a ```json fenced block, or an object embedded in
    prose. Raises ValueError if no object can be decoded.
    """
    if not text or not text.strip():
        raise ValueError("Empty response")

    candidates = [text.strip()]
    candidates.extend(m.strip() for m in _FENCE_RE.findall(text))
    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data

    raise ValueError("Response does not contain a JSON object")


def _require(data: dict, fields: tuple[str, ...], expected: dict[str, type]) -> dict:
    for name in fields:
        if name not in data:
            raise ValueError(f"Missing required field '{name}'")
        kind = expected.get(name)
        if kind is not None and not isinstance(data[name], kind):
            raise ValueError(f"Field '{name}' must be {kind.__name__}")
    return data


def _trip_summary(task: Task) -> str:
    p = task.payload
    lines = []
    if p.get("destination"):
        lines.append(f"Destination: {p['destination']}")
    elif p.get("destinations"):
        lines.append(f"Destinations: {', '.join(p['destinations'])}")
    if p.get("start_date") or p.get("end_date"):
        lines.append(f"Dates: {p.get('start_date') or '?'} to {p.get('end_date') or '?'}")
    lines.append(f"Travelers: {p.get('travelers', 1)}")
    if p.get("budget") is not None:
        lines.append(f"Budget: {p['budget']} {p.get('currency', 'USD')}")
    if p.get("preferences"):
        lines.append(f"Preferences: {', '.join(p['preferences'])}")
    return "\n".join(lines)


def _upstream_section(task: Task) -> str:
    if not task.inputs:
        return ""
    parts = ["Results from earlier planning steps:"]
    for label in sorted(task.inputs):
        parts.append(f"[{label}]\n{json.dumps(task.inputs[label], indent=2, default=str)}")
    return "\n\n" + "\n\n".join(parts)


def _payload(task: Task, instructions: str, schema: str) -> PromptPayload:
    prompt = (
        f"{_trip_summary(task)}\n\n"
        f"{instructions}\n\n"
        f"Respond with JSON of this shape:\n{schema}"
        f"{_upstream_section(task)}"
    )
    return PromptPayload(
        prompt=prompt,
        system_prompt=SYSTEM_PROMPT,
        metadata={"task_id": task.id, "agent_type": task.agent_type.value, "label": task.label},
    )


def _parser(fields: tuple[str, ...], expected: dict[str, type]) -> Callable[[str], dict]:
    def parse(text: str) -> dict:
        return _require(extract_json(text), fields, expected)
    return parse


# ==================== Per-agent prompt builders ====================

def build_location_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Analyse the destination and recommend the neighbourhoods best suited "
        "as a base for this trip.",
        '{"neighborhoods": [{"name": str, "why": str}], "summary": str}',
    )


def build_transport_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Propose transport options to reach and move between the destinations, "
        "with an estimated price per option.",
        '{"options": [{"mode": str, "route": str, "price": number}]}',
    )


def build_accommodation_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Suggest accommodation in the recommended neighbourhoods, with a "
        "nightly price for the whole party.",
        '{"options": [{"name": str, "neighborhood": str, "price_per_night": number}]}',
    )


def build_activity_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Suggest activities matching the travellers' preferences near the "
        "recommended neighbourhoods.",
        '{"activities": [{"name": str, "duration_hours": number, "price": number}]}',
    )


def build_budget_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Allocate the total budget across transport, accommodation and "
        "activities using the priced options above. Stay within the budget.",
        '{"allocation": {"transport": number, "accommodation": number, "activities": number}, '
        '"total": number}',
    )


def build_weather_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Give the typical weather outlook for the travel dates and any "
        "packing advice.",
        '{"forecast": str, "advice": [str]}',
    )


def build_planning_payload(task: Task) -> PromptPayload:
    return _payload(
        task,
        "Assemble a day-by-day itinerary from the results above.",
        '{"itinerary": [{"day": int, "items": [str]}], "notes": str}',
    )


AGENT_ADAPTERS: dict[AgentType, AgentAdapter] = {
    AgentType.LOCATION: AgentAdapter(
        AgentType.LOCATION, build_location_payload,
        _parser(("neighborhoods",), {"neighborhoods": list}),
    ),
    AgentType.TRANSPORT: AgentAdapter(
        AgentType.TRANSPORT, build_transport_payload,
        _parser(("options",), {"options": list}),
    ),
    AgentType.ACCOMMODATION: AgentAdapter(
        AgentType.ACCOMMODATION, build_accommodation_payload,
        _parser(("options",), {"options": list}),
    ),
    AgentType.ACTIVITY: AgentAdapter(
        AgentType.ACTIVITY, build_activity_payload,
        _parser(("activities",), {"activities": list}),
    ),
    AgentType.BUDGET: AgentAdapter(
        AgentType.BUDGET, build_budget_payload,
        _parser(("allocation",), {"allocation": dict}),
    ),
    AgentType.WEATHER: AgentAdapter(
        AgentType.WEATHER, build_weather_payload,
        _parser(("forecast",), {}),
    ),
    AgentType.PLANNING: AgentAdapter(
        AgentType.PLANNING, build_planning_payload,
        _parser(("itinerary",), {"itinerary": list}),
    ),
}


def get_adapter(agent_type: AgentType) -> AgentAdapter:
    return AGENT_ADAPTERS[agent_type]
