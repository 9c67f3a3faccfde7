"""
Configuration loading.

Reads ``config.yaml`` from the project root (or ``WAYFARER_CONFIG``) and
turns the ``agents`` section into AgentDescriptors. Every key has a
built-in default so an empty or missing file still yields a working
configuration.
"""

import os
from pathlib import Path
from typing import Optional

import yaml

from shared.logging import get_logger

from .models import AgentDescriptor, AgentType, RetryPolicy

log = get_logger("orchestrator", "config")

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"


# Defaults per agent type: critical-path agents get more capacity and the
# stronger tier, auxiliary ones run cheap.
DEFAULT_DESCRIPTORS: dict[AgentType, AgentDescriptor] = {
    AgentType.PLANNING: AgentDescriptor(
        agent_type=AgentType.PLANNING, capacity=1, timeout_seconds=180.0,
        model_tier="premium", fallback_tier="standard",
    ),
    AgentType.LOCATION: AgentDescriptor(
        agent_type=AgentType.LOCATION, capacity=2, timeout_seconds=90.0,
        model_tier="standard", fallback_tier="economy",
    ),
    AgentType.TRANSPORT: AgentDescriptor(
        agent_type=AgentType.TRANSPORT, capacity=2, timeout_seconds=120.0,
        model_tier="premium", fallback_tier="standard",
    ),
    AgentType.ACCOMMODATION: AgentDescriptor(
        agent_type=AgentType.ACCOMMODATION, capacity=2, timeout_seconds=120.0,
        model_tier="standard", fallback_tier="economy",
    ),
    AgentType.ACTIVITY: AgentDescriptor(
        agent_type=AgentType.ACTIVITY, capacity=3, timeout_seconds=90.0,
        model_tier="standard",
    ),
    AgentType.BUDGET: AgentDescriptor(
        agent_type=AgentType.BUDGET, capacity=1, timeout_seconds=60.0,
        model_tier="standard", retry=RetryPolicy(retry_on_validation=True),
    ),
    AgentType.WEATHER: AgentDescriptor(
        agent_type=AgentType.WEATHER, capacity=2, timeout_seconds=30.0,
        model_tier="economy", retry=RetryPolicy(max_attempts=2),
    ),
}


def load_config(path: Optional[str | Path] = None) -> dict:
    """
    Load the YAML configuration file.

    Resolution order: explicit path, WAYFARER_CONFIG, <project>/config.yaml.
    A missing file yields an empty dict; a malformed one raises.
    """
    config_path = Path(path or os.environ.get("WAYFARER_CONFIG") or CONFIG_PATH)
    if not config_path.exists():
        log.info("orchestrator.config.not_found", path=str(config_path))
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    if not isinstance(config, dict):
        raise ValueError(f"{config_path}: top level must be a mapping")

    log.info("orchestrator.config.loaded", path=str(config_path), sections=sorted(config))
    return config


def load_agent_descriptors(config: Optional[dict] = None) -> dict[AgentType, AgentDescriptor]:
    """
    Build one descriptor per agent type from ``config["agents"]``.

    Agent types absent from the config keep their defaults. Unknown agent
    names raise ValueError.
    """
    descriptors = dict(DEFAULT_DESCRIPTORS)
    agents = (config or {}).get("agents") or {}

    for name, data in agents.items():
        try:
            agent_type = AgentType(name)
        except ValueError:
            raise ValueError(f"Unknown agent type in config: {name}") from None
        descriptors[agent_type] = AgentDescriptor.from_dict(agent_type, data or {})

    return descriptors
