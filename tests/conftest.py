"""
Root-level shared fixtures for all Wayfarer tests.

This file provides common fixtures used across multiple test modules.
Module-specific fixtures should be defined in their respective conftest.py files.
"""

import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Generator

import pytest

# Keep test runs from writing into the project's logs/ directory
os.environ.setdefault("WAYFARER_LOG_DIR", tempfile.mkdtemp(prefix="wayfarer_logs_"))
os.environ.setdefault("WAYFARER_CONSOLE_LEVEL", "WARNING")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Automatically cleaned up after test completion.
    """
    temp_path = Path(tempfile.mkdtemp(prefix="wayfarer_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def sample_config() -> dict[str, Any]:
    """
    Standard test configuration.

    Mirrors the shape of config.yaml with small capacities so pool
    saturation is easy to provoke.
    """
    return {
        "agents": {
            "transport": {"capacity": 1, "timeout_seconds": 5, "model_tier": "premium"},
            "weather": {
                "capacity": 1,
                "timeout_seconds": 5,
                "model_tier": "economy",
                "retry": {"max_attempts": 2},
            },
        },
        "llm": {
            "tiers": {
                "economy": {
                    "model": "test/economy-model",
                    "pricing": {"input_per_1k": 0.1, "output_per_1k": 0.2},
                },
            },
        },
        "dispatcher": {"poll_interval": 0.05},
    }
