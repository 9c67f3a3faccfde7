"""
Structured logging for Wayfarer.

JSON Lines logging with correlation IDs so a trip request can be traced
from submission through planning, dispatch and every provider call.

Usage:
    from shared.logging import get_logger, correlation_context

    log = get_logger("orchestrator", "dispatcher")

    with correlation_context(request_id=request_id):
        log.info("orchestrator.dispatcher.task_dispatched",
                 task_id=task.id, agent_type=task.agent_type.value)
"""

from .logger import get_logger, set_log_dir, WayfarerLogger
from .context import (
    correlation_context,
    get_correlation_id,
    set_correlation_id,
    get_request_id,
    set_request_id,
    get_task_id,
    set_task_id,
)

__all__ = [
    "get_logger",
    "set_log_dir",
    "WayfarerLogger",
    "correlation_context",
    "get_correlation_id",
    "set_correlation_id",
    "get_request_id",
    "set_request_id",
    "get_task_id",
    "set_task_id",
]
