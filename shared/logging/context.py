"""
Correlation context for tracing a trip request across components.

Uses ContextVar so each asyncio task (one per running agent task)
carries its own request/task identifiers.
"""

import uuid
from contextvars import ContextVar
from contextlib import contextmanager
from typing import Optional, Generator

_correlation_id: ContextVar[str] = ContextVar('correlation_id', default='')
_request_id: ContextVar[str] = ContextVar('request_id', default='')
_task_id: ContextVar[str] = ContextVar('task_id', default='')


def get_correlation_id() -> str:
    """Get current correlation ID, generating one if none exists."""
    cid = _correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())
        _correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def get_request_id() -> Optional[str]:
    """Get the trip request ID bound to this context, if any."""
    return _request_id.get() or None


def set_request_id(rid: str) -> None:
    _request_id.set(rid)


def get_task_id() -> Optional[str]:
    """Get the agent task ID bound to this context, if any."""
    return _task_id.get() or None


def set_task_id(tid: str) -> None:
    _task_id.set(tid)


@contextmanager
def correlation_context(
    correlation_id: Optional[str] = None,
    request_id: Optional[str] = None,
    task_id: Optional[str] = None,
) -> Generator[str, None, None]:
    """
    Bind correlation, request and task IDs for the duration of a block.

    When no correlation ID is given the request ID is reused, so every
    event belonging to one trip request shares a correlation ID.

    Example:
        with correlation_context(request_id=request_id):
            log.info("orchestrator.main.request_submitted")
    """
    old_cid = _correlation_id.get()
    old_rid = _request_id.get()
    old_tid = _task_id.get()

    try:
        if correlation_id:
            _correlation_id.set(correlation_id)
        elif request_id:
            _correlation_id.set(request_id)
        elif not old_cid:
            _correlation_id.set(str(uuid.uuid4()))

        if request_id:
            _request_id.set(request_id)

        if task_id:
            _task_id.set(task_id)

        yield get_correlation_id()
    finally:
        _correlation_id.set(old_cid)
        _request_id.set(old_rid)
        _task_id.set(old_tid)
