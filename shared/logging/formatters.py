"""
Formatters for structured (JSON Lines) and console logging.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .context import get_correlation_id, get_request_id, get_task_id


class JsonLinesFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines (one JSON object per line).

    Each entry carries timestamp (UTC, ISO 8601), level, event_type,
    module, component, correlation_id, the bound request_id/task_id when
    set, and any event-specific fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, 'event_type', 'log'),
            "module": getattr(record, 'wayfarer_module', record.module),
            "component": getattr(record, 'component', record.funcName),
            "correlation_id": get_correlation_id(),
        }

        request_id = get_request_id()
        if request_id:
            log_entry["request_id"] = request_id

        task_id = get_task_id()
        if task_id:
            log_entry["task_id"] = task_id

        if hasattr(record, 'event_data'):
            log_entry.update(record.event_data)

        if record.getMessage() and record.getMessage() != log_entry.get("event_type"):
            log_entry["message"] = record.getMessage()

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=self._json_serializer)

    def _json_serializer(self, obj: Any) -> Any:
        """Handle values json can't encode (enums, datetimes, objects)."""
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, '__dict__'):
            return str(obj)
        return repr(obj)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable console formatter.

    Format: timestamp [LEVEL] [module.component] event_type key=value ...
    """

    # Fields worth echoing on the console; everything else stays in the JSONL file
    CONSOLE_FIELDS = ("request_id", "task_id", "agent_type", "state", "error")

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        module = getattr(record, 'wayfarer_module', record.module)
        component = getattr(record, 'component', '')
        event_type = getattr(record, 'event_type', '') or record.getMessage()

        prefix = f"{timestamp} [{record.levelname}]"
        if module and component:
            prefix += f" [{module}.{component}]"

        data = getattr(record, 'event_data', {})
        extras = " ".join(
            f"{key}={data[key]}" for key in self.CONSOLE_FIELDS if data.get(key) is not None
        )

        return f"{prefix} {event_type} {extras}".rstrip()
