"""
WayfarerLogger - Structured logging for Wayfarer components.
"""

import logging
import os
import time
import traceback
from pathlib import Path
from typing import Any, Optional
from logging.handlers import RotatingFileHandler

from .formatters import JsonLinesFormatter, ConsoleFormatter

# Cache of loggers by module.component
_loggers: dict[str, "WayfarerLogger"] = {}

# Resolved log directory (WAYFARER_LOG_DIR or <project>/logs)
_log_dir: Optional[Path] = None


def _get_log_dir() -> Path:
    """Get or create log directory."""
    global _log_dir
    if _log_dir is None:
        env_dir = os.environ.get("WAYFARER_LOG_DIR")
        if env_dir:
            _log_dir = Path(env_dir)
        else:
            # Project root is the first parent holding config.yaml or shared/
            current = Path(__file__).resolve()
            for parent in current.parents:
                if (parent / "config.yaml").exists() or (parent / "shared").is_dir():
                    _log_dir = parent / "logs"
                    break
            else:
                _log_dir = Path("logs")

        _log_dir.mkdir(parents=True, exist_ok=True)
    return _log_dir


def set_log_dir(path: Path | str) -> None:
    """
    Point all loggers created from now on at a different directory.

    Loggers already cached keep their file handler; tests that need
    isolation should clear the cache as well.
    """
    global _log_dir
    _log_dir = Path(path)
    _log_dir.mkdir(parents=True, exist_ok=True)


def get_logger(module: str, component: str, console: bool = True) -> "WayfarerLogger":
    """
    Get or create a WayfarerLogger for a module/component.

    Args:
        module: Module name (orchestrator, llm, api)
        component: Component within module (dispatcher, gateway, etc.)
        console: Whether to also output to console

    Returns:
        WayfarerLogger instance
    """
    key = f"{module}.{component}"
    if key not in _loggers:
        _loggers[key] = WayfarerLogger(module, component, console)
    return _loggers[key]


class WayfarerLogger:
    """
    Structured logger for Wayfarer components.

    Writes JSON Lines to ``<log_dir>/<module>.jsonl`` and, optionally,
    a short human-readable line to the console. Every event carries the
    current correlation ID so one trip request can be followed from
    submission through each agent call.
    """

    def __init__(self, module: str, component: str, console: bool = True):
        self.module = module
        self.component = component
        self._logger = logging.getLogger(f"wayfarer.{module}.{component}")
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        self._logger.handlers.clear()

        log_file = _get_log_dir() / f"{module}.jsonl"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=20 * 1024 * 1024,  # 20MB
            backupCount=5,
            encoding='utf-8',
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLinesFormatter())
        self._logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler()
            console_level = os.environ.get("WAYFARER_CONSOLE_LEVEL", "INFO").upper()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(ConsoleFormatter())
            self._logger.addHandler(console_handler)

    def event(
        self,
        event_type: str,
        level: str = "INFO",
        **data: Any,
    ) -> None:
        """
        Log a structured event.

        Args:
            event_type: Dotted event identifier (e.g. "orchestrator.dispatcher.task_dispatched")
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            **data: Event-specific data fields
        """
        log_level = getattr(logging, level.upper(), logging.INFO)

        event_data = {
            "event_type": event_type,
            "wayfarer_module": self.module,
            "component": self.component,
            **data,
        }

        self._logger.log(
            log_level,
            event_type,
            extra={
                "event_type": event_type,
                "wayfarer_module": self.module,
                "component": self.component,
                "event_data": event_data,
            },
        )

    def debug(self, event_type: str, **data: Any) -> None:
        """Log a DEBUG level event."""
        self.event(event_type, level="DEBUG", **data)

    def info(self, event_type: str, **data: Any) -> None:
        """Log an INFO level event."""
        self.event(event_type, level="INFO", **data)

    def warning(self, event_type: str, **data: Any) -> None:
        """Log a WARNING level event."""
        self.event(event_type, level="WARNING", **data)

    def error(self, event_type: str, **data: Any) -> None:
        """Log an ERROR level event."""
        self.event(event_type, level="ERROR", **data)

    def exception(
        self,
        error: BaseException,
        event_type: str = "error",
        context: Optional[dict] = None,
    ) -> None:
        """
        Log an exception with its stack trace.

        Args:
            error: The exception to log
            event_type: Event type (default: "error")
            context: Additional context about what was happening
        """
        self.event(
            event_type,
            level="ERROR",
            error_class=type(error).__name__,
            error_message=str(error),
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context or {},
        )

    # Provider call lifecycle

    def call_start(
        self,
        call_id: str,
        tier: str,
        model: str,
        prompt_length: int,
        **kwargs: Any,
    ) -> float:
        """
        Log the start of a provider call and return its start time.
        """
        self.event(
            f"{self.module}.call.start",
            action="started",
            call_id=call_id,
            tier=tier,
            model=model,
            prompt_length=prompt_length,
            **kwargs,
        )
        return time.time()

    def call_complete(
        self,
        call_id: str,
        tier: str,
        model: str,
        start_time: float,
        response_length: int = 0,
        **kwargs: Any,
    ) -> None:
        """Log provider call completion with duration."""
        duration_ms = (time.time() - start_time) * 1000
        self.event(
            f"{self.module}.call.complete",
            action="completed",
            call_id=call_id,
            tier=tier,
            model=model,
            response_length=response_length,
            duration_ms=round(duration_ms, 2),
            **kwargs,
        )

    def call_error(
        self,
        call_id: str,
        tier: str,
        error: str,
        error_type: str,
        start_time: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        """Log a failed provider call."""
        event_data = {
            "action": "failed",
            "call_id": call_id,
            "tier": tier,
            "error": error,
            "error_type": error_type,
            **kwargs,
        }
        if start_time:
            event_data["duration_ms"] = round((time.time() - start_time) * 1000, 2)

        self.event(f"{self.module}.call.error", level="WARNING", **event_data)
