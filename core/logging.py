# ============================================================================
# STRUCTURED LOGGING
# ============================================================================
# STATUS: Core - Structured logging with context
# PURPOSE: Consistent, queryable logging across all components
# CREATED: 19 OCT 2026
# ============================================================================
"""
Structured Logging

Provides structured, optionally JSON-formatted logging for the pipeline
orchestrator.

Features:
- Component-based loggers
- Contextual fields (run_id, pipeline_id, job_id, step_id, environment)
- JSON output for log aggregation (LOG_FORMAT=json)
- Named checkpoints

Context is held in a ContextVar so every asyncio task (one per JobRun)
sees its own fields.

Usage:
    from core.logging import get_logger, log_context

    logger = get_logger("orchestrator.scheduler")

    with log_context(run_id="run-123", job_id="build"):
        logger.info("Dispatching job")
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
from enum import Enum


class ComponentType(str, Enum):
    """Component types for logging categorization."""
    SCHEDULER = "scheduler"
    RUNNER = "runner"
    API = "api"
    SERVICE = "service"
    HANDLER = "handler"
    TRIGGER = "trigger"


@dataclass(frozen=True)
class LogContext:
    """Contextual fields attached to every record logged inside log_context()."""
    run_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    job_id: Optional[str] = None
    step_id: Optional[str] = None
    environment: Optional[str] = None
    component: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, excluding None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None and key != "extra":
                result[key] = value
        if self.extra:
            result.update(self.extra)
        return result


_current_context: ContextVar[LogContext] = ContextVar("log_context", default=LogContext())


def get_current_context() -> LogContext:
    """Get current logging context."""
    return _current_context.get()


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Unknown keyword arguments are merged into `extra`.

    Example:
        with log_context(run_id="run-1", job_id="deploy-prod"):
            logger.info("Waiting for approval")
    """
    parent = get_current_context()
    known = {k: v for k, v in kwargs.items() if k in LogContext.__dataclass_fields__ and k != "extra"}
    extra = {k: v for k, v in kwargs.items() if k not in LogContext.__dataclass_fields__}
    new_context = replace(
        parent,
        **known,
        extra={**parent.extra, **kwargs.get("extra", {}), **extra},
    )
    token = _current_context.set(new_context)
    try:
        yield new_context
    finally:
        _current_context.reset(token)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON for easy parsing by log aggregators.
    """

    def __init__(self, include_context: bool = True):
        super().__init__()
        self.include_context = include_context

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_context:
            context_dict = get_current_context().to_dict()
            if context_dict:
                log_data["context"] = context_dict

        if hasattr(record, "extra") and record.extra:
            log_data["data"] = record.extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        log_data["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        return json.dumps(log_data, default=str)


class HumanFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Includes context fields inline for easy reading.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for human reading."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname.ljust(8)

        context = get_current_context()
        context_parts = []
        if context.run_id:
            context_parts.append(f"run={context.run_id}")
        if context.job_id:
            context_parts.append(f"job={context.job_id}")
        if context.step_id:
            context_parts.append(f"step={context.step_id}")
        if context.environment:
            context_parts.append(f"env={context.environment}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""
        message = record.getMessage()

        extra_str = ""
        if hasattr(record, "extra") and record.extra:
            extra_str = f" {record.extra}"

        result = f"{timestamp} {level} {record.name}{context_str}: {message}{extra_str}"

        if record.exc_info:
            result += f"\n{self.formatException(record.exc_info)}"

        return result


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that includes context in log records.

    Automatically includes the current log context in all log messages.
    """

    def process(self, msg, kwargs):
        """Process log record to include context."""
        extra = dict(kwargs.get("extra", {}))
        extra.update(get_current_context().to_dict())
        kwargs["extra"] = {"extra": extra}
        return msg, kwargs


def get_logger(
    name: str,
    component: Optional[ComponentType] = None,
) -> ContextLogger:
    """
    Get a context-aware logger.

    Args:
        name: Logger name (e.g., "orchestrator.scheduler")
        component: Optional component type for categorization

    Returns:
        ContextLogger instance
    """
    base_logger = logging.getLogger(name)
    return ContextLogger(base_logger, {"component": component})


def configure_logging(
    level: Union[str, int] = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Use JSON format (also enabled by LOG_FORMAT=json)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if json_output or os.getenv("LOG_FORMAT", "").lower() == "json":
        formatter = StructuredFormatter(include_context=True)
    else:
        formatter = HumanFormatter()

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root.addHandler(handler)


# ============================================================================
# CHECKPOINT LOGGING
# ============================================================================

def log_checkpoint(
    name: str,
    data: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
) -> None:
    """
    Log a named checkpoint.

    Checkpoints are named markers (run_started, approval_requested,
    rollback_scheduled, ...) that can be queried to follow a run.
    """
    if logger is None:
        logger = logging.getLogger("checkpoint")

    checkpoint_data = {
        "checkpoint": name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    checkpoint_data.update(get_current_context().to_dict())
    if data:
        checkpoint_data["data"] = data

    logger.info(f"CHECKPOINT: {name}", extra={"extra": checkpoint_data})


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "ComponentType",
    "LogContext",
    "StructuredFormatter",
    "HumanFormatter",
    "ContextLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "get_current_context",
    "log_checkpoint",
]
