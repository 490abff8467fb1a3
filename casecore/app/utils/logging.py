"""
Structured logging system for casecore.

This module provides:
- Structured JSON or Rich console logging through structlog
- Correlation IDs scoped to the current asyncio task
- Performance timing for repository operations
- The synchronous request lifecycle log line
"""

import json
import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

from casecore.config.settings import Settings, get_settings


# Per-task storage for the correlation ID
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Rich console for enhanced output
console = Console()


class CorrelationIDProcessor:
    """Structlog processor to add correlation IDs to log records."""

    def __call__(self, logger, method_name, event_dict):
        """Add correlation ID to the log event."""
        correlation_id = get_correlation_id()
        if correlation_id and "correlation_id" not in event_dict:
            event_dict["correlation_id"] = correlation_id
        return event_dict


class TimestampProcessor:
    """Structlog processor to add ISO timestamps to log records."""

    def __call__(self, logger, method_name, event_dict):
        """Add ISO timestamp to the log event."""
        event_dict.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        return event_dict


class CaseCoreLogFormatter:
    """
    Render log events either as JSON or as a compact Rich-markup line.
    """

    def __init__(self, use_json: bool = False):
        self.use_json = use_json

    def __call__(self, _, __, event_dict):
        """Format the log event for output."""
        if self.use_json:
            return json.dumps(event_dict, default=str)
        return self._format_console_output(event_dict)

    def _format_console_output(self, event_dict: Dict[str, Any]) -> str:
        """Format log event for console output with colors and structure."""
        timestamp = event_dict.get("timestamp", "")
        level = event_dict.get("level", "INFO").upper()
        logger_name = event_dict.get("logger", "")
        correlation_id = event_dict.get("correlation_id", "")
        event = event_dict.get("event", "")

        level_colors = {
            "DEBUG": "dim white",
            "INFO": "blue",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold red"
        }

        parts = []

        if timestamp:
            parts.append(f"[dim]{timestamp[:19]}[/dim]")

        level_color = level_colors.get(level, "white")
        parts.append(f"[{level_color}]{level:8}[/{level_color}]")

        if logger_name:
            parts.append(f"[cyan]{logger_name}[/cyan]")

        if correlation_id:
            parts.append(f"[magenta]{str(correlation_id)[:8]}[/magenta]")

        parts.append(f"[white]{event}[/white]")

        context_fields = {
            k: v for k, v in event_dict.items()
            if k not in {"timestamp", "level", "logger", "correlation_id", "event"}
        }

        if context_fields:
            context_str = " ".join([f"{k}={v}" for k, v in context_fields.items()])
            parts.append(f"[dim]{context_str}[/dim]")

        return " ".join(parts)


def setup_logging(
    level: str = "INFO",
    use_json: bool = False,
    enable_correlation_ids: bool = True
) -> None:
    """
    Setup structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Output structured JSON logs
        enable_correlation_ids: Enable correlation ID tracking
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        TimestampProcessor(),
    ]

    if enable_correlation_ids:
        processors.append(CorrelationIDProcessor())

    processors.append(CaseCoreLogFormatter(use_json=use_json))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if not use_json:
        rich_handler = RichHandler(
            console=console,
            show_time=False,  # timestamp comes from structlog
            show_path=False,
            rich_tracebacks=True,
            markup=True
        )
        rich_handler.setLevel(numeric_level)
        root_logger.addHandler(rich_handler)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(numeric_level)
        root_logger.addHandler(handler)


def initialize_logging_from_settings(settings: Optional[Settings] = None) -> None:
    """Initialize logging using application settings."""
    settings = settings or get_settings()

    setup_logging(
        level=settings.logging.level,
        use_json=settings.logging.format == "json",
        enable_correlation_ids=settings.logging.enable_correlation_ids
    )

    get_logger(__name__).info(
        "Logging system initialized",
        level=settings.logging.level,
        correlation_ids_enabled=settings.logging.enable_correlation_ids
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog bound logger
    """
    return structlog.get_logger(name)


def generate_correlation_id() -> str:
    """Produce a new globally unique correlation ID."""
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """
    Set correlation ID for the current task/request.

    Args:
        correlation_id: Optional correlation ID, generates UUID if None

    Returns:
        The correlation ID that was set
    """
    if correlation_id is None:
        correlation_id = generate_correlation_id()

    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> Optional[str]:
    """Get the correlation ID for the current task/request."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID for the current task/request."""
    _correlation_id.set(None)


@contextmanager
def performance_context(operation: str, **context: Any):
    """
    Context manager timing a block and logging its outcome at debug level.

    Usage:
        with performance_context("mongodb_soft_delete", collection="cases"):
            ...
    """
    start_time = time.perf_counter()
    logger = get_logger("performance")
    timing = {"operation": operation, **context}

    try:
        yield timing
    except Exception as e:
        logger.error(
            "Operation failed",
            duration_ms=round((time.perf_counter() - start_time) * 1000, 3),
            error=str(e),
            **timing
        )
        raise
    else:
        logger.debug(
            "Operation completed",
            duration_ms=round((time.perf_counter() - start_time) * 1000, 3),
            **timing
        )


class DatabaseLogger:
    """Specialized logger for database operations."""

    def __init__(self):
        self.logger = get_logger("database")

    def query_executed(
        self,
        database_type: str,
        operation: str,
        collection: Optional[str] = None,
        duration: Optional[float] = None,
        result_count: Optional[int] = None
    ):
        """Log database query execution."""
        self.logger.debug(
            "Database query executed",
            database_type=database_type,
            operation=operation,
            collection=collection,
            duration=duration,
            result_count=result_count,
            event_type="query_executed"
        )

    def connection_established(self, database_type: str, database_name: str):
        """Log database connection establishment."""
        self.logger.info(
            "Database connection established",
            database_type=database_type,
            database_name=database_name,
            event_type="connection_established"
        )

    def connection_failed(self, database_type: str, error: str):
        """Log database connection failures."""
        self.logger.error(
            "Database connection failed",
            database_type=database_type,
            error=error,
            event_type="connection_failed"
        )


database_logger = DatabaseLogger()


def log_request_lifecycle(
    logger: Any,
    *,
    correlation_id: str,
    method: str,
    route: str,
    actor: Optional[str],
    tenant: Optional[str],
    start_time: datetime,
    duration_ms: float,
    status_code: Optional[int],
    lifecycle_end: str,
    transaction_committed: bool,
    slow_request_threshold_ms: Optional[float] = None,
) -> None:
    """
    Emit the single REQUEST_LIFECYCLE line for a finished request.

    Slow requests are logged at warning level with ``slow_request=True``.
    """
    fields = {
        "correlation_id": correlation_id,
        "method": method,
        "route": route,
        "actor": actor,
        "tenant": tenant,
        "start_time": start_time.isoformat(),
        "duration_ms": duration_ms,
        "status": status_code,
        "lifecycle_end": lifecycle_end,
        "transaction_committed": transaction_committed,
        "event_type": "request_lifecycle",
    }

    if slow_request_threshold_ms is not None and duration_ms > slow_request_threshold_ms:
        logger.warning("REQUEST_LIFECYCLE", slow_request=True, **fields)
    else:
        logger.info("REQUEST_LIFECYCLE", **fields)
