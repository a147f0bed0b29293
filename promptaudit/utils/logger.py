"""Structured logging for PromptAudit.

structlog renders one JSON line per event in production and coloured console
output in development. The request id is bound with structlog.contextvars, so
entries from the pipeline and the store carry the id of the HTTP request that
triggered them.

Raw prompt text and raw matched values must never be passed to a logger.
"""

import logging
import os
import sys
import time
from typing import Any, Optional

import structlog
from structlog.types import Processor

REQUEST_ID_KEY = "request_id"


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Install the processor chain.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines when True, console format otherwise
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def configure_from_env() -> None:
    """Configure from DEBUG, LOG_LEVEL and JSON_LOGS."""
    debug = os.getenv("DEBUG", "false").lower() == "true"
    level = os.getenv("LOG_LEVEL", "DEBUG" if debug else "INFO")
    json_output = os.getenv("JSON_LOGS", "true").lower() == "true"
    configure_logging(log_level=level, json_output=json_output)


def get_logger(name: str = "promptaudit") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# ─── Request context ──────────────────────────────────────────────────────────


def bind_request_id(request_id: str) -> None:
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: request_id})


def unbind_request_id() -> None:
    structlog.contextvars.unbind_contextvars(REQUEST_ID_KEY)


def current_request_id() -> Optional[str]:
    """The request id bound in this context, or None outside a request."""
    return structlog.contextvars.get_contextvars().get(REQUEST_ID_KEY)


# ─── Timing ───────────────────────────────────────────────────────────────────


class PerformanceLogger:
    """Times a block and logs its duration.

    Completion is logged at DEBUG, or at WARNING past ``warn_after_ms``.
    A failure inside the block is logged at ERROR and re-raised. Extra keyword
    arguments are attached to the entry.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        warn_after_ms: float = 50.0,
        **context: Any,
    ):
        self.operation = operation
        self.logger = logger or get_logger()
        self.warn_after_ms = warn_after_ms
        self.context = context
        self.start_time: float = 0
        self.end_time: float = 0

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_time = time.perf_counter()
        duration_ms = round(self.duration_ms, 3)
        if exc_type is not None:
            self.logger.error(
                f"{self.operation}_failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error=str(exc_val),
                **self.context,
            )
            return
        slow = duration_ms > self.warn_after_ms
        log = self.logger.warning if slow else self.logger.debug
        log(
            f"{self.operation}_slow" if slow else f"{self.operation}_completed",
            operation=self.operation,
            duration_ms=duration_ms,
            **self.context,
        )

    @property
    def duration_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


# Defaults until main.py reconfigures from the environment.
configure_logging()
