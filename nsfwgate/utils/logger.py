"""Structured logging utilities for nsfwgate.

Async-safe structured logging built on structlog. Every entry carries the
request id of the request being served (when there is one) so a scan can be
followed through admission, acquisition and inference.
"""

import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def add_request_id(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Add request_id to log context if available."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_timestamp(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = time.time()
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
                   Unknown names fall back to INFO.
        json_output: JSON lines when True, coloured console output otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_timestamp,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str = "nsfwgate") -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound to *name* (typically ``__name__``)."""
    return structlog.get_logger(name)


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id)


def clear_request_id() -> None:
    request_id_var.set(None)


# Sensible defaults until main.py reconfigures from the environment.
configure_logging()
