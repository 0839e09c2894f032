"""Structured logging configuration using structlog.

Reconcile workers bind ``controller`` and ``object`` into the structlog
context variables, so every line emitted while an object is being reconciled
carries them without threading a logger through each call.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Third-party stdlib loggers that are chatty at INFO.
_QUIET_LOGGERS = ("kubernetes_asyncio", "aiohttp", "uvicorn.access")


def setup_logging(level: str = "info") -> None:
    """Configure structlog for JSON output to stderr."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(component: str) -> structlog.stdlib.BoundLogger:
    """Get a logger bound with a component name."""
    return structlog.get_logger(component=component)  # type: ignore[return-value]


@contextmanager
def reconcile_context(controller: str, obj: str) -> Iterator[None]:
    """Bind the controller and object key for the duration of one reconcile."""
    with structlog.contextvars.bound_contextvars(controller=controller, object=obj):
        yield
