"""Structured logging for the embedding service.

``configure_logging`` routes structlog through the stdlib root logger and
renders either JSON lines or colored console output. Model libraries log
download and progress chatter at INFO; their loggers are capped at WARNING.
"""

import logging
import sys
from typing import Any, Iterable, Optional
import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

NOISY_LOGGERS = (
    "sentence_transformers",
    "transformers",
    "huggingface_hub",
    "filelock",
    "urllib3",
)


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    environment: Optional[str] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS
) -> None:
    """Configure structured logging for the process.

    Parameters
    - service_name: Bound to every log line as ``service``
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` or ``console``
    - environment: Bound as ``env`` when given
    - quiet_loggers: stdlib logger names capped at WARNING
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            add_logger_name,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    context = {"service": service_name}
    if environment:
        context["env"] = environment
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**context)


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the wall time of a unit of work, in milliseconds."""
    structlog.get_logger("embedding_service.performance").info(
        "Operation completed",
        operation=operation,
        duration_ms=round(duration_ms, 3),
        **kwargs
    )
