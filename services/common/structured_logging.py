"""Centralized logging utilities for voice-keeper services."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog


# Third-party loggers that are too chatty at INFO for a long-running agent.
_NOISY_LOGGERS: dict[str, int] = {
    "httpcore": logging.WARNING,
    "httpx": logging.WARNING,
    "discord.gateway": logging.INFO,
    "discord.client": logging.INFO,
    "discord.http": logging.WARNING,
    "discord.voice_client": logging.WARNING,
    "discord.voice_state": logging.WARNING,
    "discord.player": logging.WARNING,
}


def _service_stamper(service_name: str | None):
    def stamp(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if service_name:
            event_dict.setdefault("service", service_name)
        return event_dict

    return stamp


def configure_logging(
    level: str = "INFO",
    *,
    json_logs: bool = True,
    service_name: str | None = None,
) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Tracebacks are rendered as structured dicts at DEBUG and as formatted
    text otherwise. Unknown level names fall back to INFO.

    Example:
        configure_logging(level="INFO", json_logs=True, service_name="presence")
    """
    numeric_level = logging.getLevelName((level or "").upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _service_stamper(service_name),
        structlog.processors.dict_tracebacks
        if numeric_level <= logging.DEBUG
        else structlog.processors.format_exc_info,
    ]
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
    logging.captureWarnings(True)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(max(noisy_level, numeric_level))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(
    name: str,
    *,
    correlation_id: str | None = None,
    service_name: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound with standard metadata."""

    logger = structlog.stdlib.get_logger(name)
    if correlation_id:
        logger = logger.bind(correlation_id=correlation_id)
    if service_name:
        logger = logger.bind(service=service_name)
    return logger


@contextmanager
def correlation_context(correlation_id: str | None) -> Iterator[None]:
    """Tag every log line emitted inside the block with ``correlation_id``.

    One join attempt or one squeeze check runs under a single ID, so their
    interleaved callbacks stay distinguishable. Nested blocks restore the
    outer ID on exit.
    """
    if not correlation_id:
        yield
        return
    with structlog.contextvars.bound_contextvars(correlation_id=correlation_id):
        yield


__all__ = [
    "configure_logging",
    "correlation_context",
    "get_logger",
]
