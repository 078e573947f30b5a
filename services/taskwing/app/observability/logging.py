"""structlog configuration."""
from __future__ import annotations

import logging
import sys

import structlog

from ..config import TaskWingSettings


def _stderr_logger(*_args: object) -> structlog.PrintLogger:
    # looked up per call; sys.stderr may be replaced after configuration
    return structlog.PrintLogger(file=sys.stderr)


def configure_logging(settings: TaskWingSettings, verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else settings.observability.log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    renderer: structlog.types.Processor
    if settings.observability.log_json:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=_stderr_logger,
        cache_logger_on_first_use=False,
    )


__all__ = ["configure_logging"]
