"""Collector logging configured through Rich."""

from __future__ import annotations

import logging
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

Logger = logging.Logger

ROOT_LOGGER_NAME = "telescope"

_configured = False


def configure_logging(level: int | str = logging.INFO) -> logging.Logger:
    """Attach a Rich console handler to the ``telescope`` logger.

    Only the collector's own logger tree is touched so an embedding application keeps control of the root logger.
    Calling it again just updates the level.
    """

    global _configured
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    if not _configured:
        handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_time=True,
            show_level=True,
            show_path=False,
            log_time_format="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        _configured = True
    return logger


def get_logger(component: str | None = None) -> logging.Logger:
    """Return the collector logger, or its ``telescope.<component>`` child."""

    if not _configured:
        configure_logging()
    if component:
        return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
    return logging.getLogger(ROOT_LOGGER_NAME)


def log_structured(logger: Logger, event: str, **extra: Any) -> None:
    """Emit an info-level event with a structured payload."""

    logger.info("%s", event, extra=extra)


__all__ = ["ROOT_LOGGER_NAME", "configure_logging", "get_logger", "log_structured", "Logger"]
