"""Logging setup for the statistical responder."""

from __future__ import annotations

import logging
from typing import Optional, Union

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
PACKAGE_LOGGER = "statistical_responder"


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(
    level: Union[int, str] = logging.INFO,
    handler: Optional[logging.Handler] = None,
    logger_name: str = PACKAGE_LOGGER,
) -> logging.Logger:
    """Configure root logging once and return the logger called ``logger_name``."""
    resolved = _resolve_level(level)
    logging.basicConfig(level=resolved, format=_DEFAULT_FORMAT, handlers=[handler] if handler else None)
    logging.getLogger(PACKAGE_LOGGER).setLevel(resolved)
    return logging.getLogger(logger_name)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
