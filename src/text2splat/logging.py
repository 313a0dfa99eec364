from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_DEFAULT_LOGGER_NAME = "text2splat"

# Shared so progress bars and log lines render on the same stream.
_console = Console(stderr=True)


def get_console() -> Console:
    return _console


def setup_logging(level: str = "INFO", logger_name: str = _DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Configure a Rich logger (idempotent)."""
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Avoid adding duplicate handlers if called multiple times.
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=get_console(), rich_tracebacks=True, show_path=False)
        fmt = logging.Formatter("%(message)s", datefmt="[%X]")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    for h in logger.handlers:
        h.setLevel(getattr(logging, level.upper(), logging.INFO))

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name and not name.startswith(_DEFAULT_LOGGER_NAME):
        name = f"{_DEFAULT_LOGGER_NAME}.{name}"
    return logging.getLogger(name or _DEFAULT_LOGGER_NAME)
