"""Logging setup shared by the API process and the image workers.

Workers run as separate processes, so the process name is part of every line.
"""

from __future__ import annotations

import logging
import os
from typing import Final

_FORMAT: Final[str] = "%(asctime)s - %(processName)s - %(name)s - %(levelname)s - %(message)s"
_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"

_configured: bool = False


def log_level_name() -> str:
    level_name = os.getenv("STORYLOOM_LOG_LEVEL", "INFO").upper()
    if not isinstance(getattr(logging, level_name, None), int):
        return "INFO"
    return level_name


def _configure_root(level: int) -> None:
    global _configured

    root = logging.getLogger()
    if not _configured:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        root.addHandler(handler)
        _configured = True
    root.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module logger; the root stream handler is attached once."""
    level = getattr(logging, log_level_name())
    _configure_root(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
