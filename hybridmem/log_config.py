"""
Logging setup for applications embedding the engine.

Library modules only ever call ``logging.getLogger(__name__)``; handlers and
levels are the host application's business. ``configure_logging`` is a
convenience for scripts and tests.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[Union[str, int]] = None, *, fmt: str = DEFAULT_FORMAT) -> None:
    """Attach a stdout handler to the root logger.

    Args:
        level: Level name or number; falls back to ``HYBRIDMEM_LOG_LEVEL`` then INFO
        fmt: Log record format
    """
    if level is None:
        level = os.environ.get("HYBRIDMEM_LOG_LEVEL", "INFO")
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, handlers=[logging.StreamHandler(sys.stdout)])


def get_logger(name: str, level: Optional[Union[str, int]] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(getattr(logging, level.upper()) if isinstance(level, str) else level)
    return logger


__all__ = ["configure_logging", "get_logger", "DEFAULT_FORMAT"]
