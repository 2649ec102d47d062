#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Logger factory for the TRON HD modules.
Key material is never logged: only paths, indices, addresses and lifecycle events.
"""

from __future__ import annotations
from typing import Optional
import logging, os, sys

DEFAULT_LOG_LEVEL = "WARNING"
LOG_LEVEL_ENV = "TRON_HD_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s [%(name)s] [%(levelname)s]: %(message)s"


def get_logger(name: str, log_level: Optional[str] = None) -> logging.Logger:
    """
    Get or create a stdout logger.

    Args:
        name: logger name (usually __name__ of the calling module)
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL; falls back to $TRON_HD_LOG_LEVEL
    """
    logger = logging.getLogger(name)
    level = (log_level or os.getenv(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).upper()

    # 重复调用不再追加 handler
    if logger.handlers:
        if log_level:
            logger.setLevel(level)
        return logger

    logger.setLevel(level)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger


TRON_LOGGERS = ("tronhd", "tronsigner", "tronwallet")


def configure_logging(log_level: Optional[str] = None) -> None:
    """Set the level of every TRON HD module logger; call once at application start-up."""
    level = (log_level or os.getenv(LOG_LEVEL_ENV) or DEFAULT_LOG_LEVEL).upper()
    for name in TRON_LOGGERS:
        get_logger(name).setLevel(level)
