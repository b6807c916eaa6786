"""Logging setup for the CLI."""

from __future__ import annotations

import sys

from loguru import logger

from .config import verbose_to_log_level

HUMAN_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"


def setup_logger(verbose: int = 0, fmt: str = "human") -> None:
    """Route log records to stderr at a level derived from ``-v`` count.

    Rules:
    1. 0 -> WARNING, 1 -> INFO, 2+ -> DEBUG.
    2. ``json`` format emits one serialized record per line.
    """

    logger.remove()
    level = verbose_to_log_level(verbose)
    if fmt == "json":
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, level=level, format=HUMAN_FORMAT)
