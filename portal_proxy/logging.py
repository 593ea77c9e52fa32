"""
Centralized logging configuration using loguru.
"""
from __future__ import annotations

import logging
import sys
from typing import Any

from loguru import logger

# httpx logs full request URLs at INFO, and map search URLs carry the API key
logging.getLogger("httpx").setLevel(logging.WARNING)

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

# Remove default handler and add custom one with better format
logger.remove()
_handler_id = logger.add(sys.stderr, format=LOG_FORMAT, level="INFO", colorize=True)


def configure_logging(level: str = "INFO") -> None:
    """Re-install the stderr sink at the given level."""
    global _handler_id
    logger.remove(_handler_id)
    _handler_id = logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=True)


def get_logger(name: str = __name__) -> Any:
    """
    Get a logger bound to a specific module name.

    Usage:
        from portal_proxy.logging import get_logger
        logger = get_logger(__name__)
        logger.info("Hello from this module")
    """
    return logger.bind(name=name)
