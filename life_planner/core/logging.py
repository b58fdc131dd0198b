"""Centralized logging configuration for the backend application."""

from __future__ import annotations

import logging
import sys
from typing import Optional

# Loggers that echo request URLs (including OAuth codes) at INFO level
NOISY_LOGGERS = ("httpx", "httpcore", "hpack")


def setup_logging(level: int = logging.INFO) -> None:
    """
    Configure logging for the application.

    This should be called once at application startup. All subsequent calls
    to logging.getLogger() will use this configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,  # Override any existing configuration
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger instance for the given name.

    Args:
        name: Logger name (typically __name__). If None, returns root logger.

    Returns:
        Logger instance
    """
    if name is None:
        return logging.getLogger()
    return logging.getLogger(name)
