"""
Logging setup for applications embedding kvstore.

kvstore modules only create loggers (`logging.getLogger(__name__)`) and
attach structured context through `extra=`. Applications call
setup_logging() once at startup to install a handler.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import KeyValueConfig


def setup_logging(config: KeyValueConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: kvstore configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Expression evaluation is chatty at DEBUG
    logging.getLogger("simpleeval").setLevel(logging.WARNING)
