# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the delivery pipeline.

Handlers, levels and formats are configured once by the entry point via
``logging.basicConfig()``; modules only ask for named loggers here.

Example:
    Typical usage in a module::

        from delivery_pipeline.logger import get_logger

        logger = get_logger("EmailChannel")
        logger.info("Message dispatched")
"""

from __future__ import annotations

import logging
import os

DEFAULT_LOGGER_NAME = "DeliveryPipeline"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str = DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Retrieve a logger instance bound to ``name``.

    No handlers or formatters are attached; that is the job of
    :func:`configure_logging` or of the hosting application.

    Args:
        name: The logger name. Defaults to "DeliveryPipeline".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for CLI and server entry points.

    Args:
        level: Level name; falls back to ``NDP_LOG_LEVEL`` and then INFO.
    """
    level_name = (level or os.getenv("NDP_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,  # avoid duplicate handlers on reconfiguration
    )
