# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging utilities for the campaign dispatcher.

The logging setup (level, handlers, format) belongs to the entry points
(``cli.main`` and ``server``), which call :func:`configure_logging` once.
Modules only ask for a named logger.

Example:
    Typical usage in a module::

        from campaign_dispatch.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Batch completed")
"""

import logging
import os

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "CampaignDispatch") -> logging.Logger:
    """Return the standard library logger bound to ``name``.

    No handler is attached here; see :func:`configure_logging`.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger for a process entry point.

    Args:
        level: Level name. Falls back to ``CDS_LOG_LEVEL`` and then ``INFO``.
    """
    level_name = (level or os.getenv("CDS_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
