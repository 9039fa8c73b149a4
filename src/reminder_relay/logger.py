# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the reminder relay.

Handlers, level and format are configured once by the entry point
(``reminder_relay.server`` or the CLI) through :func:`configure_logging`.
Modules only ask for a named logger.
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "ReminderRelay") -> logging.Logger:
    """Return the logger bound to ``name`` without touching its handlers."""
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the process."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,  # avoid duplicate handlers when reloaded
    )
