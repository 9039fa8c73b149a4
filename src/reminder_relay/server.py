# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Settings are loaded at import time; the process exits with status 1 when the
required configuration is absent.

Usage:
    uvicorn reminder_relay.server:app --host 0.0.0.0 --port 5000
"""

from __future__ import annotations

import sys
from typing import Any, Dict, Mapping, Optional

from .api import create_service_app
from .config import load_settings
from .errors import ConfigurationError
from .logger import configure_logging, get_logger


def load_or_exit(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load settings, exiting the process when they are incomplete."""
    try:
        settings = load_settings(environ)
    except ConfigurationError as exc:
        configure_logging("INFO")
        get_logger().error("%s: %s", exc.code, exc)
        sys.exit(1)
    configure_logging(settings["log_level"])
    return settings


app = create_service_app(load_or_exit())
