# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader.

Values come from an INI file (default ``config.ini``, overridable with
``RMD_CONFIG``) with environment variables as fallbacks.

Environment variables:
  SENDGRID_API_KEY - API key of the bulk provider (required)
  EMAIL_FROM - Sender address used by the bulk provider (required)
  GMAIL_USER_<n>, GMAIL_APP_PASSWORD_<n> - Secondary SMTP accounts, n = 1, 2, ...
      (the first account is required)
  SENDGRID_DAILY_LIMIT - Daily ceiling of the bulk provider (default: 100)
  GMAIL_DAILY_LIMIT - Daily ceiling of each SMTP account (default: 500)
  RMD_DB_PATH - Durable store (SQLite database file, required)
  RMD_HOST / RMD_PORT - HTTP bind address (default: 0.0.0.0:5000)
  RMD_API_TOKEN - Token protecting the admin endpoints
  FRONTEND_URL - Allowed CORS origin (default: *)
  RMD_LOG_LEVEL - Logging level (default: INFO)
  RMD_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)
  RMD_SUBJECT - Subject of the reminder emails
  RMD_MAX_ATTEMPTS - Attempts per job (default: 3)
  RMD_RETRY_BACKOFF_SECONDS - Delay before retrying a failed job (default: 2)
  RMD_POLL_INTERVAL - Seconds between queue polls (default: 1)
  RMD_LEASE_SECONDS - Seconds before an active job counts as stalled (default: 300)
  RMD_FAILED_RETENTION - Terminally failed jobs kept for inspection (default: 100)
  RMD_RATE_LIMIT - Submissions allowed per client and hour (default: 7)
  RMD_TEST_MODE - Do not start the background loops (default: False)

Config file sections/keys:
  [storage] db_path
  [server] host, port, api_token, frontend_url
  [sendgrid] api_key, email_from, daily_limit
  [gmail] user_<n>, password_<n>, daily_limit
  [queue] max_attempts, retry_backoff_seconds, poll_interval, lease_seconds, failed_retention
  [rate_limit] per_hour
  [delivery] subject, test_mode
  [logging] level, delivery_activity
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigurationError
from .job_queue import DEFAULT_FAILED_RETENTION, DEFAULT_LEASE_SECONDS, DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_BACKOFF
from .providers import DEFAULT_SENDGRID_CEILING, DEFAULT_SMTP_CEILING
from .rate_limit import DEFAULT_LIMIT_PER_HOUR
from .template import DEFAULT_SUBJECT

MAX_SMTP_ACCOUNTS = 20


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the settings dictionary; raise :class:`ConfigurationError` when incomplete."""
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("RMD_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: Optional[str] = None) -> Optional[str]:
        if parser.has_option(section, option):
            value = parser.get(section, option)
        else:
            value = fallback
        if isinstance(value, str):
            value = value.strip()
        return value or None

    def get_number(section: str, option: str, fallback: Optional[str], default, cast):
        value = get(section, option, fallback)
        if value is None:
            return default
        try:
            return cast(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for [{section}] {option}: {value!r}") from exc

    gmail_limit = get_number("gmail", "daily_limit", env.get("GMAIL_DAILY_LIMIT"), DEFAULT_SMTP_CEILING, int)
    accounts: List[Dict[str, Any]] = []
    for n in range(1, MAX_SMTP_ACCOUNTS + 1):
        user = get("gmail", f"user_{n}", env.get(f"GMAIL_USER_{n}"))
        password = get("gmail", f"password_{n}", env.get(f"GMAIL_APP_PASSWORD_{n}"))
        # accounts missing either half are skipped, like unset slots
        if user and password:
            accounts.append({"user": user, "password": password, "daily_limit": gmail_limit})

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", env.get("RMD_DB_PATH")),
        "http_host": get("server", "host", env.get("RMD_HOST")) or "0.0.0.0",
        "http_port": get_number("server", "port", env.get("RMD_PORT") or env.get("PORT"), 5000, int),
        "api_token": get("server", "api_token", env.get("RMD_API_TOKEN")),
        "frontend_url": get("server", "frontend_url", env.get("FRONTEND_URL")) or "*",
        "sendgrid_api_key": get("sendgrid", "api_key", env.get("SENDGRID_API_KEY")),
        "email_from": get("sendgrid", "email_from", env.get("EMAIL_FROM")),
        "sendgrid_daily_limit": get_number(
            "sendgrid", "daily_limit", env.get("SENDGRID_DAILY_LIMIT"), DEFAULT_SENDGRID_CEILING, int
        ),
        "smtp_accounts": accounts,
        "max_attempts": get_number("queue", "max_attempts", env.get("RMD_MAX_ATTEMPTS"), DEFAULT_MAX_ATTEMPTS, int),
        "retry_backoff_seconds": get_number(
            "queue", "retry_backoff_seconds", env.get("RMD_RETRY_BACKOFF_SECONDS"), DEFAULT_RETRY_BACKOFF, float
        ),
        "poll_interval": get_number("queue", "poll_interval", env.get("RMD_POLL_INTERVAL"), 1.0, float),
        "lease_seconds": get_number("queue", "lease_seconds", env.get("RMD_LEASE_SECONDS"), DEFAULT_LEASE_SECONDS, float),
        "failed_retention": get_number(
            "queue", "failed_retention", env.get("RMD_FAILED_RETENTION"), DEFAULT_FAILED_RETENTION, int
        ),
        "rate_limit_per_hour": get_number(
            "rate_limit", "per_hour", env.get("RMD_RATE_LIMIT"), DEFAULT_LIMIT_PER_HOUR, int
        ),
        "subject": get("delivery", "subject", env.get("RMD_SUBJECT")) or DEFAULT_SUBJECT,
        "test_mode": _parse_bool(get("delivery", "test_mode", env.get("RMD_TEST_MODE")), False),
        "log_level": (get("logging", "level", env.get("RMD_LOG_LEVEL")) or "INFO").upper(),
        "log_delivery_activity": _parse_bool(
            get("logging", "delivery_activity", env.get("RMD_LOG_DELIVERY_ACTIVITY")), False
        ),
    }
    if isinstance(settings["db_path"], str):
        settings["db_path"] = os.path.expanduser(settings["db_path"])

    missing = []
    if not settings["sendgrid_api_key"]:
        missing.append("SENDGRID_API_KEY")
    if not settings["email_from"]:
        missing.append("EMAIL_FROM")
    if not accounts:
        missing.extend(["GMAIL_USER_1", "GMAIL_APP_PASSWORD_1"])
    if not settings["db_path"]:
        missing.append("RMD_DB_PATH")
    if missing:
        raise ConfigurationError(missing=missing)
    return settings
