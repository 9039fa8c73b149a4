# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy shared by the queue, the router and the HTTP layer."""

from __future__ import annotations

from typing import List, Optional


class ReminderError(RuntimeError):
    """Base class for every error raised by the relay."""

    code = "reminder_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)


class PayloadValidationError(ReminderError):
    """A submission is missing a required field or carries an invalid value."""

    code = "validation_error"


class ConfigurationError(ReminderError):
    """Required configuration is absent or malformed."""

    code = "missing_configuration"

    def __init__(self, message: str = "", missing: Optional[List[str]] = None):
        self.missing = list(missing or [])
        if not message and self.missing:
            message = f"Missing required configuration: {', '.join(self.missing)}"
        super().__init__(message)


class StoreUnavailable(ReminderError):
    """The durable counter and job store cannot be reached."""

    code = "store_unavailable"


class TransportError(ReminderError):
    """A single channel failed to hand the message over."""

    code = "transport_error"

    def __init__(self, message: str = "", channel: Optional[str] = None):
        self.channel = channel
        super().__init__(message)


class AllChannelsExhausted(ReminderError):
    """Every channel is over quota or failed for this message."""

    code = "all_channels_exhausted"

    def __init__(self, message: str = "", failures: Optional[List[str]] = None):
        self.failures = list(failures or [])
        super().__init__(message or "All email services failed or reached their limits")


class RetryBudgetExhausted(ReminderError):
    """A job reached its maximum number of attempts."""

    code = "retry_budget_exhausted"

    def __init__(self, job_id: str, attempts: int, last_error: Optional[str] = None):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Job {job_id} failed permanently after {attempts} attempts{detail}")
