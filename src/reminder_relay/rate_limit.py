# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Hourly request limiter for reminder submissions."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Optional

from .errors import StoreUnavailable
from .logger import get_logger
from .persistence import Persistence

DEFAULT_LIMIT_PER_HOUR = 7
BUCKET_SECONDS = 3600


@dataclass(frozen=True)
class Admission:
    """Outcome of :meth:`RateLimiter.admit`."""

    allowed: bool
    retry_after: int = 0
    count: Optional[int] = None


class RateLimiter:
    """Fixed hour-bucket counter per client identity.

    Counters live in the same store as the quota counters. When that store is
    unreachable the limiter admits the request.
    """

    def __init__(
        self,
        persistence: Persistence,
        limit: int = DEFAULT_LIMIT_PER_HOUR,
        bucket_seconds: int = BUCKET_SECONDS,
        logger=None,
    ):
        self.persistence = persistence
        self.limit = int(limit)
        self.bucket_seconds = int(bucket_seconds)
        self.logger = logger or get_logger("ReminderRelay.rate_limit")

    def key_for(self, client_id: str, now: float) -> str:
        bucket = int(now) // self.bucket_seconds
        return f"ratelimit:{client_id}:{bucket}"

    async def admit(self, client_id: str) -> Admission:
        """Count one request for ``client_id`` and decide whether to serve it."""
        now = time.time()
        key = self.key_for(client_id or "unknown", now)
        try:
            count, expires_at = await self.persistence.increment_window(key, self.bucket_seconds, now)
        except StoreUnavailable as exc:
            self.logger.warning("Rate limiting skipped for %s: %s", client_id, exc)
            return Admission(allowed=True)
        if count > self.limit:
            retry_after = min(self.bucket_seconds, max(1, math.ceil(expires_at - now)))
            return Admission(allowed=False, retry_after=retry_after, count=count)
        return Admission(allowed=True, count=count)
