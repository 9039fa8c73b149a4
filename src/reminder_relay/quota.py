# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable per-channel quota counters.

The daily reset is a lazily evaluated guard: the start of the current window
is stored next to the counters and the first writer that observes a window
older than ``window_seconds`` resets every counter. Readers that must not
mutate state use :meth:`QuotaStore.snapshot`, which reports a stale window as
already reset.
"""

from __future__ import annotations

import time
from typing import Dict, Iterable, Optional, Sequence

from .logger import get_logger
from .persistence import Persistence

WINDOW_KEY = "quota:window_start"
ROTATION_KEY = "router:rotation"
DEFAULT_WINDOW_SECONDS = 24 * 3600


class QuotaStore:
    """Named integer counters with atomic increment."""

    def __init__(self, persistence: Persistence, window_seconds: int = DEFAULT_WINDOW_SECONDS, logger=None):
        self.persistence = persistence
        self.window_seconds = int(window_seconds)
        self.logger = logger or get_logger("ReminderRelay.quota")

    async def get(self, counter_id: str) -> int:
        """Return the current value, 0 when the counter does not exist."""
        return await self.persistence.get_counter(counter_id)

    async def increment(self, counter_id: str) -> int:
        """Add one and return the new value."""
        return await self.persistence.increment_counter(counter_id)

    async def reset_all(self, counter_ids: Iterable[str]) -> None:
        """Reset the given counters to zero."""
        await self.persistence.reset_counters(list(counter_ids))

    async def window_start(self) -> Optional[int]:
        counters = await self.persistence.get_counters([WINDOW_KEY])
        value = counters[WINDOW_KEY]
        return value or None

    def _is_stale(self, started: Optional[int], now: float) -> bool:
        return started is None or now - started >= self.window_seconds

    async def roll_window(self, counter_ids: Sequence[str], now: Optional[float] = None) -> bool:
        """Reset ``counter_ids`` when the current window has elapsed.

        Returns ``True`` when this call performed the reset.
        """
        now = time.time() if now is None else now
        started = await self.window_start()
        if not self._is_stale(started, now):
            return False
        reset = await self.persistence.reset_window(WINDOW_KEY, started, int(now), counter_ids)
        if reset:
            if started is None:
                self.logger.info("Quota window opened for %d counters", len(counter_ids))
            else:
                self.logger.info("Quota window elapsed, reset %d counters", len(counter_ids))
        return reset

    async def snapshot(self, counter_ids: Sequence[str], now: Optional[float] = None) -> Dict[str, int]:
        """Read-only view of ``counter_ids`` accounting for a pending reset."""
        now = time.time() if now is None else now
        names = list(counter_ids)
        values = await self.persistence.get_counters([*names, WINDOW_KEY])
        started = values.pop(WINDOW_KEY) or None
        if started is not None and self._is_stale(started, now):
            return {name: 0 for name in names}
        return values

    async def get_rotation(self) -> int:
        """Return the index of the secondary channel used last."""
        return await self.persistence.get_counter(ROTATION_KEY)

    async def set_rotation(self, index: int) -> None:
        await self.persistence.set_counter(ROTATION_KEY, int(index))
