# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Quota-aware channel selection with fall-through.

Selection is a pure function of the counter values, the ceilings and the
rotation offset (:func:`choose_channel`), so the ordering rules can be tested
without any transport. :class:`DeliveryRouter` wraps it with the side effects:
fresh counter reads before each attempt, the send itself, and the quota
increment that follows a confirmed send.

Two concurrent routers may both read ``count < ceiling`` for the same channel
and both send, overshooting the ceiling by the number of racing workers. The
increment only ever happens after a successful send.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Collection, Dict, List, Optional, Sequence

from .errors import AllChannelsExhausted, StoreUnavailable, TransportError
from .logger import get_logger
from .providers import ProviderRing
from .quota import QuotaStore


def attempt_order(channel_count: int, rotation: int) -> List[int]:
    """Return channel indices in the order they should be tried.

    The bulk channel comes first. Secondary channels follow starting at
    ``rotation`` (the ring index of the secondary that delivered last, 0 if
    none), wrapping around once, so a working account stays in use until it
    fails or fills up.
    """
    if channel_count <= 0:
        return []
    secondaries = channel_count - 1
    if secondaries == 0:
        return [0]
    start = max(0, rotation - 1) % secondaries
    return [0] + [1 + (start + offset) % secondaries for offset in range(secondaries)]


def choose_channel(
    counts: Sequence[int],
    ceilings: Sequence[int],
    rotation: int = 0,
    exclude: Collection[int] = (),
) -> Optional[int]:
    """Pick the next channel to try, or ``None`` when every channel is out."""
    for index in attempt_order(len(ceilings), rotation):
        if index in exclude:
            continue
        if counts[index] >= ceilings[index]:
            continue
        return index
    return None


@dataclass(frozen=True)
class DeliveryReceipt:
    """Where a message went and the channel usage after it."""

    index: int
    channel: str
    count: Optional[int]


class DeliveryRouter:
    """Route messages across a :class:`ProviderRing` honouring daily quotas."""

    def __init__(self, ring: ProviderRing, quota: QuotaStore, metrics=None, logger=None):
        self.ring = ring
        self.quota = quota
        self.metrics = metrics
        self.logger = logger or get_logger("ReminderRelay.router")

    async def read_counts(self) -> List[int]:
        """Current usage of every channel; unreadable counters read as full."""
        counts: List[int] = []
        for index in range(self.ring.channel_count()):
            try:
                counts.append(await self.quota.get(self.ring.counter_id(index)))
            except StoreUnavailable as exc:
                self.logger.warning(
                    "Quota for %s unreadable, treating channel as exhausted: %s",
                    self.ring.name_of(index),
                    exc,
                )
                counts.append(self.ring.ceiling_of(index))
        return counts

    async def _rotation(self) -> int:
        try:
            return await self.quota.get_rotation()
        except StoreUnavailable as exc:
            self.logger.warning("Rotation offset unreadable, starting from the first account: %s", exc)
            return 0

    async def _roll_window(self) -> None:
        try:
            await self.quota.roll_window(self.ring.counter_ids())
        except StoreUnavailable as exc:
            self.logger.warning("Quota window check skipped: %s", exc)

    async def deliver(self, message: Dict[str, Any]) -> DeliveryReceipt:
        """Send ``message`` through the first channel that accepts it."""
        await self._roll_window()
        rotation = await self._rotation()
        ceilings = self.ring.ceilings()
        tried: set[int] = set()
        failures: List[str] = []

        while True:
            counts = await self.read_counts()
            index = choose_channel(counts, ceilings, rotation, tried)
            if index is None:
                exhausted = [
                    self.ring.name_of(i) for i in range(len(ceilings)) if i not in tried
                ]
                if exhausted:
                    self.logger.warning("Channels over quota: %s", ", ".join(exhausted))
                    if self.metrics:
                        for name in exhausted:
                            self.metrics.inc_quota_skipped(name)
                raise AllChannelsExhausted(failures=failures)
            tried.add(index)
            name = self.ring.name_of(index)
            try:
                await self.ring.send(index, message)
            except TransportError as exc:
                self.logger.error("%s failed: %s", name, exc)
                failures.append(str(exc))
                if self.metrics:
                    self.metrics.inc_transport_error(name)
                continue
            count = await self._record_success(index)
            if self.metrics:
                self.metrics.inc_sent(name)
            return DeliveryReceipt(index=index, channel=name, count=count)

    async def _record_success(self, index: int) -> Optional[int]:
        name = self.ring.name_of(index)
        try:
            count = await self.quota.increment(self.ring.counter_id(index))
            if index > 0:
                await self.quota.set_rotation(index)
        except StoreUnavailable as exc:
            # the email is already out; retrying the job would send it twice
            self.logger.error("Sent via %s but quota bookkeeping failed: %s", name, exc)
            return None
        if self.metrics:
            self.metrics.set_quota_used(name, count)
        return count
