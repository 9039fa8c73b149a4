# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio SMTP connection pool keyed by account credentials."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple

import aiosmtplib

PoolKey = Tuple[str, int, Optional[str], bool]


class SMTPPool:
    """Keep one authenticated connection per SMTP account.

    Connections idle for longer than ``ttl`` seconds, or that stop answering
    ``NOOP``, are replaced on the next request.
    """

    def __init__(self, ttl: int = 300, timeout: float = 10.0):
        self.ttl = ttl
        self.timeout = timeout
        self.pool: Dict[PoolKey, Tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()

    async def _connect(self, host: str, port: int, user: Optional[str], password: Optional[str], use_tls: bool) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate if needed."""
        # implicit TLS (port 465) excludes STARTTLS; otherwise upgrade when offered
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=use_tls,
            start_tls=False if use_tls else None,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=self.timeout + 5.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except Exception:
            return False
        return code == 250

    @staticmethod
    async def _close(smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except Exception:
            # the connection is discarded either way
            pass

    async def get_connection(
        self,
        host: str,
        port: int,
        user: Optional[str],
        password: Optional[str],
        *,
        use_tls: bool,
    ) -> aiosmtplib.SMTP:
        """Return a live connection for the given account."""
        key: PoolKey = (host, int(port), user, bool(use_tls))
        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._close(smtp)

        smtp = await self._connect(host, port, user, password, use_tls)
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def discard(self, host: str, port: int, user: Optional[str], *, use_tls: bool) -> None:
        """Drop the pooled connection of an account after a transport failure."""
        async with self.lock:
            entry = self.pool.pop((host, int(port), user, bool(use_tls)), None)
        if entry:
            await self._close(entry[0])

    async def cleanup(self) -> None:
        """Close idle or broken connections still registered in the pool."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        expired = []
        for key, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                expired.append(key)

        for key in expired:
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._close(entry[0])

    async def close(self) -> None:
        """Close every pooled connection."""
        async with self.lock:
            entries = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in entries:
            await self._close(smtp)
