# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound email channels and the ordered ring that holds them.

Channel 0 is the bulk HTTP provider (SendGrid). Channels 1..N are SMTP
accounts authenticated with their own credentials. Channels carry static
configuration and a transport; quota bookkeeping lives in
:mod:`reminder_relay.quota` and is driven by the router.
"""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Any, Callable, Dict, List, Optional, Sequence

import aiohttp

from .errors import TransportError
from .smtp_pool import SMTPPool

SENDGRID_ENDPOINT = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_SENDGRID_CEILING = 100
DEFAULT_SMTP_CEILING = 500
GMAIL_HOST = "smtp.gmail.com"
GMAIL_PORT = 465


class Channel:
    """One outbound transport with a daily ceiling."""

    name: str = "channel"
    counter_id: str = "channel_count"
    ceiling: int = 0

    async def send(self, message: Dict[str, Any]) -> None:
        """Hand ``message`` over or raise :class:`TransportError`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SendGridChannel(Channel):
    """Bulk provider reached through the SendGrid v3 HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        ceiling: int = DEFAULT_SENDGRID_CEILING,
        *,
        name: str = "sendgrid",
        counter_id: str = "sendgrid_count",
        endpoint: str = SENDGRID_ENDPOINT,
        timeout: float = 30.0,
        session_factory: Callable[..., aiohttp.ClientSession] = aiohttp.ClientSession,
    ):
        self.api_key = api_key
        self.sender = sender
        self.ceiling = int(ceiling)
        self.name = name
        self.counter_id = counter_id
        self.endpoint = endpoint
        self.timeout = timeout
        self._session_factory = session_factory

    def build_payload(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Translate a message into the SendGrid ``mail/send`` body."""
        return {
            "personalizations": [{"to": [{"email": message["to"]}]}],
            "from": {"email": message.get("from") or self.sender},
            "subject": message["subject"],
            "content": [{"type": "text/html", "value": message["html"]}],
        }

    async def send(self, message: Dict[str, Any]) -> None:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(message)
        try:
            async with self._session_factory(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
                async with session.post(self.endpoint, json=payload, headers=headers) as resp:
                    if resp.status not in (200, 201, 202):
                        body = await resp.text()
                        raise TransportError(
                            f"SendGrid API error {resp.status}: {body[:300]}",
                            channel=self.name,
                        )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"SendGrid request failed: {exc}", channel=self.name) from exc


def build_email(message: Dict[str, Any], sender: str) -> EmailMessage:
    """Translate a message into an HTML :class:`EmailMessage`."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = message["to"]
    msg["Subject"] = message["subject"]
    msg.set_content(message["html"], subtype="html")
    return msg


class SmtpChannel(Channel):
    """A credentialed SMTP account (Gmail app password by default)."""

    def __init__(
        self,
        user: str,
        password: str,
        ceiling: int = DEFAULT_SMTP_CEILING,
        *,
        index: int = 0,
        host: str = GMAIL_HOST,
        port: int = GMAIL_PORT,
        use_tls: Optional[bool] = None,
        pool: Optional[SMTPPool] = None,
        send_timeout: float = 30.0,
    ):
        self.user = user
        self.password = password
        self.ceiling = int(ceiling)
        self.name = user
        self.counter_id = f"gmail_count_{index}"
        self.host = host
        self.port = int(port)
        self.use_tls = (self.port == 465) if use_tls is None else bool(use_tls)
        self.pool = pool or SMTPPool()
        self.send_timeout = send_timeout

    async def send(self, message: Dict[str, Any]) -> None:
        msg = build_email(message, sender=self.user)
        try:
            smtp = await self.pool.get_connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            )
            async with asyncio.timeout(self.send_timeout):
                await smtp.send_message(msg, sender=self.user)
        except Exception as exc:
            await self.pool.discard(self.host, self.port, self.user, use_tls=self.use_tls)
            raise TransportError(f"SMTP account {self.user} failed: {exc}", channel=self.name) from exc

    async def close(self) -> None:
        await self.pool.discard(self.host, self.port, self.user, use_tls=self.use_tls)


class ProviderRing:
    """Ordered, immutable list of channels; index 0 is the bulk provider."""

    def __init__(self, channels: Sequence[Channel]):
        if not channels:
            raise ValueError("A provider ring needs at least one channel")
        self._channels: List[Channel] = list(channels)

    def channel_count(self) -> int:
        return len(self._channels)

    def secondary_count(self) -> int:
        return len(self._channels) - 1

    def channel(self, index: int) -> Channel:
        return self._channels[index]

    def ceiling_of(self, index: int) -> int:
        return self._channels[index].ceiling

    def ceilings(self) -> List[int]:
        return [channel.ceiling for channel in self._channels]

    def counter_id(self, index: int) -> str:
        return self._channels[index].counter_id

    def counter_ids(self) -> List[str]:
        return [channel.counter_id for channel in self._channels]

    def name_of(self, index: int) -> str:
        return self._channels[index].name

    async def send(self, index: int, message: Dict[str, Any]) -> None:
        """Send through channel ``index``; raises :class:`TransportError`."""
        await self._channels[index].send(message)

    async def close(self) -> None:
        for channel in self._channels:
            await channel.close()


def build_ring(settings: Dict[str, Any], pool: Optional[SMTPPool] = None) -> ProviderRing:
    """Create the ring described by :func:`reminder_relay.config.load_settings`."""
    pool = pool or SMTPPool()
    channels: List[Channel] = [
        SendGridChannel(
            api_key=settings["sendgrid_api_key"],
            sender=settings["email_from"],
            ceiling=int(settings.get("sendgrid_daily_limit") or DEFAULT_SENDGRID_CEILING),
        )
    ]
    for index, account in enumerate(settings.get("smtp_accounts") or []):
        channels.append(
            SmtpChannel(
                user=account["user"],
                password=account["password"],
                ceiling=int(account.get("daily_limit") or DEFAULT_SMTP_CEILING),
                index=index,
                host=account.get("host") or GMAIL_HOST,
                port=int(account.get("port") or GMAIL_PORT),
                pool=pool,
            )
        )
    return ProviderRing(channels)
