import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest

from reminder_relay.errors import TransportError
from reminder_relay.providers import (
    GMAIL_HOST,
    GMAIL_PORT,
    ProviderRing,
    SENDGRID_ENDPOINT,
    SendGridChannel,
    SmtpChannel,
    build_ring,
)

MESSAGE = {"to": "user@example.com", "subject": "LeetCode Reminder", "html": "<p>hi</p>"}


class DummyResponse:
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self._body = body

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class DummySession:
    def __init__(self, status=202, body="", error: Exception | None = None):
        self.status = status
        self.body = body
        self.error = error
        self.posts: List[Dict[str, Any]] = []

    def __call__(self, **_kwargs):
        return self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def post(self, url, json=None, headers=None):
        self.posts.append({"url": url, "json": json, "headers": headers})
        if self.error:
            raise self.error
        return DummyResponse(self.status, self.body)


class DummySMTP:
    def __init__(self):
        self.sent = []
        self.raise_error: Exception | None = None

    async def send_message(self, message, sender=None, **_kwargs):
        if self.raise_error:
            raise self.raise_error
        self.sent.append({"message": message, "sender": sender})


class DummyPool:
    def __init__(self):
        self.smtp = DummySMTP()
        self.requests = []
        self.discarded = []

    async def get_connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        return self.smtp

    async def discard(self, host, port, user, *, use_tls):
        self.discarded.append((host, port, user, use_tls))


@pytest.mark.asyncio
async def test_sendgrid_posts_v3_payload_with_bearer_key():
    session = DummySession(status=202)
    channel = SendGridChannel("SG.key", "noreply@example.com", session_factory=session)
    await channel.send(MESSAGE)

    post = session.posts[0]
    assert post["url"] == SENDGRID_ENDPOINT
    assert post["headers"]["Authorization"] == "Bearer SG.key"
    assert post["json"] == {
        "personalizations": [{"to": [{"email": "user@example.com"}]}],
        "from": {"email": "noreply@example.com"},
        "subject": "LeetCode Reminder",
        "content": [{"type": "text/html", "value": "<p>hi</p>"}],
    }
    assert channel.counter_id == "sendgrid_count"
    assert channel.ceiling == 100


@pytest.mark.asyncio
async def test_sendgrid_error_status_raises_transport_error():
    session = DummySession(status=401, body="unauthorized")
    channel = SendGridChannel("bad", "noreply@example.com", session_factory=session)
    with pytest.raises(TransportError) as excinfo:
        await channel.send(MESSAGE)
    assert "401" in str(excinfo.value)
    assert excinfo.value.channel == "sendgrid"


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [aiohttp.ClientConnectionError("refused"), asyncio.TimeoutError()])
async def test_sendgrid_network_errors_become_transport_errors(error):
    channel = SendGridChannel("key", "noreply@example.com", session_factory=DummySession(error=error))
    with pytest.raises(TransportError):
        await channel.send(MESSAGE)


@pytest.mark.asyncio
async def test_smtp_channel_sends_from_its_own_account():
    pool = DummyPool()
    channel = SmtpChannel("a@gmail.com", "app-pass", index=1, pool=pool)
    await channel.send(MESSAGE)

    assert pool.requests == [(GMAIL_HOST, GMAIL_PORT, "a@gmail.com", "app-pass", True)]
    sent = pool.smtp.sent[0]
    assert sent["sender"] == "a@gmail.com"
    assert sent["message"]["From"] == "a@gmail.com"
    assert sent["message"]["To"] == "user@example.com"
    assert sent["message"].get_content_subtype() == "html"
    assert channel.counter_id == "gmail_count_1"
    assert channel.ceiling == 500


@pytest.mark.asyncio
async def test_smtp_failure_discards_connection():
    pool = DummyPool()
    pool.smtp.raise_error = RuntimeError("535 auth failed")
    channel = SmtpChannel("a@gmail.com", "wrong", pool=pool)
    with pytest.raises(TransportError) as excinfo:
        await channel.send(MESSAGE)
    assert "535" in str(excinfo.value)
    assert pool.discarded == [(GMAIL_HOST, GMAIL_PORT, "a@gmail.com", True)]


def test_build_ring_orders_bulk_provider_first():
    settings = {
        "sendgrid_api_key": "SG.key",
        "email_from": "noreply@example.com",
        "sendgrid_daily_limit": 100,
        "smtp_accounts": [
            {"user": "a@gmail.com", "password": "p1", "daily_limit": 500},
            {"user": "b@gmail.com", "password": "p2", "daily_limit": 250},
        ],
    }
    ring = build_ring(settings, pool=DummyPool())

    assert ring.channel_count() == 3
    assert ring.secondary_count() == 2
    assert ring.counter_ids() == ["sendgrid_count", "gmail_count_0", "gmail_count_1"]
    assert ring.ceilings() == [100, 500, 250]
    assert [ring.name_of(i) for i in range(3)] == ["sendgrid", "a@gmail.com", "b@gmail.com"]


def test_empty_ring_is_rejected():
    with pytest.raises(ValueError):
        ProviderRing([])
