# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the reminder relay.

:class:`ReminderService` wires the durable store, the quota store, the rate
limiter, the provider ring, the router and the delayed queue together and runs
the two background loops: the dispatch loop (single consumer, one job at a
time) and the maintenance loop (stalled leases, retention, expired rate-limit
windows, idle SMTP connections).
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Dict, List, Optional

from .errors import PayloadValidationError, TransportError
from .job_queue import (
    DEFAULT_FAILED_RETENTION,
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DelayedJobQueue,
)
from .logger import get_logger
from .persistence import Persistence
from .prometheus import ReminderMetrics
from .providers import ProviderRing, build_ring
from .quota import QuotaStore
from .rate_limit import DEFAULT_LIMIT_PER_HOUR, Admission, RateLimiter
from .router import DeliveryReceipt, DeliveryRouter
from .smtp_pool import SMTPPool
from .template import DEFAULT_SUBJECT, build_message

SECONDS_PER_DAY = 86400
REQUIRED_FIELDS = ("email", "link", "label")


class ReminderService:
    """Coordinate scheduling, rate limiting, persistence and delivery."""

    def __init__(
        self,
        ring: ProviderRing,
        *,
        db_path: str = "/data/reminder_relay.db",
        logger=None,
        metrics: ReminderMetrics | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        failed_retention: int = DEFAULT_FAILED_RETENTION,
        rate_limit_per_hour: int = DEFAULT_LIMIT_PER_HOUR,
        poll_interval: float = 1.0,
        maintenance_interval: float = 60.0,
        subject: str = DEFAULT_SUBJECT,
        smtp_pool: SMTPPool | None = None,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators; nothing touches the store yet."""
        self.logger = logger or get_logger()
        self.metrics = metrics or ReminderMetrics()
        self.persistence = Persistence(db_path)
        self.quota = QuotaStore(self.persistence, logger=self.logger)
        self.rate_limiter = RateLimiter(self.persistence, limit=rate_limit_per_hour, logger=self.logger)
        self.ring = ring
        self.router = DeliveryRouter(ring, self.quota, metrics=self.metrics, logger=self.logger)
        self.queue = DelayedJobQueue(
            self.persistence,
            max_attempts=max_attempts,
            retry_backoff=retry_backoff,
            lease_seconds=lease_seconds,
            failed_retention=failed_retention,
            metrics=self.metrics,
            logger=self.logger,
        )
        self.pool = smtp_pool
        self.subject = subject
        self._poll_interval = max(0.05, float(poll_interval))
        self._maintenance_interval = max(1.0, float(maintenance_interval))
        self._test_mode = bool(test_mode)
        self._log_delivery_activity = bool(log_delivery_activity)

        self._stop = asyncio.Event()
        self._task_dispatch: Optional[asyncio.Task] = None
        self._task_maintenance: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **overrides: Any) -> "ReminderService":
        """Build a service from :func:`reminder_relay.config.load_settings` output."""
        pool = SMTPPool()
        kwargs: Dict[str, Any] = dict(
            db_path=settings["db_path"],
            max_attempts=settings.get("max_attempts", DEFAULT_MAX_ATTEMPTS),
            retry_backoff=settings.get("retry_backoff_seconds", DEFAULT_RETRY_BACKOFF),
            lease_seconds=settings.get("lease_seconds", DEFAULT_LEASE_SECONDS),
            failed_retention=settings.get("failed_retention", DEFAULT_FAILED_RETENTION),
            rate_limit_per_hour=settings.get("rate_limit_per_hour", DEFAULT_LIMIT_PER_HOUR),
            poll_interval=settings.get("poll_interval", 1.0),
            subject=settings.get("subject") or DEFAULT_SUBJECT,
            smtp_pool=pool,
            test_mode=bool(settings.get("test_mode")),
            log_delivery_activity=bool(settings.get("log_delivery_activity")),
        )
        kwargs.update(overrides)
        return cls(build_ring(settings, pool=pool), **kwargs)

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and refresh gauges."""
        await self.persistence.init_db()
        await self._refresh_pending_gauge()

    async def start(self) -> None:
        """Initialise storage and start the background loops."""
        await self.init()
        self._stop.clear()
        if self._test_mode:
            self.logger.info("Test mode: background loops not started")
            return
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="reminder-dispatch-loop")
        self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="reminder-maintenance-loop")
        self.logger.info("Reminder relay started with %d channels", self.ring.channel_count())

    async def stop(self) -> None:
        """Stop the background loops and release transports."""
        self._stop.set()
        self.queue.wake()
        tasks = [task for task in (self._task_dispatch, self._task_maintenance) if task]
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task_dispatch = None
        self._task_maintenance = None
        await self.ring.close()
        if self.pool is not None:
            await self.pool.close()

    # ------------------------------------------------------------------ producer
    @staticmethod
    def validate_submission(data: Dict[str, Any]) -> Dict[str, Any]:
        """Normalise a submission into a job payload plus its delay in seconds."""
        payload = {
            "email": (data.get("email") or "").strip(),
            "link": (data.get("link") or "").strip(),
            "label": (data.get("label") or "").strip(),
            "notes": data.get("notes") or "",
        }
        missing = [field for field in REQUIRED_FIELDS if not payload[field]]
        if missing:
            raise PayloadValidationError("Email, problem link, and name are required.")
        days = data.get("days") or 0
        try:
            days = float(days)
        except (TypeError, ValueError) as exc:
            raise PayloadValidationError("timeInDays must be a number.") from exc
        delay = days * SECONDS_PER_DAY
        if not math.isfinite(delay) or days < 0:
            raise PayloadValidationError("timeInDays must be a non-negative number.")
        return {"payload": payload, "delay": delay, "days": days}

    async def admit(self, client_id: str) -> Admission:
        """Run the per-client hourly limiter."""
        admission = await self.rate_limiter.admit(client_id)
        if not admission.allowed:
            self.metrics.inc_rate_limited()
            self.logger.info("Rate limit exceeded for %s (retry in %ss)", client_id, admission.retry_after)
        return admission

    async def schedule_reminder(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and persist a reminder; returns the job id and its deadline."""
        checked = self.validate_submission(data)
        job_id = await self.queue.enqueue(checked["payload"], checked["delay"])
        self.metrics.inc_scheduled()
        await self._refresh_pending_gauge()
        if self._log_delivery_activity:
            self.logger.info(
                "Scheduled job %s for %s in %s days",
                job_id,
                checked["payload"]["email"],
                checked["days"],
            )
        return {"job_id": job_id, "days": checked["days"], "delay": checked["delay"]}

    # ------------------------------------------------------------------ consumer
    async def process_job(self, job: Dict[str, Any]) -> DeliveryReceipt:
        """Render the reminder carried by ``job`` and deliver it."""
        message = build_message(job["payload"], subject=self.subject)
        receipt = await self.router.deliver(message)
        if self._log_delivery_activity:
            self.logger.info("Job %s delivered via %s", job["id"], receipt.channel)
        return receipt

    async def run_once(self) -> bool:
        """Process a single due job, if any."""
        processed = await self.queue.process_next(self.process_job)
        if processed:
            await self._refresh_pending_gauge()
        return processed

    async def _dispatch_loop(self) -> None:
        """Continuously pick due jobs and deliver them, one at a time."""
        while not self._stop.is_set():
            try:
                processed = await self.run_once()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in dispatch loop: %s", exc)
                processed = False
            if not processed:
                await self.queue.wait_for_work(self._poll_interval)

    async def run_maintenance(self) -> Dict[str, int]:
        """One housekeeping pass."""
        recovered = await self.queue.recover_stalled()
        purged = await self.queue.purge()
        expired = await self.persistence.purge_expired_counters(time.time())
        if self.pool is not None:
            await self.pool.cleanup()
        await self._refresh_pending_gauge()
        return {"recovered": recovered, "purged": purged, "expired_windows": expired}

    async def _maintenance_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.run_maintenance()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in maintenance loop: %s", exc)
            try:
                async with asyncio.timeout(self._maintenance_interval):
                    await self._stop.wait()
            except TimeoutError:
                continue

    async def _refresh_pending_gauge(self) -> None:
        try:
            counts = await self.queue.counts()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(counts["waiting"] + counts["ready"])

    # --------------------------------------------------------------------- admin
    async def service_status(self) -> Dict[str, Any]:
        """Quota usage per channel; never mutates counters."""
        snapshot = await self.quota.snapshot(self.ring.counter_ids())

        def entry(index: int) -> Dict[str, Any]:
            sent = snapshot.get(self.ring.counter_id(index), 0)
            ceiling = self.ring.ceiling_of(index)
            return {
                "emailsSent": sent,
                "remaining": max(0, ceiling - sent),
                "isAvailable": sent < ceiling,
            }

        bulk = entry(0)
        bulk["name"] = self.ring.name_of(0)
        accounts = []
        for index in range(1, self.ring.channel_count()):
            accounts.append({"email": self.ring.name_of(index), **entry(index)})
        return {"sendgrid": bulk, "gmailAccounts": accounts}

    async def list_jobs(self, state: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
        return {
            "counts": await self.queue.counts(),
            "jobs": await self.queue.list_jobs(state=state, limit=limit),
        }

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return await self.queue.get(job_id)

    async def reset_quotas(self) -> None:
        """Zero every channel counter immediately."""
        await self.quota.reset_all(self.ring.counter_ids())
        self.logger.info("Quota counters reset for %d channels", self.ring.channel_count())

    async def store_health(self) -> Dict[str, Any]:
        """One write/read round trip through the store."""
        value = await self.persistence.ping()
        return {"dbPath": self.persistence.db_path, "testValue": value}

    async def test_channels(self, address: str) -> List[Dict[str, Any]]:
        """Send a test email through every channel, bypassing quotas."""
        results: List[Dict[str, Any]] = []
        for index in range(self.ring.channel_count()):
            name = self.ring.name_of(index)
            message = {
                "to": address,
                "subject": f"Test Email from {name}",
                "html": (
                    f"<h1>{name} test successful!</h1>"
                    f"<p>This email confirms that channel {index} is configured correctly.</p>"
                    f"<p>Timestamp: {time.strftime('%Y-%m-%d %H:%M:%S')}</p>"
                ),
            }
            try:
                await self.ring.send(index, message)
            except TransportError as exc:
                results.append({"channel": name, "index": index, "status": f"Failed: {exc}"})
            else:
                results.append({"channel": name, "index": index, "status": "Success"})
        return results
