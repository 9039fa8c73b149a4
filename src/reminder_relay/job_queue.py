# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable delayed job queue.

Job lifecycle::

    waiting --(deadline passes)--> ready --(claim)--> active
    active --(success)--> completed
    active --(failure, attempts < max)--> waiting (now + backoff)
    active --(failure, attempts >= max)--> failed

``ready`` is not stored: it is a waiting job whose deadline has passed. A
claimed job carries a lease token and a lease deadline; only the holder of the
token can complete or fail it, and a job whose lease expires is routed back
through the failure path by :meth:`DelayedJobQueue.recover_stalled`.
"""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import RetryBudgetExhausted
from .logger import get_logger
from .persistence import Persistence

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF = 2.0
DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_FAILED_RETENTION = 100

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class JobState(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class DelayedJobQueue:
    """Schedule payloads for later processing and track their attempts."""

    def __init__(
        self,
        persistence: Persistence,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff: float = DEFAULT_RETRY_BACKOFF,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
        failed_retention: int = DEFAULT_FAILED_RETENTION,
        metrics=None,
        logger=None,
    ):
        self.persistence = persistence
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff = max(0.0, float(retry_backoff))
        self.lease_seconds = max(1.0, float(lease_seconds))
        self.failed_retention = max(0, int(failed_retention))
        self.metrics = metrics
        self.logger = logger or get_logger("ReminderRelay.queue")
        self._wake_event = asyncio.Event()

    # ----------------------------------------------------------------- producer
    async def enqueue(self, payload: Dict[str, Any], delay: float) -> str:
        """Persist ``payload`` to run after ``delay`` seconds; return its id."""
        delay = float(delay)
        if not math.isfinite(delay) or delay < 0:
            raise ValueError("delay must be a non-negative number of seconds")
        now = time.time()
        job_id = uuid.uuid4().hex
        await self.persistence.insert_job(
            {
                "id": job_id,
                "payload": payload,
                "max_attempts": self.max_attempts,
                "delay_seconds": delay,
                "run_at": now + delay,
                "created_at": now,
            }
        )
        self._wake_event.set()
        return job_id

    # ------------------------------------------------------------------ reading
    @staticmethod
    def effective_state(job: Dict[str, Any], now: Optional[float] = None) -> JobState:
        """Map the stored state to the lifecycle state, deriving ``ready``."""
        now = time.time() if now is None else now
        state = JobState(job["state"])
        if state is JobState.WAITING and job["run_at"] <= now:
            return JobState.READY
        return state

    def _present(self, job: Dict[str, Any], now: float) -> Dict[str, Any]:
        job = dict(job)
        job.pop("lease_token", None)
        job["status"] = self.effective_state(job, now).value
        return job

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.persistence.get_job(job_id)
        return self._present(job, time.time()) if job else None

    async def list_jobs(self, state: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Return jobs for inspection; ``state`` accepts ``ready`` as well."""
        now = time.time()
        stored = JobState.WAITING.value if state == JobState.READY.value else state
        jobs = [self._present(job, now) for job in await self.persistence.list_jobs(state=stored, limit=limit)]
        if state in (JobState.READY.value, JobState.WAITING.value):
            jobs = [job for job in jobs if job["status"] == state]
        return jobs

    async def counts(self) -> Dict[str, int]:
        """Number of jobs per lifecycle state."""
        result = {state.value: 0 for state in JobState}
        result.update(await self.persistence.count_jobs_by_state(time.time()))
        return result

    # ----------------------------------------------------------------- consumer
    async def claim(self) -> Optional[Dict[str, Any]]:
        """Take the earliest due job, moving it to ``active`` under a lease."""
        now = time.time()
        return await self.persistence.claim_next_job(
            now=now,
            lease_until=now + self.lease_seconds,
            lease_token=uuid.uuid4().hex,
        )

    async def complete(self, job: Dict[str, Any]) -> bool:
        done = await self.persistence.complete_job(job["id"], job["lease_token"], time.time())
        if not done:
            self.logger.warning("Job %s lost its lease before completion", job["id"])
        elif self.metrics:
            self.metrics.inc_job_completed()
        return done

    async def fail(self, job: Dict[str, Any], error: str) -> Optional[JobState]:
        """Record a failed attempt; returns the resulting state."""
        now = time.time()
        updated = await self.persistence.fail_job(
            job["id"],
            job["lease_token"],
            error=error,
            now=now,
            retry_at=now + self.retry_backoff,
        )
        if updated is None:
            self.logger.warning("Job %s lost its lease before failure could be recorded", job["id"])
            return None
        state = JobState(updated["state"])
        if state is JobState.FAILED:
            exhausted = RetryBudgetExhausted(updated["id"], updated["attempts"], error)
            self.logger.error("%s", exhausted)
            if self.metrics:
                self.metrics.inc_job_failed()
        else:
            self.logger.warning(
                "Job %s failed (attempt %d/%d): %s - retrying in %.1fs",
                updated["id"],
                updated["attempts"],
                updated["max_attempts"],
                error,
                self.retry_backoff,
            )
            if self.metrics:
                self.metrics.inc_job_retried()
        return state

    async def recover_stalled(self) -> int:
        """Treat jobs whose lease expired as failed attempts."""
        recovered = 0
        for job in await self.persistence.fetch_stalled_jobs(time.time()):
            self.logger.warning("Job %s stalled past its lease", job["id"])
            if await self.fail(job, "job stalled: lease expired before completion") is not None:
                recovered += 1
        if recovered:
            self._wake_event.set()
        return recovered

    async def purge(self, keep_failed: Optional[int] = None) -> int:
        """Drop completed jobs and old terminal failures."""
        keep = self.failed_retention if keep_failed is None else keep_failed
        return await self.persistence.purge_finished_jobs(keep)

    async def process_next(self, handler: JobHandler) -> bool:
        """Claim one due job and run ``handler`` on it.

        Returns ``True`` when a job was processed, ``False`` when none was due.
        """
        job = await self.claim()
        if job is None:
            return False
        try:
            await handler(job)
        except Exception as exc:
            await self.fail(job, str(exc) or exc.__class__.__name__)
        else:
            await self.complete(job)
        return True

    # ---------------------------------------------------------------- wake-ups
    def wake(self) -> None:
        self._wake_event.set()

    async def wait_for_work(self, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds unless :meth:`wake` is called."""
        if timeout <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_event.wait()
        except TimeoutError:
            return
        self._wake_event.clear()
