# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed persistence for counters and delayed jobs.

Every operation opens its own short-lived connection. State transitions that
must be safe across several worker processes are expressed as single
``UPDATE``/``INSERT ... RETURNING`` statements or run inside ``BEGIN
IMMEDIATE`` transactions, so no caller ever performs a read-modify-write.
Backend failures are re-raised as :class:`~reminder_relay.errors.StoreUnavailable`.
"""

from __future__ import annotations

import json
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import StoreUnavailable

JOB_COLUMNS = (
    "id, payload, state, attempts, max_attempts, delay_seconds, run_at, "
    "lease_until, lease_token, created_at, updated_at, finished_at, error"
)

HEALTH_KEY = "health:ping"


class Persistence:
    """Helper class responsible for reading and writing relay state."""

    def __init__(self, db_path: str = "/data/reminder_relay.db", busy_timeout: float = 5.0):
        """Persist data to the given database file."""
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout) as db:
                yield db
        except (aiosqlite.Error, OSError) as exc:
            raise StoreUnavailable(f"Store {self.db_path} unavailable: {exc}") from exc

    async def init_db(self) -> None:
        """Create the database schema."""
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS counters (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL DEFAULT 0,
                    expires_at REAL,
                    updated_at REAL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    state TEXT NOT NULL DEFAULT 'waiting',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    delay_seconds REAL NOT NULL DEFAULT 0,
                    run_at REAL NOT NULL,
                    lease_until REAL,
                    lease_token TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    finished_at REAL,
                    error TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_state_run_at ON jobs(state, run_at)")
            await db.commit()

    # Counters -----------------------------------------------------------------
    async def get_counter(self, name: str, now: Optional[float] = None) -> int:
        """Return the value of ``name``; absent or expired counters read as 0."""
        now = time.time() if now is None else now
        async with self._connect() as db:
            async with db.execute(
                "SELECT value, expires_at FROM counters WHERE name=?",
                (name,),
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return 0
        value, expires_at = row
        if expires_at is not None and expires_at <= now:
            return 0
        return int(value)

    async def get_counters(self, names: Sequence[str]) -> Dict[str, int]:
        """Return the values of several counters in one round trip."""
        result = {name: 0 for name in names}
        if not names:
            return result
        now = time.time()
        placeholders = ",".join("?" for _ in names)
        async with self._connect() as db:
            async with db.execute(
                f"SELECT name, value, expires_at FROM counters WHERE name IN ({placeholders})",
                tuple(names),
            ) as cur:
                rows = await cur.fetchall()
        for name, value, expires_at in rows:
            if expires_at is None or expires_at > now:
                result[name] = int(value)
        return result

    async def increment_counter(self, name: str) -> int:
        """Atomically add one to ``name`` and return the new value."""
        async with self._connect() as db:
            async with db.execute(
                """
                INSERT INTO counters (name, value, updated_at) VALUES (?, 1, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = counters.value + 1,
                    updated_at = excluded.updated_at
                RETURNING value
                """,
                (name, time.time()),
            ) as cur:
                row = await cur.fetchone()
            await db.commit()
        return int(row[0])

    async def increment_window(self, name: str, ttl: float, now: float) -> Tuple[int, float]:
        """Atomically increment an expiring counter.

        The expiry is set only by the increment that creates the key (or that
        revives an expired one). Returns ``(count, expires_at)``.
        """
        async with self._connect() as db:
            async with db.execute(
                """
                INSERT INTO counters (name, value, expires_at, updated_at) VALUES (?, 1, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = CASE
                        WHEN counters.expires_at IS NOT NULL AND counters.expires_at <= ? THEN 1
                        ELSE counters.value + 1
                    END,
                    expires_at = CASE
                        WHEN counters.expires_at IS NULL OR counters.expires_at <= ? THEN excluded.expires_at
                        ELSE counters.expires_at
                    END,
                    updated_at = excluded.updated_at
                RETURNING value, expires_at
                """,
                (name, now + ttl, now, now, now),
            ) as cur:
                row = await cur.fetchone()
            await db.commit()
        return int(row[0]), float(row[1])

    async def set_counter(self, name: str, value: int) -> None:
        """Overwrite ``name`` with ``value`` and drop any expiry."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO counters (name, value, expires_at, updated_at) VALUES (?, ?, NULL, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = excluded.value,
                    expires_at = NULL,
                    updated_at = excluded.updated_at
                """,
                (name, int(value), time.time()),
            )
            await db.commit()

    async def ping(self) -> int:
        """Write a health counter and read it back; returns the stored value."""
        value = int(time.time())
        await self.set_counter(HEALTH_KEY, value)
        return await self.get_counter(HEALTH_KEY)

    async def reset_counters(self, names: Iterable[str]) -> None:
        """Set every counter in ``names`` to zero, creating missing ones."""
        now = time.time()
        rows = [(name, now) for name in names]
        if not rows:
            return
        async with self._connect() as db:
            await db.executemany(
                """
                INSERT INTO counters (name, value, expires_at, updated_at) VALUES (?, 0, NULL, ?)
                ON CONFLICT(name) DO UPDATE SET value = 0, updated_at = excluded.updated_at
                """,
                rows,
            )
            await db.commit()

    async def reset_window(
        self,
        window_key: str,
        expected_start: Optional[int],
        new_start: int,
        names: Iterable[str],
    ) -> bool:
        """Reset ``names`` if ``window_key`` still holds ``expected_start``.

        Compare-and-set: when several workers notice the same stale window
        only the first one resets the counters.
        """
        now = time.time()
        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute("SELECT value FROM counters WHERE name=?", (window_key,)) as cur:
                row = await cur.fetchone()
            current = int(row[0]) if row else None
            if current != expected_start:
                await db.rollback()
                return False
            await db.executemany(
                """
                INSERT INTO counters (name, value, expires_at, updated_at) VALUES (?, 0, NULL, ?)
                ON CONFLICT(name) DO UPDATE SET value = 0, updated_at = excluded.updated_at
                """,
                [(name, now) for name in names],
            )
            await db.execute(
                """
                INSERT INTO counters (name, value, expires_at, updated_at) VALUES (?, ?, NULL, ?)
                ON CONFLICT(name) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (window_key, int(new_start), now),
            )
            await db.commit()
        return True

    async def purge_expired_counters(self, now: float) -> int:
        """Delete expiring counters whose time-to-live has elapsed."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM counters WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            await db.commit()
            return cursor.rowcount

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Sequence[Any], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        payload = data.pop("payload", None)
        try:
            data["payload"] = json.loads(payload) if payload is not None else {}
        except json.JSONDecodeError:
            data["payload"] = {"raw_payload": payload}
        return data

    async def insert_job(self, job: Dict[str, Any]) -> None:
        """Store a freshly created job."""
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO jobs (id, payload, state, attempts, max_attempts, delay_seconds,
                                  run_at, created_at, updated_at)
                VALUES (?, ?, 'waiting', 0, ?, ?, ?, ?, ?)
                """,
                (
                    job["id"],
                    json.dumps(job["payload"]),
                    int(job["max_attempts"]),
                    float(job["delay_seconds"]),
                    float(job["run_at"]),
                    float(job["created_at"]),
                    float(job["created_at"]),
                ),
            )
            await db.commit()

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a single job or ``None``."""
        async with self._connect() as db:
            async with db.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols) if row else None

    async def claim_next_job(
        self, *, now: float, lease_until: float, lease_token: str
    ) -> Optional[Dict[str, Any]]:
        """Move the earliest due waiting job to ``active`` and return it."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                UPDATE jobs
                SET state='active', lease_until=?, lease_token=?, updated_at=?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE state='waiting' AND run_at <= ?
                    ORDER BY run_at ASC, created_at ASC, id ASC
                    LIMIT 1
                )
                AND state='waiting'
                RETURNING {JOB_COLUMNS}
                """,
                (lease_until, lease_token, now, now),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description] if cur.description else []
            await db.commit()
        return self._decode_job_row(row, cols) if row else None

    async def complete_job(self, job_id: str, lease_token: str, now: float) -> bool:
        """Mark an active job completed; ``False`` if the lease was lost."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET state='completed', finished_at=?, updated_at=?, lease_until=NULL,
                    lease_token=NULL, error=NULL
                WHERE id=? AND state='active' AND lease_token=?
                """,
                (now, now, job_id, lease_token),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def fail_job(
        self,
        job_id: str,
        lease_token: str,
        *,
        error: str,
        now: float,
        retry_at: float,
    ) -> Optional[Dict[str, Any]]:
        """Record a failed attempt of an active job.

        The job goes back to ``waiting`` at ``retry_at`` while attempts remain,
        otherwise to ``failed``. Returns the updated job, or ``None`` when the
        lease is no longer held.
        """
        async with self._connect() as db:
            async with db.execute(
                f"""
                UPDATE jobs
                SET attempts = attempts + 1,
                    state = CASE WHEN attempts + 1 >= max_attempts THEN 'failed' ELSE 'waiting' END,
                    run_at = CASE WHEN attempts + 1 >= max_attempts THEN run_at ELSE ? END,
                    finished_at = CASE WHEN attempts + 1 >= max_attempts THEN ? ELSE NULL END,
                    lease_until = NULL,
                    lease_token = NULL,
                    error = ?,
                    updated_at = ?
                WHERE id=? AND state='active' AND lease_token=?
                RETURNING {JOB_COLUMNS}
                """,
                (retry_at, now, error, now, job_id, lease_token),
            ) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description] if cur.description else []
            await db.commit()
        return self._decode_job_row(row, cols) if row else None

    async def fetch_stalled_jobs(self, now: float) -> List[Dict[str, Any]]:
        """Return active jobs whose lease expired before ``now``."""
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {JOB_COLUMNS} FROM jobs
                WHERE state='active' AND lease_until IS NOT NULL AND lease_until < ?
                ORDER BY lease_until ASC
                """,
                (now,),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def list_jobs(self, *, state: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Return jobs for inspection, soonest first."""
        query = f"SELECT {JOB_COLUMNS} FROM jobs"
        params: Tuple[Any, ...] = ()
        if state:
            query += " WHERE state=?"
            params = (state,)
        query += " ORDER BY run_at ASC, created_at ASC, id ASC LIMIT ?"
        params = (*params, int(limit))
        async with self._connect() as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def count_jobs_by_state(self, now: float) -> Dict[str, int]:
        """Return the number of jobs per state, waiting jobs past their deadline as ``ready``."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT CASE WHEN state='waiting' AND run_at <= ? THEN 'ready' ELSE state END AS s,
                       COUNT(*)
                FROM jobs GROUP BY s
                """,
                (now,),
            ) as cur:
                rows = await cur.fetchall()
        return {state: int(count) for state, count in rows}

    async def purge_finished_jobs(self, keep_failed: int) -> int:
        """Delete completed jobs and all but the newest ``keep_failed`` failed jobs."""
        async with self._connect() as db:
            completed = await db.execute("DELETE FROM jobs WHERE state='completed'")
            failed = await db.execute(
                """
                DELETE FROM jobs
                WHERE state='failed' AND id NOT IN (
                    SELECT id FROM jobs WHERE state='failed'
                    ORDER BY finished_at DESC, id DESC
                    LIMIT ?
                )
                """,
                (max(0, int(keep_failed)),),
            )
            await db.commit()
            return completed.rowcount + failed.rowcount
