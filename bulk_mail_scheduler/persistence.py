"""SQLite backed job store used by the scheduler and the dispatcher."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from .errors import DuplicateJobId, JobNotFound, PersistenceError
from .models import Job, JobStatus

JOB_COLUMNS = (
    "job_id, user_id, recipient, subject, body, sender, due_time, status, "
    "sent_at, error_message, attempts, hourly_limit, created_at, updated_at"
)


class JobStore:
    """Durable record of every scheduled, sent and failed job.

    The store is the source of truth: the in-memory queue can always be
    rebuilt from the ``scheduled`` rows. Rate-limit windows live in the same
    database so admission counters survive restarts too.
    """

    def __init__(self, db_path: str = "/data/bulk_mail.db", clock: Callable[[], float] = time.time):
        """Persist data to the given SQLite file."""
        self.db_path = db_path
        self._clock = clock

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                yield db
        except aiosqlite.Error as exc:
            raise PersistenceError(f"Job store unavailable: {exc}") from exc

    async def init_db(self) -> None:
        """Create the database schema if needed."""
        async with self._connect() as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    recipient TEXT NOT NULL,
                    subject TEXT NOT NULL,
                    body TEXT NOT NULL,
                    sender TEXT NOT NULL,
                    due_time REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'scheduled',
                    sent_at REAL,
                    error_message TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    hourly_limit INTEGER,
                    created_at REAL,
                    updated_at REAL
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_due ON jobs(status, due_time)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS rate_windows (
                    sender TEXT NOT NULL,
                    hour_bucket TEXT NOT NULL,
                    window_start REAL NOT NULL,
                    email_count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (sender, hour_bucket)
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_rate_windows_start ON rate_windows(window_start)"
            )
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Job:
        return Job.model_validate(dict(zip(columns, row)))

    def _insert_params(self, job: Job, now: float) -> Tuple[Any, ...]:
        return (
            job.job_id,
            job.user_id,
            job.recipient,
            job.subject,
            job.body,
            job.sender,
            float(job.due_time),
            JobStatus.SCHEDULED.value,
            job.hourly_limit,
            job.created_at if job.created_at is not None else now,
            now,
        )

    _INSERT_SQL = """
        INSERT INTO jobs (job_id, user_id, recipient, subject, body, sender, due_time,
                          status, hourly_limit, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    async def create(self, job: Job) -> str:
        """Insert a new job with status ``scheduled`` and return its id."""
        now = self._clock()
        async with self._connect() as db:
            try:
                await db.execute(self._INSERT_SQL, self._insert_params(job, now))
            except aiosqlite.IntegrityError:
                raise DuplicateJobId(job.job_id) from None
            await db.commit()
        return job.job_id

    async def create_many(self, jobs: Sequence[Job]) -> List[str]:
        """Insert a batch of jobs in one transaction; nothing is stored on collision."""
        if not jobs:
            return []
        now = self._clock()
        async with self._connect() as db:
            for job in jobs:
                try:
                    await db.execute(self._INSERT_SQL, self._insert_params(job, now))
                except aiosqlite.IntegrityError:
                    await db.rollback()
                    raise DuplicateJobId(job.job_id) from None
            await db.commit()
        return [job.job_id for job in jobs]

    async def get(self, job_id: str) -> Optional[Job]:
        """Return a single job or ``None``."""
        async with self._connect() as db:
            async with db.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE job_id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols) if row else None

    @staticmethod
    async def _status_of(db: aiosqlite.Connection, job_id: str) -> Optional[str]:
        async with db.execute("SELECT status FROM jobs WHERE job_id=?", (job_id,)) as cur:
            row = await cur.fetchone()
        return row[0] if row else None

    async def _finalise(self, job_id: str, status: JobStatus, sql: str, params: Tuple[Any, ...]) -> bool:
        """Move a scheduled job to a terminal state.

        Returns ``False`` when the job already is in ``status``; raises
        :class:`JobNotFound` when it is missing or in the other terminal state.
        """
        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            await db.commit()
            if cursor.rowcount:
                return True
            current = await self._status_of(db, job_id)
        if current == status.value:
            return False
        raise JobNotFound(job_id, "not found" if current is None else f"is already {current}")

    async def mark_sent(self, job_id: str, sent_at: float) -> bool:
        """Mark a job as sent. A repeated call on a sent job is a no-op."""
        return await self._finalise(
            job_id,
            JobStatus.SENT,
            """
            UPDATE jobs
            SET status='sent', sent_at=?, error_message=NULL, updated_at=?
            WHERE job_id=? AND status='scheduled'
            """,
            (sent_at, self._clock(), job_id),
        )

    async def mark_failed(self, job_id: str, error_message: str) -> bool:
        """Mark a job as failed. A repeated call on a failed job is a no-op."""
        return await self._finalise(
            job_id,
            JobStatus.FAILED,
            """
            UPDATE jobs
            SET status='failed', error_message=?, sent_at=NULL, updated_at=?
            WHERE job_id=? AND status='scheduled'
            """,
            (error_message, self._clock(), job_id),
        )

    async def reschedule(self, job_id: str, due_time: float) -> bool:
        """Move the due time of a scheduled job in place."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE jobs SET due_time=?, updated_at=? WHERE job_id=? AND status='scheduled'",
                (float(due_time), self._clock(), job_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def record_attempt(self, job_id: str, due_time: float) -> int:
        """Count one failed attempt, move the retry due time and return the new total."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET attempts=attempts + 1, due_time=?, updated_at=?
                WHERE job_id=? AND status='scheduled'
                """,
                (float(due_time), self._clock(), job_id),
            )
            await db.commit()
            if not cursor.rowcount:
                raise JobNotFound(job_id, "is not scheduled")
            async with db.execute("SELECT attempts FROM jobs WHERE job_id=?", (job_id,)) as cur:
                row = await cur.fetchone()
        return int(row[0])

    async def _select_jobs(self, where: str, params: Tuple[Any, ...], order_by: str) -> List[Job]:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {JOB_COLUMNS} FROM jobs WHERE {where} ORDER BY {order_by}",
                params,
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def list_scheduled(self, user_id: str) -> List[Job]:
        """Return a user's pending jobs, earliest due first."""
        return await self._select_jobs(
            "user_id=? AND status='scheduled'", (user_id,), "due_time ASC, job_id ASC"
        )

    async def list_sent_or_failed(self, user_id: str) -> List[Job]:
        """Return a user's finished jobs, most recently sent first."""
        return await self._select_jobs(
            "user_id=? AND status IN ('sent', 'failed')",
            (user_id,),
            "sent_at DESC, updated_at DESC",
        )

    async def list_pending_future(self, now: Optional[float] = None) -> List[Job]:
        """Return every scheduled job whose due time is still in the future."""
        now = self._clock() if now is None else now
        return await self._select_jobs("status='scheduled' AND due_time > ?", (now,), "due_time ASC")

    async def list_pending(self) -> List[Job]:
        """Return every scheduled job regardless of its due time."""
        return await self._select_jobs("status='scheduled'", (), "due_time ASC")

    async def count_scheduled(self) -> int:
        """Return the number of jobs still awaiting delivery."""
        async with self._connect() as db:
            async with db.execute("SELECT COUNT(*) FROM jobs WHERE status='scheduled'") as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    async def existing_job_ids(self, ids: Iterable[str]) -> set[str]:
        """Return the subset of ids that already exist in storage."""
        id_list = [jid for jid in ids if jid]
        if not id_list:
            return set()
        placeholders = ",".join("?" for _ in id_list)
        async with self._connect() as db:
            async with db.execute(
                f"SELECT job_id FROM jobs WHERE job_id IN ({placeholders})",
                id_list,
            ) as cur:
                rows = await cur.fetchall()
        return {row[0] for row in rows}

    # Rate windows -------------------------------------------------------------
    async def admit_in_window(self, sender: str, hour_bucket: str, window_start: float, limit: int) -> bool:
        """Create or increment the (sender, hour) counter unless it reached ``limit``.

        The check and the increment are one conditional upsert, so concurrent
        callers can never push the counter past ``limit``.
        """
        if limit < 1:
            return False
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO rate_windows (sender, hour_bucket, window_start, email_count)
                VALUES (?, ?, ?, 1)
                ON CONFLICT(sender, hour_bucket) DO UPDATE SET
                    email_count = rate_windows.email_count + 1
                WHERE rate_windows.email_count < ?
                """,
                (sender, hour_bucket, window_start, limit),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def window_count(self, sender: str, hour_bucket: str) -> int:
        """Return how many attempts were admitted for the window (0 if absent)."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT email_count FROM rate_windows WHERE sender=? AND hour_bucket=?",
                (sender, hour_bucket),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def prune_windows_before(self, threshold: float) -> int:
        """Delete windows that started before ``threshold``."""
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM rate_windows WHERE window_start < ?", (threshold,))
            await db.commit()
            return cursor.rowcount
