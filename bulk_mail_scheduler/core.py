"""Core orchestration for the scheduled bulk mail dispatcher."""

from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .dispatcher import (
    DEFAULT_CONCURRENCY,
    DEFAULT_MIN_DELAY_MS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF_MS,
    DEFAULT_SEND_TIMEOUT,
    Dispatcher,
)
from .errors import DuplicateJobId, PersistenceError, SubmissionError
from .logger import get_logger
from .models import Job, ScheduledJob
from .persistence import JobStore
from .prometheus import SchedulerMetrics
from .rate_limit import DEFAULT_MAX_PER_HOUR, RateLimiter
from .recipients import normalise_recipients, parse_recipients_csv
from .recovery import RecoveryProcedure
from .scheduler import Scheduler
from .transport import MailSender, SMTPTransport

DEFAULT_MAX_RECIPIENTS = 10000
TimeLike = Union[float, int, datetime, str, None]


def to_epoch(value: TimeLike, default: float) -> float:
    """Coerce epoch numbers, ISO-8601 strings and datetimes into epoch seconds.

    Naive datetimes are read as UTC.
    """
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise SubmissionError(f"Invalid start_time: {value!r}", code="invalid_start_time") from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class BulkMailCore:
    """Own the job store, scheduler, rate limiter and dispatcher of one process."""

    def __init__(
        self,
        *,
        db_path: str = "/data/bulk_mail.db",
        sender: MailSender | None = None,
        logger=None,
        metrics: SchedulerMetrics | None = None,
        clock: Callable[[], float] = time.time,
        max_emails_per_hour: int = DEFAULT_MAX_PER_HOUR,
        worker_concurrency: int = DEFAULT_CONCURRENCY,
        min_delay_between_emails_ms: int = DEFAULT_MIN_DELAY_MS,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        rate_window_retention_hours: int = 48,
        cleanup_interval: float = 300.0,
        max_recipients: int = DEFAULT_MAX_RECIPIENTS,
        log_delivery_activity: bool = False,
    ):
        """Wire the collaborators; nothing touches the database until :meth:`start`."""
        self.logger = logger or get_logger()
        self.metrics = metrics or SchedulerMetrics()
        self._clock = clock
        self.store = JobStore(db_path, clock=clock)
        self.scheduler = Scheduler(clock=clock)
        self.rate_limiter = RateLimiter(self.store, max_per_hour=max_emails_per_hour, clock=clock)
        self.sender = sender or SMTPTransport()
        self.dispatcher = Dispatcher(
            self.store,
            self.scheduler,
            self.rate_limiter,
            self.sender,
            concurrency=worker_concurrency,
            min_delay_ms=min_delay_between_emails_ms,
            retry_attempts=retry_attempts,
            retry_backoff_ms=retry_backoff_ms,
            send_timeout=send_timeout,
            metrics=self.metrics,
            logger=self.logger,
            clock=clock,
            log_delivery_activity=log_delivery_activity,
        )
        self.recovery = RecoveryProcedure(self.store, self.scheduler, logger=self.logger, clock=clock)
        self._rate_window_retention_hours = int(rate_window_retention_hours)
        self._cleanup_interval = max(1.0, float(cleanup_interval))
        self._max_recipients = max(1, int(max_recipients))
        self._stop = asyncio.Event()
        self._task_cleanup: Optional[asyncio.Task] = None

    # ----------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create the schema and refresh gauges."""
        await self.store.init_db()
        await self._refresh_scheduled_gauge()

    async def start(self) -> None:
        """Recover pending jobs, then start the workers and the cleanup loop."""
        self.logger.debug("Starting BulkMailCore...")
        await self.init()
        self._stop.clear()
        await self.recovery.recover()
        await self.dispatcher.start()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="rate-window-cleanup-loop")

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop dequeuing, let in-flight sends finish for ``timeout`` seconds, then close."""
        self._stop.set()
        await self.dispatcher.stop(timeout=timeout)
        if self._task_cleanup:
            self._task_cleanup.cancel()
            await asyncio.gather(self._task_cleanup, return_exceptions=True)
            self._task_cleanup = None
        close = getattr(self.sender, "close", None)
        if close is not None:
            await close()

    # ---------------------------------------------------------------- submission
    def _new_job_id(self) -> str:
        return f"email-{int(self._clock() * 1000)}-{uuid.uuid4().hex[:9]}"

    async def submit(
        self,
        user_id: str,
        sender: str,
        subject: str,
        body: str,
        recipients: Union[Sequence[str], str],
        start_time: TimeLike = None,
        delay_between_emails_ms: int = 0,
        hourly_limit: Optional[int] = None,
    ) -> List[ScheduledJob]:
        """Schedule one job per recipient at ``start_time + i * delay``.

        Recipients may be a list of addresses or CSV text. Every job is
        persisted before any is queued, in a single transaction.
        """
        missing = [
            name
            for name, value in (("user_id", user_id), ("sender_email", sender), ("subject", subject), ("body", body))
            if not value
        ]
        if missing:
            raise SubmissionError(f"Missing required fields: {', '.join(missing)}", code="missing_fields")
        if recipients is None or (not isinstance(recipients, str) and len(recipients) == 0):
            raise SubmissionError("No recipients provided", code="no_recipients")
        if isinstance(recipients, str):
            addresses = parse_recipients_csv(recipients)
        else:
            addresses = normalise_recipients(recipients)
        if not addresses:
            raise SubmissionError("No valid email addresses found", code="no_valid_recipients")
        if len(addresses) > self._max_recipients:
            raise SubmissionError(
                f"Cannot schedule more than {self._max_recipients} recipients at once", code="too_many_recipients"
            )
        delay_ms = int(delay_between_emails_ms or 0)
        if delay_ms < 0:
            raise SubmissionError("delay_between_emails must not be negative", code="invalid_delay")
        if hourly_limit is not None and int(hourly_limit) <= 0:
            raise SubmissionError("hourly_limit must be positive", code="invalid_hourly_limit")

        now = self._clock()
        start = to_epoch(start_time, now)
        jobs = [
            Job(
                job_id=self._new_job_id(),
                user_id=str(user_id),
                recipient=address,
                subject=subject,
                body=body,
                sender=sender,
                due_time=start + (idx * delay_ms) / 1000.0,
                hourly_limit=hourly_limit,
                created_at=now,
            )
            for idx, address in enumerate(addresses)
        ]
        await self.store.create_many(jobs)
        for job in jobs:
            await self.scheduler.enqueue(job, job.due_time)
        await self._refresh_scheduled_gauge()
        self.logger.info(
            "Scheduled %d emails from %s for user %s (start=%.3f, delay=%dms)",
            len(jobs),
            sender,
            user_id,
            start,
            delay_ms,
        )
        return [ScheduledJob(job_id=job.job_id, recipient=job.recipient, due_time=job.due_time) for job in jobs]

    # ------------------------------------------------------------------- queries
    async def list_scheduled(self, user_id: str) -> List[Job]:
        return await self.store.list_scheduled(user_id)

    async def list_sent_or_failed(self, user_id: str) -> List[Job]:
        return await self.store.list_sent_or_failed(user_id)

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "run now":
            await self.scheduler.wake()
            return {"ok": True}
        if cmd == "schedule":
            return await self._handle_schedule(payload)
        if cmd == "listScheduled":
            jobs = await self.list_scheduled(str(payload.get("user_id", "")))
            return {"ok": True, "emails": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "listSent":
            jobs = await self.list_sent_or_failed(str(payload.get("user_id", "")))
            return {"ok": True, "emails": [job.model_dump(mode="json") for job in jobs]}
        if cmd == "status":
            return {
                "ok": True,
                "running": self.dispatcher.running,
                "queued": len(self.scheduler),
                "scheduled": await self.store.count_scheduled(),
            }
        return {"ok": False, "error": "unknown command"}

    async def _handle_schedule(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            jobs = await self.submit(
                payload.get("user_id"),
                payload.get("sender_email"),
                payload.get("subject"),
                payload.get("body"),
                payload.get("recipients"),
                start_time=payload.get("start_time"),
                delay_between_emails_ms=payload.get("delay_between_emails") or 0,
                hourly_limit=payload.get("hourly_limit"),
            )
        except (SubmissionError, DuplicateJobId, PersistenceError) as exc:
            self.logger.warning("Rejected schedule request: %s", exc)
            return {"ok": False, "error": str(exc), "code": exc.code}
        return {
            "ok": True,
            "count": len(jobs),
            "jobs": [job.model_dump(mode="json") for job in jobs],
        }

    # -------------------------------------------------------------- housekeeping
    async def _cleanup_loop(self) -> None:
        """Prune old rate windows and idle SMTP connections periodically."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self._cleanup_interval):
                    await self._stop.wait()
                return
            except TimeoutError:
                pass
            try:
                await self.run_cleanup()
            except Exception as exc:
                self.logger.exception("Unhandled error in cleanup loop: %s", exc)

    async def run_cleanup(self) -> int:
        """Run one housekeeping pass; returns the rate windows removed."""
        removed = await self.rate_limiter.prune(retention_hours=self._rate_window_retention_hours)
        if removed:
            self.logger.info("Pruned %d expired rate windows", removed)
        cleanup = getattr(self.sender, "cleanup", None)
        if cleanup is not None:
            await cleanup()
        await self._refresh_scheduled_gauge()
        return removed

    async def _refresh_scheduled_gauge(self) -> None:
        try:
            count = await self.store.count_scheduled()
        except PersistenceError:
            self.logger.exception("Failed to refresh scheduled gauge")
            return
        self.metrics.set_scheduled(count)
