"""Worker pool that delivers due jobs under quota, pacing and retry rules."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, List, Optional

from .errors import JobNotFound, PersistenceError, RateLimitExceeded
from .logger import get_logger
from .models import Job, JobStatus, QueueEntry
from .persistence import JobStore
from .prometheus import SchedulerMetrics
from .rate_limit import RateLimiter
from .scheduler import QueueClosed, Scheduler
from .transport import MailSender

DEFAULT_CONCURRENCY = 5
DEFAULT_MIN_DELAY_MS = 2000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_MS = 5000
DEFAULT_SEND_TIMEOUT = 30.0
DEFAULT_PERSIST_RETRIES = 3
DEFAULT_PERSIST_BACKOFF = 1.0
DEFAULT_OUTAGE_DELAY = 30.0

OUTCOME_SENT = "sent"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_RATE_LIMITED = "rate_limited"
OUTCOME_SKIPPED = "skipped"
OUTCOME_DEFERRED = "deferred"


def calculate_retry_delay(attempt: int, base_ms: int = DEFAULT_RETRY_BACKOFF_MS) -> float:
    """Return the backoff in seconds after the ``attempt``-th failure (1-based).

    The delay doubles on each failure: 5s, 10s, 20s... with the default base.
    """
    return (max(0, int(base_ms)) / 1000.0) * (2 ** max(0, attempt - 1))


class Dispatcher:
    """Pull due jobs from the :class:`Scheduler` and deliver them.

    Each of the ``concurrency`` workers runs one job at a time, so the pool
    size is the ceiling on in-flight sends. Rate-limited jobs are moved to the
    next hour window without consuming a retry; transport failures are
    retried with exponential backoff and finally recorded as ``failed``.
    When the job store stays unavailable the job goes back in the queue
    ``outage_delay`` seconds later instead of being dropped.
    """

    def __init__(
        self,
        store: JobStore,
        scheduler: Scheduler,
        rate_limiter: RateLimiter,
        sender: MailSender,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        min_delay_ms: int = DEFAULT_MIN_DELAY_MS,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_backoff_ms: int = DEFAULT_RETRY_BACKOFF_MS,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        persist_retries: int = DEFAULT_PERSIST_RETRIES,
        persist_backoff: float = DEFAULT_PERSIST_BACKOFF,
        outage_delay: float = DEFAULT_OUTAGE_DELAY,
        metrics: SchedulerMetrics | None = None,
        logger=None,
        clock: Callable[[], float] = time.time,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.scheduler = scheduler
        self.rate_limiter = rate_limiter
        self.sender = sender
        self.concurrency = max(1, int(concurrency))
        self.min_delay = max(0, int(min_delay_ms)) / 1000.0
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_backoff_ms = max(0, int(retry_backoff_ms))
        self.send_timeout = float(send_timeout)
        self.persist_retries = max(1, int(persist_retries))
        self.persist_backoff = max(0.0, float(persist_backoff))
        self.outage_delay = max(0.0, float(outage_delay))
        self.metrics = metrics or SchedulerMetrics()
        self.logger = logger or get_logger()
        self._clock = clock
        self._log_delivery_activity = bool(log_delivery_activity)
        self._inflight = asyncio.Semaphore(self.concurrency)
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self.running:
            return
        self.scheduler.reopen()
        self._workers = [
            asyncio.create_task(self._worker_loop(idx), name=f"dispatch-worker-{idx}")
            for idx in range(self.concurrency)
        ]
        self.logger.info("Dispatcher started with concurrency %d", self.concurrency)

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop taking new jobs and give in-flight sends ``timeout`` seconds to finish.

        Abandoned jobs remain ``scheduled`` in the store and are recovered on
        the next start.
        """
        await self.scheduler.close()
        if not self._workers:
            return
        _, still_running = await asyncio.wait(self._workers, timeout=timeout)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        if still_running:
            self.logger.warning("Abandoned %d in-flight jobs at shutdown", len(still_running))
        self._workers = []

    async def _worker_loop(self, worker_id: int) -> None:
        self.logger.debug("Worker %d started", worker_id)
        while True:
            try:
                entry = await self.scheduler.get()
            except QueueClosed:
                self.logger.debug("Worker %d stopping", worker_id)
                return
            try:
                await self.process(entry)
            except Exception as exc:
                self.logger.exception("Unhandled error while dispatching job %s: %s", entry.job_id, exc)

    # ------------------------------------------------------------------ helpers
    async def _persist(self, action: str, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Run a store operation, retrying with backoff while the store is unavailable."""
        delay = self.persist_backoff
        for attempt in range(1, self.persist_retries + 1):
            try:
                return await func(*args)
            except PersistenceError as exc:
                if attempt >= self.persist_retries:
                    self.logger.error("Giving up on %s after %d attempts: %s", action, attempt, exc)
                    raise
                self.logger.warning(
                    "Job store error while %s (attempt %d/%d): %s - retrying in %.1fs",
                    action,
                    attempt,
                    self.persist_retries,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

    # --------------------------------------------------------------- processing
    async def process(self, entry: QueueEntry) -> str:
        """Run one dispatch attempt for ``entry`` and return its outcome label."""
        try:
            job = await self._persist(f"loading job {entry.job_id}", self.store.get, entry.job_id)
        except PersistenceError as exc:
            return await self._defer(entry.job, exc)
        if job is None or job.status != JobStatus.SCHEDULED:
            self.logger.debug("Skipping job %s: no longer scheduled", entry.job_id)
            return OUTCOME_SKIPPED

        try:
            await self._persist(
                f"checking quota for {job.sender}",
                self.rate_limiter.admit,
                job.sender,
                self._clock(),
                job.hourly_limit,
            )
        except RateLimitExceeded as limited:
            return await self._reschedule_rate_limited(job, limited)
        except PersistenceError as exc:
            return await self._defer(job, exc)

        if self.min_delay:
            await asyncio.sleep(self.min_delay)

        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for job %s to %s (sender=%s, attempt %d/%d)",
                job.job_id,
                job.recipient,
                job.sender,
                job.attempts + 1,
                self.retry_attempts,
            )

        try:
            async with self._inflight:
                message_id = await asyncio.wait_for(
                    self.sender.send(job.sender, job.recipient, job.subject, job.body),
                    timeout=self.send_timeout,
                )
        except Exception as exc:
            return await self._handle_failure(job, exc)

        return await self._handle_success(job, message_id)

    async def _defer(self, job: Job, exc: PersistenceError) -> str:
        """Put ``job`` back in the queue while the job store is unavailable."""
        retry_at = self._clock() + self.outage_delay
        self.logger.error(
            "Job store unavailable while dispatching job %s: %s - retrying in %.1fs",
            job.job_id,
            exc,
            self.outage_delay,
        )
        await self.scheduler.requeue(job, retry_at)
        return OUTCOME_DEFERRED

    async def _reschedule_rate_limited(self, job: Job, limited: RateLimitExceeded) -> str:
        retry_at = limited.retry_at
        try:
            await self._persist(f"rescheduling job {job.job_id}", self.store.reschedule, job.job_id, retry_at)
        except PersistenceError as exc:
            # The stored due time stays behind; recovery then treats the job as overdue.
            self.logger.error("Could not persist new due time of job %s: %s", job.job_id, exc)
        await self.scheduler.requeue(job, retry_at)
        self.metrics.inc_rate_limited(job.sender)
        self.logger.info("Job %s rescheduled: %s", job.job_id, limited)
        return OUTCOME_RATE_LIMITED

    async def _handle_success(self, job: Job, message_id: Optional[str]) -> str:
        try:
            await self._persist(f"marking job {job.job_id} sent", self.store.mark_sent, job.job_id, self._clock())
        except JobNotFound as exc:
            self.logger.warning("Delivered job %s could not be marked sent: %s", job.job_id, exc)
            return OUTCOME_SKIPPED
        except PersistenceError as exc:
            # Not requeued: the message is out. A restart may send it again.
            self.logger.error("Delivered job %s could not be marked sent: %s", job.job_id, exc)
        self.metrics.inc_sent(job.sender)
        self.logger.info("Job %s sent to %s (message id %s)", job.job_id, job.recipient, message_id or "-")
        return OUTCOME_SENT

    async def _handle_failure(self, job: Job, exc: Exception) -> str:
        error_message = str(exc) or exc.__class__.__name__
        attempt = job.attempts + 1
        retry_at = self._clock() + calculate_retry_delay(attempt, self.retry_backoff_ms)
        try:
            attempts = await self._persist(
                f"recording attempt for job {job.job_id}", self.store.record_attempt, job.job_id, retry_at
            )
        except JobNotFound as not_found:
            self.logger.warning("Failed job %s is no longer scheduled: %s", job.job_id, not_found)
            return OUTCOME_SKIPPED
        except PersistenceError as store_exc:
            return await self._defer(job, store_exc)

        if attempts >= self.retry_attempts:
            self.logger.error(
                "Job %s failed permanently after %d attempts: %s", job.job_id, attempts, error_message
            )
            try:
                await self._persist(
                    f"marking job {job.job_id} failed", self.store.mark_failed, job.job_id, error_message
                )
            except PersistenceError as store_exc:
                return await self._defer(job.model_copy(update={"attempts": attempts}), store_exc)
            self.metrics.inc_failed(job.sender)
            return OUTCOME_FAILED

        self.logger.warning(
            "Send error for job %s (attempt %d/%d): %s - retrying in %.1fs",
            job.job_id,
            attempts,
            self.retry_attempts,
            error_message,
            retry_at - self._clock(),
        )
        await self.scheduler.requeue(job.model_copy(update={"attempts": attempts}), retry_at)
        self.metrics.inc_retried(job.sender)
        return OUTCOME_RETRY
