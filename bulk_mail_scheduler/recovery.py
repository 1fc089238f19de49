"""Startup reconciliation of the job store into the in-memory scheduler."""

from __future__ import annotations

import time
from typing import Callable, Optional

from .logger import get_logger
from .persistence import JobStore
from .scheduler import Scheduler


class RecoveryProcedure:
    """Re-enqueue every ``scheduled`` job before the dispatcher starts.

    Jobs whose due time passed while the process was down are enqueued as
    immediately due rather than dropped. Sent and failed rows are never read,
    so running the procedure twice cannot re-dispatch finished work, and the
    scheduler replaces entries by job id so nothing is queued twice.
    """

    def __init__(self, store: JobStore, scheduler: Scheduler, logger=None, clock: Callable[[], float] = time.time):
        self.store = store
        self.scheduler = scheduler
        self.logger = logger or get_logger()
        self._clock = clock

    async def recover(self, now: Optional[float] = None) -> int:
        """Restore pending jobs into the scheduler; returns how many were restored."""
        now = self._clock() if now is None else now
        restored = 0
        overdue = 0
        for job in await self.store.list_pending():
            due = job.due_time
            if due - now <= 0:
                overdue += 1
                due = now
            await self.scheduler.enqueue(job, due)
            restored += 1
            self.logger.debug("Restored job %s for %s due at %.3f", job.job_id, job.recipient, due)
        if restored:
            self.logger.info("Restored %d pending jobs (%d overdue, firing now)", restored, overdue)
        else:
            self.logger.info("No pending jobs to restore")
        return restored
