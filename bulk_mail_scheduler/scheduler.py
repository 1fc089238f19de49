"""Due-time ordered work queue shared by the dispatcher workers."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import Job, QueueEntry


class QueueClosed(Exception):
    """Raised by :meth:`Scheduler.get` once the queue has been closed."""


class Scheduler:
    """Hold jobs until their due time and hand each one out exactly once.

    Entries live in a heap ordered by ``(due_time, sequence)``. Replacing or
    cancelling an entry only drops it from the index; the stale heap item is
    discarded when it surfaces. Every mutation happens under the condition's
    lock, and waiting workers are woken on insertion so they can shorten
    their timeout to the new earliest due time.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._heap: List[Tuple[float, int, str]] = []
        self._entries: Dict[str, Tuple[int, QueueEntry]] = {}
        self._counter = itertools.count()
        self._cond = asyncio.Condition()
        self._closed = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._entries

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------ internals
    def _push(self, job: Job, due_time: float) -> QueueEntry:
        seq = next(self._counter)
        entry = QueueEntry(job_id=job.job_id, due_time=float(due_time), job=job)
        self._entries[job.job_id] = (seq, entry)
        heapq.heappush(self._heap, (entry.due_time, seq, job.job_id))
        return entry

    def _discard_stale(self) -> None:
        while self._heap:
            _, seq, job_id = self._heap[0]
            current = self._entries.get(job_id)
            if current is not None and current[0] == seq:
                return
            heapq.heappop(self._heap)

    def _pop_due(self, now: float) -> Optional[QueueEntry]:
        self._discard_stale()
        if not self._heap or self._heap[0][0] > now:
            return None
        _, _, job_id = heapq.heappop(self._heap)
        _, entry = self._entries.pop(job_id)
        return entry

    def _next_due(self) -> Optional[float]:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    # ------------------------------------------------------------ public API
    async def enqueue(self, job: Job, due_time: Optional[float] = None) -> QueueEntry:
        """Admit ``job`` for dispatch no earlier than ``due_time``.

        A due time in the past makes the job immediately due. A job already
        pending under the same id is replaced.
        """
        due = job.due_time if due_time is None else due_time
        async with self._cond:
            entry = self._push(job, due)
            self._cond.notify_all()
        return entry

    async def requeue(self, job: Job, new_due_time: float) -> QueueEntry:
        """Drop any pending entry for ``job`` and reinsert it at ``new_due_time``."""
        async with self._cond:
            self._entries.pop(job.job_id, None)
            entry = self._push(job.model_copy(update={"due_time": float(new_due_time)}), new_due_time)
            self._cond.notify_all()
        return entry

    async def dequeue_due(self, now: Optional[float] = None) -> List[QueueEntry]:
        """Remove and return every entry whose due time is ``<= now``."""
        now = self._clock() if now is None else now
        due: List[QueueEntry] = []
        async with self._cond:
            while True:
                entry = self._pop_due(now)
                if entry is None:
                    break
                due.append(entry)
        return due

    async def get(self) -> QueueEntry:
        """Wait until the earliest entry is due, then remove and return it."""
        async with self._cond:
            while True:
                if self._closed:
                    raise QueueClosed()
                entry = self._pop_due(self._clock())
                if entry is not None:
                    return entry
                next_due = self._next_due()
                timeout = None if next_due is None else max(0.0, next_due - self._clock())
                try:
                    async with asyncio.timeout(timeout):
                        await self._cond.wait()
                except TimeoutError:
                    pass

    async def cancel(self, job_id: str) -> bool:
        """Remove a pending entry; returns ``False`` if it was not pending."""
        async with self._cond:
            return self._entries.pop(job_id, None) is not None

    async def wake(self) -> None:
        """Make waiting workers re-check the clock (e.g. after a "run now")."""
        async with self._cond:
            self._cond.notify_all()

    async def close(self) -> None:
        """Stop handing out entries; pending ones stay in the job store."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reopen(self) -> None:
        self._closed = False

    def pending(self) -> List[QueueEntry]:
        """Return a snapshot of pending entries ordered by due time."""
        return sorted((entry for _, entry in self._entries.values()), key=lambda e: (e.due_time, e.job_id))

    def next_due_time(self) -> Optional[float]:
        return self._next_due()
