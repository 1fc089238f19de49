"""Per-sender hourly quota backed by persisted rate windows."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import RateLimitExceeded
from .persistence import JobStore

DEFAULT_MAX_PER_HOUR = 200
HOUR = 3600


class RateLimiter:
    """Admission gate keyed by (sender, UTC calendar hour)."""

    def __init__(
        self,
        store: JobStore,
        max_per_hour: int = DEFAULT_MAX_PER_HOUR,
        clock: Callable[[], float] = time.time,
    ):
        """Store the persistence helper used to read and write counters."""
        self.store = store
        self.max_per_hour = int(max_per_hour)
        self._clock = clock
        self._lock = asyncio.Lock()

    @staticmethod
    def bucket_for(ts: float) -> str:
        """Return the hour bucket identifier (``YYYY-MM-DD-HH``) containing ``ts``."""
        return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d-%H")

    @staticmethod
    def window_start(ts: float) -> int:
        """Return the epoch second at which the hour containing ``ts`` began."""
        return int(ts // HOUR) * HOUR

    @staticmethod
    def next_window_start(ts: float) -> int:
        """Return the start of the hour following the one containing ``ts``."""
        return (int(ts // HOUR) + 1) * HOUR

    def effective_limit(self, limit: Optional[int]) -> int:
        """A per-call limit can only tighten the process-wide quota."""
        if limit is None or int(limit) <= 0:
            return self.max_per_hour
        return min(int(limit), self.max_per_hour)

    async def try_admit(self, sender: str, now: Optional[float] = None, limit: Optional[int] = None) -> bool:
        """Count one attempt for ``sender`` in the current hour if there is room left.

        ``limit`` tightens ``max_per_hour`` for this attempt only; a rejected
        attempt never changes the counter.
        """
        now = self._clock() if now is None else now
        async with self._lock:
            return await self.store.admit_in_window(
                sender,
                self.bucket_for(now),
                self.window_start(now),
                self.effective_limit(limit),
            )

    async def admit(self, sender: str, now: Optional[float] = None, limit: Optional[int] = None) -> None:
        """Like :meth:`try_admit`, but raise :class:`RateLimitExceeded` carrying the next window start."""
        now = self._clock() if now is None else now
        if not await self.try_admit(sender, now, limit):
            raise RateLimitExceeded(sender, self.next_window_start(now))

    async def current_count(self, sender: str, now: Optional[float] = None) -> int:
        """Return the admitted attempts for ``sender`` in the current hour."""
        now = self._clock() if now is None else now
        return await self.store.window_count(sender, self.bucket_for(now))

    async def prune(self, now: Optional[float] = None, retention_hours: int = 48) -> int:
        """Drop windows older than ``retention_hours``; returns the rows removed."""
        now = self._clock() if now is None else now
        threshold = self.window_start(now) - int(retention_hours) * HOUR
        async with self._lock:
            return await self.store.prune_windows_before(threshold)
