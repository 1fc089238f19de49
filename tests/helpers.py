"""Fakes shared by the unit tests."""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Dict, List

from bulk_mail_scheduler.models import Job

# 800 seconds into the 22:00 UTC hour of 2023-11-14.
BASE_TS = 1_700_000_000.0
NEXT_HOUR = 1_700_002_800


class FakeClock:
    def __init__(self, start: float = BASE_TS):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DummySender:
    """Send collaborator that records calls and fails on demand."""

    def __init__(self, failures: List[Exception] | None = None, delay: float = 0.0):
        self.sent: List[Dict[str, Any]] = []
        self.attempts = 0
        self.failures = list(failures or [])
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, sender, recipient, subject, body):
        self.attempts += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
            self.sent.append({"from": sender, "to": recipient, "subject": subject, "body": body})
            return f"<msg-{self.attempts}@test>"
        finally:
            self.in_flight -= 1


def make_job(job_id: str = "job-1", due_time: float = BASE_TS, **overrides) -> Job:
    data = dict(
        job_id=job_id,
        user_id="user-1",
        recipient=f"{job_id}@example.com",
        subject="Hello",
        body="Body text",
        sender="sender@example.com",
        due_time=due_time,
    )
    data.update(overrides)
    return Job(**data)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` (sync or async) until it is truthy."""
    async with asyncio.timeout(timeout):
        while True:
            result = predicate()
            if inspect.isawaitable(result):
                result = await result
            if result:
                return
            await asyncio.sleep(interval)
