"""Pydantic models shared by the store, the scheduler and the API.

Models:
    - JobStatus: lifecycle states of a job
    - Job: one scheduled email-send task, as persisted
    - QueueEntry: ephemeral scheduling handle owned by the Scheduler
    - ScheduledJob: submission receipt returned to callers
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Lifecycle states. ``sent`` and ``failed`` are terminal."""

    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"


class Job(BaseModel):
    """One email-send task.

    Attributes:
        job_id: Stable identifier, reused across retries and reschedules.
        user_id: Owner of the bulk submission.
        sender: Sender email address, also the rate-limit identity.
        due_time: Epoch seconds at or after which the job may be dispatched.
        attempts: Failed delivery attempts recorded so far.
        hourly_limit: Optional per-job cap on the sender's hourly window.
    """

    job_id: str
    user_id: str
    recipient: str
    subject: str
    body: str
    sender: str
    due_time: float
    status: JobStatus = JobStatus.SCHEDULED
    sent_at: Optional[float] = None
    error_message: Optional[str] = None
    attempts: int = Field(default=0, ge=0)
    hourly_limit: Optional[int] = Field(default=None, gt=0)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


class QueueEntry(BaseModel):
    """A job waiting in the Scheduler until ``due_time``."""

    job_id: str
    due_time: float
    job: Job


class ScheduledJob(BaseModel):
    """Receipt for one recipient of a bulk submission."""

    job_id: str
    recipient: str
    due_time: float
