"""Exceptions raised by the scheduling and dispatch core."""

from __future__ import annotations

from typing import Optional


class SchedulerError(RuntimeError):
    """Base class for all errors raised by the service."""

    code = "scheduler_error"


class SubmissionError(SchedulerError, ValueError):
    """Raised when a bulk submission is rejected before anything is stored."""

    code = "invalid_submission"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class DuplicateJobId(SchedulerError):
    """Raised when a job id collides with an existing row."""

    code = "duplicate_job_id"

    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' already exists")
        self.job_id = job_id


class JobNotFound(SchedulerError):
    """Raised when a job does not exist or is not in the expected state."""

    code = "job_not_found"

    def __init__(self, job_id: str, detail: str = "not found"):
        super().__init__(f"Job '{job_id}' {detail}")
        self.job_id = job_id


class RateLimitExceeded(SchedulerError):
    """Signals an administrative reschedule, never a delivery failure."""

    code = "rate_limited"

    def __init__(self, sender: str, retry_at: float):
        super().__init__(f"Hourly quota reached for {sender}; retry at {retry_at:.0f}")
        self.sender = sender
        self.retry_at = retry_at


class SendTransportError(SchedulerError):
    """Raised by the send collaborator when a delivery attempt fails."""

    code = "send_failed"

    def __init__(self, message: str, *, smtp_code: Optional[int] = None):
        super().__init__(message)
        self.smtp_code = smtp_code


class PersistenceError(SchedulerError):
    """Raised when the job store cannot be read or written."""

    code = "persistence_unavailable"
