"""Prometheus metrics exposed by the dispatcher."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SchedulerMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("bms_sent_total", "Total sent emails", ["sender"], registry=self.registry)
        self.failed = Counter("bms_failed_total", "Emails failed after exhausting retries", ["sender"], registry=self.registry)
        self.retried = Counter("bms_retried_total", "Send attempts scheduled for retry", ["sender"], registry=self.registry)
        self.rate_limited = Counter(
            "bms_rate_limited_total", "Jobs rescheduled by the hourly quota", ["sender"], registry=self.registry
        )
        self.scheduled = Gauge("bms_scheduled_jobs", "Jobs waiting for dispatch", registry=self.registry)

    def inc_sent(self, sender: str):
        self.sent.labels(sender=sender or "unknown").inc()

    def inc_failed(self, sender: str):
        self.failed.labels(sender=sender or "unknown").inc()

    def inc_retried(self, sender: str):
        self.retried.labels(sender=sender or "unknown").inc()

    def inc_rate_limited(self, sender: str):
        self.rate_limited.labels(sender=sender or "unknown").inc()

    def set_scheduled(self, value: int):
        """Update the gauge tracking jobs still in ``scheduled`` state."""
        self.scheduled.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
