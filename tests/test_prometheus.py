from bulk_mail_scheduler.prometheus import SchedulerMetrics


def test_scheduler_metrics_counters_and_gauge():
    metrics = SchedulerMetrics()

    metrics.inc_sent("a@x.com")
    metrics.inc_failed(None)
    metrics.inc_retried("a@x.com")
    metrics.inc_rate_limited("")
    metrics.set_scheduled(3)

    output = metrics.generate_latest()
    assert b'bms_sent_total{sender="a@x.com"} 1.0' in output
    assert b'bms_failed_total{sender="unknown"} 1.0' in output
    assert b"bms_retried_total" in output
    assert b'bms_rate_limited_total{sender="unknown"} 1.0' in output
    assert b"bms_scheduled_jobs 3.0" in output


def test_instances_use_separate_registries():
    first = SchedulerMetrics()
    second = SchedulerMetrics()
    first.inc_sent("a@x.com")
    assert b'sender="a@x.com"' not in second.generate_latest()
