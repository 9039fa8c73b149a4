from reminder_relay.prometheus import ReminderMetrics


def test_reminder_metrics_counters_and_gauges():
    metrics = ReminderMetrics()

    metrics.inc_sent("sendgrid")
    metrics.inc_transport_error(None)
    metrics.inc_quota_skipped("b@gmail.com")
    metrics.set_quota_used("a@gmail.com", 12)
    metrics.inc_job_completed()
    metrics.inc_job_retried()
    metrics.inc_job_failed()
    metrics.inc_rate_limited()
    metrics.inc_scheduled()
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'rmd_sent_total{channel="sendgrid"} 1.0' in output
    assert b'rmd_transport_errors_total{channel="unknown"} 1.0' in output
    assert b'rmd_quota_used{channel="a@gmail.com"} 12.0' in output
    assert b'rmd_quota_skipped_total{channel="b@gmail.com"} 1.0' in output
    assert b"rmd_jobs_failed_total 1.0" in output
    assert b"rmd_pending_jobs 3.0" in output


def test_registries_are_isolated():
    first = ReminderMetrics()
    second = ReminderMetrics()
    first.inc_scheduled()
    assert b"rmd_scheduled_total 1.0" in first.generate_latest()
    assert b"rmd_scheduled_total 0.0" in second.generate_latest()
