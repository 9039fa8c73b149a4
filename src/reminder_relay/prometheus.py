# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the reminder relay."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class ReminderMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("rmd_sent_total", "Emails handed over per channel", ["channel"], registry=self.registry)
        self.transport_errors = Counter(
            "rmd_transport_errors_total", "Failed send attempts per channel", ["channel"], registry=self.registry
        )
        self.quota_skipped = Counter(
            "rmd_quota_skipped_total", "Deliveries that found a channel over its daily quota", ["channel"], registry=self.registry
        )
        self.quota_used = Gauge("rmd_quota_used", "Sends counted against the daily quota", ["channel"], registry=self.registry)
        self.jobs_completed = Counter("rmd_jobs_completed_total", "Jobs delivered", registry=self.registry)
        self.jobs_retried = Counter("rmd_jobs_retried_total", "Failed attempts scheduled for retry", registry=self.registry)
        self.jobs_failed = Counter("rmd_jobs_failed_total", "Jobs that exhausted their attempts", registry=self.registry)
        self.rate_limited = Counter("rmd_rate_limited_total", "Submissions rejected by the rate limiter", registry=self.registry)
        self.scheduled = Counter("rmd_scheduled_total", "Reminders accepted for delivery", registry=self.registry)
        self.pending = Gauge("rmd_pending_jobs", "Jobs waiting or ready for dispatch", registry=self.registry)

    def inc_sent(self, channel: str):
        self.sent.labels(channel=channel or "unknown").inc()

    def inc_transport_error(self, channel: str):
        self.transport_errors.labels(channel=channel or "unknown").inc()

    def inc_quota_skipped(self, channel: str):
        self.quota_skipped.labels(channel=channel or "unknown").inc()

    def set_quota_used(self, channel: str, value: int):
        self.quota_used.labels(channel=channel or "unknown").set(value)

    def inc_job_completed(self):
        self.jobs_completed.inc()

    def inc_job_retried(self):
        self.jobs_retried.inc()

    def inc_job_failed(self):
        self.jobs_failed.inc()

    def inc_rate_limited(self):
        self.rate_limited.inc()

    def inc_scheduled(self):
        self.scheduled.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking jobs not yet dispatched."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
