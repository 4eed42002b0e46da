# notifier/metrics.py
"""Prometheus metrics exposed by the notification service."""
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

DURATION_BUCKETS = (0.05, 0.1, 0.2, 0.5, 1, 2, 5)


class NotificationMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None, include_default_collectors: bool = True):
        """Create counters and histograms inside the provided registry."""
        self.registry = registry or CollectorRegistry()

        self.http_requests = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            ["method", "path", "status_code"],
            registry=self.registry,
        )
        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "Histogram of HTTP request durations in seconds",
            ["method", "path", "status_code"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )
        self.notification_events = Counter(
            "notification_events_total",
            "Total number of Notification Events",
            ["notification_type"],
            registry=self.registry,
        )
        self.notification_event_duration = Histogram(
            "notification_event_duration_seconds",
            "Histogram of notification request processing durations in seconds",
            ["notification_type", "success"],
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )

        if include_default_collectors:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

    def inc_http_request(self, method: str, path: str, status_code: int):
        self.http_requests.labels(method=method, path=path, status_code=str(status_code)).inc()

    def observe_http_request_duration(self, method: str, path: str, status_code: int, duration_seconds: float):
        self.http_request_duration.labels(
            method=method, path=path, status_code=str(status_code)
        ).observe(duration_seconds)

    def inc_notification_event(self, notification_type: str):
        """Increase the notification counter for the given type."""
        self.notification_events.labels(notification_type=notification_type).inc()

    def observe_notification_duration(self, notification_type: str, success: bool, duration_seconds: float):
        """Record how long one dispatch took, labeled ``success="true"|"false"``."""
        self.notification_event_duration.labels(
            notification_type=notification_type,
            success=str(success).lower(),
        ).observe(duration_seconds)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
