"""
Prometheus metrics for publishers and subscriber runtimes.

Metrics are registered once per registry; :func:`get_metrics` returns the
process-wide instance bound to the default prometheus registry. :func:`serve_metrics`
exposes a registry over HTTP for scraping.
"""

from __future__ import annotations

import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)

METRIC_PREFIX = "fanout_"


class FanoutMetrics:
    """Counters and gauges for the broadcast dispatch engine."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry if registry is not None else REGISTRY

        self.events_published = Counter(
            f"{METRIC_PREFIX}events_published_total",
            "Total number of events handed to the broadcast channel",
            ["exchange", "action_kind"],
            registry=self.registry,
        )

        self.publish_failures = Counter(
            f"{METRIC_PREFIX}publish_failures_total",
            "Total number of events the publisher failed to hand off",
            ["exchange"],
            registry=self.registry,
        )

        self.events_handled = Counter(
            f"{METRIC_PREFIX}events_handled_total",
            "Total number of deliveries processed by a consumer role",
            ["role", "outcome"],
            registry=self.registry,
        )

        self.handle_duration = Histogram(
            f"{METRIC_PREFIX}handle_duration_seconds",
            "Time spent in a consumer policy handling one event",
            ["role"],
            buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
            registry=self.registry,
        )

        self.reconnects = Counter(
            f"{METRIC_PREFIX}reconnects_total",
            "Total number of subscriber reconnects after a transport failure",
            ["role"],
            registry=self.registry,
        )

        self.runtime_running = Gauge(
            f"{METRIC_PREFIX}runtime_running",
            "Whether a consumer role runtime is currently running",
            ["role"],
            registry=self.registry,
        )

    def record_published(self, exchange: str, action_kind: str) -> None:
        self.events_published.labels(exchange=exchange, action_kind=action_kind).inc()

    def record_publish_failure(self, exchange: str) -> None:
        self.publish_failures.labels(exchange=exchange).inc()

    def record_handled(self, role: str, outcome: str, duration: float | None = None) -> None:
        """Record one delivery outcome: ``acked``, ``failed`` or ``rejected``."""
        self.events_handled.labels(role=role, outcome=outcome).inc()
        if duration is not None:
            self.handle_duration.labels(role=role).observe(duration)

    def record_reconnect(self, role: str) -> None:
        self.reconnects.labels(role=role).inc()

    def set_running(self, role: str, running: bool) -> None:
        self.runtime_running.labels(role=role).set(1 if running else 0)


_metrics: FanoutMetrics | None = None


def get_metrics() -> FanoutMetrics:
    """Return the process-wide metrics instance, creating it on first use."""
    global _metrics
    if _metrics is None:
        _metrics = FanoutMetrics()
        logger.debug("Registered %s* metrics", METRIC_PREFIX)
    return _metrics


def serve_metrics(port: int, address: str = "0.0.0.0", registry: CollectorRegistry | None = None) -> bool:
    """Start the Prometheus HTTP exposition server in a daemon thread.

    Returns False when the port cannot be bound; consumers keep running without
    an exposition endpoint in that case.
    """
    try:
        start_http_server(port, addr=address, registry=registry if registry is not None else REGISTRY)
    except OSError as e:
        logger.error("Failed to start Prometheus metrics server on %s:%d: %s", address, port, e)
        return False

    logger.info("Prometheus metrics server started on %s:%d", address, port)
    return True
