"""
Observability metrics module.

Operates in two modes:
1. No-op mode: every call exists but does nothing (METRICS_ENABLED=False)
2. Active mode: Prometheus counters in a registry owned by the manager
"""

import time
import typing as t
from contextlib import contextmanager

from flask import current_app, has_app_context


class MetricsManager:
    """Central manager for metrics operations."""

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.registry = None
        self._initialize_metrics()

    def _initialize_metrics(self) -> None:
        """Initialize metric objects based on enabled state."""
        if self.enabled:
            from prometheus_client import CollectorRegistry, Counter, Histogram

            self.registry = CollectorRegistry()

            self.webhook_deliveries_total = Counter(
                "webhook_deliveries_total",
                "Inbound processor notifications by outcome",
                ["outcome"],
                registry=self.registry,
            )
            self.event_dispatch_total = Counter(
                "event_dispatch_total",
                "Event handler runs by event type and outcome",
                ["event_type", "outcome"],
                registry=self.registry,
            )
            self.payment_retries_total = Counter(
                "payment_retries_total",
                "Payment collection retries by outcome",
                ["outcome"],
                registry=self.registry,
            )
            self.dunning_actions_total = Counter(
                "dunning_actions_total",
                "Dunning reminders and cancellations",
                ["action"],
                registry=self.registry,
            )
            self.job_runs_total = Counter(
                "job_runs_total",
                "Periodic job executions",
                ["job", "status"],
                registry=self.registry,
            )
            self.job_duration_seconds = Histogram(
                "job_duration_seconds",
                "Periodic job latency in seconds",
                ["job"],
                buckets=(0.1, 0.5, 1.0, 5.0, 30.0, 120.0, 600.0),
                registry=self.registry,
            )
        else:
            self.webhook_deliveries_total = _DummyMetric()
            self.event_dispatch_total = _DummyMetric()
            self.payment_retries_total = _DummyMetric()
            self.dunning_actions_total = _DummyMetric()
            self.job_runs_total = _DummyMetric()
            self.job_duration_seconds = _DummyMetric()

    def record_webhook(self, outcome: str) -> None:
        self.webhook_deliveries_total.labels(outcome=outcome).inc()

    def record_dispatch(self, event_type: str, outcome: str) -> None:
        self.event_dispatch_total.labels(event_type=event_type, outcome=outcome).inc()

    def record_retry(self, outcome: str) -> None:
        self.payment_retries_total.labels(outcome=outcome).inc()

    def record_dunning(self, action: str) -> None:
        self.dunning_actions_total.labels(action=action).inc()

    def record_job(self, job: str, status: str) -> None:
        self.job_runs_total.labels(job=job, status=status).inc()

    @contextmanager
    def observe_job(self, job: str) -> t.Generator[None, None, None]:
        """Time a job run."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            self.job_duration_seconds.labels(job=job).observe(time.perf_counter() - start_time)

    def export(self):
        """Prometheus exposition payload, or None in no-op mode."""
        if not self.enabled:
            return None
        from prometheus_client import generate_latest

        return generate_latest(self.registry)


class _DummyMetric:
    """Dummy metric object that mimics Prometheus metric interface."""

    def labels(self, **labels: str) -> "_DummyMetric":
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, value: float) -> None:
        pass


_disabled_metrics = MetricsManager(enabled=False)


def init_metrics(app):
    manager = MetricsManager(enabled=app.config.get("METRICS_ENABLED", False))
    app.extensions["metrics"] = manager
    return manager


def get_metrics() -> MetricsManager:
    if has_app_context():
        return current_app.extensions.get("metrics", _disabled_metrics)
    return _disabled_metrics
