"""
AIGate - Prometheus Metrics

Metrics collection with the Prometheus client library.

Metrics exposed:
- aigate_operations_total: Counter of executed operations by operation, tier, outcome
- aigate_operation_duration_seconds: Histogram of end-to-end operation latency
- aigate_access_denied_total: Counter of gate denials by reason
- aigate_credits_debited_total: Counter of credits debited
- aigate_tokens_total: Counter of provider tokens by model
- aigate_rate_limit_hits_total: Counter of rate limit rejections
- aigate_audit_entries_total / aigate_audit_dropped_total: audit pipeline health
- aigate_usage_alerts_total: Counter of usage alerts by kind
- aigate_token_cache_events_total: credential cache hits, misses, evictions
- aigate_risk_score: Histogram of assessed risk scores

Usage:
    from aigate.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_operation("quiz-mcq", "premium", "success", 1.2)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import Response


class MetricsCollector:
    """
    Central metrics collector using Prometheus client.

    One collector per registry. Tests pass a fresh CollectorRegistry to get
    isolated counters.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.info = Info(
            "aigate",
            "AIGate service information",
            registry=registry,
        )
        self.info.info({
            "version": "1.0.0",
            "service": "aigate",
        })

        self.operations_total = Counter(
            "aigate_operations_total",
            "Total AI operations by outcome",
            labelnames=["operation", "tier", "outcome"],
            registry=registry,
        )

        # AI calls typically range from 0.1s to 60s+
        self.operation_duration = Histogram(
            "aigate_operation_duration_seconds",
            "Operation duration in seconds",
            labelnames=["operation", "tier"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0, float("inf")),
            registry=registry,
        )

        self.active_operations = Gauge(
            "aigate_active_operations",
            "Number of operations currently executing",
            labelnames=["tier"],
            registry=registry,
        )

        self.access_denied = Counter(
            "aigate_access_denied_total",
            "Gate denials by reason",
            labelnames=["reason"],
            registry=registry,
        )

        self.credits_debited = Counter(
            "aigate_credits_debited_total",
            "Total credits debited",
            labelnames=["operation", "tier"],
            registry=registry,
        )

        self.tokens_total = Counter(
            "aigate_tokens_total",
            "Total provider tokens consumed",
            labelnames=["model"],
            registry=registry,
        )

        self.rate_limit_hits = Counter(
            "aigate_rate_limit_hits_total",
            "Total rate limit hits",
            labelnames=["operation", "window"],  # window = second/minute/hour/day
            registry=registry,
        )

        self.audit_entries = Counter(
            "aigate_audit_entries_total",
            "Audit entries written",
            labelnames=["success"],
            registry=registry,
        )

        self.audit_dropped = Counter(
            "aigate_audit_dropped_total",
            "Audit entries dropped because the queue was full",
            registry=registry,
        )

        self.audit_queue_depth = Gauge(
            "aigate_audit_queue_depth",
            "Audit entries waiting to be written",
            registry=registry,
        )

        self.usage_alerts = Counter(
            "aigate_usage_alerts_total",
            "Usage alerts raised",
            labelnames=["kind"],  # kind = high_latency/high_risk/failure
            registry=registry,
        )

        self.token_cache_events = Counter(
            "aigate_token_cache_events_total",
            "Credential cache events",
            labelnames=["provider", "event"],  # event = hit/miss/evict/invalid
            registry=registry,
        )

        self.risk_score = Histogram(
            "aigate_risk_score",
            "Assessed request risk score",
            buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
            registry=registry,
        )

    def record_operation(
        self,
        operation: str,
        tier: str,
        outcome: str,
        duration_seconds: float,
    ):
        """Record a finished operation; outcome is "success" or an error code."""
        self.operations_total.labels(
            operation=operation,
            tier=tier,
            outcome=outcome,
        ).inc()
        self.operation_duration.labels(
            operation=operation,
            tier=tier,
        ).observe(duration_seconds)

    def record_access_denied(self, reason: str):
        self.access_denied.labels(reason=reason or "unknown").inc()

    def record_debit(self, operation: str, tier: str, amount: int):
        if amount > 0:
            self.credits_debited.labels(operation=operation, tier=tier).inc(amount)

    def record_tokens(self, model: str, tokens: int):
        if tokens > 0:
            self.tokens_total.labels(model=model or "unknown").inc(tokens)

    def record_rate_limit_hit(self, operation: str, window: str):
        self.rate_limit_hits.labels(operation=operation, window=window).inc()

    def record_audit_written(self, success: bool, count: int = 1):
        self.audit_entries.labels(success="true" if success else "false").inc(count)

    def record_audit_dropped(self):
        self.audit_dropped.inc()

    def set_audit_queue_depth(self, depth: int):
        self.audit_queue_depth.set(depth)

    def record_usage_alert(self, kind: str):
        self.usage_alerts.labels(kind=kind).inc()

    def record_token_cache_event(self, provider: str, event: str):
        self.token_cache_events.labels(provider=provider, event=event).inc()

    def record_risk_score(self, score: int):
        self.risk_score.observe(score)

    def track_active_operation(self, tier: str) -> "ActiveOperationTracker":
        """Context manager to track in-flight operations."""
        return ActiveOperationTracker(self, tier)


class ActiveOperationTracker:
    """Context manager for tracking in-flight operations."""

    def __init__(self, collector: MetricsCollector, tier: str):
        self.collector = collector
        self.tier = tier

    def __enter__(self):
        self.collector.active_operations.labels(tier=self.tier).inc()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.collector.active_operations.labels(tier=self.tier).dec()


# Module-level functions for convenience
_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times - returns existing instance for the same registry.
    """
    global _metrics_instance

    if _metrics_instance is not None and _metrics_instance.registry is registry:
        return _metrics_instance

    _metrics_instance = MetricsCollector(registry)
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector, creating it on first use."""
    if _metrics_instance is None:
        return setup_metrics()
    return _metrics_instance


def metrics_endpoint(collector: Optional[MetricsCollector] = None) -> Response:
    """Generate Prometheus metrics endpoint response."""
    registry = collector.registry if collector is not None else REGISTRY
    content = generate_latest(registry)
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST,
    )
