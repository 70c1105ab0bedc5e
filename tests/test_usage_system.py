"""
AIGate - Usage Tracking System Tests

Tests for the usage tracking module covering:
- Audit entry construction
- Threshold alerts
- Batched aggregation and the queue worker
- Audit sink degradation
- Export and usage statistics
"""

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from aigate.core.models import AuditEntry, OperationOutcome, utcnow
from aigate.db.memory import InMemoryAuditSink
from aigate.usage import (
    AlertKind,
    Timeframe,
    USER_TIMEFRAMES,
    UsageAggregator,
    UsageTracker,
    build_audit_entry,
    timeframe_window,
)


# ============================================================
# Test Fixtures
# ============================================================

def _outcome(**kwargs) -> OperationOutcome:
    values = dict(name="quiz-mcq", model="gpt-4o-mini", tokens=120, credits=1, duration_ms=800)
    values.update(kwargs)
    return OperationOutcome(**values)


def _entry(user_id="u1", operation="quiz-mcq", model="gpt-4o", success=True,
           latency_ms=100, timestamp=None, credits=1, tokens=10) -> AuditEntry:
    return AuditEntry(
        id=AuditEntry.new_id(),
        timestamp=timestamp or utcnow(),
        user_id=user_id,
        request_id=f"req_{user_id}_{operation}",
        operation=operation,
        model=model,
        tokens_used=tokens,
        credits_deducted=credits,
        latency_ms=latency_ms,
        success=success,
        risk_score=0,
    )


class FailingSink(InMemoryAuditSink):
    async def append(self, entries):
        raise ConnectionError("audit database down")

    async def record_aggregate(self, metrics, window_start, window_end):
        raise ConnectionError("audit database down")


# ============================================================
# Audit entries
# ============================================================

class TestBuildAuditEntry:
    """Tests for build_audit_entry."""

    @pytest.mark.asyncio
    async def test_entry_carries_context_and_outcome(self, make_context):
        ctx = await make_context("user-enterprise")
        entry = build_audit_entry(ctx, _outcome(metadata={"provider": "openai"}))

        assert entry.id.startswith("audit_")
        assert entry.user_id == "user-enterprise"
        assert entry.request_id == ctx.request.id
        assert entry.organization_id == "org-1"
        assert entry.tokens_used == 120
        assert entry.credits_deducted == 1
        assert entry.latency_ms == 800
        assert entry.ip_address == "203.0.113.7"
        assert entry.metadata["plan"] == "ENTERPRISE"
        assert entry.metadata["audit_level"] == "detailed"
        assert entry.metadata["compliance"] == ["gdpr", "soc2"]
        assert entry.metadata["provider"] == "openai"

    @pytest.mark.asyncio
    async def test_entry_is_immutable(self, make_context):
        entry = build_audit_entry(await make_context("user-basic"), _outcome())
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.success = False


# ============================================================
# Tracking & alerts
# ============================================================

class TestTrack:
    """Tests for UsageTracker.track without a worker."""

    @pytest.mark.asyncio
    async def test_track_appends_entry(self, usage_tracker, audit_sink, make_context, metrics):
        await usage_tracker.track(await make_context("user-basic"), _outcome())

        assert len(audit_sink.entries) == 1
        assert audit_sink.entries[0].operation == "quiz-mcq"
        assert metrics.registry.get_sample_value(
            "aigate_audit_entries_total", {"success": "true"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_successful_fast_request_raises_no_alert(self, usage_tracker, make_context):
        await usage_tracker.track(await make_context("user-basic"), _outcome())
        assert list(usage_tracker.recent_alerts) == []

    @pytest.mark.asyncio
    async def test_alerts(self, audit_sink, metrics, make_context):
        received = []
        tracker = UsageTracker(audit_sink, metrics=metrics, alert_callback=received.append)
        ctx = await make_context("user-basic")
        risky = dataclasses.replace(ctx, security=dataclasses.replace(ctx.security, risk_score=85))

        await tracker.track(ctx, _outcome(duration_ms=12_000))
        await tracker.track(ctx, _outcome(success=False, error="boom"))
        await tracker.track(risky, _outcome())

        kinds = [a.kind for a in received]
        assert kinds == [AlertKind.HIGH_LATENCY, AlertKind.FAILURE, AlertKind.HIGH_RISK]
        assert received[1].to_dict()["message"] == "Operation failed: boom"
        assert metrics.registry.get_sample_value(
            "aigate_usage_alerts_total", {"kind": "failure"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_async_alert_callback(self, audit_sink, metrics, make_context):
        received = []

        async def on_alert(alert):
            received.append(alert.kind)

        tracker = UsageTracker(audit_sink, metrics=metrics, alert_callback=on_alert)
        await tracker.track(await make_context("user-basic"), _outcome(success=False))
        assert received == [AlertKind.FAILURE]

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(self, audit_sink, metrics, make_context):
        def on_alert(alert):
            raise RuntimeError("pager offline")

        tracker = UsageTracker(audit_sink, metrics=metrics, alert_callback=on_alert)
        await tracker.track(await make_context("user-basic"), _outcome(success=False))
        assert len(audit_sink.entries) == 1

    @pytest.mark.asyncio
    async def test_sink_failure_never_raises(self, metrics, make_context):
        tracker = UsageTracker(FailingSink(), metrics=metrics, batch_size=1)

        await tracker.track(await make_context("user-basic"), _outcome())

        assert metrics.registry.get_sample_value(
            "aigate_audit_entries_total", {"success": "false"}
        ) == 1.0


# ============================================================
# Batching & worker
# ============================================================

class TestBatching:
    """Tests for aggregate snapshots and the queue worker."""

    @pytest.mark.asyncio
    async def test_batch_size_triggers_aggregate(self, audit_sink, metrics, make_context):
        tracker = UsageTracker(audit_sink, metrics=metrics, batch_size=3)
        ctx = await make_context("user-basic")

        for _ in range(2):
            await tracker.track(ctx, _outcome())
        assert audit_sink.aggregates == []

        await tracker.track(ctx, _outcome(credits=2))
        assert len(audit_sink.aggregates) == 1
        window_start, window_end, snapshot = audit_sink.aggregates[0]
        assert window_start <= window_end
        assert snapshot.total_requests == 3
        assert snapshot.total_credits == 4

    @pytest.mark.asyncio
    async def test_flush_writes_partial_batch(self, usage_tracker, audit_sink, make_context):
        ctx = await make_context("user-basic")
        await usage_tracker.track(ctx, _outcome())
        await usage_tracker.track(ctx, _outcome())

        assert await usage_tracker.flush() == 2
        assert await usage_tracker.flush() == 0
        assert audit_sink.aggregates[0][2].total_requests == 2

    @pytest.mark.asyncio
    async def test_worker_drains_on_stop(self, usage_tracker, audit_sink, make_context):
        ctx = await make_context("user-basic")
        usage_tracker.start()
        assert usage_tracker.is_running

        for _ in range(5):
            await usage_tracker.track(ctx, _outcome())
        await usage_tracker.stop(flush=True)

        assert not usage_tracker.is_running
        assert len(audit_sink.entries) == 5
        assert sum(s.total_requests for _, _, s in audit_sink.aggregates) == 5
        assert usage_tracker.queue_depth == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_entry(self, audit_sink, metrics, make_context):
        tracker = UsageTracker(audit_sink, metrics=metrics, queue_size=1)
        ctx = await make_context("user-basic")
        tracker.start()

        await tracker.track(ctx, _outcome())
        await tracker.track(ctx, _outcome())
        await tracker.stop()

        assert tracker.dropped == 1
        assert len(audit_sink.entries) == 1
        assert metrics.registry.get_sample_value("aigate_audit_dropped_total") == 1.0

    @pytest.mark.asyncio
    async def test_worker_flushes_on_interval(self, audit_sink, metrics, make_context):
        tracker = UsageTracker(audit_sink, metrics=metrics, flush_interval=0.05)
        tracker.start()
        await tracker.track(await make_context("user-basic"), _outcome())

        await asyncio.sleep(0.2)
        assert len(audit_sink.aggregates) == 1
        await tracker.stop()


# ============================================================
# Queries
# ============================================================

class TestQueries:
    """Tests for export and usage statistics."""

    @pytest.fixture
    def seeded_sink(self):
        sink = InMemoryAuditSink()
        now = utcnow()
        sink.entries.extend([
            _entry("u1", "quiz-mcq", "gpt-4o", latency_ms=100, timestamp=now - timedelta(hours=3)),
            _entry("u1", "quiz-code", "gpt-4o", latency_ms=300, credits=2,
                   timestamp=now - timedelta(hours=2)),
            _entry("u2", "quiz-mcq", "gpt-4o-mini", success=False, latency_ms=200,
                   timestamp=now - timedelta(minutes=10)),
            _entry("u1", "quiz-mcq", "gpt-4o", timestamp=now - timedelta(days=10)),
        ])
        return sink

    @pytest.mark.asyncio
    async def test_export_filters(self, seeded_sink, metrics):
        tracker = UsageTracker(seeded_sink, metrics=metrics)
        end = utcnow()
        start = end - timedelta(days=1)

        everything = await tracker.export_audit_data(start, end)
        assert len(everything) == 3
        assert everything[0]["operation"] == "quiz-mcq"

        failures = await tracker.export_audit_data(start, end, {"success": False})
        assert [e["user_id"] for e in failures] == ["u2"]

        u1_code = await tracker.export_audit_data(start, end, {"user_id": "u1", "operation": "quiz-code"})
        assert len(u1_code) == 1
        assert u1_code[0]["credits_deducted"] == 2

    @pytest.mark.asyncio
    async def test_export_rejects_bad_arguments(self, usage_tracker):
        now = utcnow()
        with pytest.raises(ValueError):
            await usage_tracker.export_audit_data(now, now - timedelta(hours=1))
        with pytest.raises(ValueError):
            await usage_tracker.export_audit_data(now - timedelta(hours=1), now, {"model": "gpt-4o"})

    @pytest.mark.asyncio
    async def test_user_usage_stats(self, seeded_sink, metrics):
        tracker = UsageTracker(seeded_sink, metrics=metrics)

        day = await tracker.get_user_usage_stats("u1", "day")
        assert day["total_requests"] == 2
        assert day["total_credits"] == 3
        assert day["operations"]["quiz-code"]["credits"] == 2

        month = await tracker.get_user_usage_stats("u1", "month")
        assert month["total_requests"] == 3

        with pytest.raises(ValueError):
            await tracker.get_user_usage_stats("u1", "hour")

    @pytest.mark.asyncio
    async def test_system_usage_stats(self, seeded_sink, metrics):
        tracker = UsageTracker(seeded_sink, metrics=metrics)

        stats = await tracker.get_system_usage_stats("day")
        assert stats["total_requests"] == 3
        assert stats["unique_users"] == 2
        assert stats["error_rate"] == pytest.approx(0.3333, abs=1e-4)
        assert stats["latency_ms"]["p50"] == 200.0

        with pytest.raises(ValueError):
            await tracker.get_system_usage_stats("month")


class TestAggregator:
    """Tests for UsageAggregator."""

    def test_empty(self):
        metrics = UsageAggregator().aggregate([])
        assert metrics.total_requests == 0
        assert metrics.success_rate == 1.0

    def test_top_models_ranked_with_stable_ties(self):
        entries = [
            _entry(model="gpt-4o"), _entry(model="gpt-4o"),
            _entry(model="claude-3-haiku-20240307"), _entry(model="gemini-pro"),
            _entry(model=""),
        ]
        top = UsageAggregator(top_n=2).aggregate(entries).top_models
        assert top == [
            {"model": "gpt-4o", "requests": 2},
            {"model": "claude-3-haiku-20240307", "requests": 1},
        ]

    def test_latency_percentiles(self):
        entries = [_entry(latency_ms=ms) for ms in range(1, 101)]
        percentiles = UsageAggregator().latency_percentiles(entries)
        assert percentiles == {"p50": 51.0, "p95": 96.0, "p99": 100.0}

    def test_timeframe_window(self):
        now = datetime(2024, 3, 1, tzinfo=timezone.utc)
        start, end = timeframe_window("week", USER_TIMEFRAMES, now=now)
        assert end == now
        assert end - start == timedelta(days=7)
        assert Timeframe.MONTH in USER_TIMEFRAMES
        with pytest.raises(ValueError):
            timeframe_window("year", USER_TIMEFRAMES)
