"""
AIGate - Usage Tracker

Records one AuditEntry per finished operation.

Features:
- Bounded asyncio.Queue drained by a single worker task
- Append to the audit sink, degrade to a log line when it is unavailable
- Threshold alerts (latency, risk, failure)
- Batched aggregation into UsageMetrics snapshots
- Audit export and usage statistics

track() never raises. A full queue drops the entry and counts it.
"""

import asyncio
import inspect
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from ..core.config import get_audit_queue_size
from ..core.models import AuditEntry, OperationOutcome, RequestContext, utcnow
from ..db.base import AuditSink
from ..observability.logging import get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from .aggregator import (
    SYSTEM_TIMEFRAMES,
    USER_TIMEFRAMES,
    UsageAggregator,
    timeframe_window,
)

logger = get_logger(__name__)

BATCH_SIZE = 10
FLUSH_INTERVAL_SECONDS = 30.0
LATENCY_ALERT_MS = 10_000
RISK_ALERT_SCORE = 80
STOP_DRAIN_TIMEOUT_SECONDS = 5.0

EXPORT_FILTERS = ("user_id", "operation", "success")


class AlertKind(str, Enum):
    HIGH_LATENCY = "high_latency"
    HIGH_RISK = "high_risk"
    FAILURE = "failure"


@dataclass
class UsageAlert:
    kind: AlertKind
    message: str
    entry: AuditEntry
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "user_id": self.entry.user_id,
            "request_id": self.entry.request_id,
            "operation": self.entry.operation,
            "raised_at": self.raised_at.isoformat(),
        }


AlertCallback = Callable[[UsageAlert], Union[None, Awaitable[None]]]


def build_audit_entry(context: RequestContext, outcome: OperationOutcome) -> AuditEntry:
    """AuditEntry for one operation outcome within a request."""
    metadata: Dict[str, Any] = {
        "tier": context.subscription.tier.value,
        "plan": context.subscription.plan.value,
        "audit_level": context.security.audit_level.value,
        "correlation_id": context.request.correlation_id,
    }
    if context.security.compliance_requirements:
        metadata["compliance"] = sorted(context.security.compliance_requirements)
    metadata.update(outcome.metadata)

    return AuditEntry(
        id=AuditEntry.new_id(),
        timestamp=utcnow(),
        user_id=context.user_id,
        request_id=context.request.id,
        operation=outcome.name,
        model=outcome.model,
        tokens_used=outcome.tokens,
        credits_deducted=outcome.credits,
        latency_ms=outcome.duration_ms,
        success=outcome.success,
        error=outcome.error,
        risk_score=context.security.risk_score,
        organization_id=context.organization.id if context.organization else None,
        ip_address=context.request.ip,
        user_agent=context.request.user_agent,
        metadata=metadata,
    )


class UsageTracker:
    """
    Audit and metering service.

    Args:
        sink: Audit storage.
        metrics: Prometheus collector; the process-wide one by default.
        queue_size: Bound of the audit queue (AUDIT_QUEUE_SIZE by default).
        batch_size: Entries buffered before an aggregate snapshot is written.
        flush_interval: Seconds between aggregate snapshots when traffic is low.
        alert_callback: Called (or awaited) with each UsageAlert.
    """

    def __init__(
        self,
        sink: AuditSink,
        metrics: Optional[MetricsCollector] = None,
        queue_size: Optional[int] = None,
        batch_size: int = BATCH_SIZE,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
        alert_callback: Optional[AlertCallback] = None,
        aggregator: Optional[UsageAggregator] = None,
    ):
        self.sink = sink
        self.metrics = metrics or get_metrics()
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.alert_callback = alert_callback
        self.aggregator = aggregator or UsageAggregator()

        self._queue: "asyncio.Queue[AuditEntry]" = asyncio.Queue(
            maxsize=queue_size if queue_size is not None else get_audit_queue_size()
        )
        self._buffer: List[AuditEntry] = []
        self._buffer_lock = asyncio.Lock()
        self._window_start = utcnow()
        self._last_flush = time.monotonic()
        self._worker: Optional[asyncio.Task] = None

        self.dropped = 0
        self.recent_alerts: Deque[UsageAlert] = deque(maxlen=100)

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    # ============================================================
    # Recording
    # ============================================================

    async def track(self, context: RequestContext, outcome: OperationOutcome) -> None:
        """
        Record an operation outcome. Never raises.

        With the worker running the entry is queued; otherwise it is
        processed before returning.
        """
        try:
            entry = build_audit_entry(context, outcome)
        except Exception:
            logger.exception("Failed to build audit entry", operation=outcome.name)
            return

        if self.is_running:
            try:
                self._queue.put_nowait(entry)
            except asyncio.QueueFull:
                self.dropped += 1
                self.metrics.record_audit_dropped()
                logger.error(
                    "Audit queue full, entry dropped",
                    request_id=entry.request_id,
                    operation=entry.operation,
                    dropped_total=self.dropped,
                )
            else:
                self.metrics.set_audit_queue_depth(self._queue.qsize())
            return

        try:
            await self._process(entry)
        except Exception:
            logger.exception("Audit processing failed", request_id=entry.request_id)

    async def _process(self, entry: AuditEntry) -> None:
        await self._append(entry)
        await self._evaluate_alerts(entry)

        batch: List[AuditEntry] = []
        async with self._buffer_lock:
            self._buffer.append(entry)
            if len(self._buffer) >= self.batch_size:
                batch = self._take_buffer()
        if batch:
            await self._write_aggregate(batch)

    async def _append(self, entry: AuditEntry) -> None:
        try:
            await self.sink.append([entry])
        except Exception as e:
            self.metrics.record_audit_written(False)
            logger.error(
                "Audit sink unavailable, entry logged only",
                error=str(e),
                audit_entry=entry.to_dict(),
            )
        else:
            self.metrics.record_audit_written(True)

    # ============================================================
    # Alerts
    # ============================================================

    def check_thresholds(self, entry: AuditEntry) -> List[UsageAlert]:
        alerts = []
        if entry.latency_ms > LATENCY_ALERT_MS:
            alerts.append(UsageAlert(
                AlertKind.HIGH_LATENCY,
                f"Operation took {entry.latency_ms}ms",
                entry,
            ))
        if entry.risk_score > RISK_ALERT_SCORE:
            alerts.append(UsageAlert(
                AlertKind.HIGH_RISK,
                f"Risk score {entry.risk_score} above {RISK_ALERT_SCORE}",
                entry,
            ))
        if not entry.success:
            alerts.append(UsageAlert(
                AlertKind.FAILURE,
                f"Operation failed: {entry.error or 'unknown error'}",
                entry,
            ))
        return alerts

    async def _evaluate_alerts(self, entry: AuditEntry) -> None:
        for alert in self.check_thresholds(entry):
            self.recent_alerts.append(alert)
            self.metrics.record_usage_alert(alert.kind.value)
            logger.warning(
                "Usage alert",
                alert_kind=alert.kind.value,
                alert_message=alert.message,
                user_id=entry.user_id,
                request_id=entry.request_id,
            )
            if self.alert_callback is None:
                continue
            try:
                result = self.alert_callback(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Alert callback failed", alert_kind=alert.kind.value)

    # ============================================================
    # Batching
    # ============================================================

    def _take_buffer(self) -> List[AuditEntry]:
        batch, self._buffer = self._buffer, []
        self._last_flush = time.monotonic()
        return batch

    async def flush(self) -> int:
        """Write an aggregate snapshot of the buffered entries. Returns the batch size."""
        async with self._buffer_lock:
            batch = self._take_buffer()
        if batch:
            await self._write_aggregate(batch)
        return len(batch)

    async def _write_aggregate(self, batch: List[AuditEntry]) -> None:
        window_start, window_end = self._window_start, utcnow()
        self._window_start = window_end
        snapshot = self.aggregator.aggregate(batch)
        try:
            await self.sink.record_aggregate(snapshot, window_start, window_end)
        except Exception as e:
            logger.error(
                "Failed to store usage aggregate",
                error=str(e),
                usage=snapshot.to_dict(),
            )
        else:
            logger.debug(
                "Usage aggregate flushed",
                total_requests=snapshot.total_requests,
                total_credits=snapshot.total_credits,
            )

    # ============================================================
    # Worker lifecycle
    # ============================================================

    def start(self) -> asyncio.Task:
        """Start the queue worker."""
        if not self.is_running:
            self._last_flush = time.monotonic()
            self._worker = asyncio.create_task(self._run())
        return self._worker

    async def stop(self, flush: bool = True) -> None:
        """Drain the queue, stop the worker and optionally flush the buffer."""
        worker, self._worker = self._worker, None
        if worker is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=STOP_DRAIN_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Audit queue did not drain in time", remaining=self._queue.qsize())
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        while not self._queue.empty():
            entry = self._queue.get_nowait()
            self._queue.task_done()
            try:
                await self._process(entry)
            except Exception:
                logger.exception("Audit processing failed", request_id=entry.request_id)
        self.metrics.set_audit_queue_depth(0)

        if flush:
            await self.flush()

    async def _run(self) -> None:
        while True:
            timeout = max(0.0, self.flush_interval - (time.monotonic() - self._last_flush))
            try:
                entry = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                await self._flush_safely()
                continue

            try:
                await self._process(entry)
            except Exception:
                logger.exception("Audit processing failed", request_id=entry.request_id)
            finally:
                self._queue.task_done()
                self.metrics.set_audit_queue_depth(self._queue.qsize())

            if time.monotonic() - self._last_flush >= self.flush_interval:
                await self._flush_safely()

    async def _flush_safely(self) -> None:
        try:
            await self.flush()
        except Exception:
            logger.exception("Periodic usage flush failed")

    # ============================================================
    # Queries
    # ============================================================

    async def export_audit_data(
        self,
        start: datetime,
        end: datetime,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Audit entries between start and end, oldest first, for compliance export.

        Args:
            start: Window start (inclusive).
            end: Window end (inclusive).
            filters: Optional user_id, operation and success.

        Raises:
            ValueError: start is after end, or an unknown filter was given.
        """
        if start > end:
            raise ValueError("start must not be after end")

        filters = dict(filters or {})
        unknown = set(filters) - set(EXPORT_FILTERS)
        if unknown:
            raise ValueError(f"Unknown export filters: {', '.join(sorted(unknown))}")

        entries = await self.sink.query(
            start,
            end,
            user_id=filters.get("user_id"),
            operation=filters.get("operation"),
            success=filters.get("success"),
        )
        return [entry.to_dict() for entry in entries]

    async def get_user_usage_stats(self, user_id: str, timeframe: str = "month") -> Dict[str, Any]:
        """Totals and per-operation breakdown for one user over day, week or month."""
        start, end = timeframe_window(timeframe, USER_TIMEFRAMES)
        entries = await self.sink.query(start, end, user_id=user_id)
        summary = self.aggregator.aggregate(entries)

        return {
            "user_id": user_id,
            "timeframe": timeframe,
            "start": start.isoformat(),
            "end": end.isoformat(),
            **summary.to_dict(),
            "operations": self.aggregator.operation_breakdown(entries),
        }

    async def get_system_usage_stats(self, timeframe: str = "day") -> Dict[str, Any]:
        """Aggregate metrics over all users for an hour, day or week."""
        start, end = timeframe_window(timeframe, SYSTEM_TIMEFRAMES)
        entries = await self.sink.query(start, end)
        summary = self.aggregator.aggregate(entries)

        return {
            "timeframe": timeframe,
            "start": start.isoformat(),
            "end": end.isoformat(),
            **summary.to_dict(),
            "latency_ms": self.aggregator.latency_percentiles(entries),
            "unique_users": len({e.user_id for e in entries}),
            "audit_queue_depth": self.queue_depth,
            "audit_dropped": self.dropped,
        }
