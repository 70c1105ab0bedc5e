"""
AIGate - Usage Aggregation

Summarises audit entries into UsageMetrics and per-user reports.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.models import AuditEntry, UsageMetrics, utcnow

TOP_N = 5


class Timeframe(str, Enum):
    """Look-back windows for usage statistics."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


TIMEFRAME_LENGTHS: Dict[Timeframe, timedelta] = {
    Timeframe.HOUR: timedelta(hours=1),
    Timeframe.DAY: timedelta(days=1),
    Timeframe.WEEK: timedelta(days=7),
    Timeframe.MONTH: timedelta(days=30),
}

USER_TIMEFRAMES = (Timeframe.DAY, Timeframe.WEEK, Timeframe.MONTH)
SYSTEM_TIMEFRAMES = (Timeframe.HOUR, Timeframe.DAY, Timeframe.WEEK)


def timeframe_window(
    timeframe: str,
    allowed: Sequence[Timeframe],
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """
    (start, end) of a look-back window ending now.

    Raises:
        ValueError: timeframe is not one of allowed.
    """
    try:
        parsed = Timeframe(timeframe)
    except ValueError:
        parsed = None
    if parsed not in allowed:
        choices = ", ".join(t.value for t in allowed)
        raise ValueError(f"Invalid timeframe '{timeframe}', expected one of: {choices}")

    end = now or utcnow()
    return end - TIMEFRAME_LENGTHS[parsed], end


def _top(counter: Counter, label: str, n: int) -> List[Dict[str, Any]]:
    # Ties broken by name so the ordering is stable
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{label: name, "requests": count} for name, count in ranked[:n]]


class UsageAggregator:
    """
    Aggregates audit entries into statistics.

    Stateless; every method is a pure function of its inputs.
    """

    def __init__(self, top_n: int = TOP_N):
        self.top_n = top_n

    def aggregate(self, entries: Iterable[AuditEntry]) -> UsageMetrics:
        """
        Totals, average latency, success/error rates and the most used
        models and operations.
        """
        entries = list(entries)
        if not entries:
            return UsageMetrics()

        total = len(entries)
        successes = sum(1 for e in entries if e.success)
        models = Counter(e.model for e in entries if e.model)
        features = Counter(e.operation for e in entries)

        return UsageMetrics(
            total_requests=total,
            total_tokens=sum(e.tokens_used for e in entries),
            total_credits=sum(e.credits_deducted for e in entries),
            average_latency=sum(e.latency_ms for e in entries) / total,
            success_rate=successes / total,
            error_rate=(total - successes) / total,
            top_models=_top(models, "model", self.top_n),
            top_features=_top(features, "feature", self.top_n),
        )

    def operation_breakdown(self, entries: Iterable[AuditEntry]) -> Dict[str, Dict[str, int]]:
        """Requests, failures, credits and tokens per operation."""
        breakdown: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"requests": 0, "failures": 0, "credits": 0, "tokens": 0}
        )
        for entry in entries:
            row = breakdown[entry.operation]
            row["requests"] += 1
            row["credits"] += entry.credits_deducted
            row["tokens"] += entry.tokens_used
            if not entry.success:
                row["failures"] += 1
        return dict(breakdown)

    def latency_percentiles(self, entries: Iterable[AuditEntry]) -> Dict[str, float]:
        latencies = sorted(e.latency_ms for e in entries)
        if not latencies:
            return {"p50": 0.0, "p95": 0.0, "p99": 0.0}

        def pick(fraction: float) -> float:
            index = min(len(latencies) - 1, int(fraction * len(latencies)))
            return float(latencies[index])

        return {"p50": pick(0.50), "p95": pick(0.95), "p99": pick(0.99)}
