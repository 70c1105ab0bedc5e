"""
AIGate - Usage Tracking

Audit entries, threshold alerts and usage aggregation.
"""

from .aggregator import (
    SYSTEM_TIMEFRAMES,
    TOP_N,
    USER_TIMEFRAMES,
    Timeframe,
    UsageAggregator,
    timeframe_window,
)
from .tracker import (
    BATCH_SIZE,
    FLUSH_INTERVAL_SECONDS,
    LATENCY_ALERT_MS,
    RISK_ALERT_SCORE,
    AlertKind,
    UsageAlert,
    UsageTracker,
    build_audit_entry,
)

__all__ = [
    "SYSTEM_TIMEFRAMES",
    "TOP_N",
    "USER_TIMEFRAMES",
    "Timeframe",
    "UsageAggregator",
    "timeframe_window",
    "BATCH_SIZE",
    "FLUSH_INTERVAL_SECONDS",
    "LATENCY_ALERT_MS",
    "RISK_ALERT_SCORE",
    "AlertKind",
    "UsageAlert",
    "UsageTracker",
    "build_audit_entry",
]
