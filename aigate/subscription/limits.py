"""
AIGate - Rate Limits

Fixed-window request counters per user, driven by the plan's RateLimits.

Windows:
- second (burst)
- minute
- hour
- day

A request is allowed only when every window has room; allowed requests are
counted in every window, denied ones are not.
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from ..core.models import RateLimitResult, RateLimits, utcnow


class LimitPeriod(str, Enum):
    """Time periods for rate limits."""
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"


def _period_start(dt: datetime, period: LimitPeriod) -> datetime:
    """Get start of current period."""
    if period == LimitPeriod.SECOND:
        return dt.replace(microsecond=0)
    if period == LimitPeriod.MINUTE:
        return dt.replace(second=0, microsecond=0)
    if period == LimitPeriod.HOUR:
        return dt.replace(minute=0, second=0, microsecond=0)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


_PERIOD_LENGTH = {
    LimitPeriod.SECOND: timedelta(seconds=1),
    LimitPeriod.MINUTE: timedelta(minutes=1),
    LimitPeriod.HOUR: timedelta(hours=1),
    LimitPeriod.DAY: timedelta(days=1),
}


def _limits_by_period(limits: RateLimits) -> List[Tuple[LimitPeriod, int]]:
    return [
        (LimitPeriod.SECOND, limits.burst),
        (LimitPeriod.MINUTE, limits.per_minute),
        (LimitPeriod.HOUR, limits.per_hour),
        (LimitPeriod.DAY, limits.per_day),
    ]


class RateLimiter:
    """
    Per-user fixed window counters.

    Args:
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        # user key -> period -> (window_start, count)
        self._windows: Dict[str, Dict[LimitPeriod, Tuple[datetime, int]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def check(self, key: str, limits: RateLimits) -> Tuple[RateLimitResult, Optional[LimitPeriod]]:
        """
        Count one request for key if it fits every window.

        Returns the verdict and, when denied, the window that was full.
        Limits below zero are unlimited and are not counted.
        """
        async with self._lock:
            now = self._clock()
            windows = self._windows[key]

            current: Dict[LimitPeriod, Tuple[datetime, int]] = {}
            for period, limit in _limits_by_period(limits):
                if limit < 0:
                    continue
                start = _period_start(now, period)
                window_start, count = windows.get(period, (start, 0))
                if window_start < start:
                    window_start, count = start, 0
                current[period] = (window_start, count)

                if count >= limit:
                    return (
                        RateLimitResult(
                            allowed=False,
                            remaining=0,
                            reset_time=window_start + _PERIOD_LENGTH[period],
                        ),
                        period,
                    )

            remaining: Optional[int] = None
            for period, limit in _limits_by_period(limits):
                if period not in current:
                    continue
                window_start, count = current[period]
                windows[period] = (window_start, count + 1)
                if period != LimitPeriod.SECOND:
                    left = limit - count - 1
                    remaining = left if remaining is None else min(remaining, left)

            minute_start = _period_start(now, LimitPeriod.MINUTE)
            return (
                RateLimitResult(
                    allowed=True,
                    remaining=remaining if remaining is not None else -1,
                    reset_time=minute_start + _PERIOD_LENGTH[LimitPeriod.MINUTE],
                ),
                None,
            )

    def reset(self, key: Optional[str] = None) -> None:
        """Forget counters for one key, or for everyone."""
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
