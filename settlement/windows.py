"""
Calendar windows for rolling earnings counters.

Boundaries are computed in the timezone carried by ``now``: the day starts at
local midnight, the week at the most recent Sunday midnight and the month at
midnight on the first.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo


class Window(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


def window_start(window: Window, now: datetime) -> datetime:
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == Window.DAILY:
        return midnight
    if window == Window.WEEKLY:
        # weekday(): Monday == 0, Sunday == 6
        return midnight - timedelta(days=(now.weekday() + 1) % 7)
    if window == Window.MONTHLY:
        return midnight.replace(day=1)
    raise ValueError(f"Unknown window {window!r}")


def is_stale(window: Window, last_reset: Optional[datetime], now: datetime) -> bool:
    return last_reset is None or last_reset < window_start(window, now)


def rollover(
    window: Window,
    current_sum: Decimal,
    last_reset: Optional[datetime],
    now: datetime,
) -> tuple[Decimal, datetime]:
    """Return the sum to accumulate onto and the reset marker to store."""
    base = Decimal("0") if is_stale(window, last_reset, now) else current_sum
    return base, window_start(window, now)


def current_window_sum(
    window: Window,
    current_sum: Decimal,
    last_reset: Optional[datetime],
    now: datetime,
) -> Decimal:
    base, _ = rollover(window, current_sum, last_reset, now)
    return base


def store_clock(timezone_name: str) -> Callable[[], datetime]:
    """Clock returning aware datetimes in the store's local timezone."""
    tz = ZoneInfo(timezone_name)

    def now() -> datetime:
        return datetime.now(tz)

    return now
