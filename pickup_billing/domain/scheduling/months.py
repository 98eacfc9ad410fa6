"""
UTC calendar-month helpers

All values are epoch seconds. Phase boundaries are forced onto month starts
wherever possible so durations can be expressed as whole months.
"""

import calendar
from datetime import datetime, timezone
from typing import Optional


def _utc(epoch: int) -> datetime:
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def start_of_month_epoch(year: int, month0: int) -> int:
    """First instant of the given UTC month (month0 is 0-based and may overflow)."""
    year += month0 // 12
    month0 %= 12
    return calendar.timegm((year, month0 + 1, 1, 0, 0, 0))


def next_month_start(epoch: int) -> int:
    """First instant of the month after the month containing ``epoch``."""
    d = _utc(epoch)
    return start_of_month_epoch(d.year, d.month)


def is_month_start(epoch: int) -> bool:
    d = _utc(epoch)
    return start_of_month_epoch(d.year, d.month - 1) == epoch


def month_start_at_or_after(epoch: int) -> int:
    """The billing anchor: ``epoch`` itself when it is a month start, else the next one."""
    return epoch if is_month_start(epoch) else next_month_start(epoch)


def month_starts_between(start: int, end: int) -> list[int]:
    """
    Every UTC month start in ``[start, end)``, ascending.

    ``start`` is included when it is itself a month start; ``end`` never is.
    """
    if start >= end:
        return []
    result = []
    cur = month_start_at_or_after(start)
    while cur < end:
        result.append(cur)
        cur = next_month_start(cur)
    return result


def month_count(start: int, end: int) -> int:
    return len(month_starts_between(start, end))


def whole_months(start: int, end: int) -> Optional[int]:
    """Number of months in ``[start, end)`` when both ends sit on month starts, else None."""
    if start >= end or not (is_month_start(start) and is_month_start(end)):
        return None
    return month_count(start, end)


def add_months(epoch: int, months: int) -> int:
    """Shift by calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    d = _utc(epoch)
    total = d.month - 1 + months
    year, month = d.year + total // 12, total % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return int(d.replace(year=year, month=month, day=day).timestamp())


def to_iso(epoch: Optional[int]) -> Optional[str]:
    if not isinstance(epoch, int) or epoch <= 0:
        return None
    return _utc(epoch).isoformat().replace("+00:00", "Z")
