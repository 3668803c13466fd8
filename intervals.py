from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from errors import IntervalBudgetExceededError, ValidationError
from models import IntervalUnit

T = TypeVar("T")

# Granularities tried from finest to coarsest when a bucket bound is given.
UNIT_ORDER = (
    IntervalUnit.days,
    IntervalUnit.weeks,
    IntervalUnit.months,
    IntervalUnit.years,
)


@dataclass(frozen=True)
class DateInterval:
    """Closed date range ``[start, end]``."""

    start: date
    end: date

    def __contains__(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __iter__(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            if current == date.max:
                break
            current += timedelta(days=1)

    @property
    def length(self) -> int:
        return (self.end - self.start).days + 1


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(base.day, days_in_month(year, month)))


def add_interval(base: date, unit: IntervalUnit, count: int) -> date:
    if unit == IntervalUnit.days:
        return base + timedelta(days=count)
    if unit == IntervalUnit.weeks:
        return base + timedelta(weeks=count)
    if unit == IntervalUnit.months:
        return add_months(base, count)
    return add_months(base, 12 * count)


def bucket_count(start: date, end: date, unit: IntervalUnit) -> int:
    """Number of ``unit``-sized buckets needed to cover ``[start, end]``."""
    days = (end - start).days + 1
    if unit == IntervalUnit.days:
        return days
    if unit == IntervalUnit.weeks:
        return -(-days // 7)
    if unit == IntervalUnit.months:
        whole = (end.year - start.year) * 12 + end.month - start.month
        return whole + 1 if add_months(start, whole) <= end else whole
    whole = end.year - start.year
    return whole + 1 if add_months(start, 12 * whole) <= end else whole


def date_intervals(start: date, end: date, unit: IntervalUnit) -> list[DateInterval]:
    """Lay out ``unit``-sized buckets from ``start``; the last one is capped at ``end``."""
    intervals = []
    step = 0
    bucket_start = start
    while bucket_start <= end:
        step += 1
        next_start = add_interval(start, unit, step)
        intervals.append(
            DateInterval(bucket_start, min(next_start - timedelta(days=1), end))
        )
        bucket_start = next_start
    return intervals


def _validate_range(start: date, end: date) -> None:
    if end < start:
        raise ValidationError(
            f"Start date {start.isoformat()} must not be after end date {end.isoformat()}"
        )


def get_intervals(
    start: date, end: date, max_intervals: Optional[int] = None
) -> tuple[IntervalUnit, list[DateInterval]]:
    """Partition ``[start, end]`` into contiguous calendar buckets of one unit.

    With ``max_intervals`` the finest unit that needs at most that many buckets
    wins. Without it a fixed policy based on the span length is applied.
    """
    _validate_range(start, end)
    if max_intervals is None:
        unit = _policy_unit(start, end)
        return unit, date_intervals(start, end, unit)

    for unit in UNIT_ORDER:
        if bucket_count(start, end, unit) <= max_intervals:
            return unit, date_intervals(start, end, unit)
    raise IntervalBudgetExceededError(max_intervals, start, end)


def _policy_unit(start: date, end: date) -> IntervalUnit:
    if end < add_months(start, 1):
        return IntervalUnit.days
    if end < add_months(start, 6):
        return IntervalUnit.weeks
    if end <= add_months(start, 36):
        return IntervalUnit.months
    return IntervalUnit.years


def to_dates(intervals: Iterable[DateInterval]) -> list[date]:
    return [interval.start for interval in intervals]


def group_by_interval(
    items: Iterable[T],
    intervals: list[DateInterval],
    key: Callable[[T], date],
) -> dict[DateInterval, list[T]]:
    grouped: dict[DateInterval, list[T]] = {interval: [] for interval in intervals}
    for item in items:
        day = key(item)
        for interval in intervals:
            if day in interval:
                grouped[interval].append(item)
                break
    return grouped
