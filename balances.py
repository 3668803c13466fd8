"""Balance timelines built from sparse per-account balance snapshots.

A snapshot states the balance of one account from its date onward, until
the next snapshot of that account. The helpers here turn those snapshots
into closed intervals of constant balance, combine the accounts into one
net-worth timeline and reshape a timeline for a reporting window.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Protocol

from errors import ValidationError
from intervals import DateInterval

# Open end of the interval started by the latest snapshot.
MAX_DATE = date.max

ONE_DAY = timedelta(days=1)


class Snapshot(Protocol):
    account_id: int
    date: date
    balance_cents: int


@dataclass(frozen=True)
class BalanceInterval:
    start: date
    end: date
    balance_cents: int

    @property
    def interval(self) -> DateInterval:
        return DateInterval(self.start, self.end)


def _by_account(snapshots: Iterable[Snapshot]) -> dict[int, list[Snapshot]]:
    grouped: dict[int, list[Snapshot]] = defaultdict(list)
    for snapshot in snapshots:
        grouped[snapshot.account_id].append(snapshot)
    for account_snapshots in grouped.values():
        account_snapshots.sort(key=lambda s: s.date)
    return grouped


def within(snapshots: Iterable[Snapshot], start: date, end: date) -> list[Snapshot]:
    """Keep the snapshots relevant for ``[start, end]``.

    Per account these are the snapshots dated in ``(start, end]`` plus the
    last one on or before ``start``, which carries the opening balance.
    """
    result: list[Snapshot] = []
    for account_snapshots in _by_account(snapshots).values():
        opening = [s for s in account_snapshots if s.date <= start]
        if opening:
            result.append(opening[-1])
        result.extend(s for s in account_snapshots if start < s.date <= end)
    return result


def to_balance_intervals(snapshots: Iterable[Snapshot]) -> list[BalanceInterval]:
    """Convert the snapshots of a single account into balance intervals."""
    ordered = sorted(snapshots, key=lambda s: s.date)
    intervals = [
        BalanceInterval(current.date, following.date - ONE_DAY, current.balance_cents)
        for current, following in zip(ordered, ordered[1:])
    ]
    if ordered:
        last = ordered[-1]
        intervals.append(BalanceInterval(last.date, MAX_DATE, last.balance_cents))
    return intervals


def merge_balance_intervals(
    interval_sets: Iterable[list[BalanceInterval]],
) -> list[BalanceInterval]:
    """Sum several balance timelines into one contiguous timeline."""
    deltas: dict[date, int] = defaultdict(int)
    for intervals in interval_sets:
        for bi in intervals:
            deltas[bi.start] += bi.balance_cents
            if bi.end != MAX_DATE:
                deltas[bi.end + ONE_DAY] -= bi.balance_cents

    points = sorted(deltas)
    merged = []
    running = 0
    for index, point in enumerate(points):
        running += deltas[point]
        if index + 1 < len(points):
            end = points[index + 1] - ONE_DAY
        else:
            end = MAX_DATE
        merged.append(BalanceInterval(point, end, running))
    return merged


def build_balance_timeline(snapshots: Iterable[Snapshot]) -> list[BalanceInterval]:
    """Combined balance of all accounts over time."""
    return merge_balance_intervals(
        to_balance_intervals(account_snapshots)
        for account_snapshots in _by_account(snapshots).values()
    )


def to_fixed_period(
    intervals: list[BalanceInterval], start: date, end: date
) -> list[BalanceInterval]:
    """Reshape ``intervals`` so they cover exactly ``[start, end]``.

    The balance before the first known interval is 0.
    """
    if end < start:
        raise ValidationError("Start date must not be after end date")

    opening = [bi for bi in intervals if bi.start <= start]
    first_entry = max(opening, key=lambda bi: bi.start) if opening else None
    relevant = sorted(
        (bi for bi in intervals if start < bi.start <= end), key=lambda bi: bi.start
    )

    first_balance = first_entry.balance_cents if first_entry else 0
    if not relevant:
        first_end = end
    elif first_entry:
        first_end = first_entry.end
    else:
        first_end = relevant[0].start - ONE_DAY

    def cap(bi: BalanceInterval) -> BalanceInterval:
        return BalanceInterval(
            max(bi.start, start), min(bi.end, end), bi.balance_cents
        )

    return [cap(bi) for bi in [BalanceInterval(start, first_end, first_balance), *relevant]]


def to_daily_intervals(intervals: Iterable[BalanceInterval]) -> list[BalanceInterval]:
    result = []
    for bi in intervals:
        if bi.end == MAX_DATE:
            raise ValidationError(
                "Open-ended balance intervals must be capped before splitting per day"
            )
        result.extend(BalanceInterval(day, day, bi.balance_cents) for day in bi.interval)
    return result
