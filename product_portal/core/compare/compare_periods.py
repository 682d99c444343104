from __future__ import annotations

import calendar
from dataclasses import dataclass
from typing import Any, Generic, Literal, Sequence, TypeVar

from product_portal.core.model import MonthScope


T = TypeVar("T")

Direction = Literal["up", "down", "same"]


def previous_period(scope: MonthScope) -> MonthScope:
    if scope.month == 1:
        return MonthScope(month=12, year=scope.year - 1)
    return MonthScope(month=scope.month - 1, year=scope.year)


def period_label(scope: MonthScope) -> str:
    return f"{calendar.month_name[scope.month]} {scope.year}"


@dataclass(frozen=True)
class ChangeSet(Generic[T]):
    added: list[T]
    removed: list[T]
    modified: list[T]

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.modified)


def find_changes(
    current: Sequence[T] | None,
    previous: Sequence[T] | None,
    compare_fields: Sequence[str] = (),
) -> ChangeSet[T]:
    """Compare two periods' items by id.

    Items present in both periods count as modified only when one of
    ``compare_fields`` differs; with no fields given nothing is "modified".
    """

    current = list(current or [])
    previous = list(previous or [])
    prev_by_id: dict[Any, T] = {getattr(p, "id", None): p for p in previous}
    cur_ids = {getattr(c, "id", None) for c in current}

    added = [c for c in current if getattr(c, "id", None) not in prev_by_id]
    removed = [p for p in previous if getattr(p, "id", None) not in cur_ids]
    modified: list[T] = []
    for c in current:
        p = prev_by_id.get(getattr(c, "id", None))
        if p is None or not compare_fields:
            continue
        if any(getattr(c, f, None) != getattr(p, f, None) for f in compare_fields):
            modified.append(c)
    return ChangeSet(added=added, removed=removed, modified=modified)


@dataclass(frozen=True)
class MetricChange:
    change: float
    percentage: float
    direction: Direction


def metric_change(current: float, previous: float) -> MetricChange:
    change = current - previous
    percentage = (change / previous) * 100 if previous != 0 else 0.0
    direction: Direction = "same"
    if change > 0:
        direction = "up"
    elif change < 0:
        direction = "down"
    return MetricChange(change=change, percentage=percentage, direction=direction)
