from __future__ import annotations

from typing import Any, Iterable, TypeVar

from product_portal.core.model import MonthScope, Scope, YearScope


T = TypeVar("T")


def matches_scope(item: Any, scope: Scope) -> bool:
    if isinstance(scope, MonthScope):
        return getattr(item, "month", None) == scope.month and getattr(item, "year", None) == scope.year
    if isinstance(scope, YearScope):
        return getattr(item, "year", None) == scope.year
    return False


def filter_by_scope(collection: Iterable[T], scope: Scope) -> list[T]:
    """Return the items of ``collection`` whose scope fields equal ``scope``.

    Input order is preserved. Items lacking a scope field never match.
    """
    if collection is None:
        return []
    return [item for item in collection if matches_scope(item, scope)]


def available_scopes(collection: Iterable[Any]) -> list[Scope]:
    """Distinct scopes present in a collection, newest first."""
    seen: set[Scope] = set()
    for item in collection or []:
        year = getattr(item, "year", None)
        if not isinstance(year, int):
            continue
        month = getattr(item, "month", None)
        seen.add(MonthScope(month=month, year=year) if isinstance(month, int) else YearScope(year=year))
    return sorted(seen, key=lambda s: (s.year, getattr(s, "month", 0)), reverse=True)
