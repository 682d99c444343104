from __future__ import annotations

import math
from typing import Any, Optional, Sequence, TypeVar


T = TypeVar("T")

VersionKey = tuple[int, tuple[float, ...]]


def version_key(version: Any) -> VersionKey:
    """Numeric sort key for a version value.

    Numbers compare by value (1.5 > 1.25). Strings are dot-separated numeric
    segments compared segment by segment, so "1.10" > "1.9" > "1.2". Trailing
    zero segments are dropped ("1.0" == "1" == 1).
    Anything unparseable sorts below every parseable version.
    """

    if isinstance(version, bool) or version is None:
        return (0, ())
    if isinstance(version, int):
        return (1, _strip_zeros((version,)))
    if isinstance(version, float):
        if not math.isfinite(version):
            return (0, ())
        return (1, (int(version),) if version.is_integer() else (version,))
    if not isinstance(version, str):
        return (0, ())
    text = version.strip()

    parts = text.split(".")
    segments: list[int] = []
    for i, part in enumerate(parts):
        part = part.strip()
        if i == 0 and part.startswith("-") and part[1:].isdigit():
            segments.append(int(part))
        elif part.isdigit():
            segments.append(int(part))
        else:
            return (0, ())
    return (1, _strip_zeros(tuple(segments)))


def _strip_zeros(segments: tuple[float, ...]) -> tuple[float, ...]:
    end = len(segments)
    while end > 1 and segments[end - 1] == 0:
        end -= 1
    return segments[:end]


def select_latest(scoped: Sequence[T]) -> Optional[T]:
    """Pick the item with the greatest numeric version.

    Ties on version go to the greatest ``created_at`` (ISO-8601 strings compare
    chronologically), then to the item encountered last. Returns None for an
    empty collection.
    """

    best: Optional[T] = None
    best_key: Optional[tuple[VersionKey, str]] = None
    for item in scoped or []:
        key = (version_key(getattr(item, "version", None)), getattr(item, "created_at", None) or "")
        if best_key is None or key >= best_key:
            best, best_key = item, key
    return best


def sort_by_version(scoped: Sequence[T], *, descending: bool = True) -> list[T]:
    indexed = list(enumerate(scoped or []))
    indexed.sort(
        key=lambda p: (
            version_key(getattr(p[1], "version", None)),
            getattr(p[1], "created_at", None) or "",
            p[0],
        ),
        reverse=descending,
    )
    return [item for _, item in indexed]


def next_version(scoped: Sequence[Any], *, dotted: bool = False) -> Any:
    """Version a writer should assign to a new document in this scope.

    Integer kinds get max + 1. Dotted (roadmap) versions bump the leading
    segment and are returned as strings.
    """

    majors: list[int] = []
    for item in scoped or []:
        flag, segments = version_key(getattr(item, "version", None))
        if flag and segments:
            majors.append(int(segments[0]))
    nxt = (max(majors) + 1) if majors else 1
    return str(nxt) if dotted else nxt


def format_version(version: Any) -> str:
    if isinstance(version, float) and version.is_integer():
        return str(int(version))
    return str(version)
