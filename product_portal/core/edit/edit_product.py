from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from product_portal.core.bus.notification_bus import PRODUCT_DATA_UPDATED, NotificationBus
from product_portal.core.errors import StoreLoadError, WriteError
from product_portal.core.io.load_store import dumps_aggregate, read_aggregate
from product_portal.core.model import (
    COLLECTION_FIELDS,
    VERSIONED_KINDS,
    GoalItem,
    MonthScope,
    PlanItem,
    PortalAggregate,
    Product,
    ReleaseGoal,
    ReleaseNote,
    ReleasePlan,
    Roadmap,
    Scope,
    YearScope,
)
from product_portal.core.resolve.scope_filter import filter_by_scope
from product_portal.core.resolve.version_select import next_version, select_latest
from product_portal.core.store.document_store import DEFAULT_STORE_KEY, DocumentStore


logger = logging.getLogger(__name__)

EDIT_ROLES: frozenset[str] = frozenset({"admin", "product_manager"})


def can_edit(role: Optional[str]) -> bool:
    return role in EDIT_ROLES


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def _suffixes():
    letters = [chr(c) for c in range(ord("A"), ord("Z") + 1)]
    for a in letters:
        yield a
    for a in letters:
        for b in letters:
            yield a + b


def allocate_unique_id(existing: set[str], proposed: str) -> str:
    if proposed not in existing:
        return proposed
    for suf in _suffixes():
        candidate = f"{proposed}-{suf}"
        if candidate not in existing:
            return candidate
    raise RuntimeError(f"Unable to allocate unique id for {proposed}")


@dataclass(frozen=True)
class WriteResult:
    product: Product
    revision: int
    appended: Optional[Any] = None


class ProductEditor:
    """Write path: read-modify-write of the whole aggregate, then notify.

    Last write wins unless the caller passes ``expected_revision``, in which
    case a store that moved on since that revision rejects the write.
    """

    def __init__(
        self,
        store: DocumentStore,
        bus: NotificationBus,
        key: str = DEFAULT_STORE_KEY,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self.store = store
        self.bus = bus
        self.key = key
        self.clock = clock

    def save_product_changes(
        self,
        product_id: str,
        updates: dict[str, Sequence[Any]],
        *,
        allowed: bool,
        expected_revision: Optional[int] = None,
    ) -> WriteResult:
        """Replace whole collections of one product (keys: roadmap, goals, plans, metrics, notes)."""
        _require_allowed(allowed)
        unknown = sorted(k for k in updates if k not in COLLECTION_FIELDS)
        if unknown:
            raise WriteError(
                code="E_UNKNOWN_COLLECTION",
                message=f"unknown collection(s): {', '.join(unknown)}",
                path="updates",
            )

        aggregate, product = self._read(product_id, expected_revision)
        changed = replace(product, **{COLLECTION_FIELDS[k]: tuple(v) for k, v in updates.items()})
        return self._persist(aggregate, changed, expected_revision)

    def append_version(
        self,
        product_id: str,
        kind: str,
        scope: Scope,
        *,
        allowed: bool,
        link: Optional[str] = None,
        goals: Optional[Sequence[GoalItem]] = None,
        items: Optional[Sequence[PlanItem]] = None,
        expected_revision: Optional[int] = None,
    ) -> WriteResult:
        """Append the next version of a document in ``scope``.

        Goals and plans start from the items of the current latest version
        unless new ones are given; links are carried over the same way.
        """
        _require_allowed(allowed)
        if kind not in VERSIONED_KINDS:
            raise WriteError(
                code="E_UNKNOWN_COLLECTION",
                message=f"kind must be one of {list(VERSIONED_KINDS)}",
                path="kind",
            )
        if kind == "roadmap":
            scope = YearScope(year=scope.year)
        elif not isinstance(scope, MonthScope):
            raise WriteError(code="E_INVALID_SCOPE", message=f"{kind} needs a month and year", path="scope")

        aggregate, product = self._read(product_id, expected_revision)
        field_name = COLLECTION_FIELDS[kind]
        collection = getattr(product, field_name)
        scoped = filter_by_scope(collection, scope)
        latest = select_latest(scoped)
        version = next_version(scoped, dotted=(kind == "roadmap"))

        label = f"{scope.year}" if isinstance(scope, YearScope) else f"{scope.year}-{scope.month:02d}"
        doc_id = allocate_unique_id({d.id for d in collection}, f"{kind}-{label}-v{version}")
        created_at = self.clock()

        doc: Any
        if kind == "roadmap":
            doc = Roadmap(
                id=doc_id,
                year=scope.year,
                version=str(version),
                link=link if link is not None else (latest.link if latest else None),
                created_at=created_at,
            )
        elif kind == "goals":
            doc = ReleaseGoal(
                id=doc_id,
                month=scope.month,
                year=scope.year,
                version=version,
                goals=tuple(goals) if goals is not None else (latest.goals if latest else ()),
                created_at=created_at,
            )
        elif kind == "plans":
            doc = ReleasePlan(
                id=doc_id,
                month=scope.month,
                year=scope.year,
                version=version,
                items=tuple(items) if items is not None else (latest.items if latest else ()),
                created_at=created_at,
            )
        else:
            doc = ReleaseNote(
                id=doc_id,
                month=scope.month,
                year=scope.year,
                version=version,
                link=link if link is not None else (latest.link if latest else None),
                created_at=created_at,
            )

        changed = replace(product, **{field_name: collection + (doc,)})
        result = self._persist(aggregate, changed, expected_revision)
        return replace(result, appended=doc)

    def _read(self, product_id: str, expected_revision: Optional[int]) -> tuple[PortalAggregate, Product]:
        try:
            if expected_revision is not None:
                current = self.store.revision()
                if current != expected_revision:
                    raise WriteError(
                        code="E_STALE_WRITE",
                        message=f"store is at revision {current}, expected {expected_revision}",
                        file=self.key,
                    )
            text = self.store.get(self.key)
        except StoreLoadError as e:
            raise WriteError(
                code="E_MALFORMED_AGGREGATE",
                message=f"store is unreadable ({e.code}: {e.message})",
                file=self.key,
            ) from e
        if text is None:
            raise WriteError(code="E_STORE_EMPTY", message="no aggregate stored", file=self.key)
        aggregate, errors = read_aggregate(text, file=self.key)
        if aggregate is None:
            raise WriteError(
                code="E_MALFORMED_AGGREGATE",
                message=f"stored aggregate is invalid ({len(errors)} error(s)): {errors[0] if errors else ''}",
                file=self.key,
            )
        product = aggregate.products_by_id.get(product_id)
        if product is None:
            raise WriteError(
                code="E_PRODUCT_NOT_FOUND",
                message=f"unknown product id: {product_id}",
                file=self.key,
                path="product_id",
            )
        return aggregate, product

    def _persist(
        self, aggregate: PortalAggregate, product: Product, expected_revision: Optional[int]
    ) -> WriteResult:
        products = dict(aggregate.products_by_id)
        products[product.id] = product
        updated = PortalAggregate(portfolios_by_id=dict(aggregate.portfolios_by_id), products_by_id=products)

        # Compare-and-set: a write that landed since our read fails with E_STALE_WRITE.
        self.store.put(self.key, dumps_aggregate(updated), expected_revision=expected_revision)
        revision = self.store.revision()
        logger.info(f"Saved product {product.id} (revision {revision})")

        # The store never echoes our own write back to us.
        self.bus.dispatch(PRODUCT_DATA_UPDATED, product_id=product.id)
        return WriteResult(product=product, revision=revision)


def _require_allowed(allowed: bool) -> None:
    if not allowed:
        raise WriteError(
            code="E_WRITE_FORBIDDEN",
            message="current role may not edit products",
            path="role",
        )
