from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, TypeVar, cast

from product_portal.core.errors import AggregateValidationError
from product_portal.core.model import (
    GoalItem,
    Metric,
    PlanItem,
    PortalAggregate,
    Portfolio,
    Product,
    ReleaseGoal,
    ReleaseNote,
    ReleasePlan,
    Roadmap,
)


T = TypeVar("T")


class _Ctx:
    """Accumulates errors for one validation pass."""

    def __init__(self, file: Optional[str]) -> None:
        self.file = file
        self.errors: list[AggregateValidationError] = []

    def error(self, code: str, message: str, path: str) -> None:
        self.errors.append(AggregateValidationError(code=code, message=message, file=self.file, path=path))

    def req_str(self, raw: dict[str, Any], key: str, path: str) -> Optional[str]:
        v = raw.get(key)
        if not isinstance(v, str) or not v.strip():
            self.error("E_REQUIRED_FIELD", f"{key} is required and must be a non-empty string", f"{path}.{key}")
            return None
        return v

    def req_int(self, raw: dict[str, Any], key: str, path: str) -> Optional[int]:
        v = raw.get(key)
        if isinstance(v, bool) or not isinstance(v, int):
            self.error("E_INVALID_TYPE", f"{key} must be an integer", f"{path}.{key}")
            return None
        return v

    def req_month(self, raw: dict[str, Any], path: str) -> Optional[int]:
        month = self.req_int(raw, "month", path)
        if month is not None and not 1 <= month <= 12:
            self.error("E_INVALID_RANGE", "month must be between 1 and 12", f"{path}.month")
            return None
        return month

    def req_number(self, raw: dict[str, Any], key: str, path: str) -> Optional[float]:
        v = raw.get(key)
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            self.error("E_INVALID_TYPE", f"{key} must be a number", f"{path}.{key}")
            return None
        return v

    def opt_str(self, raw: dict[str, Any], key: str, path: str) -> Optional[str]:
        v = raw.get(key)
        if v is not None and not isinstance(v, str):
            self.error("E_INVALID_TYPE", f"{key} must be a string", f"{path}.{key}")
            return None
        return v

    def opt_number(self, raw: dict[str, Any], key: str, path: str) -> Optional[float]:
        v = raw.get(key)
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            self.error("E_INVALID_TYPE", f"{key} must be a number", f"{path}.{key}")
            return None
        return v

    def opt_int(self, raw: dict[str, Any], key: str, path: str) -> Optional[int]:
        v = raw.get(key)
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, int):
            self.error("E_INVALID_TYPE", f"{key} must be an integer", f"{path}.{key}")
            return None
        return v

    def objects(self, raw: Any, path: str) -> list[tuple[str, dict[str, Any]]]:
        if not isinstance(raw, list):
            self.error("E_INVALID_TYPE", f"{path.rsplit('.', 1)[-1]} must be an array", path)
            return []
        out: list[tuple[str, dict[str, Any]]] = []
        for i, item in enumerate(raw):
            item_path = f"{path}[{i}]"
            if not isinstance(item, dict):
                self.error("E_INVALID_TYPE", "entry must be an object", item_path)
                continue
            out.append((item_path, item))
        return out


def validate_aggregate(
    raw: Any, *, file: Optional[str] = None
) -> tuple[Optional[PortalAggregate], list[AggregateValidationError]]:
    """Validate a normalized store document.

    Returns (aggregate, errors). Aggregate is None when errors exist.
    """

    ctx = _Ctx(file)
    if not isinstance(raw, dict):
        ctx.error("E_INVALID_TOP_LEVEL", "store document must be an object", "<root>")
        return None, ctx.errors

    portfolios_by_id: dict[str, Portfolio] = {}
    for path, p in ctx.objects(raw.get("portfolios"), "portfolios"):
        portfolio = _portfolio(ctx, p, path)
        if portfolio is None:
            continue
        if portfolio.id in portfolios_by_id:
            ctx.error("E_DUPLICATE_ID", f"duplicate portfolio id: {portfolio.id}", f"{path}.id")
            continue
        portfolios_by_id[portfolio.id] = portfolio

    products_by_id: dict[str, Product] = {}
    for path, p in ctx.objects(raw.get("products"), "products"):
        product = _product(ctx, p, path)
        if product is None:
            continue
        if product.id in products_by_id:
            ctx.error("E_DUPLICATE_ID", f"duplicate product id: {product.id}", f"{path}.id")
            continue
        products_by_id[product.id] = product

    if ctx.errors:
        return None, _sorted(ctx.errors)
    return PortalAggregate(portfolios_by_id=portfolios_by_id, products_by_id=products_by_id), []


def _portfolio(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[Portfolio]:
    n = len(ctx.errors)
    pid = ctx.req_str(raw, "id", path)
    name = ctx.req_str(raw, "name", path)
    description = ctx.opt_str(raw, "description", path)
    product_ids = raw.get("productIds", [])
    if not isinstance(product_ids, list) or any(not isinstance(x, str) for x in product_ids):
        ctx.error("E_INVALID_TYPE", "productIds must be an array of strings", f"{path}.productIds")
    if len(ctx.errors) > n:
        return None
    return Portfolio(
        id=cast(str, pid),
        name=cast(str, name),
        product_ids=tuple(product_ids),
        description=description,
    )


def _product(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[Product]:
    n = len(ctx.errors)
    pid = ctx.req_str(raw, "id", path)
    name = ctx.req_str(raw, "name", path)
    portfolio_id = ctx.req_str(raw, "portfolioId", path)
    description = ctx.opt_str(raw, "description", path)

    roadmap = _collection(ctx, raw, "roadmap", path, _roadmap, scoped_by_month=False)
    goals = _collection(ctx, raw, "releaseGoals", path, _release_goal)
    plans = _collection(ctx, raw, "releasePlans", path, _release_plan)
    metrics = _collection(ctx, raw, "metrics", path, _metric, unique=False)
    notes = _collection(ctx, raw, "releaseNotes", path, _release_note)

    if len(ctx.errors) > n:
        return None
    return Product(
        id=cast(str, pid),
        name=cast(str, name),
        portfolio_id=cast(str, portfolio_id),
        description=description,
        roadmap=tuple(roadmap),
        release_goals=tuple(goals),
        release_plans=tuple(plans),
        metrics=tuple(metrics),
        release_notes=tuple(notes),
    )


def _collection(
    ctx: _Ctx,
    raw: dict[str, Any],
    key: str,
    path: str,
    build: Callable[[_Ctx, dict[str, Any], str], Optional[T]],
    *,
    scoped_by_month: bool = True,
    unique: bool = True,
) -> list[T]:
    out: list[T] = []
    seen: set[tuple[Any, ...]] = set()
    for item_path, item in ctx.objects(raw.get(key, []), f"{path}.{key}"):
        built = build(ctx, item, item_path)
        if built is None:
            continue
        if unique:
            scope_key = (
                getattr(built, "month", None) if scoped_by_month else None,
                getattr(built, "year", None),
                getattr(built, "id", None),
            )
            if scope_key in seen:
                ctx.error(
                    "E_DUPLICATE_ID",
                    f"duplicate id in scope: {getattr(built, 'id', None)}",
                    f"{item_path}.id",
                )
                continue
            seen.add(scope_key)
        out.append(built)
    return out


def _roadmap(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[Roadmap]:
    n = len(ctx.errors)
    rid = ctx.req_str(raw, "id", path)
    year = ctx.req_int(raw, "year", path)
    version = raw.get("version")
    if isinstance(version, bool) or not isinstance(version, (str, int, float)) or version == "":
        ctx.error("E_INVALID_TYPE", "version must be a string or number", f"{path}.version")
    link = ctx.opt_str(raw, "link", path)
    created_at = ctx.opt_str(raw, "createdAt", path)
    quarter = ctx.opt_int(raw, "quarter", path)
    title = ctx.opt_str(raw, "title", path)
    description = ctx.opt_str(raw, "description", path)
    status = ctx.opt_str(raw, "status", path)
    if len(ctx.errors) > n:
        return None
    return Roadmap(
        id=cast(str, rid),
        year=cast(int, year),
        version=str(version),
        link=link,
        created_at=created_at,
        quarter=quarter,
        title=title,
        description=description,
        status=status,
    )


def _goal_item(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[GoalItem]:
    n = len(ctx.errors)
    gid = ctx.req_str(raw, "id", path)
    description = ctx.opt_str(raw, "description", path)
    current_state = ctx.opt_str(raw, "currentState", path)
    target_state = ctx.opt_str(raw, "targetState", path)
    status = ctx.opt_str(raw, "status", path)
    owner = ctx.opt_str(raw, "owner", path)
    priority = ctx.opt_str(raw, "priority", path)
    category = ctx.opt_str(raw, "category", path)
    if len(ctx.errors) > n:
        return None
    return GoalItem(
        id=cast(str, gid),
        description=description or "",
        current_state=current_state or "",
        target_state=target_state or "",
        status=status,
        owner=owner,
        priority=priority,
        category=category,
    )


def _release_goal(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[ReleaseGoal]:
    n = len(ctx.errors)
    gid = ctx.req_str(raw, "id", path)
    month = ctx.req_month(raw, path)
    year = ctx.req_int(raw, "year", path)
    version = ctx.req_int(raw, "version", path)
    created_at = ctx.opt_str(raw, "createdAt", path)
    items = [
        g
        for g in (_goal_item(ctx, item, p) for p, item in ctx.objects(raw.get("goals", []), f"{path}.goals"))
        if g is not None
    ]
    if len(ctx.errors) > n:
        return None
    return ReleaseGoal(
        id=cast(str, gid),
        month=cast(int, month),
        year=cast(int, year),
        version=cast(int, version),
        goals=tuple(items),
        created_at=created_at,
    )


def _plan_item(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[PlanItem]:
    n = len(ctx.errors)
    pid = ctx.req_str(raw, "id", path)
    title = ctx.opt_str(raw, "title", path)
    description = ctx.opt_str(raw, "description", path)
    fields = {
        k: ctx.opt_str(raw, k, path)
        for k in ("category", "priority", "source", "owner", "status", "targetDate")
    }
    if len(ctx.errors) > n:
        return None
    return PlanItem(
        id=cast(str, pid),
        title=title or "",
        description=description or "",
        category=fields["category"],
        priority=fields["priority"],
        source=fields["source"],
        owner=fields["owner"],
        status=fields["status"],
        target_date=fields["targetDate"],
    )


def _release_plan(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[ReleasePlan]:
    n = len(ctx.errors)
    pid = ctx.req_str(raw, "id", path)
    month = ctx.req_month(raw, path)
    year = ctx.req_int(raw, "year", path)
    version = ctx.req_int(raw, "version", path)
    created_at = ctx.opt_str(raw, "createdAt", path)
    items = [
        i
        for i in (_plan_item(ctx, item, p) for p, item in ctx.objects(raw.get("items", []), f"{path}.items"))
        if i is not None
    ]
    if len(ctx.errors) > n:
        return None
    return ReleasePlan(
        id=cast(str, pid),
        month=cast(int, month),
        year=cast(int, year),
        version=cast(int, version),
        items=tuple(items),
        created_at=created_at,
    )


def _metric(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[Metric]:
    n = len(ctx.errors)
    mid = ctx.req_str(raw, "id", path)
    month = ctx.req_month(raw, path)
    year = ctx.req_int(raw, "year", path)
    name = ctx.req_str(raw, "name", path)
    value = ctx.req_number(raw, "value", path)
    monthly_target = ctx.opt_number(raw, "monthlyTarget", path)
    annual_target = ctx.opt_number(raw, "annualTarget", path)
    previous_value = ctx.opt_number(raw, "previousValue", path)
    unit = ctx.opt_str(raw, "unit", path)
    status = ctx.opt_str(raw, "status", path)
    if len(ctx.errors) > n:
        return None
    return Metric(
        id=cast(str, mid),
        month=cast(int, month),
        year=cast(int, year),
        name=cast(str, name),
        value=cast(float, value),
        monthly_target=monthly_target,
        annual_target=annual_target,
        previous_value=previous_value,
        unit=unit,
        status=status,
    )


def _release_note(ctx: _Ctx, raw: dict[str, Any], path: str) -> Optional[ReleaseNote]:
    n = len(ctx.errors)
    nid = ctx.req_str(raw, "id", path)
    month = ctx.req_month(raw, path)
    year = ctx.req_int(raw, "year", path)
    version = ctx.req_number(raw, "version", path)
    link = ctx.opt_str(raw, "link", path)
    created_at = ctx.opt_str(raw, "createdAt", path)
    title = ctx.opt_str(raw, "title", path)
    highlights = ctx.opt_str(raw, "highlights", path)
    note_type = ctx.opt_str(raw, "type", path)
    if len(ctx.errors) > n:
        return None
    return ReleaseNote(
        id=cast(str, nid),
        month=cast(int, month),
        year=cast(int, year),
        version=cast(float, version),
        link=link,
        created_at=created_at,
        title=title,
        highlights=highlights,
        type=note_type,
    )


def summarize_aggregate(aggregate: PortalAggregate) -> str:
    counts = {"roadmap": 0, "goals": 0, "plans": 0, "metrics": 0, "notes": 0}
    for p in aggregate.products_by_id.values():
        counts["roadmap"] += len(p.roadmap)
        counts["goals"] += len(p.release_goals)
        counts["plans"] += len(p.release_plans)
        counts["metrics"] += len(p.metrics)
        counts["notes"] += len(p.release_notes)
    parts = [f"{k}={v}" for k, v in counts.items()]
    return (
        f"OK: {len(aggregate.portfolios_by_id)} portfolios, {len(aggregate.products_by_id)} products ("
        + ", ".join(parts)
        + ")"
    )


def _sorted(errors: Iterable[AggregateValidationError]) -> list[AggregateValidationError]:
    return sorted(
        list(errors),
        key=lambda e: (
            e.file or "",
            e.path or "",
            e.code,
        ),
    )
