from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

from product_portal.core.errors import PortalError, StoreLoadError
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
from product_portal.core.validate.normalize import normalize_aggregate
from product_portal.core.validate.validate_aggregate import validate_aggregate


def parse_store_document(text: str, *, file: Optional[str] = None) -> dict[str, Any]:
    """Parse the JSON text stored under the root key.

    Does not check shape beyond "top level is an object or a legacy list";
    validator owns shape checking.
    """

    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise StoreLoadError(code="E_JSON_PARSE", message=str(e), file=file) from e

    if isinstance(data, list):
        return {"portfolios": data}
    if not isinstance(data, dict):
        raise StoreLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be an object",
            file=file,
        )
    return data


def read_aggregate(
    text: str, *, file: Optional[str] = None
) -> tuple[Optional[PortalAggregate], list[PortalError]]:
    """parse -> normalize -> validate. Never raises for bad content."""

    try:
        data = parse_store_document(text, file=file)
    except StoreLoadError as e:
        return None, [e]

    aggregate, errors = validate_aggregate(normalize_aggregate(data), file=file)
    return aggregate, list(errors)


def load_store_file(path: str, key: str) -> str:
    """Return the serialized aggregate stored under ``key`` in a store file."""

    p = Path(path)
    if not p.exists():
        raise StoreLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", file=str(p))

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise StoreLoadError(code="E_FILE_READ", message=str(e), file=str(p)) from e

    try:
        envelope = json.loads(raw_text)
    except ValueError as e:
        raise StoreLoadError(code="E_JSON_PARSE", message=str(e), file=str(p)) from e

    entries = envelope.get("entries") if isinstance(envelope, dict) else None
    if not isinstance(entries, dict):
        raise StoreLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="store file must be an object with an 'entries' mapping",
            file=str(p),
        )
    value = entries.get(key)
    if value is None:
        raise StoreLoadError(code="E_KEY_NOT_FOUND", message=f"no entry for key: {key}", file=str(p))
    if not isinstance(value, str):
        raise StoreLoadError(
            code="E_INVALID_TYPE", message=f"entry {key} must be a JSON string", file=str(p), path=key
        )
    return value


def dump_aggregate(aggregate: PortalAggregate) -> dict[str, Any]:
    """Serialize an aggregate into the canonical stored layout."""

    return {
        "portfolios": [_portfolio(p) for p in aggregate.portfolios_by_id.values()],
        "products": [_product(p) for p in aggregate.products_by_id.values()],
    }


def dumps_aggregate(aggregate: PortalAggregate) -> str:
    return json.dumps(dump_aggregate(aggregate), sort_keys=True)


def _compact(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


def _portfolio(p: Portfolio) -> dict[str, Any]:
    return _compact(
        {"id": p.id, "name": p.name, "productIds": list(p.product_ids), "description": p.description}
    )


def _product(p: Product) -> dict[str, Any]:
    return _compact(
        {
            "id": p.id,
            "name": p.name,
            "portfolioId": p.portfolio_id,
            "description": p.description,
            "roadmap": [_roadmap(r) for r in p.roadmap],
            "releaseGoals": [_release_goal(g) for g in p.release_goals],
            "releasePlans": [_release_plan(r) for r in p.release_plans],
            "metrics": [_metric(m) for m in p.metrics],
            "releaseNotes": [_release_note(n) for n in p.release_notes],
        }
    )


def _roadmap(r: Roadmap) -> dict[str, Any]:
    return _compact(
        {
            "id": r.id,
            "year": r.year,
            "version": r.version,
            "link": r.link,
            "createdAt": r.created_at,
            "quarter": r.quarter,
            "title": r.title,
            "description": r.description,
            "status": r.status,
        }
    )


def _goal_item(g: GoalItem) -> dict[str, Any]:
    return _compact(
        {
            "id": g.id,
            "description": g.description,
            "currentState": g.current_state,
            "targetState": g.target_state,
            "status": g.status,
            "owner": g.owner,
            "priority": g.priority,
            "category": g.category,
        }
    )


def _release_goal(g: ReleaseGoal) -> dict[str, Any]:
    return _compact(
        {
            "id": g.id,
            "month": g.month,
            "year": g.year,
            "version": g.version,
            "goals": [_goal_item(i) for i in g.goals],
            "createdAt": g.created_at,
        }
    )


def _plan_item(i: PlanItem) -> dict[str, Any]:
    return _compact(
        {
            "id": i.id,
            "title": i.title,
            "description": i.description,
            "category": i.category,
            "priority": i.priority,
            "source": i.source,
            "owner": i.owner,
            "status": i.status,
            "targetDate": i.target_date,
        }
    )


def _release_plan(r: ReleasePlan) -> dict[str, Any]:
    return _compact(
        {
            "id": r.id,
            "month": r.month,
            "year": r.year,
            "version": r.version,
            "items": [_plan_item(i) for i in r.items],
            "createdAt": r.created_at,
        }
    )


def _metric(m: Metric) -> dict[str, Any]:
    return _compact(
        {
            "id": m.id,
            "month": m.month,
            "year": m.year,
            "name": m.name,
            "value": m.value,
            "monthlyTarget": m.monthly_target,
            "annualTarget": m.annual_target,
            "previousValue": m.previous_value,
            "unit": m.unit,
            "status": m.status,
        }
    )


def _release_note(n: ReleaseNote) -> dict[str, Any]:
    return _compact(
        {
            "id": n.id,
            "month": n.month,
            "year": n.year,
            "version": n.version,
            "link": n.link,
            "createdAt": n.created_at,
            "title": n.title,
            "highlights": n.highlights,
            "type": n.type,
        }
    )
