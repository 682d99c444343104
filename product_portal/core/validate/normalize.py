from __future__ import annotations

import math
from copy import deepcopy
from typing import Any


COLLECTION_KEYS: tuple[str, ...] = ("roadmap", "releaseGoals", "releasePlans", "metrics", "releaseNotes")

_GOAL_ITEM_KEYS = ("description", "currentState", "targetState", "status", "owner", "priority", "category")
_METRIC_NUMBER_KEYS = ("value", "monthlyTarget", "annualTarget", "previousValue")
_PLAN_ITEM_KEYS = (
    "title",
    "description",
    "category",
    "priority",
    "source",
    "owner",
    "status",
    "targetDate",
)


def normalize_aggregate(raw: Any) -> Any:
    """Rewrite legacy stored shapes into the one layout the validator accepts.

    Runs once, at the store-read boundary. Handles:
      - a bare list of portfolios, or portfolios with embedded ``products``
        arrays, lifted into the flat ``{portfolios, products}`` layout;
      - products missing a collection (treated as empty);
      - flat release goals / plans that carry their single item inline;
      - ``{"goal": {...}}`` wrappers inside a goals list;
      - numeric strings in goal/plan/note versions and metric numbers.

    Anything it does not recognize is passed through untouched so the
    validator can report it.
    """

    if isinstance(raw, list):
        raw = {"portfolios": raw}
    if not isinstance(raw, dict):
        return raw

    out = deepcopy(raw)
    portfolios = out.get("portfolios")
    products = out.get("products")
    if products is None:
        products = []
        out["products"] = products

    if isinstance(portfolios, list) and isinstance(products, list):
        known_ids = {p.get("id") for p in products if isinstance(p, dict)}
        for portfolio in portfolios:
            if not isinstance(portfolio, dict):
                continue
            embedded = portfolio.pop("products", None)
            if not isinstance(embedded, list):
                continue
            lifted_ids: list[str] = []
            for product in embedded:
                if not isinstance(product, dict):
                    continue
                product.setdefault("portfolioId", portfolio.get("id"))
                pid = product.get("id")
                lifted_ids.append(pid)
                if pid not in known_ids:
                    products.append(product)
                    known_ids.add(pid)
            portfolio.setdefault("productIds", lifted_ids)

    if isinstance(products, list):
        for product in products:
            if isinstance(product, dict):
                _normalize_product(product)

    return out


def _normalize_product(product: dict[str, Any]) -> None:
    for key in COLLECTION_KEYS:
        if product.get(key) is None:
            product[key] = []

    for key in ("releaseGoals", "releasePlans", "releaseNotes"):
        docs = product.get(key)
        if isinstance(docs, list):
            for doc in docs:
                if isinstance(doc, dict) and "version" in doc:
                    doc["version"] = _coerce_number(doc["version"])

    metrics = product.get("metrics")
    if isinstance(metrics, list):
        for metric in metrics:
            if isinstance(metric, dict):
                for k in _METRIC_NUMBER_KEYS:
                    if k in metric:
                        metric[k] = _coerce_number(metric[k])

    goals = product.get("releaseGoals")
    if isinstance(goals, list):
        for goal in goals:
            if isinstance(goal, dict):
                _normalize_goal(goal)

    plans = product.get("releasePlans")
    if isinstance(plans, list):
        for plan in plans:
            if isinstance(plan, dict):
                _normalize_plan(plan)


def _normalize_goal(goal: dict[str, Any]) -> None:
    # Old records used goal/futureState for description/targetState.
    if "goal" in goal and not isinstance(goal.get("goal"), dict) and "description" not in goal:
        goal["description"] = goal.pop("goal")
    if "futureState" in goal and "targetState" not in goal:
        goal["targetState"] = goal.pop("futureState")

    items = goal.get("goals")
    if isinstance(items, list):
        goal["goals"] = [_unwrap(item, "goal") for item in items]
        for key in _GOAL_ITEM_KEYS:
            goal.pop(key, None)
        return
    if items is not None:
        return

    flat = {k: goal.pop(k) for k in _GOAL_ITEM_KEYS if k in goal}
    if any(flat.get(k) for k in ("description", "currentState", "targetState")):
        flat.setdefault("description", "")
        flat["id"] = f"{goal.get('id')}-item-1"
        goal["goals"] = [flat]
    else:
        goal["goals"] = []


def _normalize_plan(plan: dict[str, Any]) -> None:
    items = plan.get("items")
    if isinstance(items, list):
        plan["items"] = [_unwrap(item, "item") for item in items]
        for key in _PLAN_ITEM_KEYS:
            plan.pop(key, None)
        return
    if items is not None:
        return

    flat = {k: plan.pop(k) for k in _PLAN_ITEM_KEYS if k in plan}
    if flat.get("title") or flat.get("description"):
        flat.setdefault("title", "")
        flat["id"] = f"{plan.get('id')}-item-1"
        plan["items"] = [flat]
    else:
        plan["items"] = []


def _coerce_number(value: Any) -> Any:
    """Numeric strings become numbers ("2" -> 2, "1.5" -> 1.5); anything else is unchanged."""
    if not isinstance(value, str):
        return value
    try:
        number = float(value.strip())
    except ValueError:
        return value
    if not math.isfinite(number):
        return value
    return int(number) if number.is_integer() else number


def _unwrap(item: Any, key: str) -> Any:
    if isinstance(item, dict) and len(item) == 1 and isinstance(item.get(key), dict):
        return item[key]
    return item
