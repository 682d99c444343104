from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Union


DocumentKind = Literal["roadmap", "goals", "plans", "metrics", "notes"]

VERSIONED_KINDS: tuple[str, ...] = ("roadmap", "goals", "plans", "notes")

# Attribute name on Product for each document kind.
COLLECTION_FIELDS: dict[str, str] = {
    "roadmap": "roadmap",
    "goals": "release_goals",
    "plans": "release_plans",
    "metrics": "metrics",
    "notes": "release_notes",
}


@dataclass(frozen=True)
class YearScope:
    year: int


@dataclass(frozen=True)
class MonthScope:
    month: int
    year: int

    def year_scope(self) -> YearScope:
        return YearScope(year=self.year)


Scope = Union[YearScope, MonthScope]


@dataclass(frozen=True)
class Roadmap:
    id: str
    year: int
    version: str
    link: Optional[str] = None
    created_at: Optional[str] = None

    quarter: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class GoalItem:
    id: str
    description: str
    current_state: str = ""
    target_state: str = ""
    status: Optional[str] = None
    owner: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class ReleaseGoal:
    id: str
    month: int
    year: int
    version: int
    goals: tuple[GoalItem, ...] = ()
    created_at: Optional[str] = None


@dataclass(frozen=True)
class PlanItem:
    id: str
    title: str
    description: str = ""
    category: Optional[str] = None
    priority: Optional[str] = None
    source: Optional[str] = None
    owner: Optional[str] = None
    status: Optional[str] = None
    target_date: Optional[str] = None


@dataclass(frozen=True)
class ReleasePlan:
    id: str
    month: int
    year: int
    version: int
    items: tuple[PlanItem, ...] = ()
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Metric:
    id: str
    month: int
    year: int
    name: str
    value: float
    monthly_target: Optional[float] = None
    annual_target: Optional[float] = None
    previous_value: Optional[float] = None
    unit: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True)
class ReleaseNote:
    id: str
    month: int
    year: int
    version: float
    link: Optional[str] = None
    created_at: Optional[str] = None

    title: Optional[str] = None
    highlights: Optional[str] = None
    type: Optional[str] = None


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    portfolio_id: str
    description: Optional[str] = None

    roadmap: tuple[Roadmap, ...] = ()
    release_goals: tuple[ReleaseGoal, ...] = ()
    release_plans: tuple[ReleasePlan, ...] = ()
    metrics: tuple[Metric, ...] = ()
    release_notes: tuple[ReleaseNote, ...] = ()


@dataclass(frozen=True)
class Portfolio:
    id: str
    name: str
    product_ids: tuple[str, ...] = ()
    description: Optional[str] = None


@dataclass(frozen=True)
class PortalAggregate:
    """Everything stored under one root key, indexed by id."""

    portfolios_by_id: dict[str, Portfolio] = field(default_factory=dict)
    products_by_id: dict[str, Product] = field(default_factory=dict)
