from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Literal, Optional

from product_portal.core.bus.notification_bus import Notification, NotificationBus
from product_portal.core.load.load_product import LoadResult, NotFound, ProductAggregateLoader, ProductRef
from product_portal.core.model import (
    Metric,
    MonthScope,
    Portfolio,
    Product,
    ReleaseGoal,
    ReleaseNote,
    ReleasePlan,
    Roadmap,
)
from product_portal.core.resolve.scope_filter import filter_by_scope
from product_portal.core.resolve.version_select import format_version, select_latest
from product_portal.core.store.document_store import Unsubscribe


logger = logging.getLogger(__name__)

Status = Literal["loading", "ready", "not_found"]


@dataclass(frozen=True)
class ViewState:
    status: Status
    product_id: str
    scope: MonthScope
    sequence: int = 0

    product: Optional[Product] = None
    portfolio: Optional[Portfolio] = None
    not_found: Optional[NotFound] = None

    latest_roadmap: Optional[Roadmap] = None
    latest_release_goal: Optional[ReleaseGoal] = None
    latest_release_plan: Optional[ReleasePlan] = None
    latest_release_note: Optional[ReleaseNote] = None
    metrics: tuple[Metric, ...] = ()

    roadmap_link: Optional[str] = None
    roadmap_version: Optional[str] = None
    release_notes_link: Optional[str] = None
    release_notes_version: Optional[str] = None


def derive_view(ref: ProductRef, scope: MonthScope, *, sequence: int = 0) -> ViewState:
    """filter -> select latest -> derive links, for one product and one scope."""

    product = ref.product
    roadmap = select_latest(filter_by_scope(product.roadmap, scope.year_scope()))
    goal = select_latest(filter_by_scope(product.release_goals, scope))
    plan = select_latest(filter_by_scope(product.release_plans, scope))
    note = select_latest(filter_by_scope(product.release_notes, scope))
    metrics = tuple(filter_by_scope(product.metrics, scope))

    return ViewState(
        status="ready",
        product_id=product.id,
        scope=scope,
        sequence=sequence,
        product=product,
        portfolio=ref.portfolio,
        latest_roadmap=roadmap,
        latest_release_goal=goal,
        latest_release_plan=plan,
        latest_release_note=note,
        metrics=metrics,
        roadmap_link=roadmap.link if roadmap else None,
        roadmap_version=roadmap.version if roadmap else None,
        release_notes_link=note.link if note else None,
        release_notes_version=format_version(note.version) if note else None,
    )


def empty_state_message(kind: str, scope: MonthScope) -> str:
    if kind == "roadmap":
        return f"no roadmap for {scope.year}"
    return f"no {kind} for {scope.month:02d}/{scope.year}"


class ViewStateReconciler:
    """Keeps one consumer's derived view consistent with the store.

    loading -> ready | not_found. Every bus notification re-runs the full
    pipeline; each run is stamped with a sequence number and only the most
    recently issued run may publish its result.
    """

    def __init__(
        self,
        loader: ProductAggregateLoader,
        bus: NotificationBus,
        product_id: str,
        scope: MonthScope,
        *,
        on_change: Optional[Callable[[ViewState], None]] = None,
    ) -> None:
        self.loader = loader
        self.bus = bus
        self.product_id = product_id
        self.scope = scope
        self._on_change = on_change

        self._state = ViewState(status="loading", product_id=product_id, scope=scope)
        self._ref: Optional[ProductRef] = None
        self._issued = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._pending: set[asyncio.Task[ViewState]] = set()

    @property
    def state(self) -> ViewState:
        return self._state

    async def mount(self) -> ViewState:
        self._loop = asyncio.get_running_loop()
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(self._on_notification)
        return await self.refresh()

    def unmount(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()

    async def refresh(self) -> ViewState:
        self._issued += 1
        seq = self._issued
        result = await self._fetch(self.product_id)

        if seq != self._issued:
            logger.debug(f"Discarding superseded load #{seq} (latest is #{self._issued})")
            return self._state

        if isinstance(result, NotFound):
            self._ref = None
            self._set(
                ViewState(
                    status="not_found",
                    product_id=self.product_id,
                    scope=self.scope,
                    sequence=seq,
                    not_found=result,
                )
            )
        else:
            self._ref = result
            self._set(derive_view(result, self.scope, sequence=seq))
        return self._state

    async def _fetch(self, product_id: str) -> LoadResult:
        return await asyncio.to_thread(self.loader.load, product_id)

    def set_scope(self, scope: MonthScope) -> ViewState:
        """Re-derive for a new period from the aggregate already held."""
        self.scope = scope
        if self._ref is not None and self._state.status == "ready":
            self._set(derive_view(self._ref, scope, sequence=self._state.sequence))
        else:
            self._set(replace(self._state, scope=scope))
        return self._state

    async def navigate(self, product_id: str) -> ViewState:
        self.product_id = product_id
        self._ref = None
        self._set(ViewState(status="loading", product_id=product_id, scope=self.scope))
        return await self.refresh()

    async def settle(self) -> ViewState:
        """Wait until every refresh scheduled by notifications has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        return self._state

    def _on_notification(self, notification: Notification) -> None:
        if self._state.status == "not_found":
            logger.debug(f"Ignoring {notification.topic}: {self.product_id} not found")
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._schedule_refresh()
        else:
            loop.call_soon_threadsafe(self._schedule_refresh)

    def _schedule_refresh(self) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(_log_failure)

    def _set(self, state: ViewState) -> None:
        self._state = state
        if self._on_change is not None:
            self._on_change(state)


def _log_failure(task: "asyncio.Task[ViewState]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Reconciliation failed: {exc!r}")
