import asyncio
from pathlib import Path

from product_portal.core.bus.notification_bus import NotificationBus
from product_portal.core.edit.edit_product import ProductEditor
from product_portal.core.load.load_product import LoadResult, ProductAggregateLoader
from product_portal.core.model import MonthScope
from product_portal.core.reconcile.reconciler import (
    ViewState,
    ViewStateReconciler,
    empty_state_message,
)
from product_portal.core.store.document_store import DEFAULT_STORE_KEY, MemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "examples"
APRIL = MonthScope(month=4, year=2025)


def _seeded_store() -> MemoryStore:
    store = MemoryStore()
    store.put(DEFAULT_STORE_KEY, (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    return store


class CountingLoader(ProductAggregateLoader):
    def __init__(self, store):
        super().__init__(store)
        self.calls = 0

    def load(self, product_id: str) -> LoadResult:
        self.calls += 1
        return super().load(product_id)


class GatedReconciler(ViewStateReconciler):
    """Each load snapshots the store immediately but returns only when its gate opens."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gates: list[asyncio.Event] = []

    async def _fetch(self, product_id: str) -> LoadResult:
        gate = asyncio.Event()
        self.gates.append(gate)
        snapshot = self.loader.load(product_id)
        await gate.wait()
        return snapshot


def test_mount_derives_latest_documents():
    store = _seeded_store()
    rec = ViewStateReconciler(ProductAggregateLoader(store), NotificationBus(store), "checkout", APRIL)
    assert rec.state.status == "loading"

    state = asyncio.run(rec.mount())
    assert state.status == "ready"
    assert state.portfolio.name == "Payments"
    assert state.latest_release_goal.id == "goals-2025-04-v2"
    assert state.latest_release_plan.id == "plans-2025-04-v1"
    assert state.roadmap_version == "1.10"
    assert state.roadmap_link == "https://docs.example.com/checkout/roadmap-1.10"
    assert state.release_notes_version == "1.5"
    assert [m.id for m in state.metrics] == ["m-conv-2025-04", "m-p95-2025-04"]


def test_in_context_write_reaches_every_consumer():
    store = _seeded_store()
    bus = NotificationBus(store)
    editor = ProductEditor(store, bus)

    async def scenario():
        first = ViewStateReconciler(ProductAggregateLoader(store), bus, "checkout", APRIL)
        second = ViewStateReconciler(ProductAggregateLoader(store), bus, "checkout", APRIL)
        await first.mount()
        await second.mount()
        editor.append_version("checkout", "goals", APRIL, allowed=True)
        return await first.settle(), await second.settle()

    first, second = asyncio.run(scenario())
    assert first.latest_release_goal.version == 3
    assert second.latest_release_goal.version == 3


def test_cross_context_write_is_observed():
    store_a = _seeded_store()
    store_b = store_a.sibling()
    editor_a = ProductEditor(store_a, NotificationBus(store_a))

    async def scenario():
        rec_b = ViewStateReconciler(ProductAggregateLoader(store_b), NotificationBus(store_b), "checkout", APRIL)
        before = await rec_b.mount()
        editor_a.append_version("checkout", "goals", APRIL, allowed=True)
        after = await rec_b.settle()
        return before, after

    before, after = asyncio.run(scenario())
    assert before.latest_release_goal.version == 2
    assert after.latest_release_goal.version == 3
    assert after.sequence == 2


def test_superseded_load_is_discarded():
    store = _seeded_store()
    bus = NotificationBus(store)
    editor = ProductEditor(store, bus)

    async def scenario():
        rec = GatedReconciler(ProductAggregateLoader(store), bus, "checkout", APRIL)
        mounting = asyncio.create_task(rec.mount())
        await asyncio.sleep(0)
        rec.gates[0].set()
        await mounting

        editor.append_version("checkout", "goals", APRIL, allowed=True)
        await asyncio.sleep(0)
        editor.append_version("checkout", "goals", APRIL, allowed=True)
        await asyncio.sleep(0)
        assert len(rec.gates) == 3

        # newest load finishes first, older one straggles in afterwards
        rec.gates[2].set()
        await asyncio.sleep(0)
        rec.gates[1].set()
        return await rec.settle()

    state = asyncio.run(scenario())
    assert state.latest_release_goal.version == 4
    assert state.sequence == 3


def test_set_scope_rederives_without_loading():
    store = _seeded_store()
    loader = CountingLoader(store)
    rec = ViewStateReconciler(loader, NotificationBus(store), "checkout", APRIL)
    asyncio.run(rec.mount())
    assert loader.calls == 1

    march = rec.set_scope(MonthScope(month=3, year=2025))
    assert loader.calls == 1
    assert march.latest_release_goal.id == "goals-2025-03-v1"
    assert march.latest_release_note is None
    assert march.roadmap_version == "1.10"

    empty = rec.set_scope(MonthScope(month=1, year=2024))
    assert empty.latest_roadmap is None
    assert empty.latest_release_goal is None
    assert empty.metrics == ()
    assert empty_state_message("roadmap", empty.scope) == "no roadmap for 2024"
    assert empty_state_message("release goals", empty.scope) == "no release goals for 01/2024"


def test_not_found_is_terminal_until_navigation():
    store = _seeded_store()
    bus = NotificationBus(store)
    editor = ProductEditor(store, bus)
    seen: list[ViewState] = []

    async def scenario():
        rec = ViewStateReconciler(ProductAggregateLoader(store), bus, "ghost", APRIL, on_change=seen.append)
        missing = await rec.mount()
        editor.append_version("checkout", "goals", APRIL, allowed=True)
        still_missing = await rec.settle()
        found = await rec.navigate("checkout")
        return missing, still_missing, found

    missing, still_missing, found = asyncio.run(scenario())
    assert missing.status == "not_found"
    assert missing.not_found.reason == "unknown_product"
    assert still_missing is missing
    assert found.status == "ready"
    assert found.latest_release_goal.version == 3
    assert [s.status for s in seen] == ["not_found", "loading", "ready"]


def test_unmount_stops_updates():
    store = _seeded_store()
    bus = NotificationBus(store)
    editor = ProductEditor(store, bus)

    async def scenario():
        rec = ViewStateReconciler(ProductAggregateLoader(store), bus, "checkout", APRIL)
        await rec.mount()
        rec.unmount()
        editor.append_version("checkout", "goals", APRIL, allowed=True)
        return await rec.settle()

    state = asyncio.run(scenario())
    assert state.latest_release_goal.version == 2
    assert bus.listener_count == 0


def test_malformed_write_turns_view_not_found():
    store = _seeded_store()
    other = store.sibling()

    async def scenario():
        rec = ViewStateReconciler(ProductAggregateLoader(store), NotificationBus(store), "checkout", APRIL)
        await rec.mount()
        other.put(DEFAULT_STORE_KEY, "{garbage")
        return await rec.settle()

    state = asyncio.run(scenario())
    assert state.status == "not_found"
    assert state.not_found.reason == "malformed_aggregate"
