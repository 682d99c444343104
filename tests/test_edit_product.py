from pathlib import Path

import pytest

from product_portal.core.bus.notification_bus import PRODUCT_DATA_UPDATED, Notification, NotificationBus
from product_portal.core.edit.edit_product import ProductEditor, allocate_unique_id, can_edit
from product_portal.core.errors import WriteError
from product_portal.core.load.load_product import ProductAggregateLoader
from product_portal.core.model import GoalItem, MonthScope, YearScope
from product_portal.core.resolve.scope_filter import filter_by_scope
from product_portal.core.resolve.version_select import select_latest
from product_portal.core.store.document_store import DEFAULT_STORE_KEY, FileStore, MemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "examples"
APRIL = MonthScope(month=4, year=2025)


def _setup():
    store = MemoryStore()
    store.put(DEFAULT_STORE_KEY, (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    bus = NotificationBus(store)
    editor = ProductEditor(store, bus, clock=lambda: "2025-05-01T00:00:00Z")
    return store, bus, editor


def test_roles():
    assert can_edit("admin")
    assert can_edit("product_manager")
    assert not can_edit("stakeholder")
    assert not can_edit(None)


def test_append_goal_version_copies_latest_items_and_notifies():
    store, bus, editor = _setup()
    got: list[Notification] = []
    bus.subscribe(got.append)

    res = editor.append_version("checkout", "goals", APRIL, allowed=True)
    assert res.appended.id == "goals-2025-04-v3"
    assert res.appended.version == 3
    assert res.appended.created_at == "2025-05-01T00:00:00Z"
    assert [g.id for g in res.appended.goals] == ["g-latency", "g-wallets"]
    assert got == [Notification(topic=PRODUCT_DATA_UPDATED, channel="in-context", product_id="checkout")]
    assert res.revision == store.revision() == 2

    product = ProductAggregateLoader(store).load("checkout").product
    assert select_latest(filter_by_scope(product.release_goals, APRIL)).id == "goals-2025-04-v3"


def test_append_with_new_goals_in_empty_scope():
    _, _, editor = _setup()
    goals = [GoalItem(id="g-new", description="Launch")]
    res = editor.append_version("billing", "goals", MonthScope(month=6, year=2025), allowed=True, goals=goals)
    assert res.appended.version == 1
    assert res.appended.id == "goals-2025-06-v1"
    assert res.appended.goals == tuple(goals)


def test_append_roadmap_bumps_leading_segment():
    _, _, editor = _setup()
    res = editor.append_version("checkout", "roadmap", APRIL, allowed=True)
    assert res.appended.version == "2"
    assert res.appended.id == "roadmap-2025-v2"
    assert res.appended.link == "https://docs.example.com/checkout/roadmap-1.10"

    res = editor.append_version("checkout", "roadmap", YearScope(year=2024), allowed=True, link="https://x/r")
    assert res.appended.version == "1"
    assert res.appended.link == "https://x/r"


def test_append_release_note_after_fractional_version():
    _, _, editor = _setup()
    res = editor.append_version("checkout", "notes", APRIL, allowed=True)
    assert res.appended.version == 2
    assert res.appended.link == "https://docs.example.com/checkout/notes-2025-04-v1.5"


def test_forbidden_write_leaves_store_untouched():
    store, bus, editor = _setup()
    got: list[Notification] = []
    bus.subscribe(got.append)
    with pytest.raises(WriteError) as exc:
        editor.append_version("checkout", "goals", APRIL, allowed=False)
    assert exc.value.code == "E_WRITE_FORBIDDEN"
    assert store.revision() == 1
    assert got == []


def test_stale_write_rejected():
    store, _, editor = _setup()
    other = store.sibling()
    other.put(DEFAULT_STORE_KEY, store.get(DEFAULT_STORE_KEY))

    with pytest.raises(WriteError) as exc:
        editor.append_version("checkout", "goals", APRIL, allowed=True, expected_revision=1)
    assert exc.value.code == "E_STALE_WRITE"

    res = editor.append_version("checkout", "goals", APRIL, allowed=True, expected_revision=2)
    assert res.revision == 3


@pytest.mark.parametrize(
    "product_id, kind, scope, code",
    [
        ("nope", "goals", APRIL, "E_PRODUCT_NOT_FOUND"),
        ("checkout", "metrics", APRIL, "E_UNKNOWN_COLLECTION"),
        ("checkout", "goals", YearScope(year=2025), "E_INVALID_SCOPE"),
    ],
)
def test_append_errors(product_id, kind, scope, code):
    _, _, editor = _setup()
    with pytest.raises(WriteError) as exc:
        editor.append_version(product_id, kind, scope, allowed=True)
    assert exc.value.code == code


def test_empty_and_malformed_store():
    store = MemoryStore()
    editor = ProductEditor(store, NotificationBus(store))
    with pytest.raises(WriteError) as exc:
        editor.append_version("checkout", "goals", APRIL, allowed=True)
    assert exc.value.code == "E_STORE_EMPTY"

    store.put(DEFAULT_STORE_KEY, "{oops")
    with pytest.raises(WriteError) as exc:
        editor.append_version("checkout", "goals", APRIL, allowed=True)
    assert exc.value.code == "E_MALFORMED_AGGREGATE"


def test_save_product_changes_replaces_collections():
    store, _, editor = _setup()
    res = editor.save_product_changes("checkout", {"metrics": []}, allowed=True)
    assert res.product.metrics == ()
    assert ProductAggregateLoader(store).load("checkout").product.metrics == ()

    with pytest.raises(WriteError) as exc:
        editor.save_product_changes("checkout", {"widgets": []}, allowed=True)
    assert exc.value.code == "E_UNKNOWN_COLLECTION"


def test_allocate_unique_id():
    assert allocate_unique_id(set(), "a") == "a"
    assert allocate_unique_id({"a", "a-A"}, "a") == "a-B"


class InterleavingStore(MemoryStore):
    """Lets another context write right after this one reads."""

    def __init__(self, backend=None):
        super().__init__(backend)
        self.on_get = None

    def get(self, key):
        text = super().get(key)
        hook, self.on_get = self.on_get, None
        if hook is not None:
            hook()
        return text


def test_write_landing_between_read_and_put_is_stale():
    store = InterleavingStore()
    store.put(DEFAULT_STORE_KEY, (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    editor = ProductEditor(store, NotificationBus(store))

    other = store.sibling()
    other_editor = ProductEditor(other, NotificationBus(other))
    store.on_get = lambda: other_editor.append_version("checkout", "notes", APRIL, allowed=True, link="theirs")

    with pytest.raises(WriteError) as exc:
        editor.append_version("checkout", "goals", APRIL, allowed=True, expected_revision=store.revision())
    assert exc.value.code == "E_STALE_WRITE"

    product = ProductAggregateLoader(store).load("checkout").product
    assert product.release_notes[-1].link == "theirs"
    assert select_latest(filter_by_scope(product.release_goals, APRIL)).version == 2


def test_unreadable_file_store_refuses_edit(tmp_path: Path):
    path = tmp_path / "store.json"
    FileStore(path).put(DEFAULT_STORE_KEY, (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    path.write_text("{truncated", encoding="utf-8")
    store = FileStore(path)

    with pytest.raises(WriteError) as exc:
        ProductEditor(store, NotificationBus(store)).append_version("checkout", "goals", APRIL, allowed=True)
    assert exc.value.code == "E_MALFORMED_AGGREGATE"
    assert path.read_text(encoding="utf-8") == "{truncated"
