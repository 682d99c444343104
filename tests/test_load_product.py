import json
from pathlib import Path

from product_portal.core.load.load_product import NotFound, ProductAggregateLoader, ProductRef
from product_portal.core.store.document_store import DEFAULT_STORE_KEY, FileStore, MemoryStore


EXAMPLES = Path(__file__).resolve().parents[1] / "examples"


def _store_with(text: str) -> MemoryStore:
    store = MemoryStore()
    store.put(DEFAULT_STORE_KEY, text)
    return store


def _example_store() -> MemoryStore:
    return _store_with((EXAMPLES / "portal.json").read_text(encoding="utf-8"))


def test_load_product_with_portfolio():
    res = ProductAggregateLoader(_example_store()).load("checkout")
    assert isinstance(res, ProductRef)
    assert res.product.name == "Checkout"
    assert res.portfolio is not None
    assert res.portfolio.name == "Payments"


def test_unknown_product():
    res = ProductAggregateLoader(_example_store()).load("nope")
    assert res == NotFound(product_id="nope", reason="unknown_product")


def test_empty_store():
    res = ProductAggregateLoader(MemoryStore()).load("checkout")
    assert isinstance(res, NotFound)
    assert res.reason == "empty_store"


def test_malformed_aggregate_degrades_to_not_found():
    res = ProductAggregateLoader(_store_with("{broken")).load("checkout")
    assert isinstance(res, NotFound)
    assert res.reason == "malformed_aggregate"
    assert [e.code for e in res.errors] == ["E_JSON_PARSE"]


def test_dangling_portfolio_reference():
    doc = {"portfolios": [], "products": [{"id": "p", "name": "P", "portfolioId": "gone"}]}
    res = ProductAggregateLoader(_store_with(json.dumps(doc))).load("p")
    assert isinstance(res, ProductRef)
    assert res.portfolio is None


def test_every_load_reads_the_store():
    store = _example_store()
    loader = ProductAggregateLoader(store)
    assert isinstance(loader.load("checkout"), ProductRef)
    store.put(DEFAULT_STORE_KEY, json.dumps({"portfolios": [], "products": []}))
    assert isinstance(loader.load("checkout"), NotFound)


def test_custom_key():
    store = MemoryStore()
    store.put("other", (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    assert isinstance(ProductAggregateLoader(store, key="other").load("billing"), ProductRef)
    assert ProductAggregateLoader(store).load("billing").reason == "empty_store"


def test_corrupt_store_file_is_malformed_not_empty(tmp_path: Path):
    path = tmp_path / "store.json"
    store = FileStore(path)
    store.put(DEFAULT_STORE_KEY, (EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    store.put("other", "x")
    path.write_text(path.read_text(encoding="utf-8")[:-5], encoding="utf-8")

    res = ProductAggregateLoader(FileStore(path)).load("checkout")
    assert isinstance(res, NotFound)
    assert res.reason == "malformed_aggregate"
    assert [e.code for e in res.errors] == ["E_JSON_PARSE"]


def test_string_version_does_not_hide_other_products():
    doc = json.loads((EXAMPLES / "portal.json").read_text(encoding="utf-8"))
    doc["products"][0]["releaseGoals"][0]["version"] = "2"
    loader = ProductAggregateLoader(_store_with(json.dumps(doc)))

    assert isinstance(loader.load("billing"), ProductRef)
    goals = loader.load("checkout").product.release_goals
    assert goals[0].version == 2
