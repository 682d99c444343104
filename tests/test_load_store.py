import json
from pathlib import Path

import pytest

from product_portal.core.errors import StoreLoadError
from product_portal.core.io.load_store import (
    dump_aggregate,
    dumps_aggregate,
    load_store_file,
    parse_store_document,
    read_aggregate,
)


EXAMPLES = Path(__file__).resolve().parents[1] / "examples"


def test_parse_rejects_bad_json():
    with pytest.raises(StoreLoadError) as exc:
        parse_store_document("{not json", file="k")
    assert exc.value.code == "E_JSON_PARSE"
    assert str(exc.value).startswith("k: E_JSON_PARSE:")


def test_parse_rejects_scalar_top_level():
    with pytest.raises(StoreLoadError) as exc:
        parse_store_document("42")
    assert exc.value.code == "E_INVALID_TOP_LEVEL"


def test_read_aggregate_never_raises():
    agg, errors = read_aggregate("[1, 2")
    assert agg is None
    assert [e.code for e in errors] == ["E_JSON_PARSE"]


def test_canonical_dump_reads_back_the_same():
    text = (EXAMPLES / "portal.json").read_text(encoding="utf-8")
    agg, errors = read_aggregate(text)
    assert errors == []

    again, errors = read_aggregate(dumps_aggregate(agg))
    assert errors == []
    assert again == agg


def test_dump_uses_stored_field_names():
    agg, _ = read_aggregate((EXAMPLES / "legacy-portfolios.json").read_text(encoding="utf-8"))
    out = dump_aggregate(agg)
    product = out["products"][0]
    assert product["portfolioId"] == "pf-growth"
    assert product["releaseGoals"][0]["goals"][0]["targetState"] == "3 steps"
    assert "description" not in product


def _store_file(tmp_path: Path, envelope) -> str:
    p = tmp_path / "store.json"
    p.write_text(json.dumps(envelope), encoding="utf-8")
    return str(p)


def test_load_store_file_reads_entry(tmp_path: Path):
    path = _store_file(tmp_path, {"revision": 3, "entries": {"productPortalConfig": "{}"}})
    assert load_store_file(path, "productPortalConfig") == "{}"


@pytest.mark.parametrize(
    "envelope, code",
    [
        ({"revision": 1}, "E_INVALID_TOP_LEVEL"),
        ({"revision": 1, "entries": {}}, "E_KEY_NOT_FOUND"),
        ({"revision": 1, "entries": {"productPortalConfig": {"portfolios": []}}}, "E_INVALID_TYPE"),
    ],
)
def test_load_store_file_errors(tmp_path: Path, envelope, code):
    path = _store_file(tmp_path, envelope)
    with pytest.raises(StoreLoadError) as exc:
        load_store_file(path, "productPortalConfig")
    assert exc.value.code == code


def test_load_store_file_missing(tmp_path: Path):
    try:
        load_store_file(str(tmp_path / "nope.json"), "productPortalConfig")
        assert False, "expected StoreLoadError"
    except StoreLoadError as e:
        assert e.code == "E_FILE_NOT_FOUND"
