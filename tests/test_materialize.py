import csv
import io
from datetime import date

import orjson
import pytest

from conftest import source_record
from pagecache.errors import EmptyCollectionError, MaterializeIOError
from pagecache.storage.columns import CUSTOMER_COLUMNS, flatten, header


def _rows(path):
    with path.open(newline="", encoding="utf-8") as handle:
        return list(csv.reader(handle))


def test_header_matches_column_table(cache, materializer):
    cache.upsert("demo-us", [source_record(0)])
    rows = _rows(materializer.materialize("demo-us"))
    assert rows[0] == header()
    assert rows[0][:3] == ["id", "firstName", "lastName"]
    assert all(len(row) == len(CUSTOMER_COLUMNS) for row in rows)


def test_materialize_is_deterministic(cache, materializer):
    cache.upsert("demo-us", [source_record(i) for i in range(40)])
    first = materializer.materialize("demo-us").read_bytes()
    second = materializer.materialize("demo-us").read_bytes()
    assert first == second
    assert first.count(b"\r\n") == 41


def test_awkward_values_survive_csv_quoting(cache, materializer):
    note = 'said "hi", then\nleft\rand\r\ncame back'
    cache.upsert("demo-us", [source_record(7, note=note, firstName="Ann, Jr.")])
    path = materializer.materialize("demo-us")
    rows = _rows(path)
    names = rows[0]
    assert len(rows) == 2
    assert rows[1][names.index("note")] == note
    assert rows[1][names.index("firstName")] == "Ann, Jr."


def test_lone_carriage_return_is_quoted(cache, materializer):
    cache.upsert("demo-us", [source_record(3, note="line1\rline2")])
    rows = _rows(materializer.materialize("demo-us"))
    assert len(rows) == 2
    assert rows[1][rows[0].index("note")] == "line1\rline2"


def test_defaults_and_blobs():
    payload = {"id": "gid://shopify/Customer/1", "addresses": [{"city": "Lyon"}]}
    row = dict(zip(header(), flatten(payload)))
    assert row["email"] == ""
    assert row["verifiedEmail"] == "false"
    assert row["isMergeable"] == "false"
    assert row["tags"] == ""
    assert row["defaultAddress_city"] == ""
    assert orjson.loads(row["allAddresses"]) == [{"city": "Lyon"}]
    assert row["lastFiveEvents"] == "[]"


def test_nested_fields_are_flattened():
    payload = {
        "id": "gid://shopify/Customer/2",
        "tags": ["a", "b"],
        "defaultEmailAddress": {"emailAddress": "x@example.com"},
        "defaultAddress": {"city": "Kyoto", "zip": "600-8216"},
        "amountSpent": {"amount": "5.00", "currencyCode": "JPY"},
        "mergeable": {"isMergeable": True},
        "numberOfOrders": 3,
    }
    row = dict(zip(header(), flatten(payload)))
    assert row["tags"] == "a, b"
    assert row["email"] == "x@example.com"
    assert row["defaultAddress_city"] == "Kyoto"
    assert row["amountSpentCurrency"] == "JPY"
    assert row["isMergeable"] == "true"
    assert row["numberOfOrders"] == "3"


def test_empty_collection_writes_nothing(materializer, tmp_path):
    with pytest.raises(EmptyCollectionError):
        materializer.materialize("demo-us")
    assert not list((tmp_path / "exports").glob("*"))


def test_write_to_handle_reports_rows(cache, materializer):
    cache.upsert("demo-us", [source_record(i) for i in range(3)])
    buffer = io.StringIO()
    assert materializer.write("demo-us", buffer) == 3
    assert buffer.getvalue().splitlines()[0].startswith("id,firstName")


def test_artifact_path_is_dated(materializer, tmp_path):
    path = materializer.artifact_path("demo-us", day=date(2025, 3, 9))
    assert path == tmp_path / "exports" / "demo-us-2025-03-09.csv"


def test_unwritable_target_raises_materialize_io_error(cache, tmp_path):
    from pagecache.storage.materialize import Materializer

    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")
    cache.upsert("demo-us", [source_record(0)])
    with pytest.raises(MaterializeIOError):
        Materializer(cache, exports_dir=blocker).materialize("demo-us")
