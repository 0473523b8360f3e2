from __future__ import annotations

import pytest

from chunk_import.db.row_consumer import (
    DiscardConsumer,
    InsertResult,
    RowConsumer,
    TableRowConsumer,
    batch_insert,
)
from chunk_import.errors import PersistenceError
from chunk_import.source.heading import AttributeMap
from conftest import make_rows


class DummyCursor:
    def __init__(self) -> None:
        self.queries: list[str] = []
        self.params: list[object] = []
        self.batches: list[list] = []
        self.fetched: list[tuple] = [(1,), (2,)]

    def execute(self, sql, params=None):
        self.queries.append(sql)
        self.params.append(params)

    def fetchall(self):
        return self.fetched


# execute_values をモジュール内で差し替え、psycopg2 の実接続なしでロジックを検証
@pytest.fixture(autouse=True)
def patch_execute_values(monkeypatch):
    import chunk_import.db.row_consumer as rc

    def fake_execute_values(cursor, sql, rows, page_size=1000, template=None):
        cursor.queries.append(sql)
        cursor.batches.append(list(rows))

    monkeypatch.setattr(rc, "execute_values", fake_execute_values)
    return fake_execute_values


def test_batch_insert_basic():
    cur = DummyCursor()
    res = batch_insert(cur, table="people", columns=["id", "name"], rows=[[1, "Alice"], [2, "Bob"]])
    assert isinstance(res, InsertResult)
    assert res.inserted_rows == 2
    assert res.returned_values is None
    assert cur.queries == ['INSERT INTO people ("id","name") VALUES %s']


def test_batch_insert_returning():
    cur = DummyCursor()
    res = batch_insert(cur, table="people", columns=["id"], rows=[[1], [2]], returning=True)
    assert cur.queries[0].endswith("RETURNING *")
    assert res.returned_values == [(1,), (2,)]


def test_batch_insert_empty_rows():
    cur = DummyCursor()
    res = batch_insert(cur, table="people", columns=["id"], rows=[])
    assert res.inserted_rows == 0
    assert cur.queries == []


def test_batch_insert_metrics_callback():
    captured = []
    batch_insert(DummyCursor(), table="t", columns=["c"], rows=[[1], [2], [3]], metrics_callback=captured.append)
    assert len(captured) == 1
    assert captured[0].batch_size == 3
    assert captured[0].elapsed_seconds >= 0
    assert captured[0].end_time >= captured[0].start_time


def test_batch_insert_driver_error(monkeypatch):
    import chunk_import.db.row_consumer as rc

    def boom(*args, **kwargs):
        raise RuntimeError("unique violation")

    monkeypatch.setattr(rc, "execute_values", boom)
    with pytest.raises(PersistenceError, match="unique violation"):
        batch_insert(DummyCursor(), table="t", columns=["c"], rows=[[1]])


class TestTableRowConsumer:
    attrs = AttributeMap(["name", "email", "age"])

    def test_persist_inserts_every_attribute_by_default(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "people")
        consumer.persist(make_rows([["Alice", "a@x.io", 30]])[0], self.attrs)
        assert cur.queries == ['INSERT INTO people ("name","email","age") VALUES (%s,%s,%s)']
        assert cur.params == [["Alice", "a@x.io", 30]]

    def test_column_map_selects_and_renames(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "people", column_map={"email": "mail", "name": "full_name"})
        consumer.persist(make_rows([["Alice", "a@x.io", 30]])[0], self.attrs)
        assert cur.queries == ['INSERT INTO people ("mail","full_name") VALUES (%s,%s)']
        assert cur.params == [["a@x.io", "Alice"]]

    def test_persist_many_pads_short_rows(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "people")
        rows = make_rows([["Alice", "a@x.io", 30], ["Bob", "b@x.io"]])
        assert consumer.persist_many(rows, self.attrs) == 2
        assert cur.batches == [[["Alice", "a@x.io", 30], ["Bob", "b@x.io", None]]]

    def test_persist_many_short_first_row_keeps_later_cells(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "t")
        rows = make_rows([["x", "y"], ["p", "q", "r"]], start=2)
        assert consumer.persist_many(rows, AttributeMap(["a", "b", "c"])) == 2
        assert cur.queries == ['INSERT INTO t ("a","b","c") VALUES %s']
        assert cur.batches == [[["x", "y", None], ["p", "q", "r"]]]

    def test_persist_many_identity_uses_widest_row(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "t")
        rows = make_rows([["x"], ["p", "q"]])
        consumer.persist_many(rows, AttributeMap.identity())
        assert cur.queries == ['INSERT INTO t ("0","1") VALUES %s']
        assert cur.batches == [[["x", None], ["p", "q"]]]

    def test_persist_short_row_matches_batch_columns(self):
        cur = DummyCursor()
        consumer = TableRowConsumer(cur, "t")
        consumer.persist(make_rows([["x", "y"]])[0], AttributeMap(["a", "b", "c"]))
        assert cur.queries == ['INSERT INTO t ("a","b","c") VALUES (%s,%s,%s)']
        assert cur.params == [["x", "y", None]]

    def test_persist_many_empty(self):
        assert TableRowConsumer(DummyCursor(), "people").persist_many([], self.attrs) == 0

    def test_satisfies_protocol(self):
        assert isinstance(TableRowConsumer(DummyCursor(), "people"), RowConsumer)
        assert isinstance(DiscardConsumer(), RowConsumer)


def test_discard_consumer_counts_rows():
    consumer = DiscardConsumer()
    for row in make_rows([["a"], ["b"]]):
        consumer.persist(row, AttributeMap.identity())
    assert consumer.count == 2
