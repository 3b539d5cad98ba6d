import pandas as pd
import pandas.testing as pd_testing
from sqlalchemy import text

from core import data_repository


class _FakeResult:
    def __init__(self, rows, columns):
        self._rows = rows
        self._columns = columns

    def keys(self):
        return list(self._columns)

    def fetchall(self):
        return list(self._rows)


class _FakeConnection:
    def __init__(self, executed_container):
        self._executed = executed_container

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, statement):
        raise TypeError("expected string or bytes-like object, got 'TextClause'")

    def exec_driver_sql(self, sql_text):
        self._executed["sql"] = sql_text
        return _FakeResult(rows=[(7,)], columns=["val"])


class _FakeEngine:
    def __init__(self, executed_container):
        self._executed = executed_container

    def begin(self):
        return _FakeConnection(self._executed)


def test_query_df_retries_with_literal_sql(monkeypatch):
    executed = {}

    fake_engine = _FakeEngine(executed)
    monkeypatch.setattr(data_repository, "get_engine", lambda: fake_engine)

    df = data_repository.query_df(text("SELECT :value AS val"), params={"value": 7})

    assert executed["sql"].strip() == "SELECT 7 AS val"
    expected = pd.DataFrame([(7,)], columns=["val"])
    pd_testing.assert_frame_equal(df, expected)


def test_query_df_keeps_columns_when_empty(sqlite_engine):
    df = data_repository.query_df("SELECT id, name FROM menu_items WHERE id = :id", params={"id": 404})

    assert df.empty
    assert list(df.columns) == ["id", "name"]


def test_fetch_helpers_return_plain_dicts(sqlite_engine):
    with sqlite_engine.begin() as conn:
        conn.execute(text("INSERT INTO menu_items (id, name, category, price) VALUES (1, 'Jollof', 'main', 2000)"))
        row = data_repository.fetch_one(conn, "SELECT id, name FROM menu_items WHERE id = :id", {"id": 1})
        missing = data_repository.fetch_one(conn, "SELECT id FROM menu_items WHERE id = 2")
        rows = data_repository.fetch_all(conn, "SELECT name FROM menu_items")

    assert row == {"id": 1, "name": "Jollof"}
    assert missing is None
    assert rows == [{"name": "Jollof"}]


def test_sqlite_has_no_row_locks(sqlite_engine):
    with sqlite_engine.connect() as conn:
        assert data_repository.supports_row_locks(conn) is False
        assert data_repository.for_update(conn) == ""
