import datetime as dt
from decimal import Decimal

import pytest
from sqlalchemy import create_engine

from api_test_quest.errors import SqlHookError
from api_test_quest.runner import sql


@pytest.fixture
def conn(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    connection = engine.connect()
    sql.execute(connection, ["CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, score REAL)"])
    yield connection
    connection.close()
    engine.dispose()


class TestExecute:
    def test_statements_run_in_order(self, conn):
        sql.execute(
            conn,
            [
                "INSERT INTO users (id, name) VALUES (1, 'Alice')",
                "UPDATE users SET name = 'Bob' WHERE id = 1",
            ],
        )
        assert sql.fetch_rows(conn, "SELECT name FROM users") == [("Bob",)]

    def test_failure_rolls_back_the_unit(self, conn):
        with pytest.raises(SqlHookError) as exc:
            sql.execute(
                conn,
                [
                    "INSERT INTO users (id, name) VALUES (1, 'Alice')",
                    "INSERT INTO nope VALUES (1)",
                    "INSERT INTO users (id, name) VALUES (2, 'Carol')",
                ],
            )
        assert exc.value.statement == "INSERT INTO nope VALUES (1)"
        assert "nope" in exc.value.cause
        assert sql.fetch_rows(conn, "SELECT COUNT(*) FROM users") == [(0,)]

    def test_percent_and_colon_pass_through(self, conn):
        sql.execute(conn, ["INSERT INTO users (id, name) VALUES (1, '100% :name')"])
        assert sql.fetch_rows(conn, "SELECT name FROM users WHERE name LIKE '100%'") == [("100% :name",)]

    def test_empty_is_noop(self, conn):
        sql.execute(conn, [])

    def test_entry_with_several_statements(self, conn):
        statements = "INSERT INTO users (id, name) VALUES (1, 'a;b'); INSERT INTO users (id, name) VALUES (2, 'c');"
        sql.execute(conn, [statements])
        assert sql.fetch_rows(conn, "SELECT id, name FROM users ORDER BY id") == [(1, "a;b"), (2, "c")]

    def test_failure_inside_a_multi_statement_entry(self, conn):
        with pytest.raises(SqlHookError) as info:
            sql.execute(conn, ["INSERT INTO users (id, name) VALUES (1, 'a'); INSERT INTO nope VALUES (1)"])
        assert info.value.statement == "INSERT INTO nope VALUES (1)"
        assert sql.fetch_rows(conn, "SELECT COUNT(*) FROM users") == [(0,)]


class TestSplitStatements:
    def test_single(self):
        assert sql.split_statements("DELETE FROM users") == ["DELETE FROM users"]

    def test_drops_empty_statements(self):
        assert sql.split_statements("DELETE FROM a;; DELETE FROM b;\n") == ["DELETE FROM a", "DELETE FROM b"]

    def test_quoted_semicolons(self):
        script = "INSERT INTO t VALUES ('it''s; fine'); UPDATE t SET \"a;b\" = 1"
        assert sql.split_statements(script) == ["INSERT INTO t VALUES ('it''s; fine')", 'UPDATE t SET "a;b" = 1']

    def test_comments(self):
        script = "DELETE FROM a; -- not; split\n/* nor; this */ DELETE FROM b"
        assert sql.split_statements(script) == [
            "DELETE FROM a",
            "-- not; split\n/* nor; this */ DELETE FROM b",
        ]

    def test_dollar_quoted_body(self):
        body = "CREATE FUNCTION f() RETURNS int AS $fn$ BEGIN RETURN 1; END; $fn$ LANGUAGE plpgsql"
        assert sql.split_statements(f"{body}; SELECT f()") == [body, "SELECT f()"]


class TestQueryScalar:
    def test_scalar(self, conn):
        sql.execute(conn, ["INSERT INTO users (id, name) VALUES (1, 'Alice')"])
        check = sql.query_scalar(conn, "SELECT COUNT(*) FROM users", 1)
        assert check.passed
        assert check.actual == 1

    def test_scalar_mismatch(self, conn):
        check = sql.query_scalar(conn, "SELECT COUNT(*) FROM users", 3)
        assert not check.passed
        assert check.actual == 0

    def test_row_set(self, conn):
        sql.execute(
            conn,
            ["INSERT INTO users (id, name) VALUES (1, 'Alice')", "INSERT INTO users (id, name) VALUES (2, 'Bob')"],
        )
        assert sql.query_scalar(conn, "SELECT name FROM users ORDER BY id", ["Alice", "Bob"]).passed
        assert sql.query_scalar(conn, "SELECT id, name FROM users ORDER BY id", [[1, "Alice"], [2, "Bob"]]).passed
        assert not sql.query_scalar(conn, "SELECT name FROM users ORDER BY id", ["Bob", "Alice"]).passed

    def test_row_by_column_name(self, conn):
        sql.execute(conn, ["INSERT INTO users (id, name, score) VALUES (1, 'Alice', 2.5)"])
        check = sql.query_scalar(conn, "SELECT name, score FROM users", {"score": "2.5", "name": "Alice"})
        assert check.passed
        assert check.actual == {"name": "Alice", "score": 2.5}

    def test_no_rows(self, conn):
        check = sql.query_scalar(conn, "SELECT name FROM users", "Alice")
        assert not check.passed
        assert check.actual == "<no rows returned>"

    def test_null(self, conn):
        sql.execute(conn, ["INSERT INTO users (id) VALUES (1)"])
        assert sql.query_scalar(conn, "SELECT name FROM users", None).passed
        assert sql.query_scalar(conn, "SELECT name FROM users", "null").passed
        assert not sql.query_scalar(conn, "SELECT name FROM users", "").passed

    def test_invalid_query(self, conn):
        with pytest.raises(SqlHookError):
            sql.query_scalar(conn, "SELECT * FROM nope", 1)


class TestValuesEqual:
    def test_numbers(self):
        assert sql.values_equal(1, 1.0)
        assert sql.values_equal(Decimal("1.50"), 1.5)
        assert sql.values_equal("42", 42)
        assert not sql.values_equal("abc", 42)

    def test_booleans(self):
        assert sql.values_equal(1, True)
        assert sql.values_equal("t", True)
        assert sql.values_equal(False, "false")
        assert not sql.values_equal(2, True)

    def test_text_and_dates(self):
        assert sql.values_equal(dt.date(2024, 1, 31), "2024-01-31")
        assert sql.values_equal("Alice", "Alice")
        assert not sql.values_equal("Alice", "alice")

    def test_null(self):
        assert sql.values_equal(None, None)
        assert not sql.values_equal(0, None)
        assert not sql.values_equal(None, 0)

    def test_plain(self):
        assert sql.plain(Decimal("3")) == 3
        assert sql.plain(Decimal("3.5")) == 3.5
        assert sql.plain(dt.datetime(2024, 1, 31, 12, 0)) == "2024-01-31T12:00:00"
        assert sql.plain(b"hi") == "hi"
