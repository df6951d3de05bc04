"""SQL fixture runner: executes hook statements and assertion queries on one connection.

Comparison rule for assert_sql (the same rule everywhere):
  - NULL matches only None or the string "null".
  - If either side is a boolean, both sides are read as booleans
    (true/false, t/f, 1/0).
  - If either side is a number, both sides are read as decimals, so 1, 1.0
    and "1" are equal. A side that is not numeric makes the comparison fail.
  - Everything else compares as text (dates and times in ISO format).
"""

import datetime as dt
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from api_test_quest.errors import SqlHookError

logger = logging.getLogger(__name__)

# Raw statements: no bind-parameter parsing, so % and :name pass through untouched
NO_PARAMETERS = {"no_parameters": True}

_DOLLAR_TAG = re.compile(r"\$[A-Za-z_]*\$")

_TRUE = {"true", "t", "1", "yes"}
_FALSE = {"false", "f", "0", "no"}


@dataclass(frozen=True)
class SqlCheck:
    """Result of one assert_sql query."""

    query: str
    expected: Any
    actual: Any
    passed: bool


def execute(conn: Connection, statements: Sequence[str]) -> None:
    """Run statements in order inside one transaction.

    An entry may hold several statements separated by semicolons. The first
    failing statement rolls back the whole unit and is raised as SqlHookError;
    the statements after it never run.
    """
    if not statements:
        return
    end_transaction(conn)
    with conn.begin():
        for statement in (s for entry in statements for s in split_statements(entry)):
            logger.debug("SQL: %s", statement)
            try:
                conn.exec_driver_sql(statement, execution_options=NO_PARAMETERS)
            except SQLAlchemyError as e:
                raise SqlHookError(statement, describe_error(e)) from e


def fetch_rows(conn: Connection, query: str) -> list[tuple]:
    """Run a read query and return its rows as tuples."""
    end_transaction(conn)
    logger.debug("SQL query: %s", query)
    try:
        with conn.begin():
            result = conn.exec_driver_sql(query, execution_options=NO_PARAMETERS)
            return [tuple(row) for row in result.fetchall()]
    except SQLAlchemyError as e:
        raise SqlHookError(query, describe_error(e)) from e


def query_scalar(conn: Connection, query: str, expect: Any) -> SqlCheck:
    """Run query and compare its result against expect.

    A scalar expect is compared with the first column of the first row. A
    list compares the full row set: one entry per row, each entry either a
    scalar (first column) or a list (whole row). A table compares the first
    row by column name.
    """
    end_transaction(conn)
    logger.debug("SQL query: %s", query)
    try:
        with conn.begin():
            result = conn.exec_driver_sql(query, execution_options=NO_PARAMETERS)
            columns = list(result.keys())
            rows = [tuple(row) for row in result.fetchall()]
    except SQLAlchemyError as e:
        raise SqlHookError(query, describe_error(e)) from e

    passed, actual = compare(rows, columns, expect)
    return SqlCheck(query=query, expected=expect, actual=actual, passed=passed)


def compare(rows: list[tuple], columns: list[str], expect: Any) -> tuple[bool, Any]:
    """Compare query rows against expect; returns (passed, actual as plain data)."""
    if isinstance(expect, list):
        actual = [[plain(v) for v in row] for row in rows]
        if len(rows) != len(expect):
            return False, actual
        for row, exp in zip(rows, expect):
            if isinstance(exp, list):
                if len(row) != len(exp) or not all(values_equal(a, e) for a, e in zip(row, exp)):
                    return False, actual
            elif not row or not values_equal(row[0], exp):
                return False, actual
        return True, actual

    if not rows:
        return False, "<no rows returned>"

    if isinstance(expect, dict):
        actual = {c: plain(v) for c, v in zip(columns, rows[0])}
        by_name = dict(zip(columns, rows[0]))
        ok = set(expect) == set(by_name) and all(
            values_equal(by_name[k], v) for k, v in expect.items()
        )
        return ok, actual

    first = rows[0][0] if rows[0] else None
    return values_equal(first, expect), plain(first)


def values_equal(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        if actual is None and expected is None:
            return True
        return actual is None and isinstance(expected, str) and expected.lower() == "null"

    if isinstance(actual, bool) or isinstance(expected, bool):
        a, e = _as_bool(actual), _as_bool(expected)
        return a is not None and a == e

    if _is_number(actual) or _is_number(expected):
        a, e = _as_decimal(actual), _as_decimal(expected)
        return a is not None and e is not None and a == e

    return _as_text(actual) == _as_text(expected)


def plain(value: Any) -> Any:
    """Convert a driver value into JSON-friendly data for failure messages."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


def describe_error(error: SQLAlchemyError) -> str:
    orig = getattr(error, "orig", None)
    return str(orig if orig is not None else error).strip()


def end_transaction(conn: Connection) -> None:
    # Leave no implicit transaction open between units
    if conn.in_transaction():
        conn.commit()


def split_statements(script: str) -> list[str]:
    """Split text on top-level semicolons into single statements.

    Quoted strings, comments and dollar-quoted bodies ($$ ... $$, $tag$ ... $tag$)
    are kept intact. Empty statements are dropped.
    """
    statements = []
    start = i = 0
    n = len(script)
    while i < n:
        ch = script[i]
        if ch in ("'", '"'):
            # a doubled quote ('it''s') simply starts the next quoted run
            end = script.find(ch, i + 1)
            i = n if end == -1 else end + 1
            continue
        if script.startswith("--", i):
            end = script.find("\n", i)
            i = n if end == -1 else end + 1
            continue
        if script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = n if end == -1 else end + 2
            continue
        if ch == "$":
            tag = _DOLLAR_TAG.match(script, i)
            if tag:
                end = script.find(tag.group(), tag.end())
                i = n if end == -1 else end + len(tag.group())
                continue
        if ch == ";":
            statements.append(script[start:i])
            start = i + 1
        i += 1
    statements.append(script[start:])
    return [s.strip() for s in statements if s.strip()]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            return None
    return None


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, (dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)
