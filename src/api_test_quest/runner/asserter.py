"""Assertion evaluator: compares a captured response against declared expectations.

Pure functions, no I/O. SQL assertions are executed by the caller and handed
in as SqlCheck results.
"""

from typing import Any

from api_test_quest.parser.base import (
    HeadersAssertion,
    JsonAssertion,
    JsonPathAssertion,
    SqlAssertion,
    StatusAssertion,
)
from api_test_quest.results import FailureDetail
from . import jsonpath
from .http import HttpResponse
from .sql import SqlCheck

_MISSING = object()


def evaluate(
    response: HttpResponse,
    assertions: list,
    sql_results: list[SqlCheck] | None = None,
) -> list[FailureDetail]:
    """Evaluate every assertion independently. An empty list means the test passed."""
    failures: list[FailureDetail] = []
    body = _MISSING

    for assertion in assertions:
        if isinstance(assertion, StatusAssertion):
            failures.extend(assert_status(assertion.status, response.status))
        elif isinstance(assertion, HeadersAssertion):
            failures.extend(assert_headers(assertion.headers, response))
        elif isinstance(assertion, JsonAssertion):
            if body is _MISSING:
                body = _parse_body(response)
            failures.extend(assert_json(assertion.expected, body, response))
        elif isinstance(assertion, JsonPathAssertion):
            if body is _MISSING:
                body = _parse_body(response)
            failures.extend(assert_jsonpath(assertion.path, assertion.expected, body, response))
        elif isinstance(assertion, SqlAssertion):
            # checked below, in declaration order of sql_results
            continue
        else:
            raise TypeError(f"unknown assertion {assertion!r}")

    for check in sql_results or []:
        failures.extend(assert_sql(check))

    return failures


def assert_status(expected: int, actual: int) -> list[FailureDetail]:
    if expected == actual:
        return []
    return [FailureDetail(kind="status", expected=expected, actual=actual)]


def assert_headers(expected: dict[str, str], response: HttpResponse) -> list[FailureDetail]:
    """Subset match: declared headers must be present with equal values, others are ignored."""
    failures = []
    for name, value in expected.items():
        # multi-valued headers come back joined with ", "
        actual = response.headers.get(name)
        if actual is None:
            failures.append(
                FailureDetail(kind="headers", expected=value, actual="<missing>", locator=name)
            )
        elif actual != value:
            failures.append(
                FailureDetail(kind="headers", expected=value, actual=actual, locator=name)
            )
    return failures


def assert_json(expected: Any, body: Any, response: HttpResponse) -> list[FailureDetail]:
    if body is _MISSING:
        return [
            FailureDetail(kind="json", expected=expected, actual=_raw(response), locator="$")
        ]
    where = first_difference(expected, body)
    if where is None:
        return []
    return [FailureDetail(kind="json", expected=expected, actual=body, locator=where)]


def assert_jsonpath(path: str, expected: Any, body: Any, response: HttpResponse) -> list[FailureDetail]:
    if body is _MISSING:
        return [
            FailureDetail(
                kind="jsonpath",
                expected=expected,
                actual=f"<body is not JSON: {_raw(response)}>",
                locator=path,
            )
        ]
    try:
        matches = jsonpath.find(body, path)
    except jsonpath.JsonPathSyntaxError as e:
        return [FailureDetail(kind="jsonpath", expected=expected, actual=f"<{e}>", locator=path)]
    if not matches:
        return [FailureDetail(kind="jsonpath", expected=expected, actual="<no match>", locator=path)]
    if first_difference(expected, matches[0]) is not None:
        return [FailureDetail(kind="jsonpath", expected=expected, actual=matches[0], locator=path)]
    return []


def assert_sql(check: SqlCheck) -> list[FailureDetail]:
    if check.passed:
        return []
    return [
        FailureDetail(kind="sql", expected=check.expected, actual=check.actual, locator=check.query)
    ]


def json_equal(expected: Any, actual: Any) -> bool:
    return first_difference(expected, actual) is None


def first_difference(expected: Any, actual: Any, path: str = "$") -> str | None:
    """Return the JSONPath of the first place where the two values differ, or None.

    Object keys are compared as sets (order does not matter), arrays are
    order-sensitive, numbers compare by value and booleans never equal numbers.
    """
    if isinstance(expected, dict):
        if not isinstance(actual, dict):
            return path
        if set(expected) != set(actual):
            missing = sorted(set(expected) ^ set(actual), key=str)
            return _child(path, missing[0])
        for key in expected:
            where = first_difference(expected[key], actual[key], _child(path, key))
            if where is not None:
                return where
        return None

    if isinstance(expected, list):
        if not isinstance(actual, list):
            return path
        for i, (e, a) in enumerate(zip(expected, actual)):
            where = first_difference(e, a, f"{path}[{i}]")
            if where is not None:
                return where
        if len(expected) != len(actual):
            return f"{path}[{min(len(expected), len(actual))}]"
        return None

    if isinstance(expected, bool) or isinstance(actual, bool):
        return None if type(expected) is type(actual) and expected == actual else path

    if _is_number(expected) and _is_number(actual):
        return None if expected == actual else path

    if type(expected) is not type(actual) or expected != actual:
        return path
    return None


def _parse_body(response: HttpResponse) -> Any:
    if not response.body.strip():
        return _MISSING
    try:
        return response.json()
    except ValueError:
        return _MISSING


def _raw(response: HttpResponse) -> str:
    text = response.text
    return text if len(text) <= 500 else text[:500] + "..."


def _child(path: str, key: Any) -> str:
    key = str(key)
    if key.isidentifier():
        return f"{path}.{key}"
    return f"{path}['{key}']"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
