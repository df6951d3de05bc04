"""Structured results produced by a run.

TestResult is the only output contract of the engine: reporters render these
objects, they never re-run anything.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class Outcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"


class FailureDetail(BaseModel):
    """One failed assertion."""

    model_config = ConfigDict(frozen=True)

    kind: str  # status / headers / json / jsonpath / sql
    expected: Any = None
    actual: Any = None
    locator: str | None = None  # header name, JSONPath expression, SQL query, JSON diff path

    @property
    def message(self) -> str:
        expected = _render(self.expected)
        actual = _render(self.actual)
        if self.kind == "status":
            return f"expected status {expected}, got {actual}"
        if self.kind == "headers":
            return f"header {self.locator}: expected {expected}, got {actual}"
        if self.kind == "json":
            where = f" (first difference at {self.locator})" if self.locator else ""
            return f"JSON body mismatch{where}: expected {expected}, got {actual}"
        if self.kind == "jsonpath":
            return f"{self.locator}: expected {expected}, got {actual}"
        if self.kind == "sql":
            return f"SQL `{self.locator}`: expected {expected}, got {actual}"
        return f"{self.kind}: expected {expected}, got {actual}"


class TestResult(BaseModel):
    """Outcome of exactly one test case. Never mutated after creation."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    group_name: str
    test_name: str
    method: str = ""
    url: str = ""
    outcome: Outcome
    failures: list[FailureDetail] = []
    error: str | None = None
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome == Outcome.PASS


class RunReport(BaseModel):
    """All results of one run, in declaration order."""

    results: list[TestResult] = []
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.passed for r in self.results)

    def counts(self) -> dict[Outcome, int]:
        counts = {o: 0 for o in Outcome}
        for r in self.results:
            counts[r.outcome] += 1
        return counts


def _render(value: Any) -> str:
    if isinstance(value, str):
        return repr(value)
    try:
        return json.dumps(value, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return repr(value)
