"""Console reporter: renders the TestResult stream with click."""

import json
from typing import Any

import click

from api_test_quest.results import Outcome, RunReport, TestResult

_MARKS = {
    Outcome.PASS: ("✔", "green", "PASS"),
    Outcome.FAIL: ("✘", "red", "FAIL"),
    Outcome.ERROR: ("✘", "red", "ERROR"),
    Outcome.SKIPPED: ("-", "yellow", "SKIPPED"),
}


class ConsoleReporter:
    """Prints one line per result as it arrives and a summary at the end."""

    def __init__(self, total: int, color: bool | None = None):
        self.total = total
        self.color = color
        self.seen = 0

    def start(self, source: str) -> None:
        self._echo(
            click.style(f"Running test file: {source} Found {self.total} tests: Running...", bold=True, fg="cyan")
        )

    def __call__(self, result: TestResult) -> None:
        self.seen += 1
        mark, color, label = _MARKS[result.outcome]
        self._echo(
            f"[{self.seen}/{self.total}] {click.style(mark, fg=color, bold=True)}  "
            f"{result.group_name} / {result.test_name}: {result.method} {result.url} "
            f"{click.style(label, fg=color, bold=True)} ({result.duration * 1000:.0f} ms)"
        )

    def summary(self, report: RunReport) -> None:
        problems = [r for r in report.results if r.outcome in (Outcome.FAIL, Outcome.ERROR)]
        self._echo("")
        if problems:
            self._echo(click.style("Summary of failed tests:", bold=True, fg="red"))
            for i, result in enumerate(problems, 1):
                self._echo(f"\n{i}. {result.group_name} / {result.test_name} ({result.method} {result.url})")
                for line in describe(result):
                    self._echo(f"   {line}")

        counts = report.counts()
        line = ", ".join(f"{counts[o]} {o.value}" for o in Outcome if counts[o])
        if report.success:
            self._echo(click.style(f"All tests passed! ({line})", bold=True, fg="green"))
        else:
            status = "Run cancelled" if report.cancelled else "Tests failed"
            self._echo(click.style(f"{status}: {line or 'no tests ran'}", bold=True, fg="red"))

    def _echo(self, message: str) -> None:
        click.echo(message, color=self.color)


def describe(result: TestResult) -> list[str]:
    """Human-readable lines for a failed or errored result."""
    if result.error:
        return [click.style(result.error, fg="red")]
    lines = []
    for failure in result.failures:
        lines.append(click.style(f"{failure.kind}: {failure.message}", fg="red"))
        if failure.kind in ("json", "sql") and isinstance(failure.expected, (dict, list)):
            lines.append(click.style("Expected:", fg="green"))
            lines.extend(click.style(f"  {l}", fg="green") for l in _pretty(failure.expected))
            lines.append(click.style("Actual:", fg="red"))
            lines.extend(click.style(f"  {l}", fg="red") for l in _pretty(failure.actual))
    return lines


def _pretty(value: Any) -> list[str]:
    try:
        return json.dumps(value, indent=2, sort_keys=True, default=str).splitlines()
    except (TypeError, ValueError):
        return [repr(value)]
