"""CLI entry point for api-test-quest."""

import logging
import signal
import sys
import threading
from pathlib import Path

import click

from api_test_quest.errors import ConfigurationError, DatabaseError, QuestError, SetupError
from api_test_quest.parser.loader import load_suite
from api_test_quest.reporter import ConsoleReporter
from api_test_quest.runner.orchestrator import Orchestrator
from api_test_quest.settings import RunSettings

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_SETUP = 3


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_settings(**overrides) -> RunSettings:
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return RunSettings(**values)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


def _load(path: Path, fmt: str):
    try:
        return load_suite(path, fmt)
    except ConfigurationError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(EXIT_CONFIG)


@click.group()
def main():
    """API Test Quest: declarative end-to-end tests for HTTP APIs."""
    pass


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--format", "fmt", default="auto", type=click.Choice(["auto", "toml", "yaml"]), help="Test file format.")
@click.option("--request-timeout", type=float, default=None, help="Per-request timeout in seconds.")
@click.option("--ready-timeout", type=float, default=None, help="Seconds to wait for a spawned server to become ready.")
@click.option("--deadline", type=float, default=None, help="Abort the run after this many seconds.")
@click.option("-o", "--app-output", is_flag=True, help="Print the spawned server's output at the end.")
@click.option("--stream-app", is_flag=True, help="Log the spawned server's output as it arrives.")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def run(
    config_path: Path,
    fmt: str,
    request_timeout: float | None,
    ready_timeout: float | None,
    deadline: float | None,
    app_output: bool,
    stream_app: bool,
    verbose: bool,
):
    """Run every test declared in CONFIG_PATH."""
    _configure_logging(verbose or stream_app)
    settings = _build_settings(
        request_timeout=request_timeout,
        ready_timeout=ready_timeout,
        run_deadline=deadline,
        stream_app=stream_app or None,
    )
    suite = _load(config_path, fmt)

    reporter = ConsoleReporter(total=suite.test_count)
    cancel = threading.Event()
    orchestrator = Orchestrator(settings=settings, on_result=reporter, cancel_event=cancel)
    # SIGTERM aborts the current test, skips the rest and tears down
    previous = None
    if threading.current_thread() is threading.main_thread():
        previous = signal.signal(signal.SIGTERM, lambda *_: orchestrator.interrupt())

    reporter.start(str(config_path))
    try:
        report = orchestrator.run(suite)
    except (SetupError, DatabaseError) as e:
        click.echo(click.style(f"Setup failed: {e}", fg="red", bold=True), err=True)
        for line in e.details.get("output", []):
            click.echo(f"  {line}", err=True)
        sys.exit(EXIT_SETUP)
    except ConfigurationError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(EXIT_CONFIG)
    except QuestError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(EXIT_SETUP)
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
        if app_output:
            _print_app_output(orchestrator.servers.last_output)

    reporter.summary(report)
    if not report.success:
        sys.exit(EXIT_FAILED)


@main.command()
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--format", "fmt", default="auto", type=click.Choice(["auto", "toml", "yaml"]), help="Test file format.")
def validate(config_path: Path, fmt: str):
    """Check CONFIG_PATH without running anything."""
    suite = _load(config_path, fmt)
    mode = suite.setup.mode
    db = suite.database.db_type if suite.database else "none"
    click.echo(f"{config_path}: OK")
    click.echo(f"  server: {mode} ({suite.setup.base_url})")
    click.echo(f"  database: {db}")
    click.echo(f"  {len(suite.groups)} groups, {suite.test_count} tests")


def _print_app_output(lines) -> None:
    click.echo("\n--- Captured Interleaved Output ---")
    for item in lines:
        click.echo(f"[{item.source.upper()}] {item.line}")
    click.echo("------------------------------------")
