"""Test orchestrator: drives one run of a TestSuite from setup to teardown.

Groups and tests run strictly in declaration order on a single control flow,
against one system under test and one database connection.
"""

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, wait
from contextlib import ExitStack
from dataclasses import dataclass

import httpx

from api_test_quest.errors import SqlHookError, TransportError
from api_test_quest.parser.base import SqlAssertion, TestCase, TestGroup, TestSuite
from api_test_quest.results import FailureDetail, Outcome, RunReport, TestResult
from api_test_quest.settings import RunSettings
from . import asserter, sql
from .database import DatabaseHandle, DatabaseManager
from .http import ExchangeRunner, HttpResponse
from .server import ServerHandle, ServerManager

logger = logging.getLogger(__name__)

# How often a waiting request checks for cancellation
CANCEL_POLL_INTERVAL = 0.05


class RunCancelled(Exception):
    """Raised internally when the run deadline passes or cancellation is requested."""


@dataclass
class RunContext:
    """Live resources of one run, passed explicitly down the call chain."""

    server: ServerHandle
    database: DatabaseHandle | None
    exchange: ExchangeRunner
    requests: ThreadPoolExecutor
    deadline: float | None = None

    @property
    def connection(self):
        return self.database.connection if self.database is not None else None


class Orchestrator:
    """Runs a TestSuite and reports one TestResult per test case.

    Fatal errors (ConfigurationError, SetupError, DatabaseError) propagate
    after teardown. Everything scoped to a single group or test becomes part
    of that test's result.
    """

    def __init__(
        self,
        settings: RunSettings | None = None,
        on_result: Callable[[TestResult], None] | None = None,
        cancel_event: threading.Event | None = None,
        servers: ServerManager | None = None,
        databases: DatabaseManager | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.settings = settings or RunSettings()
        self.on_result = on_result
        self.cancel_event = cancel_event or threading.Event()
        self.servers = servers or ServerManager(self.settings)
        self.databases = databases or DatabaseManager()
        self.transport = transport
        self._in_tests = False

    def interrupt(self) -> None:
        """Cancel from a signal handler.

        While tests run this raises RunCancelled in the main thread, which
        aborts the blocking HTTP or SQL call in progress. Outside that window
        it only sets the cancel event.
        """
        self.cancel_event.set()
        if self._in_tests:
            raise RunCancelled("terminated by signal")

    def run(self, suite: TestSuite) -> RunReport:
        report = RunReport()
        deadline = None
        if self.settings.run_deadline is not None:
            deadline = time.monotonic() + self.settings.run_deadline

        with ExitStack() as stack:
            try:
                ctx = self._setup(suite, stack, deadline)
                self._run_groups(suite, ctx, report)
            except RunCancelled as e:
                logger.warning("Run cancelled: %s", e)
                report.cancelled = True
            except KeyboardInterrupt:
                logger.warning("Run interrupted")
                report.cancelled = True

            if report.cancelled:
                self._skip_remaining(suite, report)
            logger.info("Tearing down")

        return report

    def _setup(self, suite: TestSuite, stack: ExitStack, deadline: float | None) -> RunContext:
        database = None
        env: dict[str, str] = {}
        if suite.database is not None:
            database = self.databases.prepare(suite.database)
            stack.callback(self.databases.close, database)
            env[suite.database.env_name] = database.url

        server = stack.enter_context(self.servers.running(suite.setup, env=env))

        if database is not None:
            self.databases.connect(database)

        # Registered before the client so the client closes first on teardown
        requests = ThreadPoolExecutor(max_workers=1, thread_name_prefix="quest-http")
        stack.callback(requests.shutdown, wait=False, cancel_futures=True)

        exchange = stack.enter_context(
            ExchangeRunner(
                server.base_url,
                timeout=self.settings.request_timeout,
                headers=suite.headers,
                transport=self.transport,
            )
        )
        return RunContext(
            server=server,
            database=database,
            exchange=exchange,
            requests=requests,
            deadline=deadline,
        )

    def _run_groups(self, suite: TestSuite, ctx: RunContext, report: RunReport) -> None:
        self._in_tests = True
        try:
            for group in suite.groups:
                self._check_cancelled(ctx)
                logger.info("Group %s (%d tests)", group.name, len(group.tests))
                self._run_group(group, ctx, report)
        finally:
            self._in_tests = False

    def _run_group(self, group: TestGroup, ctx: RunContext, report: RunReport) -> None:
        hook = group.before_group
        if hook is not None:
            if hook.reset:
                self.databases.reset(ctx.database)
            try:
                sql.execute(ctx.connection, hook.hook.statements)
            except SqlHookError as e:
                logger.warning("before_group of %s failed: %s", group.name, e)
                for test in group.tests:
                    self._emit(
                        report,
                        TestResult(
                            group_name=group.name,
                            test_name=test.name,
                            method=test.method,
                            url=ctx.exchange.url_for(test),
                            outcome=Outcome.ERROR,
                            error=f"before_group failed: {e}",
                        ),
                    )
                return

        for test in group.tests:
            self._check_cancelled(ctx)
            self._emit(report, self.run_test(group, test, ctx))

    def run_test(self, group: TestGroup, test: TestCase, ctx: RunContext) -> TestResult:
        """Hooks, exchange, SQL assertions and evaluation for one test case."""
        started = time.perf_counter()
        url = ctx.exchange.url_for(test)

        def result(outcome: Outcome, failures: list[FailureDetail] | None = None, error: str | None = None):
            return TestResult(
                group_name=group.name,
                test_name=test.name,
                method=test.method,
                url=url,
                outcome=outcome,
                failures=failures or [],
                error=error,
                duration=time.perf_counter() - started,
            )

        for label, hook in (("before_each_test", group.before_each_test), ("before_run", test.before_run)):
            if hook is None:
                continue
            try:
                sql.execute(ctx.connection, hook.statements)
            except SqlHookError as e:
                return result(Outcome.ERROR, error=f"{label} failed: {e}")

        try:
            response = self._send(test, ctx)
        except TransportError as e:
            self._check_cancelled(ctx)
            return result(Outcome.ERROR, error=str(e))

        checks = []
        for assertion in test.assertions:
            if isinstance(assertion, SqlAssertion):
                try:
                    checks.append(sql.query_scalar(ctx.connection, assertion.query, assertion.expect))
                except SqlHookError as e:
                    return result(Outcome.ERROR, error=f"assert_sql query failed: {e}")

        failures = asserter.evaluate(response, test.assertions, checks)
        if failures:
            return result(Outcome.FAIL, failures=failures)
        return result(Outcome.PASS)

    def _emit(self, report: RunReport, test_result: TestResult) -> None:
        logger.info(
            "%s / %s: %s (%.3fs)",
            test_result.group_name,
            test_result.test_name,
            test_result.outcome.value,
            test_result.duration,
        )
        report.results.append(test_result)
        if self.on_result is not None:
            self.on_result(test_result)

    def _skip_remaining(self, suite: TestSuite, report: RunReport) -> None:
        pending = [(g, t) for g in suite.groups for t in g.tests][len(report.results):]
        for group, test in pending:
            self._emit(
                report,
                TestResult(
                    group_name=group.name,
                    test_name=test.name,
                    method=test.method,
                    url=test.url,
                    outcome=Outcome.SKIPPED,
                    error="run cancelled",
                ),
            )

    def _check_cancelled(self, ctx: RunContext) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled("cancellation requested")
        if ctx.deadline is not None and time.monotonic() >= ctx.deadline:
            raise RunCancelled(f"run deadline of {self.settings.run_deadline:g}s exceeded")

    def _request_timeout(self, ctx: RunContext) -> float:
        self._check_cancelled(ctx)
        if ctx.deadline is None:
            return self.settings.request_timeout
        return max(0.001, min(self.settings.request_timeout, ctx.deadline - time.monotonic()))

    def _send(self, test: TestCase, ctx: RunContext) -> HttpResponse:
        """Send on the request worker so cancellation never waits for the response.

        An abandoned request keeps the worker busy until its own timeout; the
        run has moved on to teardown by then and closes the client under it.
        """
        future = ctx.requests.submit(ctx.exchange.send, test, self._request_timeout(ctx))
        while True:
            done, _ = wait([future], timeout=CANCEL_POLL_INTERVAL)
            if done:
                return future.result()
            self._check_cancelled(ctx)
