import datetime as dt
import io
import os
import signal
import sqlite3
import threading
import time
from contextlib import closing
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from api_test_quest.errors import DatabaseError, SetupError
from api_test_quest.parser.loader import parse_suite
from api_test_quest.results import Outcome
from api_test_quest.runner.orchestrator import Orchestrator
from api_test_quest.runner.server import ServerManager
from api_test_quest.settings import RunSettings

FIXTURES = Path(__file__).parent / "fixtures"
SETTINGS = RunSettings(ready_timeout=0.3, poll_interval=0.01, probe_timeout=0.1, stop_grace_period=0.1)


def _fake_api(db_path: Path, delay: float = 0.0):
    """A tiny users API backed by the same sqlite file the run uses."""

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/":
            return httpx.Response(200)
        if path == "/boom":
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/echo":
            return httpx.Response(200, content=request.content, headers={"Content-Type": "application/json"})
        if delay:
            time.sleep(delay)
        with closing(sqlite3.connect(db_path)) as conn:
            if request.method == "DELETE" and path.startswith("/users/"):
                with conn:
                    user_id = int(path.rsplit("/", 1)[1])
                    row = conn.execute("SELECT id, name FROM users WHERE id = ?", (user_id,)).fetchone()
                    conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
                if row is None:
                    return httpx.Response(404, json={"error": "not found"})
                return httpx.Response(200, json={"id": row[0], "name": row[1]})
            if request.method == "GET" and path == "/users":
                rows = conn.execute("SELECT id, name FROM users ORDER BY id").fetchall()
                return httpx.Response(200, json=[{"id": i, "name": n} for i, n in rows])
        return httpx.Response(404, json={"error": "not found"})

    return httpx.MockTransport(handler)


def _suite(db_path: Path, groups: list[dict]):
    return parse_suite(
        {
            "setup": {"base_url": "http://api.test"},
            "db": {
                "db_type": "sqlite",
                "url": f"sqlite:///{db_path}",
                "migration_dir": str(FIXTURES / "migrations"),
            },
            "test_groups": groups,
        }
    )


def _orchestrator(transport, settings=SETTINGS, **kwargs):
    results = []
    orchestrator = Orchestrator(
        settings=settings,
        on_result=results.append,
        servers=ServerManager(settings, transport=transport),
        transport=transport,
        **kwargs,
    )
    return orchestrator, results


ALICE_GROUP = {
    "name": "Users",
    "before_group": {
        "reset": True,
        "run_sql": ["DELETE FROM users", "INSERT INTO users (id, name) VALUES (1, 'Alice')"],
    },
    "tests": [
        {
            "name": "Delete Alice",
            "method": "DELETE",
            "url": "/users/1",
            "assert_status": 200,
            "assert_json": {"id": 1, "name": "Alice"},
            "assert_sql": {"query": "SELECT COUNT(*) FROM users WHERE name = 'Alice'", "expect": 0},
        }
    ],
}


@pytest.fixture
def slow_api():
    """A real HTTP server whose /slow route holds the response for a few seconds."""
    release = threading.Event()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/slow":
                release.wait(3)
            self.send_response(200)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    release.set()
    server.shutdown()
    server.server_close()


class TestRun:
    def test_delete_scenario_passes(self, tmp_path):
        db_path = tmp_path / "app.db"
        orchestrator, results = _orchestrator(_fake_api(db_path))

        report = orchestrator.run(_suite(db_path, [ALICE_GROUP]))

        assert report.success
        assert [r.outcome for r in results] == [Outcome.PASS]
        assert results[0].url == "http://api.test/users/1"
        assert results[0].failures == []

    def test_results_in_declaration_order(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            ALICE_GROUP,
            {
                "name": "Listing",
                "before_group": {"reset": True},
                "tests": [
                    {"name": "all", "url": "/users", "assert_status": 200, "assert_jsonpath": {"$[0].name": "admin"}},
                    {"name": "missing", "url": "/nope", "assert_status": 200},
                ],
            },
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        report = orchestrator.run(_suite(db_path, groups))

        assert [(r.group_name, r.test_name) for r in report.results] == [
            ("Users", "Delete Alice"),
            ("Listing", "all"),
            ("Listing", "missing"),
        ]
        assert results == report.results
        assert [r.outcome for r in results] == [Outcome.PASS, Outcome.PASS, Outcome.FAIL]
        assert results[2].failures[0].kind == "status"
        assert not report.success

    def test_before_group_failure_errors_group_and_continues(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "Broken",
                "before_group": ["INSERT INTO nope VALUES (1)"],
                "tests": [
                    {"name": "a", "url": "/users", "assert_status": 200},
                    {"name": "b", "url": "/users", "assert_status": 200},
                ],
            },
            ALICE_GROUP,
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert [r.outcome for r in results] == [Outcome.ERROR, Outcome.ERROR, Outcome.PASS]
        assert results[0].error.startswith("before_group failed:")

    def test_before_run_failure_is_error(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "g",
                "tests": [
                    {"name": "bad hook", "url": "/users", "before_run": ["DELETE FROM nope"]},
                    {"name": "next", "url": "/users", "assert_status": 200},
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert results[0].outcome == Outcome.ERROR
        assert results[0].error.startswith("before_run failed:")
        assert results[1].outcome == Outcome.PASS

    def test_transport_error_is_error(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "g",
                "tests": [
                    {"name": "down", "url": "/boom", "assert_status": 200},
                    {"name": "up", "url": "/users", "assert_status": 200},
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert results[0].outcome == Outcome.ERROR
        assert "connection refused" in results[0].error
        assert results[1].outcome == Outcome.PASS

    def test_broken_assert_sql_query_is_error(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "g",
                "tests": [
                    {"name": "t", "url": "/users", "assert_sql": {"query": "SELECT * FROM nope", "expect": 1}},
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert results[0].outcome == Outcome.ERROR
        assert results[0].error.startswith("assert_sql query failed:")

    def test_sql_assertion_failure_is_fail(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "g",
                "tests": [
                    {"name": "t", "url": "/users", "assert_sql": {"query": "SELECT COUNT(*) FROM users", "expect": 5}},
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert results[0].outcome == Outcome.FAIL
        assert results[0].failures[0].actual == 1

    def test_same_suite_twice_gives_same_outcomes(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            ALICE_GROUP,
            {
                "name": "Listing",
                "before_group": {"reset": True},
                "tests": [
                    {"name": "all", "url": "/users", "assert_status": 200, "assert_jsonpath": {"$[0].name": "admin"}},
                    {"name": "missing", "url": "/nope", "assert_status": 200},
                ],
            },
        ]

        runs = []
        for _ in range(2):
            orchestrator, _results = _orchestrator(_fake_api(db_path))
            report = orchestrator.run(_suite(db_path, groups))
            runs.append([(r.group_name, r.test_name, r.outcome) for r in report.results])

        assert runs[0] == runs[1]
        assert [outcome for _, _, outcome in runs[0]] == [Outcome.PASS, Outcome.PASS, Outcome.FAIL]

    def test_dated_body_is_sent_as_iso_text(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "Events",
                "tests": [
                    {
                        "name": "dated",
                        "method": "POST",
                        "url": "/echo",
                        "body": {"day": dt.date(2024, 5, 1), "at": dt.time(9, 30)},
                        "assert_status": 200,
                        "assert_json": {"day": "2024-05-01", "at": "09:30:00"},
                    },
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert [r.outcome for r in results] == [Outcome.PASS]

    def test_unencodable_body_is_error_and_run_continues(self, tmp_path):
        db_path = tmp_path / "app.db"
        groups = [
            {
                "name": "Events",
                "tests": [
                    {"name": "odd", "method": "POST", "url": "/echo", "body": {"tags": {"a", "b"}}},
                    {"name": "next", "url": "/users", "assert_status": 200},
                ],
            }
        ]
        orchestrator, results = _orchestrator(_fake_api(db_path))

        orchestrator.run(_suite(db_path, groups))

        assert [r.outcome for r in results] == [Outcome.ERROR, Outcome.PASS]
        assert "cannot encode request body" in results[0].error


class TestCancellation:
    GROUPS = [
        {
            "name": "g",
            "tests": [{"name": f"t{i}", "url": "/users", "assert_status": 200} for i in range(3)],
        }
    ]

    def test_cancel_event_skips_remaining(self, tmp_path):
        db_path = tmp_path / "app.db"
        orchestrator, results = _orchestrator(_fake_api(db_path))
        orchestrator.on_result = lambda r: (results.append(r), orchestrator.cancel_event.set())

        report = orchestrator.run(_suite(db_path, self.GROUPS))

        assert report.cancelled
        assert [r.outcome for r in report.results] == [Outcome.PASS, Outcome.SKIPPED, Outcome.SKIPPED]
        assert not report.success

    def test_deadline_skips_remaining(self, tmp_path):
        db_path = tmp_path / "app.db"
        settings = SETTINGS.model_copy(update={"run_deadline": 0.05})
        orchestrator, results = _orchestrator(_fake_api(db_path, delay=0.1), settings=settings)

        report = orchestrator.run(_suite(db_path, self.GROUPS))

        assert report.cancelled
        assert len(report.results) == 3
        assert report.results[-1].outcome == Outcome.SKIPPED

    def _slow_suite(self, base_url):
        tests = [
            {"name": "slow", "url": "/slow", "assert_status": 200},
            {"name": "after", "url": "/", "assert_status": 200},
        ]
        return parse_suite({"setup": {"base_url": base_url}, "test_groups": [{"name": "g", "tests": tests}]})

    def test_cancel_event_aborts_in_flight_request(self, slow_api):
        orchestrator = Orchestrator(settings=SETTINGS)
        timer = threading.Timer(0.3, orchestrator.cancel_event.set)
        started = time.monotonic()
        timer.start()
        try:
            report = orchestrator.run(self._slow_suite(slow_api))
        finally:
            timer.cancel()

        assert time.monotonic() - started < 2
        assert report.cancelled
        assert [r.outcome for r in report.results] == [Outcome.SKIPPED, Outcome.SKIPPED]

    def test_sigterm_aborts_in_flight_request(self, slow_api):
        orchestrator = Orchestrator(settings=SETTINGS)
        previous = signal.signal(signal.SIGTERM, lambda *_: orchestrator.interrupt())
        timer = threading.Timer(0.3, os.kill, (os.getpid(), signal.SIGTERM))
        started = time.monotonic()
        timer.start()
        try:
            report = orchestrator.run(self._slow_suite(slow_api))
        finally:
            timer.cancel()
            signal.signal(signal.SIGTERM, previous)

        assert time.monotonic() - started < 2
        assert report.cancelled
        assert [r.outcome for r in report.results] == [Outcome.SKIPPED, Outcome.SKIPPED]

    def test_interrupt_while_running_skips_the_rest(self, tmp_path):
        db_path = tmp_path / "app.db"
        orchestrator, results = _orchestrator(_fake_api(db_path))
        orchestrator.on_result = lambda r: (results.append(r), orchestrator.interrupt())

        report = orchestrator.run(_suite(db_path, self.GROUPS))

        assert report.cancelled
        assert [r.outcome for r in report.results] == [Outcome.PASS, Outcome.SKIPPED, Outcome.SKIPPED]

    def test_interrupt_outside_tests_only_sets_event(self):
        orchestrator = Orchestrator(settings=SETTINGS)
        orchestrator.interrupt()
        assert orchestrator.cancel_event.is_set()


class TestFatalErrors:
    @patch("api_test_quest.runner.server.subprocess.Popen")
    def test_never_ready_server_produces_no_results(self, mock_popen, tmp_path):
        proc = MagicMock()
        proc.poll.return_value = None
        proc.stdout = io.StringIO("")
        proc.stderr = io.StringIO("")
        mock_popen.return_value = proc
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        suite = parse_suite(
            {
                "setup": {
                    "base_url": "http://127.0.0.1:9000",
                    "command": "./app",
                    "ready_when": "/health",
                },
                "db": {"db_type": "sqlite"},
                "test_groups": [{"name": "g", "tests": [{"url": "/x"}]}],
            }
        )
        orchestrator, results = _orchestrator(transport)

        with pytest.raises(SetupError):
            orchestrator.run(suite)

        assert results == []
        env = mock_popen.call_args.kwargs["env"]
        assert env["DATABASE_URL"].startswith("sqlite:///")
        assert not Path(env["DATABASE_URL"][len("sqlite:///"):]).parent.exists()
        proc.terminate.assert_called_once()

    def test_database_failure_stops_server(self, tmp_path):
        db_path = tmp_path / "app.db"
        suite = parse_suite(
            {
                "setup": {"base_url": "http://api.test"},
                "db": {"db_type": "sqlite", "url": f"sqlite:///{db_path}", "migration_dir": str(tmp_path / "absent")},
                "test_groups": [],
            }
        )
        servers = ServerManager(SETTINGS, transport=_fake_api(db_path))
        orchestrator = Orchestrator(settings=SETTINGS, servers=servers, transport=_fake_api(db_path))

        with patch.object(servers, "stop", wraps=servers.stop) as stop:
            with pytest.raises(DatabaseError, match="does not exist"):
                orchestrator.run(suite)
        stop.assert_called_once()
