"""System-under-test lifecycle: probe an external server or spawn one and wait for readiness."""

import logging
import os
import subprocess
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

import httpx

from api_test_quest.errors import SetupError
from api_test_quest.parser.base import ExternalServer, SpawnedServer
from api_test_quest.settings import RunSettings

logger = logging.getLogger(__name__)
app_logger = logging.getLogger("api_test_quest.app")


class ServerState(str, Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class OutputLine:
    source: str  # stdout / stderr
    line: str


class ServerHandle:
    """Live system under test. Owns the spawned process, if any."""

    def __init__(self, base_url: str):
        self.base_url = base_url
        self.state = ServerState.NOT_STARTED
        self.process: subprocess.Popen | None = None
        self.output: list[OutputLine] = []
        self._output_lock = threading.Lock()
        self._readers: list[threading.Thread] = []

    @property
    def spawned(self) -> bool:
        return self.process is not None

    def output_lines(self) -> list[OutputLine]:
        with self._output_lock:
            return list(self.output)

    def _record(self, source: str, line: str, stream: bool) -> None:
        with self._output_lock:
            self.output.append(OutputLine(source=source, line=line))
        if stream:
            app_logger.info("[%s] %s", source.upper(), line)


class ServerManager:
    """Starts and stops the system under test."""

    def __init__(self, settings: RunSettings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or RunSettings()
        self.transport = transport
        self.last_output: list[OutputLine] = []

    @contextmanager
    def running(self, setup, env: dict[str, str] | None = None) -> Iterator[ServerHandle]:
        """Start the server and guarantee it is stopped on every exit path."""
        handle = self.start(setup, env=env)
        try:
            yield handle
        finally:
            self.stop(handle)

    def start(self, setup, env: dict[str, str] | None = None) -> ServerHandle:
        """Start (or probe) the system under test. Raises SetupError on failure."""
        handle = ServerHandle(setup.base_url)
        handle.state = ServerState.STARTING

        if isinstance(setup, ExternalServer):
            self._probe_external(handle)
        elif isinstance(setup, SpawnedServer):
            self._spawn(handle, setup, env or {})
            try:
                self._wait_ready(handle, setup)
            except BaseException:
                self.stop(handle)
                raise
        else:
            raise SetupError(f"unknown server setup {setup!r}")

        handle.state = ServerState.READY
        logger.info("System under test ready at %s", handle.base_url)
        return handle

    def stop(self, handle: ServerHandle) -> None:
        """Terminate the spawned process: SIGTERM, grace period, then SIGKILL. Idempotent."""
        if handle.state in (ServerState.STOPPED, ServerState.STOPPING):
            return
        handle.state = ServerState.STOPPING

        proc = handle.process
        if proc is not None and proc.poll() is None:
            logger.info("Stopping system under test (pid %s)", proc.pid)
            proc.terminate()
            try:
                proc.wait(timeout=self.settings.stop_grace_period)
            except subprocess.TimeoutExpired:
                logger.warning("Process %s ignored SIGTERM, killing it", proc.pid)
                proc.kill()
                proc.wait()

        for reader in handle._readers:
            reader.join(timeout=1.0)
        if handle.spawned:
            self.last_output = handle.output_lines()
        handle.state = ServerState.STOPPED

    def _probe_external(self, handle: ServerHandle) -> None:
        # Any HTTP response means the server is reachable
        try:
            with self._client() as client:
                client.get(handle.base_url)
        except httpx.HTTPError as e:
            handle.state = ServerState.STOPPED
            raise SetupError(f"system under test at {handle.base_url} is unreachable: {e}") from e

    def _spawn(self, handle: ServerHandle, setup: SpawnedServer, extra_env: dict[str, str]) -> None:
        env = os.environ.copy()
        env.update(setup.env)
        env.update(extra_env)

        cmd = [setup.command, *setup.args]
        logger.info("Starting system under test: %s", " ".join(cmd))
        try:
            handle.process = subprocess.Popen(
                cmd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
            )
        except OSError as e:
            handle.state = ServerState.STOPPED
            raise SetupError(f"failed to spawn {setup.command!r}: {e}") from e

        # Pipes are always drained, a full pipe would block the server
        for source, pipe in (("stdout", handle.process.stdout), ("stderr", handle.process.stderr)):
            reader = threading.Thread(
                target=self._drain,
                args=(handle, source, pipe),
                name=f"quest-{source}-reader",
                daemon=True,
            )
            reader.start()
            handle._readers.append(reader)

    def _drain(self, handle: ServerHandle, source: str, pipe) -> None:
        for line in pipe:
            handle._record(source, line.rstrip("\n"), self.settings.stream_app)
        pipe.close()

    def _wait_ready(self, handle: ServerHandle, setup: SpawnedServer) -> None:
        url = f"{setup.base_url}{setup.ready_check_path}"
        logger.info("Waiting for readiness at %s", url)
        deadline = time.monotonic() + self.settings.ready_timeout

        with self._client() as client:
            while time.monotonic() < deadline:
                code = handle.process.poll()
                if code is not None:
                    for reader in handle._readers:
                        reader.join(timeout=1.0)
                    raise SetupError(
                        f"{setup.command!r} exited with code {code} before becoming ready",
                        details={"output": [o.line for o in handle.output_lines()[-20:]]},
                    )
                try:
                    resp = client.get(url)
                    if resp.is_success:
                        return
                    logger.debug("Readiness probe got %d", resp.status_code)
                except httpx.HTTPError as e:
                    logger.debug("Readiness probe failed: %s", e)
                time.sleep(self.settings.poll_interval)

        raise SetupError(
            f"timed out after {self.settings.ready_timeout:g}s waiting for {url} to respond with 2xx",
            details={"output": [o.line for o in handle.output_lines()[-20:]]},
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.settings.probe_timeout, transport=self.transport)
