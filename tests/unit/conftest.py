"""
Shared fixtures for unit tests.

FakeClock makes every wait loop run instantly while still advancing time, and
FakeComposeRuntime simulates the compose services in memory.
"""

import asyncio
import json
import os
import tempfile

import pytest
import pytest_asyncio

from e2e_common.errors import ComposeCommandError
from e2e_controller.compose import EXIT, STDERR, STDOUT, ProcessEvent
from e2e_controller.config import LifecycleTimeouts
from e2e_controller.context import EngineContext
from e2e_controller.lifecycle import LifecycleManager
from e2e_persistence.sqlite_repository import SQLiteJobRepository


class FakeClock:
    """Clock whose sleep() advances time immediately."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run
        await asyncio.sleep(0)


def service_record(
    name: str,
    state: str = "running",
    health: str | None = "healthy",
    exit_code: int = 0,
) -> dict:
    """Build one `compose ps --format json` record."""
    return {
        "Service": name,
        "State": state,
        "Health": health or "",
        "Status": f"{state} ({health})" if health else state,
        "ExitCode": exit_code,
    }


class FakeComposeRuntime:
    """
    In-memory compose runtime.

    Services are kept as ps records. up() and restart() make a service
    running with the health configured in health_after_start.
    """

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.health_after_start: dict[str, str | None] = {
            "android": "healthy",
            "appium": "healthy",
            "app": None,
        }
        self.logs_output: dict[str, str] = {}
        self.exec_output: dict[tuple[str, ...], str] = {}
        self.run_events: list[ProcessEvent] = [ProcessEvent(EXIT, returncode=0)]
        self.fail_commands: set[str] = set()

    def set_service(self, name: str, **kwargs) -> None:
        self.records[name] = service_record(name, **kwargs)

    def _check(self, command: str, *args) -> None:
        self.calls.append((command, *args))
        if command in self.fail_commands:
            raise ComposeCommandError(["docker", "compose", command], 1, "boom")

    def _start(self, name: str) -> None:
        self.records[name] = service_record(
            name, health=self.health_after_start.get(name, "healthy")
        )

    async def ps_json(self) -> str:
        self._check("ps")
        return "\n".join(json.dumps(record) for record in self.records.values())

    async def running_services(self) -> list[str]:
        self._check("ps-running")
        return [
            name for name, record in self.records.items() if record["State"] == "running"
        ]

    async def up(self, service: str) -> None:
        self._check("up", service)
        self._start(service)

    async def stop(self, services: list[str]) -> None:
        self._check("stop", tuple(services))
        for name in services:
            if name in self.records:
                self.records[name] = service_record(name, state="exited", health=None)

    async def restart(self, services: list[str]) -> None:
        self._check("restart", tuple(services))
        for name in services:
            self._start(name)

    async def logs(self, service: str, tail: int = 20) -> str:
        self._check("logs", service, tail)
        return self.logs_output.get(service, "")

    async def exec(self, service: str, command: list[str]) -> str:
        self._check("exec", service, tuple(command))
        return self.exec_output.get(tuple(command), "")

    async def stream_run(self, service, command, env=None):
        self._check("run", service, tuple(command), dict(env or {}))
        for event in self.run_events:
            yield event

    def commands(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]


def output_events(stdout: list[str], stderr: tuple[str, ...] = (), returncode: int = 0):
    """Build a scripted stream: stdout lines, stderr lines, then the exit event."""
    events = [ProcessEvent(STDOUT, line) for line in stdout]
    events.extend(ProcessEvent(STDERR, line) for line in stderr)
    events.append(ProcessEvent(EXIT, returncode=returncode))
    return events


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context(clock):
    return EngineContext(clock=clock)


@pytest.fixture
def runtime():
    return FakeComposeRuntime()


@pytest.fixture
def lifecycle(runtime, context):
    return LifecycleManager(runtime, context, LifecycleTimeouts())


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteJobRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)
