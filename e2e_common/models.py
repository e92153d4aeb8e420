"""
Data models for the mobile end-to-end test engine.

These models represent the domain objects shared by the lifecycle manager,
the emulator orchestrators, the test worker and the persistence layer,
independent of the underlying container runtime or storage mechanism.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Compose service names
ANDROID_SERVICE = "android"
APPIUM_SERVICE = "appium"
TEST_RUNNER_SERVICE = "app"

MANAGED_SERVICES = (ANDROID_SERVICE, APPIUM_SERVICE, TEST_RUNNER_SERVICE)

# The test-runner image ships without a healthcheck
SERVICES_WITHOUT_HEALTHCHECK = frozenset({TEST_RUNNER_SERVICE})

# Job states, mirroring the queue vocabulary
JOB_WAITING = "waiting"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

TERMINAL_JOB_STATES = frozenset({JOB_COMPLETED, JOB_FAILED})


class ServiceState(str, Enum):
    """Lifecycle state of a compose service as reported by the runtime."""

    NOT_FOUND = "not_found"
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"

    @classmethod
    def parse(cls, value: Any) -> "ServiceState":
        """Map a raw runtime state string onto the enum.

        Anything that is neither running, created nor exited (restarting,
        paused, dead, removing, missing) is reported as exited so that the
        lifecycle manager never mistakes it for a usable service.
        """
        if not isinstance(value, str) or not value.strip():
            return cls.NOT_FOUND
        normalized = value.strip().lower()
        if normalized == "running":
            return cls.RUNNING
        if normalized == "created":
            return cls.CREATED
        return cls.EXITED


class ServiceHealth(str, Enum):
    """Healthcheck status of a compose service."""

    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"

    @classmethod
    def parse(cls, value: Any) -> "ServiceHealth":
        """Map a raw health string onto the enum, defaulting to UNKNOWN."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.UNKNOWN


@dataclass(frozen=True)
class ServiceStatus:
    """
    Point-in-time status of one compose service.

    Recomputed on every poll; the prober caches it for a few seconds.
    """

    name: str
    state: ServiceState = ServiceState.NOT_FOUND
    health: ServiceHealth = ServiceHealth.UNKNOWN
    exit_code: int = 0
    status_text: str = "Not created"
    has_healthcheck: bool = False  # False when the runtime reported no Health field

    @property
    def is_running(self) -> bool:
        return self.state is ServiceState.RUNNING

    @property
    def is_healthy(self) -> bool:
        """Healthy when the healthcheck says so, or when running without one."""
        if self.health is ServiceHealth.HEALTHY:
            return True
        return self.is_running and not self.has_healthcheck

    @classmethod
    def not_found(cls, name: str) -> "ServiceStatus":
        """Synthesize the status of a service missing from the runtime output."""
        return cls(name=name)

    @classmethod
    def from_compose_record(cls, record: dict[str, Any]) -> "ServiceStatus | None":
        """
        Build a status from one `compose ps --format json` record.

        Args:
            record: Parsed JSON object with Service/State/Health/Status/ExitCode

        Returns:
            ServiceStatus, or None if the record carries no service name
        """
        name = record.get("Service")
        if not isinstance(name, str) or not name:
            return None

        raw_health = record.get("Health")
        try:
            exit_code = int(record.get("ExitCode") or 0)
        except (TypeError, ValueError):
            exit_code = 0

        return cls(
            name=name,
            state=ServiceState.parse(record.get("State")),
            health=ServiceHealth.parse(raw_health),
            exit_code=exit_code,
            status_text=str(record.get("Status") or ""),
            has_healthcheck=bool(raw_health),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert status to dictionary format (for CLI/JSON output)."""
        return {
            "name": self.name,
            "state": self.state.value,
            "health": self.health.value,
            "exit_code": self.exit_code,
            "status": self.status_text,
            "running": self.is_running,
            "healthy": self.is_healthy,
        }


@dataclass
class SmartStartResult:
    """Outcome of a smart start: which services were touched and how long it took."""

    started: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    elapsed: float = 0.0  # seconds

    @property
    def message(self) -> str:
        if not self.started and not self.restarted:
            return "All services were already running and healthy"
        return "Services started successfully with smart optimization"

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "started": self.started,
            "restarted": self.restarted,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class JobPayload:
    """
    Input of one test run, as enqueued by the caller.

    The wire format keeps the camelCase keys used by the queue producers.
    """

    application_id: str
    apk_file_name: str | None = None
    app_package_name: str | None = None
    test_file: str | None = None
    test_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "applicationId": self.application_id,
            "apkFileName": self.apk_file_name,
            "appPackageName": self.app_package_name,
        }
        if self.test_file is not None:
            result["testFile"] = self.test_file
        if self.test_id is not None:
            result["testId"] = self.test_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobPayload":
        return cls(
            application_id=str(data.get("applicationId", "")),
            apk_file_name=data.get("apkFileName"),
            app_package_name=data.get("appPackageName"),
            test_file=data.get("testFile"),
            test_id=data.get("testId"),
        )


@dataclass
class Job:
    """
    Represents one queued test run.

    Jobs progress through states: waiting -> active -> completed | failed.
    A waiting job can be removed; an active job can only be flagged discarded.
    """

    id: str
    kind: str
    data: JobPayload
    state: str = JOB_WAITING
    progress: int = 0
    logs: list[str] = field(default_factory=list)
    failed_reason: str | None = None
    return_value: dict[str, Any] | None = None
    discarded: bool = False
    created_at: datetime | None = None
    processed_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary format (status view)."""
        return {
            "id": self.id,
            "kind": self.kind,
            "state": self.state,
            "progress": self.progress,
            "data": self.data.to_dict(),
            "logs": list(self.logs),
            "discarded": self.discarded,
            "created_at": _isoformat(self.created_at),
            "processed_at": _isoformat(self.processed_at),
            "finished_at": _isoformat(self.finished_at),
            "failed_reason": self.failed_reason,
            "return_value": self.return_value,
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert job to summary format (without logs, for listings)."""
        summary = self.to_dict()
        del summary["logs"]
        del summary["return_value"]
        return summary


@dataclass(frozen=True)
class TestError:
    """Failure details attached to a failed test result."""

    __test__ = False  # not a pytest test class

    message: str
    stack: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "stack": self.stack}


@dataclass(frozen=True)
class TestResult:
    """
    Outcome of one test case detected in a run's output.

    Immutable once created; persisted through the result sink.
    """

    __test__ = False  # not a pytest test class

    application: str
    job_id: str
    test_name: str
    test_file: str
    status: str  # "passed", "failed" or "skipped"
    duration: int = 0  # milliseconds
    retries: int = 0
    error: TestError | None = None
    executed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    screenshots: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "application": self.application,
            "job_id": self.job_id,
            "test_name": self.test_name,
            "test_file": self.test_file,
            "status": self.status,
            "duration": self.duration,
            "retries": self.retries,
            "error": self.error.to_dict() if self.error else None,
            "executed_at": self.executed_at.isoformat(),
            "screenshots": list(self.screenshots),
        }


@dataclass
class Application:
    """An application under test, as known to the resource provider."""

    id: str
    name: str
    package_path: str  # path of the uploaded APK, absolute or relative to the package root
    package_identifier: str | None = None  # e.g. "com.example.app"
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "package_path": self.package_path,
            "package_identifier": self.package_identifier,
            "created_at": _isoformat(self.created_at),
        }


@dataclass
class EmulatorContainer:
    """A device container as seen through the container management API."""

    id: str
    name: str
    state: str
    viewer_port: str | None = None
    driver_endpoint: str | None = None


@dataclass
class EmulatorSession:
    """Connection details returned after an emulator has been started."""

    viewer_url: str
    container_id: str
    mode: str  # "local" or "remote"
    driver_url: str | None = None
    created: bool = False
    installed: bool | None = None  # None when no installation was attempted

    def to_dict(self) -> dict[str, Any]:
        return {
            "viewer_url": self.viewer_url,
            "driver_url": self.driver_url,
            "container_id": self.container_id,
            "mode": self.mode,
            "created": self.created,
            "installed": self.installed,
        }


@dataclass
class EmulatorStatus:
    """Running state of an application's emulator container."""

    running: bool
    status: str
    container_id: str | None = None
    names: list[str] = field(default_factory=list)
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "running": self.running,
            "status": self.status,
            "container_id": self.container_id,
            "names": self.names,
        }
        if self.message:
            result["message"] = self.message
        return result


@dataclass
class OperationResult:
    """Structured success/failure of a best-effort emulator operation."""

    success: bool
    message: str
    output: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.output is not None:
            result["output"] = self.output
        return result


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
