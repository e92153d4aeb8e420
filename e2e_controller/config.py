"""
Engine settings and timing tables.

Settings are read from E2E_* environment variables; the worker entrypoint
and the admin CLI override individual values from their own options.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_EMULATOR_IMAGE = "budtmo/docker-android:emulator_11.0"
DEFAULT_DEVICE_PROFILE = "Samsung Galaxy S10"

# Fixed in-container ports of the emulator image
VIEWER_PORT = 6080
DRIVER_PORT = 4723


@dataclass(frozen=True)
class LifecycleTimeouts:
    """Poll intervals, timeouts and settle pauses of the lifecycle manager (seconds)."""

    status_cache_ttl: float = 5.0
    running_poll: float = 2.0
    running_timeout: float = 30.0
    start_settle: float = 2.0
    ready_poll: float = 5.0
    ready_timeout: float = 120.0
    # How long a service may report health "starting" before it is restarted
    starting_grace: float = 90.0
    # Settle pauses of LifecycleManager.start_missing()
    android_settle: float = 10.0
    appium_settle: float = 15.0


@dataclass(frozen=True)
class WorkerTimeouts:
    """Timing of the test-execution worker (seconds)."""

    health_timeout: float = 180.0
    health_poll: float = 5.0
    unhealthy_log_tail: int = 20
    logcat_lines: int = 50
    logcat_log_chars: int = 1000


@dataclass(frozen=True)
class OrchestratorTimeouts:
    """Timing of the emulator orchestrators (seconds)."""

    viewer_port_poll: float = 1.0
    viewer_port_timeout: float = 60.0
    remote_request_timeout: float = 30.0


@dataclass
class EngineSettings:
    """
    Runtime configuration shared by the worker and the admin CLI.

    Attributes:
        compose_command: Compose CLI invocation, split into argv
        project_dir: Directory holding the compose project (None = cwd)
        orchestrator_mode: "local" (Docker Engine) or "remote" (hosting provider)
        public_host: Host name used in viewer and driver URLs
        package_root: Root directory for relative application package paths
        emulator_image: Device container image
        device_profile: Emulated device model
        remote_api_url: GraphQL endpoint of the hosting provider
        remote_project_token: Project token for the hosting provider
    """

    compose_command: list[str] = field(default_factory=lambda: ["docker", "compose"])
    project_dir: str | None = None
    orchestrator_mode: str = "local"
    public_host: str = "localhost"
    package_root: str = "."
    emulator_image: str = DEFAULT_EMULATOR_IMAGE
    device_profile: str = DEFAULT_DEVICE_PROFILE
    remote_api_url: str = "https://backboard.railway.app/graphql/v2"
    remote_project_token: str | None = None
    lifecycle: LifecycleTimeouts = field(default_factory=LifecycleTimeouts)
    worker: WorkerTimeouts = field(default_factory=WorkerTimeouts)
    orchestrator: OrchestratorTimeouts = field(default_factory=OrchestratorTimeouts)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from E2E_* environment variables."""
        mode = os.environ.get("E2E_ORCHESTRATOR_MODE", "local").strip().lower()
        if mode not in ("local", "remote"):
            logger.warning(f"Invalid E2E_ORCHESTRATOR_MODE={mode}, using local")
            mode = "local"

        return cls(
            compose_command=shlex.split(
                os.environ.get("E2E_COMPOSE_COMMAND", "docker compose")
            ),
            project_dir=os.environ.get("E2E_PROJECT_DIR") or None,
            orchestrator_mode=mode,
            public_host=os.environ.get("E2E_PUBLIC_HOST", "localhost"),
            package_root=os.environ.get("E2E_PACKAGE_ROOT", "."),
            emulator_image=os.environ.get("E2E_EMULATOR_IMAGE", DEFAULT_EMULATOR_IMAGE),
            device_profile=os.environ.get("E2E_DEVICE_PROFILE", DEFAULT_DEVICE_PROFILE),
            remote_api_url=os.environ.get(
                "E2E_REMOTE_API_URL", "https://backboard.railway.app/graphql/v2"
            ),
            remote_project_token=os.environ.get("E2E_REMOTE_PROJECT_TOKEN") or None,
        )
