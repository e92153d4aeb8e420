"""
Local emulator orchestrator backed by the Docker Engine API.

Device containers are named android_<application_id>. A container started by
the compose project (e.g. "mobile-e2e-android-1") is re-used as a shared pool
device when no per-application container exists.

The Docker SDK is blocking, so every call runs in a worker thread.
"""

import asyncio
import io
import logging
import re
import tarfile
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, NotFound

from e2e_common.errors import (
    ContainerNotFoundError,
    EngineError,
    InstallVerificationError,
    ReadinessTimeoutError,
    ViewerPortUnavailableError,
)
from e2e_common.models import (
    EmulatorSession,
    EmulatorStatus,
    OperationResult,
)
from e2e_common.repository import ApplicationProvider
from e2e_common.timing import Clock, SystemClock, poll_until

from .config import DRIVER_PORT, VIEWER_PORT, EngineSettings, OrchestratorTimeouts
from .orchestrator import BaseOrchestrator

logger = logging.getLogger(__name__)

REMOTE_PACKAGE_DIR = "/tmp"
INSTALL_SUCCESS_MARKER = "Success"

# Device container started by the compose project
POOL_CONTAINER_PATTERN = re.compile(r"-android-\d+$")


def container_name_for(application_id: str) -> str:
    return f"android_{application_id}"


def is_package_listed(output: str, package_name: str) -> bool:
    """
    Check `pm list packages` output for an exact package line.

    A substring match would also accept packages sharing the prefix
    (com.example.app.other for com.example.app).
    """
    expected = f"package:{package_name}"
    return any(line.strip() == expected for line in output.splitlines())


def build_package_archive(package_path: Path) -> bytes:
    """Pack one file into an in-memory tar archive, stored under its base name."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.add(str(package_path), arcname=package_path.name)
    return buffer.getvalue()


def host_port(attrs: dict[str, Any], container_port: int) -> str | None:
    """Return the host port bound to a container TCP port, if any."""
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    bindings = ports.get(f"{container_port}/tcp") or []
    for binding in bindings:
        if binding.get("HostPort"):
            return binding["HostPort"]
    return None


class LocalOrchestrator(BaseOrchestrator):
    """
    Manages device containers on the local Docker Engine.

    Only start_emulator() creates containers; the other operations act on
    an existing container and report "not found" as a structured failure.
    """

    mode = "local"

    def __init__(
        self,
        applications: ApplicationProvider,
        settings: EngineSettings | None = None,
        client: Any = None,
        clock: Clock | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            applications: Lookup for application package paths
            settings: Engine settings (image, device profile, host, package root)
            client: Docker client; created with docker.from_env() on first use
            clock: Clock for the viewer-port wait
        """
        self.applications = applications
        self.settings = settings or EngineSettings()
        self.timeouts: OrchestratorTimeouts = self.settings.orchestrator
        self.clock = clock or SystemClock()
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def _find_container(self, application_id: str) -> Any | None:
        """Find the application's container, falling back to a pool container."""
        name = container_name_for(application_id)
        containers = await asyncio.to_thread(self.client.containers.list, all=True)

        for container in containers:
            if container.name == name:
                return container
        for container in containers:
            if POOL_CONTAINER_PATTERN.search(container.name):
                return container
        return None

    async def _require_container(self, application_id: str) -> Any:
        container = await self._find_container(application_id)
        if container is None:
            raise ContainerNotFoundError(application_id)
        return container

    async def _remove_stale_container(self, name: str) -> None:
        try:
            stale = await asyncio.to_thread(self.client.containers.get, name)
        except NotFound:
            return
        logger.info(f"Removing stale container {name}")
        await asyncio.to_thread(stale.remove, force=True)

    def _create_container(self, name: str) -> Any:
        return self.client.containers.create(
            self.settings.emulator_image,
            name=name,
            environment={
                "EMULATOR_DEVICE": self.settings.device_profile,
                "WEB_VNC": "true",
                "APPIUM": "true",
            },
            # None lets the engine pick a free host port
            ports={f"{VIEWER_PORT}/tcp": None, f"{DRIVER_PORT}/tcp": None},
            privileged=True,
            shm_size="4g",
            detach=True,
        )

    async def start_emulator(self, application_id: str) -> EmulatorSession:
        """
        Locate or create the application's device container and start it.

        Args:
            application_id: Application whose emulator to start

        Returns:
            EmulatorSession with viewer and driver URLs

        Raises:
            ViewerPortUnavailableError: If the viewer port never gets a host binding
            docker.errors.APIError: If the engine rejects a create/start call
        """
        container = await self._find_container(application_id)
        created = False

        if container is not None:
            logger.info(f"Using existing emulator container {container.name}")
            if container.status != "running":
                logger.info(f"Starting existing container {container.name}")
                await asyncio.to_thread(container.start)
        else:
            name = container_name_for(application_id)
            logger.info(f"Creating emulator container {name}")
            await self._remove_stale_container(name)
            container = await asyncio.to_thread(self._create_container, name)
            await asyncio.to_thread(container.start)
            created = True

        viewer_port = await self._wait_for_viewer_port(container)

        installed = None
        if created:
            installed = await self._install_on_new_container(container, application_id)
        else:
            logger.info("Re-using container, skipping package installation")

        driver_port = host_port(container.attrs, DRIVER_PORT) or str(DRIVER_PORT)
        host = self.settings.public_host
        return EmulatorSession(
            viewer_url=f"http://{host}:{viewer_port}/?autoconnect=true",
            driver_url=f"http://{host}:{driver_port}",
            container_id=container.id,
            mode=self.mode,
            created=created,
            installed=installed,
        )

    async def _wait_for_viewer_port(self, container: Any) -> str:
        """Poll container inspection until the viewer port has a host binding."""

        async def check() -> str | None:
            await asyncio.to_thread(container.reload)
            return host_port(container.attrs, VIEWER_PORT)

        try:
            return await poll_until(
                check,
                interval=self.timeouts.viewer_port_poll,
                timeout=self.timeouts.viewer_port_timeout,
                clock=self.clock,
                description="Viewer port not assigned",
            )
        except ReadinessTimeoutError as e:
            raise ViewerPortUnavailableError(
                container.id, self.timeouts.viewer_port_timeout
            ) from e

    async def _install_on_new_container(
        self, container: Any, application_id: str
    ) -> bool:
        """Install the application's package on a fresh container; failures are logged only."""
        package_path = await self._resolve_package_path(application_id)
        if package_path is None:
            logger.info("No package available for the application, skipping installation")
            return False

        try:
            result = await self._copy_and_install(container, package_path)
        except Exception as e:
            logger.warning(f"Package installation on new container failed: {e}")
            return False

        if result.success:
            logger.info(f"Installed {package_path.name} on new container")
        else:
            logger.warning(f"Installation of {package_path.name} failed: {result.output}")
        return result.success

    def _package_path(self, stored_path: str) -> Path:
        """Resolve a stored package path against the package root."""
        path = Path(stored_path)
        if not path.is_absolute():
            path = Path(self.settings.package_root) / path
        return path

    async def _resolve_package_path(self, application_id: str) -> Path | None:
        application = await self.applications.get(application_id)
        if application is None or not application.package_path:
            return None

        path = self._package_path(application.package_path)
        if not path.is_file():
            logger.warning(f"Package file not found at {path}")
            return None
        return path

    async def _exec(self, container: Any, command: list[str]) -> str:
        result = await asyncio.to_thread(container.exec_run, command)
        output = result.output or b""
        if isinstance(output, bytes):
            output = output.decode(errors="replace")
        return output

    async def _copy_and_install(
        self, container: Any, package_path: Path
    ) -> OperationResult:
        """
        Copy a package into the container's /tmp and install it with adb.

        Raises:
            EngineError: If the archive cannot be copied into the container
        """
        archive = await asyncio.to_thread(build_package_archive, package_path)
        copied = await asyncio.to_thread(
            container.put_archive, REMOTE_PACKAGE_DIR, archive
        )
        if not copied:
            raise EngineError(f"Failed to copy {package_path.name} into the container")

        remote_path = f"{REMOTE_PACKAGE_DIR}/{package_path.name}"
        await self._exec(container, ["chmod", "777", remote_path])

        try:
            output = await self._adb_install(container, remote_path, package_path)
        except InstallVerificationError as e:
            return OperationResult(False, "App installation failed.", e.output)
        except APIError as e:
            return OperationResult(False, "App installation error.", str(e))

        return OperationResult(True, "App installed successfully.", output)

    async def _adb_install(
        self, container: Any, remote_path: str, package_path: Path
    ) -> str:
        """
        Run `adb install -r` inside the container.

        Raises:
            InstallVerificationError: If the output lacks the success marker
        """
        output = await self._exec(container, ["adb", "install", "-r", remote_path])
        logger.debug(f"adb install output: {output.strip()}")
        if INSTALL_SUCCESS_MARKER not in output:
            raise InstallVerificationError(str(package_path), output)
        return output

    async def install_app(
        self, application_id: str, package_name: str | None = None
    ) -> OperationResult:
        """
        Install the application's stored package on its running container.

        Args:
            application_id: Application whose package to install
            package_name: Package identifier (informational)

        Raises:
            EngineError: If the archive cannot be copied into the container
        """
        try:
            container = await self._require_container(application_id)
        except ContainerNotFoundError:
            return OperationResult(False, "Emulator container not found.")

        application = await self.applications.get(application_id)
        if application is None or not application.package_path:
            return OperationResult(False, "Application or package path not found.")

        package_path = self._package_path(application.package_path)
        if not package_path.is_file():
            return OperationResult(False, f"APK file not found at path: {package_path}")

        logger.info(
            f"Installing {package_path.name} ({package_name or 'unknown package'}) "
            f"on {container.name}"
        )
        return await self._copy_and_install(container, package_path)

    async def is_app_installed(self, application_id: str, package_name: str) -> bool:
        """
        Check whether a package is installed on the application's device.

        Returns:
            True iff the package listing contains exactly package:<package_name>
        """
        try:
            container = await self._require_container(application_id)
        except ContainerNotFoundError as e:
            logger.info(str(e))
            return False

        try:
            output = await self._exec(
                container, ["adb", "shell", "pm", "list", "packages", package_name]
            )
        except APIError as e:
            logger.warning(f"Package listing failed: {e}")
            return False

        return is_package_listed(output, package_name)

    async def stop_emulator(self, application_id: str) -> OperationResult:
        try:
            container = await self._require_container(application_id)
        except ContainerNotFoundError:
            return OperationResult(False, "Emulator container not found.")

        try:
            await asyncio.to_thread(container.stop)
            await asyncio.to_thread(container.remove, force=True)
        except APIError as e:
            logger.error(f"Failed to stop emulator {container.name}: {e}")
            return OperationResult(False, "Failed to stop or remove emulator.", str(e))

        return OperationResult(True, "Emulator stopped and removed.")

    async def get_emulator_status(self, application_id: str) -> EmulatorStatus:
        container = await self._find_container(application_id)
        if container is None:
            return EmulatorStatus(
                running=False,
                status="not_found",
                message="Emulator container not found.",
            )

        return EmulatorStatus(
            running=container.status == "running",
            status=container.status,
            container_id=container.id,
            names=[container.name],
        )
