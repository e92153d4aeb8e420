"""
Unit tests for the local Docker orchestrator.

The Docker client is a MagicMock; no engine is required.
"""

import io
import tarfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeClock
from docker.errors import APIError, NotFound

from e2e_common.errors import ViewerPortUnavailableError
from e2e_common.models import Application
from e2e_controller.config import EngineSettings
from e2e_controller.local_orchestrator import (
    LocalOrchestrator,
    build_package_archive,
    host_port,
    is_package_listed,
)

BOUND_PORTS = {
    "NetworkSettings": {
        "Ports": {
            "6080/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}],
            "4723/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32769"}],
        }
    }
}


def make_container(name, status="running", attrs=None, exec_output=b"Success\n"):
    container = MagicMock()
    container.name = name
    container.id = f"{name}-id"
    container.status = status
    container.attrs = attrs if attrs is not None else BOUND_PORTS
    container.put_archive.return_value = True
    container.exec_run.return_value = MagicMock(exit_code=0, output=exec_output)
    return container


@pytest.fixture
def package_file(tmp_path):
    path = tmp_path / "demo.apk"
    path.write_bytes(b"PK\x03\x04 fake apk")
    return path


@pytest.fixture
def applications(package_file):
    provider = AsyncMock()
    provider.get.return_value = Application(
        id="app-1", name="Demo", package_path=str(package_file)
    )
    return provider


@pytest.fixture
def client():
    client = MagicMock()
    client.containers.list.return_value = []
    client.containers.get.side_effect = NotFound("No such container")
    return client


@pytest.fixture
def orchestrator(applications, client):
    return LocalOrchestrator(applications, EngineSettings(), client=client, clock=FakeClock())


def exec_commands(container):
    return [call.args[0] for call in container.exec_run.call_args_list]


class TestHelpers:
    """Test suite for the module-level helpers."""

    def test_package_listing_is_exact(self):
        output = "package:com.example.app.other\npackage:com.android.settings\n"

        assert not is_package_listed(output, "com.example.app")
        assert is_package_listed(output + "package:com.example.app\n", "com.example.app")

    def test_host_port(self):
        assert host_port(BOUND_PORTS, 6080) == "32768"
        assert host_port({"NetworkSettings": {"Ports": {"6080/tcp": None}}}, 6080) is None
        assert host_port({}, 6080) is None

    def test_archive_stores_base_name(self, package_file):
        archive = build_package_archive(package_file)

        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            assert tar.getnames() == ["demo.apk"]


class TestStartEmulator:
    """Test suite for LocalOrchestrator.start_emulator()."""

    @pytest.mark.asyncio
    async def test_creates_and_installs_on_new_container(self, orchestrator, client):
        container = make_container("android_app-1", status="created")
        client.containers.create.return_value = container

        session = await orchestrator.start_emulator("app-1")

        args, kwargs = client.containers.create.call_args
        assert args == ("budtmo/docker-android:emulator_11.0",)
        assert kwargs["name"] == "android_app-1"
        assert kwargs["environment"]["EMULATOR_DEVICE"] == "Samsung Galaxy S10"
        assert kwargs["ports"] == {"6080/tcp": None, "4723/tcp": None}
        assert kwargs["privileged"] is True
        assert kwargs["shm_size"] == "4g"
        container.start.assert_called_once()

        container.put_archive.assert_called_once()
        assert container.put_archive.call_args.args[0] == "/tmp"
        assert exec_commands(container) == [
            ["chmod", "777", "/tmp/demo.apk"],
            ["adb", "install", "-r", "/tmp/demo.apk"],
        ]

        assert session.viewer_url == "http://localhost:32768/?autoconnect=true"
        assert session.driver_url == "http://localhost:32769"
        assert session.created is True
        assert session.installed is True
        assert session.mode == "local"

    @pytest.mark.asyncio
    async def test_removes_stale_container_before_create(self, orchestrator, client):
        stale = make_container("android_app-1")
        client.containers.get.side_effect = None
        client.containers.get.return_value = stale
        client.containers.create.return_value = make_container("android_app-1")

        await orchestrator.start_emulator("app-1")

        stale.remove.assert_called_once_with(force=True)

    @pytest.mark.asyncio
    async def test_reused_container_is_not_reinstalled(self, orchestrator, client):
        container = make_container("android_app-1", status="exited")
        client.containers.list.return_value = [container]

        session = await orchestrator.start_emulator("app-1")

        container.start.assert_called_once()
        container.put_archive.assert_not_called()
        client.containers.create.assert_not_called()
        assert session.created is False
        assert session.installed is None

    @pytest.mark.asyncio
    async def test_uses_pool_container_when_no_dedicated_one(self, orchestrator, client):
        pool = make_container("mobile-e2e-android-1")
        client.containers.list.return_value = [make_container("mobile-e2e-appium-1"), pool]

        session = await orchestrator.start_emulator("app-1")

        assert session.container_id == "mobile-e2e-android-1-id"
        pool.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_viewer_port_timeout(self, applications, client):
        clock = FakeClock()
        orchestrator = LocalOrchestrator(applications, EngineSettings(), client=client, clock=clock)
        client.containers.create.return_value = make_container(
            "android_app-1", attrs={"NetworkSettings": {"Ports": {}}}
        )

        with pytest.raises(ViewerPortUnavailableError) as exc_info:
            await orchestrator.start_emulator("app-1")

        assert exc_info.value.container_id == "android_app-1-id"
        assert clock.now - 1000.0 == pytest.approx(60)

    @pytest.mark.asyncio
    async def test_install_failure_does_not_fail_start(self, orchestrator, client):
        client.containers.create.return_value = make_container(
            "android_app-1", exec_output=b"Failure [INSTALL_FAILED_INVALID_APK]\n"
        )

        session = await orchestrator.start_emulator("app-1")

        assert session.created is True
        assert session.installed is False


class TestInstallApp:
    """Test suite for install_app() and is_app_installed()."""

    @pytest.mark.asyncio
    async def test_container_not_found(self, orchestrator):
        result = await orchestrator.install_app("app-1")

        assert result.success is False
        assert result.message == "Emulator container not found."

    @pytest.mark.asyncio
    async def test_application_not_found(self, orchestrator, client, applications):
        client.containers.list.return_value = [make_container("android_app-1")]
        applications.get.return_value = None

        result = await orchestrator.install_app("app-1")

        assert result.message == "Application or package path not found."

    @pytest.mark.asyncio
    async def test_package_file_missing(self, orchestrator, client, package_file):
        client.containers.list.return_value = [make_container("android_app-1")]
        package_file.unlink()

        result = await orchestrator.install_app("app-1")

        assert result.success is False
        assert result.message.startswith("APK file not found at path:")

    @pytest.mark.asyncio
    async def test_missing_success_marker_is_a_failure(self, orchestrator, client):
        client.containers.list.return_value = [
            make_container("android_app-1", exec_output=b"Performing Streamed Install\nFailure\n")
        ]

        result = await orchestrator.install_app("app-1", "com.example.app")

        assert result.success is False
        assert result.message == "App installation failed."
        assert "Failure" in result.output

    @pytest.mark.asyncio
    async def test_install_success(self, orchestrator, client):
        client.containers.list.return_value = [make_container("android_app-1")]

        result = await orchestrator.install_app("app-1", "com.example.app")

        assert result.success is True
        assert result.message == "App installed successfully."

    @pytest.mark.asyncio
    async def test_is_app_installed(self, orchestrator, client):
        container = make_container("android_app-1", exec_output=b"package:com.example.app\n")
        client.containers.list.return_value = [container]

        assert await orchestrator.is_app_installed("app-1", "com.example.app") is True
        assert exec_commands(container) == [
            ["adb", "shell", "pm", "list", "packages", "com.example.app"]
        ]

    @pytest.mark.asyncio
    async def test_is_app_installed_without_container(self, orchestrator):
        assert await orchestrator.is_app_installed("app-1", "com.example.app") is False


class TestStopAndStatus:
    """Test suite for stop_emulator() and get_emulator_status()."""

    @pytest.mark.asyncio
    async def test_stop_removes_container(self, orchestrator, client):
        container = make_container("android_app-1")
        client.containers.list.return_value = [container]

        result = await orchestrator.stop_emulator("app-1")

        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)
        assert result.success is True
        assert result.message == "Emulator stopped and removed."

    @pytest.mark.asyncio
    async def test_stop_engine_error(self, orchestrator, client):
        container = make_container("android_app-1")
        container.stop.side_effect = APIError("conflict")
        client.containers.list.return_value = [container]

        result = await orchestrator.stop_emulator("app-1")

        assert result.success is False
        assert result.message == "Failed to stop or remove emulator."

    @pytest.mark.asyncio
    async def test_status(self, orchestrator, client):
        client.containers.list.return_value = [make_container("android_app-1", status="exited")]

        status = await orchestrator.get_emulator_status("app-1")

        assert status.running is False
        assert status.status == "exited"
        assert status.names == ["android_app-1"]

    @pytest.mark.asyncio
    async def test_status_not_found(self, orchestrator):
        status = await orchestrator.get_emulator_status("app-1")

        assert status.status == "not_found"
        assert status.to_dict()["message"] == "Emulator container not found."
