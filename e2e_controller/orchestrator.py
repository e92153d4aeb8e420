"""
Emulator orchestrator interface and factory.

An orchestrator manages the per-application device container: it locates or
creates it, waits for its viewer port, and installs the application package.
LocalOrchestrator talks to the local Docker Engine; RemoteOrchestrator
deploys to a hosting provider.
"""

from abc import ABC, abstractmethod

from e2e_common.models import EmulatorSession, EmulatorStatus, OperationResult
from e2e_common.repository import ApplicationProvider

from .config import EngineSettings


class BaseOrchestrator(ABC):
    """Operations on the device container of one application."""

    mode: str = ""

    @abstractmethod
    async def start_emulator(self, application_id: str) -> EmulatorSession:
        """
        Locate or create the application's device container and start it.

        The application package is installed only when a new container was
        created; re-used containers are never re-installed.

        Returns:
            Connection details of the running emulator
        """
        pass

    @abstractmethod
    async def stop_emulator(self, application_id: str) -> OperationResult:
        pass

    @abstractmethod
    async def get_emulator_status(self, application_id: str) -> EmulatorStatus:
        pass

    @abstractmethod
    async def install_app(
        self, application_id: str, package_name: str | None = None
    ) -> OperationResult:
        """
        Copy the application's package into the running device and install it.

        Returns:
            OperationResult; an unconfirmed installation is a failure result,
            not an exception
        """
        pass

    @abstractmethod
    async def is_app_installed(self, application_id: str, package_name: str) -> bool:
        pass


def create_orchestrator(
    settings: EngineSettings, applications: ApplicationProvider
) -> BaseOrchestrator:
    """
    Create the orchestrator for the configured deployment mode.

    Args:
        settings: Engine settings (orchestrator_mode selects the adapter)
        applications: Lookup for application package paths

    Raises:
        ValueError: If the mode is not supported
    """
    if settings.orchestrator_mode == "local":
        from .local_orchestrator import LocalOrchestrator

        return LocalOrchestrator(applications, settings)
    if settings.orchestrator_mode == "remote":
        from .remote_orchestrator import RemoteOrchestrator

        return RemoteOrchestrator(settings)
    raise ValueError(f"Unsupported orchestrator mode: {settings.orchestrator_mode}")
