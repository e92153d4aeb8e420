"""
Remote emulator orchestrator backed by a hosting provider's GraphQL API.

Each application gets its own emulator service, named
android-emulator-<application_id>, which is created on first start and
redeployed on later starts. Package installation and teardown are not
available through the provider API and are reported as unsupported.
"""

import asyncio
import logging
from typing import Any

import requests

from e2e_common.errors import EngineError
from e2e_common.models import EmulatorSession, EmulatorStatus, OperationResult

from .config import DRIVER_PORT, VIEWER_PORT, EngineSettings
from .orchestrator import BaseOrchestrator

logger = logging.getLogger(__name__)

SERVICE_QUERY = """
query services($name: String!) {
    services(where: { name: $name }) {
        edges {
            node {
                id
                name
            }
        }
    }
}
"""

SERVICE_CREATE_MUTATION = """
mutation serviceCreate($input: ServiceCreateInput!) {
    serviceCreate(input: $input) {
        id
        name
    }
}
"""

SERVICE_DEPLOY_MUTATION = """
mutation serviceInstanceDeploy($serviceId: String!) {
    serviceInstanceDeploy(serviceId: $serviceId) {
        id
        url
    }
}
"""


def service_name_for(application_id: str) -> str:
    return f"android-emulator-{application_id}"


class RemoteOrchestrator(BaseOrchestrator):
    """
    Deploys emulator services through the provider's GraphQL API.

    Uses a requests.Session; calls run in a worker thread.
    """

    mode = "remote"

    def __init__(
        self,
        settings: EngineSettings | None = None,
        session: requests.Session | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Engine settings (API URL, project token, device profile)
            session: HTTP session (a new one is created if omitted)
        """
        self.settings = settings or EngineSettings()
        self.api_url = self.settings.remote_api_url
        self.timeout = self.settings.orchestrator.remote_request_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if self.settings.remote_project_token:
            self.session.headers["Project-Access-Token"] = (
                self.settings.remote_project_token
            )

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        """
        Post one GraphQL operation.

        Returns:
            The response's "data" object

        Raises:
            EngineError: If the request fails or the API reports errors
        """
        try:
            response = self.session.post(
                self.api_url,
                json={"query": query, "variables": variables},
                timeout=self.timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Remote API request failed: {e}") from e

        if body.get("errors"):
            messages = "; ".join(
                str(error.get("message", error)) for error in body["errors"]
            )
            raise EngineError(f"Remote API error: {messages}")
        return body.get("data") or {}

    def _get_service(self, name: str) -> dict[str, Any] | None:
        data = self._graphql(SERVICE_QUERY, {"name": name})
        edges = (data.get("services") or {}).get("edges") or []
        return edges[0]["node"] if edges else None

    def _create_service(self, name: str) -> dict[str, Any]:
        data = self._graphql(
            SERVICE_CREATE_MUTATION,
            {
                "input": {
                    "name": name,
                    "source": {"image": self.settings.emulator_image},
                    "variables": [
                        {"key": "EMULATOR_DEVICE", "value": self.settings.device_profile},
                        {"key": "WEB_VNC", "value": "true"},
                        {"key": "APPIUM", "value": "true"},
                    ],
                }
            },
        )
        return data["serviceCreate"]

    def _deploy_service(self, service_id: str) -> dict[str, Any]:
        data = self._graphql(SERVICE_DEPLOY_MUTATION, {"serviceId": service_id})
        return data["serviceInstanceDeploy"]

    def _start(self, application_id: str) -> EmulatorSession:
        name = service_name_for(application_id)
        service = self._get_service(name)
        created = service is None
        if service is None:
            logger.info(f"Creating remote emulator service {name}")
            service = self._create_service(name)
        else:
            logger.info(f"Redeploying remote emulator service {name}")

        deployment = self._deploy_service(service["id"])
        domain = _strip_scheme(deployment.get("url") or deployment.get("domain") or "")
        if not domain:
            raise EngineError(f"Deployment of {name} returned no public domain")

        return EmulatorSession(
            viewer_url=f"https://{domain}:{VIEWER_PORT}/?autoconnect=true",
            driver_url=f"https://{domain}:{DRIVER_PORT}",
            container_id=service["id"],
            mode=self.mode,
            created=created,
        )

    async def start_emulator(self, application_id: str) -> EmulatorSession:
        """
        Create (first call) or redeploy the application's emulator service.

        Raises:
            EngineError: If the provider API fails
        """
        return await asyncio.to_thread(self._start, application_id)

    async def get_emulator_status(self, application_id: str) -> EmulatorStatus:
        name = service_name_for(application_id)
        service = await asyncio.to_thread(self._get_service, name)
        if service is None:
            return EmulatorStatus(
                running=False,
                status="not_found",
                message="Emulator service not found.",
            )
        return EmulatorStatus(
            running=False,
            status="unknown",
            container_id=service["id"],
            names=[service.get("name", name)],
            message="Run state is not reported in remote mode.",
        )

    async def stop_emulator(self, application_id: str) -> OperationResult:
        return OperationResult(False, "Stopping emulators is not supported in remote mode.")

    async def install_app(
        self, application_id: str, package_name: str | None = None
    ) -> OperationResult:
        return OperationResult(False, "App installation is not supported in remote mode.")

    async def is_app_installed(self, application_id: str, package_name: str) -> bool:
        return False


def _strip_scheme(url: str) -> str:
    for prefix in ("https://", "http://"):
        if url.startswith(prefix):
            url = url[len(prefix) :]
    return url.rstrip("/")
