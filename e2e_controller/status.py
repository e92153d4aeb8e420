"""
Service status prober.

Queries the compose runtime for the state and health of the managed services
and caches the answer for a few seconds.
"""

import json
import logging
from typing import Any

from e2e_common.errors import ComposeCommandError
from e2e_common.models import ServiceStatus

from .compose import ComposeRuntime
from .context import EngineContext

logger = logging.getLogger(__name__)

STATUS_CACHE_KEY = "service_status"


def parse_ps_output(output: str) -> dict[str, ServiceStatus]:
    """
    Parse `compose ps --format json` output.

    Newer compose releases print one JSON object per line, older ones a
    single JSON array; both are accepted. Records that are not JSON objects
    or carry no service name are skipped.

    Args:
        output: Raw CLI stdout

    Returns:
        Mapping of service name to status
    """
    text = output.strip()
    if not text:
        return {}

    records: list[Any] = []
    if text.startswith("["):
        try:
            records = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("Could not parse compose ps output as a JSON array")
            return {}
    else:
        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug(f"Skipping non-JSON ps line: {line}")

    statuses: dict[str, ServiceStatus] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        status = ServiceStatus.from_compose_record(record)
        if status is not None:
            statuses[status.name] = status
    return statuses


class ServiceStatusProber:
    """
    Reports the status of compose services, cached for a short TTL.

    The cache holds one entry (the last successful probe of all services).
    There is no invalidation: callers wanting fresher data wait out the TTL.
    """

    def __init__(self, runtime: ComposeRuntime, context: EngineContext):
        self.runtime = runtime
        self.context = context

    async def get_status(self, names: list[str]) -> dict[str, ServiceStatus]:
        """
        Get the status of the requested services.

        Services missing from the runtime output are reported as not found.

        Args:
            names: Service names to report on

        Returns:
            Mapping of every requested name to its status, or an empty map if
            the runtime could not be queried
        """
        statuses = self.context.status_cache.get(STATUS_CACHE_KEY)

        if statuses is None:
            try:
                output = await self.runtime.ps_json()
            except ComposeCommandError as e:
                # Empty means "nothing confirmed running"
                logger.warning(f"Service status query failed: {e}")
                return {}
            statuses = parse_ps_output(output)
            self.context.status_cache.set(STATUS_CACHE_KEY, statuses)

        return {
            name: statuses.get(name) or ServiceStatus.not_found(name) for name in names
        }
