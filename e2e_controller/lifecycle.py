"""
Container lifecycle manager ("smart start").

This module turns a requested set of compose services into the minimal set
of start and restart actions, runs them in dependency order, and blocks
until the services are ready. It also owns the worker's pre-run
start variant and the plain stop/restart/logs/exec operations.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from e2e_common.errors import ComposeCommandError
from e2e_common.models import (
    ANDROID_SERVICE,
    APPIUM_SERVICE,
    MANAGED_SERVICES,
    TEST_RUNNER_SERVICE,
    ServiceHealth,
    ServiceState,
    ServiceStatus,
    SmartStartResult,
)
from e2e_common.timing import Clock, poll_until

from .compose import ComposeRuntime
from .config import LifecycleTimeouts
from .context import EngineContext
from .status import ServiceStatusProber

logger = logging.getLogger(__name__)

# Service -> services it needs running first
DEPENDENCY_GRAPH: dict[str, tuple[str, ...]] = {
    APPIUM_SERVICE: (ANDROID_SERVICE,),
    TEST_RUNNER_SERVICE: (ANDROID_SERVICE, APPIUM_SERVICE),
}

# Services whose start is followed by a wait for the running state
_WAIT_AFTER_START = (ANDROID_SERVICE, APPIUM_SERVICE)


def _canonical(services: Iterable[str]) -> list[str]:
    """De-duplicate, putting managed services first in startup order."""
    unique = list(dict.fromkeys(services))
    known = [name for name in MANAGED_SERVICES if name in unique]
    return known + [name for name in unique if name not in MANAGED_SERVICES]


def order_services(requested: Iterable[str]) -> list[str]:
    """
    Order services so that dependencies come first.

    Each pass takes every remaining service whose dependencies are already
    ordered or were not requested at all. If a pass makes no progress the
    remainder is appended as-is instead of looping forever.

    Args:
        requested: Services to order

    Returns:
        Ordered list of the requested services
    """
    remaining = _canonical(requested)
    requested_set = set(remaining)
    ordered: list[str] = []

    while remaining:
        batch = [
            name
            for name in remaining
            if all(
                dep in ordered or dep not in requested_set
                for dep in DEPENDENCY_GRAPH.get(name, ())
            )
        ]
        if not batch:
            logger.warning(f"Could not resolve start order for {remaining}")
            ordered.extend(remaining)
            break
        ordered.extend(batch)
        remaining = [name for name in remaining if name not in batch]

    return ordered


@dataclass
class ServiceAnalysis:
    """Classification of the requested services before a smart start."""

    ready: list[str] = field(default_factory=list)
    waiting: list[str] = field(default_factory=list)  # health "starting", within grace
    needs_restart: list[str] = field(default_factory=list)
    needs_start: list[str] = field(default_factory=list)

    @property
    def all_ready(self) -> bool:
        return not (self.waiting or self.needs_restart or self.needs_start)


def classify(
    statuses: dict[str, ServiceStatus],
    requested: Iterable[str],
    context: EngineContext,
    starting_grace: float,
) -> ServiceAnalysis:
    """
    Classify each requested service as ready, waiting, needing a restart or
    needing a start.

    A running service still reporting health "starting" is left alone until
    it has been seen starting for starting_grace seconds; after that it is
    restarted like an unhealthy one.

    Args:
        statuses: Current statuses; missing names are treated as not found
        requested: Services to classify
        context: Engine context tracking when services were first seen starting
        starting_grace: Seconds a service may stay in health "starting"

    Returns:
        ServiceAnalysis
    """
    analysis = ServiceAnalysis()

    for name in _canonical(requested):
        status = statuses.get(name) or ServiceStatus.not_found(name)

        if status.is_running:
            if status.is_healthy:
                context.clear_starting(name)
                analysis.ready.append(name)
            elif status.health is ServiceHealth.UNHEALTHY:
                context.clear_starting(name)
                analysis.needs_restart.append(name)
            elif context.starting_for(name) < starting_grace:
                analysis.waiting.append(name)
            else:
                logger.warning(
                    f"Service {name} has been starting for over {starting_grace:g}s"
                )
                context.clear_starting(name)
                analysis.needs_restart.append(name)
        elif status.state is ServiceState.EXITED and status.exit_code != 0:
            analysis.needs_restart.append(name)
        else:
            analysis.needs_start.append(name)

    return analysis


class LifecycleManager:
    """
    Starts, restarts and waits for the managed compose services.

    All status reads go through one prober, so they share its cache.
    """

    def __init__(
        self,
        runtime: ComposeRuntime,
        context: EngineContext | None = None,
        timeouts: LifecycleTimeouts | None = None,
        prober: ServiceStatusProber | None = None,
    ):
        """
        Initialize the lifecycle manager.

        Args:
            runtime: Compose runtime used for every CLI call
            context: Engine context (clock, status cache, session state)
            timeouts: Poll intervals, timeouts and settle pauses
            prober: Status prober; built from runtime and context if omitted
        """
        self.runtime = runtime
        self.timeouts = timeouts or LifecycleTimeouts()
        self.context = context or EngineContext(
            status_cache_ttl=self.timeouts.status_cache_ttl
        )
        self.prober = prober or ServiceStatusProber(runtime, self.context)

    @property
    def clock(self) -> Clock:
        return self.context.clock

    async def get_status(self, names: Iterable[str]) -> dict[str, ServiceStatus]:
        return await self.prober.get_status(_canonical(names))

    async def analyze(self, requested: Iterable[str]) -> ServiceAnalysis:
        """Probe the requested services and classify them."""
        names = _canonical(requested)
        statuses = await self.prober.get_status(names)
        return classify(statuses, names, self.context, self.timeouts.starting_grace)

    async def smart_start(
        self, requested: Iterable[str] = MANAGED_SERVICES
    ) -> SmartStartResult:
        """
        Bring the requested services to the ready state with minimal actions.

        Services that are already ready are not touched. Unhealthy or crashed
        services are restarted with one batched command; missing or stopped
        ones are started one at a time in dependency order.

        Args:
            requested: Services that must be ready

        Returns:
            SmartStartResult naming the started and restarted services

        Raises:
            ComposeCommandError: If a start or restart command fails
            ReadinessTimeoutError: If a service does not come up in time
        """
        names = _canonical(requested)
        started_at = self.clock.monotonic()

        analysis = await self.analyze(names)
        logger.info(
            f"Service analysis: ready={analysis.ready} waiting={analysis.waiting} "
            f"restart={analysis.needs_restart} start={analysis.needs_start}"
        )

        if analysis.all_ready:
            logger.info("All requested services already running and healthy")
            return SmartStartResult()

        result = SmartStartResult()

        if analysis.needs_restart:
            logger.info(f"Restarting services: {', '.join(analysis.needs_restart)}")
            await self.runtime.restart(analysis.needs_restart)
            result.restarted = list(analysis.needs_restart)
            for name in analysis.needs_restart:
                await self.wait_for_running(name)

        for name in order_services(analysis.needs_start):
            logger.info(f"Starting service: {name}")
            await self.runtime.up(name)
            result.started.append(name)
            await self.clock.sleep(self.timeouts.start_settle)
            if name in _WAIT_AFTER_START:
                await self.wait_for_running(name)

        await self.wait_until_ready(names)

        result.elapsed = self.clock.monotonic() - started_at
        logger.info(f"Smart start finished in {result.elapsed:.1f}s")
        return result

    async def wait_for_running(self, name: str, timeout: float | None = None) -> None:
        """
        Wait until a service reports the running state.

        Raises:
            ReadinessTimeoutError: If it is not running within the timeout
        """

        async def check() -> bool:
            statuses = await self.prober.get_status([name])
            status = statuses.get(name)
            return status is not None and status.is_running

        await poll_until(
            check,
            interval=self.timeouts.running_poll,
            timeout=timeout if timeout is not None else self.timeouts.running_timeout,
            clock=self.clock,
            description=f"Service {name} did not reach the running state",
        )

    async def wait_until_ready(
        self, names: Iterable[str], timeout: float | None = None
    ) -> None:
        """
        Wait until every named service is healthy (or running, without a healthcheck).

        Raises:
            ReadinessTimeoutError: Naming the services still not ready
        """
        names = _canonical(names)
        pending: list[str] = list(names)

        async def check() -> bool:
            statuses = await self.prober.get_status(names)
            pending[:] = [
                name
                for name in names
                if name not in statuses or not statuses[name].is_healthy
            ]
            return not pending

        await poll_until(
            check,
            interval=self.timeouts.ready_poll,
            timeout=timeout if timeout is not None else self.timeouts.ready_timeout,
            clock=self.clock,
            description="Services not ready",
            pending=lambda: list(pending),
        )

    async def start_missing(
        self, required: Iterable[str] = (ANDROID_SERVICE, APPIUM_SERVICE)
    ) -> list[str]:
        """
        Start each required service that is not currently running.

        This is the worker's pre-run variant of smart_start(): it never
        restarts anything, and it waits a fixed settle pause after each start
        instead of classifying health.

        Args:
            required: Services that must be running

        Returns:
            Names of the services that were started

        Raises:
            ComposeCommandError: If listing or starting fails
        """
        running = set(await self.runtime.running_services())
        started = []

        for name in order_services(required):
            if name in running:
                continue
            logger.info(f"Service {name} is not running, starting it")
            await self.runtime.up(name)
            started.append(name)
            await self.clock.sleep(self._settle_for(name))

        return started

    def _settle_for(self, name: str) -> float:
        if name == ANDROID_SERVICE:
            return self.timeouts.android_settle
        if name == APPIUM_SERVICE:
            return self.timeouts.appium_settle
        return self.timeouts.start_settle

    async def stop_services(self, names: Iterable[str] = MANAGED_SERVICES) -> None:
        names = _canonical(names)
        logger.info(f"Stopping services: {', '.join(names)}")
        await self.runtime.stop(names)

    async def restart_services(self, names: Iterable[str] = MANAGED_SERVICES) -> None:
        names = _canonical(names)
        logger.info(f"Restarting services: {', '.join(names)}")
        await self.runtime.restart(names)

    async def get_service_logs(self, name: str, tail: int = 20) -> str:
        """
        Get the last log lines of a service.

        Returns:
            Log text, or an empty string if the logs could not be read
        """
        try:
            return await self.runtime.logs(name, tail=tail)
        except ComposeCommandError as e:
            logger.warning(f"Could not read logs of {name}: {e}")
            return ""

    async def exec_in_service(self, name: str, command: list[str]) -> str:
        """Run a command inside a running service and return its output."""
        return await self.runtime.exec(name, command)

    async def container_health(
        self, names: Iterable[str] = MANAGED_SERVICES
    ) -> dict[str, dict[str, Any]]:
        """
        Summarize running and health flags per service.

        Returns:
            {service: {"running": bool, "healthy": bool, "status": str}}
        """
        statuses = await self.get_status(names)
        return {
            name: {
                "running": status.is_running,
                "healthy": status.is_healthy,
                "status": status.status_text,
            }
            for name, status in statuses.items()
        }

    async def all_running(self, names: Iterable[str] = MANAGED_SERVICES) -> bool:
        statuses = await self.get_status(names)
        return bool(statuses) and all(s.is_running for s in statuses.values())

    async def all_healthy(self, names: Iterable[str] = MANAGED_SERVICES) -> bool:
        statuses = await self.get_status(names)
        return bool(statuses) and all(s.is_healthy for s in statuses.values())
