"""
Test-execution worker.

The worker consumes the job queue one job at a time. For each job it makes
sure the device and driver services are running and healthy, runs the
WebdriverIO suite inside the test-runner service, streams the output into
the job log, and records the parsed test results.

Per-job phases (progress in parentheses):
    CheckingContainers (5-25) -> WaitingHealthy (25-40) -> Executing (40-90)
    -> Done (100) | Failed
"""

import asyncio
import logging
from typing import Any

from e2e_common.errors import (
    ComposeCommandError,
    EngineError,
    ReadinessTimeoutError,
    SubprocessFailureError,
)
from e2e_common.models import (
    ANDROID_SERVICE,
    APPIUM_SERVICE,
    TEST_RUNNER_SERVICE,
    Job,
    JobPayload,
    ServiceHealth,
)
from e2e_common.repository import JobRepository, ResultSink
from e2e_common.timing import Clock, poll_until

from .compose import EXIT, STDERR
from .config import DRIVER_PORT, WorkerTimeouts
from .lifecycle import LifecycleManager
from .orchestrator import BaseOrchestrator
from .output_parser import ParseOutcome, parse_test_output, progress_for_line

logger = logging.getLogger(__name__)

REQUIRED_SERVICES = (ANDROID_SERVICE, APPIUM_SERVICE)
TEST_COMMAND = ["npx", "wdio", "run", "wdio.conf.js"]
APPIUM_STATUS_URL = f"http://localhost:{DRIVER_PORT}/wd/hub/status"

# Output phrases of a crashed UiAutomator2 server or instrumentation
UIAUTOMATOR2_ERROR_PATTERNS = (
    "Could not proxy command to the remote server",
    "UiAutomator2 server is not running",
    "instrumentation process is not running",
    "Application under test with package",
    "crashed",
)
UIAUTOMATOR2_SERVER_PACKAGE = "io.appium.uiautomator2.server"


class JobHandle:
    """
    The worker's view of one claimed job.

    Only progress, log lines and the discard flag are reachable from here;
    the terminal state is set by the worker through the repository.
    """

    def __init__(self, repository: JobRepository, job: Job):
        self.repository = repository
        self.id = job.id
        self.data: JobPayload = job.data

    async def update_progress(self, progress: int) -> None:
        await self.repository.update_progress(self.id, progress)

    async def log(self, line: str) -> None:
        await self.repository.add_log(self.id, line)

    async def get_state(self) -> str | None:
        return await self.repository.get_state(self.id)

    async def is_discarded(self) -> bool:
        job = await self.repository.get_job(self.id)
        return job is None or job.discarded


class TestWorker:
    """
    Single-concurrency job consumer.

    One asyncio task claims and processes jobs strictly one at a time; the
    device/driver pair cannot host two automation sessions at once.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        repository: JobRepository,
        lifecycle: LifecycleManager,
        results: ResultSink,
        orchestrator: BaseOrchestrator | None = None,
        timeouts: WorkerTimeouts | None = None,
        poll_interval: float = 2.0,
    ):
        """
        Initialize the worker.

        Args:
            repository: Job queue the worker consumes
            lifecycle: Lifecycle manager for the compose services
            results: Sink receiving parsed test results
            orchestrator: Emulator orchestrator for package pre-install (optional)
            timeouts: Health-wait timing
            poll_interval: Seconds to wait when the queue is empty
        """
        self.repository = repository
        self.lifecycle = lifecycle
        self.results = results
        self.orchestrator = orchestrator
        self.timeouts = timeouts or WorkerTimeouts()
        self.poll_interval = poll_interval

        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def clock(self) -> Clock:
        return self.lifecycle.clock

    async def start(self) -> None:
        """Recover jobs orphaned by a previous process, then start consuming."""
        if self._running:
            logger.warning("Worker already running")
            return

        recovered = await self.repository.recover_active_jobs()
        if recovered:
            logger.warning(f"Marked {recovered} job(s) left active by a previous run as failed")

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Test worker started")

    async def stop(self) -> None:
        """Stop consuming. A job in progress is abandoned and recovered on next start."""
        if not self._running:
            return

        logger.info("Stopping test worker...")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Test worker stopped")

    async def _run_loop(self) -> None:
        """Main consume loop."""
        while self._running:
            try:
                processed = await self.process_next()
                if not processed:
                    await self.clock.sleep(self.poll_interval)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in worker loop: {e}", exc_info=True)
                await self.clock.sleep(self.poll_interval)

    async def process_next(self) -> bool:
        """
        Claim and process the oldest waiting job.

        Returns:
            True if a job was processed, False if the queue was empty
        """
        job = await self.repository.claim_next_job()
        if job is None:
            return False

        await self.process_job(JobHandle(self.repository, job))
        return True

    async def process_job(self, handle: JobHandle) -> None:
        """
        Run one job to a terminal state.

        Engine errors fail the job with their message as the reason; anything
        else is logged with a traceback and fails the job as unexpected.
        """
        logger.info(f"Processing job {handle.id} for application {handle.data.application_id}")

        try:
            output, exit_code = await self._run_phases(handle)
        except EngineError as e:
            logger.error(f"Job {handle.id} failed: {e}")
            await self._fail(handle, str(e))
            return
        except Exception as e:
            logger.error(f"Job {handle.id} failed unexpectedly: {e}", exc_info=True)
            await self._fail(handle, f"Unexpected error: {e}")
            return

        outcome = self._parse_output(handle, output)
        return_value: dict[str, Any] = {
            "success": True,
            "message": "Tests completed successfully",
            "exit_code": exit_code,
        }
        if outcome is not None:
            return_value["results_detected"] = len(outcome.results)
            return_value["parse_strategy"] = outcome.strategy.value

        await self.repository.complete_job(handle.id, return_value)
        logger.info(f"Job {handle.id} completed")

        if outcome is None:
            return
        if await handle.is_discarded():
            await handle.log("Job was discarded, skipping result recording")
            return
        await self._record_results(handle, outcome)

    async def _fail(self, handle: JobHandle, reason: str) -> None:
        try:
            await handle.log(f"Error: {reason}")
        except Exception as e:
            logger.error(f"Could not write failure to job log {handle.id}: {e}")
        await self.repository.fail_job(handle.id, reason)

    async def _run_phases(self, handle: JobHandle) -> tuple[str, int]:
        payload = handle.data
        if not payload.apk_file_name:
            raise EngineError("APK file name is missing. Cannot run tests.")

        await handle.log(
            f"Starting test run for application {payload.application_id} "
            f"with package file {payload.apk_file_name}"
        )

        # CheckingContainers
        await handle.update_progress(5)
        await handle.log("Checking container status...")
        started = await self.lifecycle.start_missing(REQUIRED_SERVICES)
        for name in started:
            await handle.log(f"Started service {name}")
        if not started:
            await handle.log("Required services already running")
        await handle.update_progress(25)

        # WaitingHealthy
        await handle.log("Waiting for containers to become healthy...")
        await self._wait_for_healthy(handle)
        await handle.log("All containers are healthy")
        await handle.update_progress(40)

        await self._ensure_installed(handle)
        await self._pre_test_diagnostics(handle)

        # Executing
        return await self._execute(handle)

    async def _wait_for_healthy(self, handle: JobHandle) -> None:
        """
        Wait until the device and driver both report healthy.

        When either one turns unhealthy, its recent logs are copied into the
        job log once per transition; the wait itself continues.

        Raises:
            ReadinessTimeoutError: If they are not healthy in time
        """
        last_health: dict[str, ServiceHealth] = {}

        async def check() -> bool:
            statuses = await self.lifecycle.get_status(REQUIRED_SERVICES)
            for name in REQUIRED_SERVICES:
                status = statuses.get(name)
                health = status.health if status else ServiceHealth.UNKNOWN
                if (
                    health is ServiceHealth.UNHEALTHY
                    and last_health.get(name) is not ServiceHealth.UNHEALTHY
                ):
                    await self._log_service_tail(handle, name)
                last_health[name] = health
            return all(
                last_health.get(name) is ServiceHealth.HEALTHY
                for name in REQUIRED_SERVICES
            )

        try:
            await poll_until(
                check,
                interval=self.timeouts.health_poll,
                timeout=self.timeouts.health_timeout,
                clock=self.clock,
                description="Containers failed to become healthy",
                pending=lambda: [
                    name
                    for name in REQUIRED_SERVICES
                    if last_health.get(name) is not ServiceHealth.HEALTHY
                ],
            )
        except ReadinessTimeoutError:
            statuses = await self.lifecycle.get_status(REQUIRED_SERVICES)
            await handle.log("Final container status:")
            for name in REQUIRED_SERVICES:
                status = statuses.get(name)
                if status is None:
                    await handle.log(f"  {name}: status unavailable")
                else:
                    await handle.log(
                        f"  {name}: state={status.state.value} "
                        f"health={status.health.value} ({status.status_text})"
                    )
            raise

    async def _log_service_tail(self, handle: JobHandle, name: str) -> None:
        await handle.log(f"Service {name} reported unhealthy, recent logs:")
        logs = await self.lifecycle.get_service_logs(
            name, tail=self.timeouts.unhealthy_log_tail
        )
        for line in logs.splitlines():
            await handle.log(f"  {line}")

    async def _ensure_installed(self, handle: JobHandle) -> None:
        """Install the package on the application's emulator if it is missing."""
        payload = handle.data
        if self.orchestrator is None or not payload.app_package_name:
            return

        try:
            installed = await self.orchestrator.is_app_installed(
                payload.application_id, payload.app_package_name
            )
            if installed:
                await handle.log(f"Package {payload.app_package_name} already installed")
                return

            await handle.log(f"Installing package {payload.app_package_name}...")
            result = await self.orchestrator.install_app(
                payload.application_id, payload.app_package_name
            )
            await handle.log(result.message)
        except Exception as e:
            logger.warning(f"Package pre-install for job {handle.id} failed: {e}")
            await handle.log(f"Package pre-install warning: {e}")

    async def _pre_test_diagnostics(self, handle: JobHandle) -> None:
        await handle.log("Running pre-test diagnostics...")
        try:
            devices = await self.lifecycle.exec_in_service(
                ANDROID_SERVICE, ["adb", "devices"]
            )
            await handle.log(f"ADB devices: {devices.strip()}")
            boot = await self.lifecycle.exec_in_service(
                ANDROID_SERVICE, ["adb", "shell", "getprop", "sys.boot_completed"]
            )
            await handle.log(f"Boot completed: {boot.strip()}")

            await handle.log("Checking Appium server status...")
            try:
                appium = await self.lifecycle.exec_in_service(
                    APPIUM_SERVICE, ["curl", "-s", APPIUM_STATUS_URL]
                )
            except ComposeCommandError:
                appium = "Appium not responding"
            await handle.log(f"Appium status: {appium.strip()}")

            storage = await self.lifecycle.exec_in_service(
                ANDROID_SERVICE, ["df", "-h", "/sdcard"]
            )
            await handle.log(f"Storage info: {storage.strip()}")
        except Exception as e:
            await handle.log(f"Pre-test diagnostics warning: {e}")

    async def _failure_diagnostics(self, handle: JobHandle, output: str, stderr: str) -> None:
        """
        Copy device-side context of a failed run into the job log.

        Known UiAutomator2 crash phrases are reported and the UiAutomator2
        server is force-stopped so the next session starts a fresh one. Recent
        logcat entries are appended either way. Nothing here retries the run
        or changes the failure reason.
        """
        try:
            await handle.log("Analyzing UiAutomator2 error...")
            detected = [
                pattern
                for pattern in UIAUTOMATOR2_ERROR_PATTERNS
                if pattern in output or pattern in stderr
            ]
            if detected:
                await handle.log(f"Detected UiAutomator2 issues: {', '.join(detected)}")
                await handle.log("Stopping UiAutomator2 server...")
                await self.lifecycle.exec_in_service(
                    ANDROID_SERVICE,
                    ["adb", "shell", "am", "force-stop", UIAUTOMATOR2_SERVER_PACKAGE],
                )

            logcat = await self.lifecycle.exec_in_service(
                ANDROID_SERVICE,
                ["adb", "logcat", "-d", "-t", str(self.timeouts.logcat_lines)],
            )
            await handle.log(
                f"Recent logcat entries: {logcat.strip()[: self.timeouts.logcat_log_chars]}"
            )
        except Exception as e:
            logger.warning(f"Failure diagnostics for job {handle.id} failed: {e}")
            try:
                await handle.log(f"Failure diagnostics warning: {e}")
            except Exception as log_error:
                logger.warning(f"Could not write to job log {handle.id}: {log_error}")

    def build_test_command(self, payload: JobPayload) -> tuple[list[str], dict[str, str]]:
        """
        Build the test-run command and its per-job environment.

        Returns:
            (command, env) for ComposeRuntime.stream_run()
        """
        command = list(TEST_COMMAND)
        if payload.test_file:
            command.extend(["--spec", payload.test_file])
        env = {
            "APK_FILE_NAME": payload.apk_file_name or "",
            "APP_PACKAGE_NAME": payload.app_package_name or "",
            "APPLICATION_ID": payload.application_id,
        }
        return command, env

    async def _execute(self, handle: JobHandle) -> tuple[str, int]:
        """
        Run the suite in the test-runner service, streaming output to the job log.

        Returns:
            (combined output, exit code)

        Raises:
            SubprocessFailureError: If the run exits non-zero or cannot start
        """
        command, env = self.build_test_command(handle.data)
        env_args = " ".join(f"-e {key}={value}" for key, value in env.items())
        await handle.log(
            f"Executing test command: run --rm {env_args} "
            f"{TEST_RUNNER_SERVICE} {' '.join(command)}"
        )

        progress = 40
        output_lines: list[str] = []
        stderr_lines: list[str] = []
        exit_code: int | None = None

        async for event in self.lifecycle.runtime.stream_run(
            TEST_RUNNER_SERVICE, command, env
        ):
            if event.kind == EXIT:
                exit_code = event.returncode
                continue

            output_lines.append(event.line)
            if event.kind == STDERR:
                stderr_lines.append(event.line)
            await handle.log(event.line)

            new_progress = progress_for_line(event.line, progress)
            if new_progress > progress:
                progress = new_progress
                await handle.update_progress(progress)

        await handle.log(f"Test process exited with code {exit_code}")
        if exit_code == 1:
            await self._failure_diagnostics(
                handle, "\n".join(output_lines), "\n".join(stderr_lines)
            )
        if exit_code != 0:
            raise SubprocessFailureError(exit_code, "\n".join(stderr_lines))

        return "\n".join(output_lines), exit_code

    def _parse_output(self, handle: JobHandle, output: str) -> ParseOutcome | None:
        try:
            return parse_test_output(
                output,
                handle.data.application_id,
                handle.id,
                handle.data.test_file,
            )
        except Exception as e:
            logger.error(f"Could not parse output of job {handle.id}: {e}", exc_info=True)
            return None

    async def _record_results(self, handle: JobHandle, outcome: ParseOutcome) -> None:
        """Persist each result on its own; one failure does not stop the rest."""
        recorded = 0
        for result in outcome.results:
            try:
                await self.results.create(result)
                recorded += 1
            except Exception as e:
                logger.error(
                    f"Failed to record result {result.test_name!r} of job {handle.id}: {e}"
                )

        try:
            await handle.log(
                f"Recorded {recorded} of {len(outcome.results)} test result(s) "
                f"({outcome.strategy.value} parse)"
            )
        except Exception as e:
            logger.warning(f"Could not write result summary to job log {handle.id}: {e}")
