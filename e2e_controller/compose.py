"""
Compose CLI runtime for the managed services.

This module wraps the `docker compose` batch interface used by the lifecycle
manager and the worker: listing, starting, stopping and restarting services,
reading their logs, and running one-off commands with streamed output.
"""

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from e2e_common.errors import ComposeCommandError, SubprocessFailureError

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"
EXIT = "exit"

READ_CHUNK_BYTES = 64 * 1024
MAX_LINE_BYTES = 64 * 1024
TRUNCATED_SUFFIX = " [truncated]"


@dataclass(frozen=True)
class ProcessEvent:
    """
    One event from a streamed subprocess.

    Output events carry one line (without its trailing newline); the final
    event has kind EXIT and carries the return code.
    """

    kind: str  # STDOUT, STDERR or EXIT
    line: str = ""
    returncode: int | None = None


class ComposeRuntime:
    """
    Runs compose CLI commands as asyncio subprocesses.

    Every method except stream_run() raises ComposeCommandError when the
    command cannot be spawned or exits non-zero.
    """

    def __init__(
        self, command: list[str] | None = None, project_dir: str | None = None
    ):
        """
        Initialize the runtime.

        Args:
            command: Compose invocation, e.g. ["docker", "compose"]
            project_dir: Working directory of the compose project (None = cwd)
        """
        self.command = list(command or ["docker", "compose"])
        self.project_dir = project_dir

    async def _run(self, *args: str) -> str:
        """
        Run one compose command to completion.

        Returns:
            Decoded stdout

        Raises:
            ComposeCommandError: If the command fails
        """
        argv = [*self.command, *args]
        logger.debug(f"Running: {' '.join(argv)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.project_dir,
            )
        except OSError as e:
            raise ComposeCommandError(argv, None, str(e)) from e

        stdout, stderr = await process.communicate()

        if process.returncode != 0:
            raise ComposeCommandError(
                argv, process.returncode, stderr.decode(errors="replace")
            )

        return stdout.decode(errors="replace")

    async def ps_json(self) -> str:
        """List all services (including stopped ones) as JSON."""
        return await self._run("ps", "--all", "--format", "json")

    async def running_services(self) -> list[str]:
        """
        List the names of services that are currently running.

        Returns:
            Service names, one per running service
        """
        output = await self._run("ps", "--services", "--filter", "status=running")
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def up(self, service: str) -> None:
        """Start one service in the background."""
        await self._run("up", "-d", service)

    async def stop(self, services: list[str]) -> None:
        await self._run("stop", *services)

    async def restart(self, services: list[str]) -> None:
        """Restart several services with one batched command."""
        await self._run("restart", *services)

    async def logs(self, service: str, tail: int = 20) -> str:
        """Return the last `tail` log lines of a service."""
        return await self._run("logs", f"--tail={tail}", service)

    async def exec(self, service: str, command: list[str]) -> str:
        """Run a command inside a running service container (no TTY)."""
        return await self._run("exec", "-T", service, *command)

    async def stream_run(
        self, service: str, command: list[str], env: dict[str, str] | None = None
    ) -> AsyncGenerator[ProcessEvent, None]:
        """
        Run a one-off command in a fresh service container, streaming its output.

        Stdout and stderr are read concurrently, so lines are yielded in the
        order they arrive. Lines longer than MAX_LINE_BYTES are cut and
        marked with TRUNCATED_SUFFIX. The last event is always the EXIT event.

        Args:
            service: Compose service to run the command in
            command: Command and arguments
            env: Per-run environment values, passed with -e K=V

        Yields:
            ProcessEvent for every output line, then one EXIT event

        Raises:
            SubprocessFailureError: If the process cannot be started
        """
        argv = [*self.command, "run", "--rm"]
        for key, value in (env or {}).items():
            argv.extend(["-e", f"{key}={value}"])
        argv.extend([service, *command])
        logger.info(f"Running: {' '.join(argv)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.project_dir,
            )
        except OSError as e:
            raise SubprocessFailureError(None, str(e)) from e

        assert process.stdout is not None
        assert process.stderr is not None

        queue: asyncio.Queue[ProcessEvent | None] = asyncio.Queue()

        async def emit(kind: str, raw: bytes) -> None:
            line = raw[:MAX_LINE_BYTES].decode(errors="replace").rstrip("\r")
            if len(raw) > MAX_LINE_BYTES:
                logger.warning(f"Truncated {kind} line longer than {MAX_LINE_BYTES} bytes")
                line += TRUNCATED_SUFFIX
            await queue.put(ProcessEvent(kind, line))

        async def pump(stream: asyncio.StreamReader, kind: str) -> None:
            buffered = bytearray()
            skipping = False  # dropping the rest of an over-long line
            try:
                while True:
                    chunk = await stream.read(READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    buffered.extend(chunk)
                    newline = buffered.find(b"\n")
                    while newline >= 0:
                        raw = bytes(buffered[:newline])
                        del buffered[: newline + 1]
                        if skipping:
                            skipping = False
                        else:
                            await emit(kind, raw)
                        newline = buffered.find(b"\n")
                    if skipping:
                        buffered.clear()
                    elif len(buffered) > MAX_LINE_BYTES:
                        await emit(kind, bytes(buffered))
                        buffered.clear()
                        skipping = True
                if buffered and not skipping:
                    await emit(kind, bytes(buffered))
            finally:
                await queue.put(None)

        readers = [
            asyncio.create_task(pump(process.stdout, STDOUT)),
            asyncio.create_task(pump(process.stderr, STDERR)),
        ]

        try:
            open_streams = len(readers)
            while open_streams:
                event = await queue.get()
                if event is None:
                    open_streams -= 1
                    continue
                yield event

            returncode = await process.wait()
            yield ProcessEvent(EXIT, returncode=returncode)
        finally:
            # Consumer stopped early
            for reader in readers:
                reader.cancel()
            if process.returncode is None:
                process.terminate()
                await process.wait()
