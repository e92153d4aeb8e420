"""
Exceptions raised by the lifecycle manager, orchestrators and worker.

Each exception carries the context needed to build a one-sentence failure
reason for a job, plus the details that go to the job log.
"""


class EngineError(Exception):
    """Base exception for container and test-execution errors."""


class ComposeCommandError(EngineError):
    """Raised when a compose CLI invocation exits non-zero or cannot be spawned."""

    def __init__(self, command: list[str], returncode: int | None, stderr: str) -> None:
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or "no error output"
        super().__init__(
            f"Command failed ({' '.join(command)}) with exit code {returncode}: {detail}"
        )


class ContainerNotFoundError(EngineError):
    """Raised internally when no emulator container matches an application."""

    def __init__(self, application_id: str) -> None:
        self.application_id = application_id
        super().__init__(f"Emulator container not found for application {application_id}")


class ReadinessTimeoutError(EngineError):
    """Raised when a health, running-state or port wait exceeds its budget."""

    def __init__(self, description: str, timeout: float, pending: list[str] | None = None) -> None:
        self.description = description
        self.timeout = timeout
        self.pending = list(pending or [])
        message = f"{description} within {timeout:g}s"
        if self.pending:
            message += f": {', '.join(self.pending)}"
        super().__init__(message)


class ViewerPortUnavailableError(ReadinessTimeoutError):
    """Raised when the emulator's remote-display port never gets a host binding."""

    def __init__(self, container_id: str, timeout: float) -> None:
        self.container_id = container_id
        super().__init__("Viewer port unavailable: no host port was assigned", timeout)


class SubprocessFailureError(EngineError):
    """Raised when the test-run command exits non-zero or cannot be started."""

    def __init__(self, returncode: int | None, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        if returncode is None:
            message = "Failed to start test process"
        else:
            message = f"Test execution failed with exit code {returncode}"
        last_line = _last_line(stderr)
        if last_line:
            message += f": {last_line}"
        super().__init__(message)


class InstallVerificationError(EngineError):
    """Raised when the install command ran but its output lacks the success marker."""

    def __init__(self, package_path: str, output: str) -> None:
        self.package_path = package_path
        self.output = output
        super().__init__(f"Installation of {package_path} was not confirmed by the device")


def _last_line(text: str, limit: int = 200) -> str:
    """Return the last non-empty line of text, truncated to limit characters."""
    for line in reversed(text.splitlines()):
        line = line.strip()
        if line:
            return line if len(line) <= limit else line[: limit - 3] + "..."
    return ""
