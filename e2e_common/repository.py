"""
Abstract interfaces for the job queue, the result sink and the application
resource provider.

This module defines the contracts that any storage implementation must follow,
allowing easy swapping between SQLite, a Redis-backed queue, a document store,
etc.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import Application, Job, JobPayload, TestResult

# Outcomes of JobRepository.cancel_job()
CANCEL_REMOVED = "removed"
CANCEL_DISCARDED = "discarded"
CANCEL_NOT_FOUND = "not_found"
CANCEL_NOT_CANCELLABLE = "not_cancellable"


class JobRepository(ABC):
    """
    Abstract base class for the test job queue.

    Implementations must hand out waiting jobs in enqueue order and must never
    hand out the same job twice.
    """

    @abstractmethod
    async def enqueue(self, kind: str, payload: JobPayload) -> Job:
        """
        Add a job to the end of the queue.

        Args:
            kind: Job kind (e.g. "run-test")
            payload: Test run input

        Returns:
            The created job, in the "waiting" state
        """
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """
        Retrieve a job with its log lines.

        Args:
            job_id: ID of the job to retrieve

        Returns:
            Job object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_jobs(
        self, application_id: str | None = None, limit: int = 50
    ) -> list[Job]:
        """
        List jobs, newest first, without log lines.

        Args:
            application_id: Only return jobs for this application
            limit: Maximum number of jobs to return
        """
        pass

    @abstractmethod
    async def claim_next_job(self) -> Job | None:
        """
        Move the oldest waiting job to "active" and return it.

        Returns:
            The claimed job, or None if nothing is waiting
        """
        pass

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int) -> None:
        """Set the job's progress percentage (0-100)."""
        pass

    @abstractmethod
    async def add_log(self, job_id: str, line: str) -> None:
        """Append one line to the job's log."""
        pass

    @abstractmethod
    async def get_logs(self, job_id: str, from_index: int = 0) -> list[str]:
        """
        Get log lines for a job, optionally from a specific index.

        Args:
            job_id: ID of the job
            from_index: Starting index (0-based)
        """
        pass

    @abstractmethod
    async def get_state(self, job_id: str) -> str | None:
        """Return the job's current state, or None if it does not exist."""
        pass

    @abstractmethod
    async def complete_job(self, job_id: str, return_value: dict[str, Any]) -> None:
        """Mark a job as completed with its return value."""
        pass

    @abstractmethod
    async def fail_job(self, job_id: str, reason: str) -> None:
        """Mark a job as failed with a one-sentence reason."""
        pass

    @abstractmethod
    async def cancel_job(self, job_id: str) -> str:
        """
        Cancel a job.

        A waiting job is removed from the queue. An active job is only flagged
        as discarded; whatever it is running keeps running.

        Returns:
            One of CANCEL_REMOVED, CANCEL_DISCARDED, CANCEL_NOT_FOUND,
            CANCEL_NOT_CANCELLABLE
        """
        pass

    @abstractmethod
    async def recover_active_jobs(self) -> int:
        """
        Fail jobs left "active" by a previous worker process.

        Returns:
            Number of recovered jobs
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the storage (create tables, etc.).

        Called once at startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close connections and cleanup resources.

        Called at shutdown.
        """
        pass


class ResultSink(ABC):
    """Destination for per-test outcome records."""

    @abstractmethod
    async def create(self, result: TestResult) -> None:
        """Persist one test result."""
        pass


class ApplicationProvider(ABC):
    """Lookup of applications under test and their uploaded packages."""

    @abstractmethod
    async def get(self, application_id: str) -> Application | None:
        """
        Retrieve an application by its ID.

        Returns:
            Application if found, None otherwise
        """
        pass
