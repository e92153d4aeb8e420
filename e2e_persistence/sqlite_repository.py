"""
SQLite implementation of the job queue, result sink and application provider.

Uses aiosqlite for async operations. A single database file backs all three
contracts so that a worker process and the admin CLI can share it.
"""

import json
import uuid
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from e2e_common.models import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_WAITING,
    Application,
    Job,
    JobPayload,
    TestError,
    TestResult,
)
from e2e_common.repository import (
    CANCEL_DISCARDED,
    CANCEL_NOT_CANCELLABLE,
    CANCEL_NOT_FOUND,
    CANCEL_REMOVED,
    ApplicationProvider,
    JobRepository,
    ResultSink,
)

_JOB_COLUMNS = (
    "id, kind, data, state, progress, failed_reason, return_value, discarded, "
    "created_at, processed_at, finished_at"
)


class SQLiteJobRepository(JobRepository, ResultSink, ApplicationProvider):
    """
    SQLite-based storage implementation.

    Uses a single database file with multiple tables:
    - applications: Applications under test and their uploaded packages
    - jobs: Queue entries; the autoincrement seq column gives FIFO order
    - job_logs: Sequential log lines for each job
    - test_results: Per-test outcome records
    """

    def __init__(self, db_path: str = "e2e_jobs.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
            # Enable foreign key constraints
            await self._connection.execute("PRAGMA foreign_keys = ON")
        return self._connection

    async def initialize(self) -> None:
        """Create database tables if they don't exist."""
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS applications (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                package_path TEXT NOT NULL,
                package_identifier TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                kind TEXT NOT NULL,
                data TEXT NOT NULL,
                application_id TEXT,
                state TEXT NOT NULL,
                progress INTEGER NOT NULL DEFAULT 0,
                failed_reason TEXT,
                return_value TEXT,
                discarded INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                processed_at TEXT,
                finished_at TEXT
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_state
            ON jobs(state, seq)
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_application_id
            ON jobs(application_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                line TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (job_id) REFERENCES jobs(id) ON DELETE CASCADE
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_job_logs_job_id
            ON job_logs(job_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS test_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                application TEXT NOT NULL,
                job_id TEXT NOT NULL,
                test_name TEXT NOT NULL,
                test_file TEXT NOT NULL,
                status TEXT NOT NULL,
                duration INTEGER NOT NULL,
                retries INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                error_stack TEXT,
                executed_at TEXT NOT NULL,
                screenshots TEXT NOT NULL DEFAULT '[]'
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_test_results_job_id
            ON test_results(job_id)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    # Job queue

    async def enqueue(self, kind: str, payload: JobPayload) -> Job:
        """
        Add a job to the end of the queue.

        Args:
            kind: Job kind (e.g. "run-test")
            payload: Test run input

        Returns:
            The created job
        """
        conn = await self._get_connection()

        job = Job(
            id=str(uuid.uuid4()),
            kind=kind,
            data=payload,
            state=JOB_WAITING,
            created_at=datetime.now(UTC),
        )

        await conn.execute(
            """
            INSERT INTO jobs (id, kind, data, application_id, state, progress, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.kind,
                json.dumps(payload.to_dict()),
                payload.application_id,
                job.state,
                job.progress,
                job.created_at.isoformat(),
            ),
        )
        await conn.commit()
        return job

    async def get_job(self, job_id: str) -> Job | None:
        """
        Retrieve a job with all its log lines.

        Args:
            job_id: ID of the job to retrieve

        Returns:
            Job object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        job = self._row_to_job(row)
        job.logs = await self.get_logs(job_id)
        return job

    async def list_jobs(
        self, application_id: str | None = None, limit: int = 50
    ) -> list[Job]:
        """
        List jobs, newest first (without log lines for efficiency).

        Args:
            application_id: Only return jobs for this application
            limit: Maximum number of jobs to return
        """
        conn = await self._get_connection()

        if application_id is None:
            cursor = await conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY seq DESC LIMIT ?",
                (limit,),
            )
        else:
            cursor = await conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE application_id = ?
                ORDER BY seq DESC LIMIT ?
                """,
                (application_id, limit),
            )

        rows = await cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    async def claim_next_job(self) -> Job | None:
        """
        Move the oldest waiting job to "active" and return it.

        Returns:
            The claimed job, or None if the queue is empty
        """
        conn = await self._get_connection()

        while True:
            cursor = await conn.execute(
                "SELECT id FROM jobs WHERE state = ? ORDER BY seq LIMIT 1",
                (JOB_WAITING,),
            )
            row = await cursor.fetchone()
            if row is None:
                return None

            job_id = row[0]
            cursor = await conn.execute(
                "UPDATE jobs SET state = ?, processed_at = ? WHERE id = ? AND state = ?",
                (JOB_ACTIVE, datetime.now(UTC).isoformat(), job_id, JOB_WAITING),
            )
            await conn.commit()

            # Another process may have claimed or removed it in between
            if cursor.rowcount == 1:
                return await self.get_job(job_id)

    async def update_progress(self, job_id: str, progress: int) -> None:
        """Set the job's progress percentage, clamped to 0-100."""
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE jobs SET progress = ? WHERE id = ?",
            (max(0, min(100, int(progress))), job_id),
        )
        await conn.commit()

    async def add_log(self, job_id: str, line: str) -> None:
        """Append one line to the job's log."""
        conn = await self._get_connection()

        await conn.execute(
            "INSERT INTO job_logs (job_id, line, timestamp) VALUES (?, ?, ?)",
            (job_id, line, datetime.now(UTC).isoformat()),
        )
        await conn.commit()

    async def get_logs(self, job_id: str, from_index: int = 0) -> list[str]:
        """
        Get log lines for a job, optionally from a specific index.

        Args:
            job_id: ID of the job
            from_index: Starting index (0-based) for log retrieval

        Returns:
            List of log lines from the specified index onward
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT line
            FROM job_logs
            WHERE job_id = ?
            ORDER BY id
            LIMIT -1 OFFSET ?
            """,
            (job_id, from_index),
        )

        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def get_state(self, job_id: str) -> str | None:
        conn = await self._get_connection()

        cursor = await conn.execute("SELECT state FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        return row[0] if row else None

    async def complete_job(self, job_id: str, return_value: dict[str, Any]) -> None:
        """
        Mark a job as completed with its return value.

        Args:
            job_id: ID of the job to complete
            return_value: JSON-serializable result summary
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            UPDATE jobs SET state = ?, progress = 100, return_value = ?, finished_at = ?
            WHERE id = ?
            """,
            (
                JOB_COMPLETED,
                json.dumps(return_value),
                datetime.now(UTC).isoformat(),
                job_id,
            ),
        )
        await conn.commit()

    async def fail_job(self, job_id: str, reason: str) -> None:
        """
        Mark a job as failed.

        Args:
            job_id: ID of the job
            reason: One-sentence failure reason
        """
        conn = await self._get_connection()

        await conn.execute(
            "UPDATE jobs SET state = ?, failed_reason = ?, finished_at = ? WHERE id = ?",
            (JOB_FAILED, reason, datetime.now(UTC).isoformat(), job_id),
        )
        await conn.commit()

    async def cancel_job(self, job_id: str) -> str:
        """
        Remove a waiting job, or flag an active job as discarded.

        Args:
            job_id: ID of the job

        Returns:
            Cancellation outcome
        """
        conn = await self._get_connection()

        state = await self.get_state(job_id)
        if state is None:
            return CANCEL_NOT_FOUND

        if state == JOB_WAITING:
            cursor = await conn.execute(
                "DELETE FROM jobs WHERE id = ? AND state = ?", (job_id, JOB_WAITING)
            )
            await conn.commit()
            if cursor.rowcount == 1:
                return CANCEL_REMOVED
            # Claimed between the read and the delete
            state = await self.get_state(job_id)

        if state == JOB_ACTIVE:
            await conn.execute(
                "UPDATE jobs SET discarded = 1 WHERE id = ?", (job_id,)
            )
            await conn.commit()
            return CANCEL_DISCARDED

        return CANCEL_NOT_CANCELLABLE

    async def recover_active_jobs(self) -> int:
        """
        Fail jobs left "active" after a crash.

        Returns:
            Number of recovered jobs
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "UPDATE jobs SET state = ?, failed_reason = ?, finished_at = ? WHERE state = ?",
            (
                JOB_FAILED,
                "Recovered after restart (was active).",
                datetime.now(UTC).isoformat(),
                JOB_ACTIVE,
            ),
        )
        await conn.commit()
        return cursor.rowcount

    def _row_to_job(self, row: Any) -> Job:
        (
            job_id,
            kind,
            data,
            state,
            progress,
            failed_reason,
            return_value,
            discarded,
            created_at_str,
            processed_at_str,
            finished_at_str,
        ) = row
        return Job(
            id=job_id,
            kind=kind,
            data=JobPayload.from_dict(json.loads(data)),
            state=state,
            progress=progress,
            failed_reason=failed_reason,
            return_value=json.loads(return_value) if return_value else None,
            discarded=bool(discarded),
            created_at=_parse_datetime(created_at_str),
            processed_at=_parse_datetime(processed_at_str),
            finished_at=_parse_datetime(finished_at_str),
            logs=[],
        )

    # Result sink

    async def create(self, result: TestResult) -> None:
        """
        Persist one test result.

        Args:
            result: Immutable test outcome record
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO test_results (
                application, job_id, test_name, test_file, status, duration,
                retries, error_message, error_stack, executed_at, screenshots
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.application,
                result.job_id,
                result.test_name,
                result.test_file,
                result.status,
                result.duration,
                result.retries,
                result.error.message if result.error else None,
                result.error.stack if result.error else None,
                result.executed_at.isoformat(),
                json.dumps(list(result.screenshots)),
            ),
        )
        await conn.commit()

    async def list_results(
        self, application_id: str | None = None, job_id: str | None = None
    ) -> list[TestResult]:
        """
        List test results in insertion order.

        Args:
            application_id: Only return results for this application
            job_id: Only return results for this job
        """
        conn = await self._get_connection()

        clauses = []
        params: list[Any] = []
        if application_id is not None:
            clauses.append("application = ?")
            params.append(application_id)
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await conn.execute(
            f"""
            SELECT application, job_id, test_name, test_file, status, duration,
                   retries, error_message, error_stack, executed_at, screenshots
            FROM test_results
            {where}
            ORDER BY id
            """,
            params,
        )

        rows = await cursor.fetchall()

        results = []
        for row in rows:
            (
                application,
                result_job_id,
                test_name,
                test_file,
                status,
                duration,
                retries,
                error_message,
                error_stack,
                executed_at_str,
                screenshots,
            ) = row
            results.append(
                TestResult(
                    application=application,
                    job_id=result_job_id,
                    test_name=test_name,
                    test_file=test_file,
                    status=status,
                    duration=duration,
                    retries=retries,
                    error=TestError(error_message, error_stack)
                    if error_message is not None
                    else None,
                    executed_at=datetime.fromisoformat(executed_at_str),
                    screenshots=tuple(json.loads(screenshots)),
                )
            )

        return results

    # Application provider

    async def register_application(self, application: Application) -> None:
        """
        Create or replace an application record.

        Args:
            application: Application to persist
        """
        conn = await self._get_connection()

        created_at = application.created_at or datetime.now(UTC)
        await conn.execute(
            """
            INSERT OR REPLACE INTO applications (id, name, package_path, package_identifier, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                application.id,
                application.name,
                application.package_path,
                application.package_identifier,
                created_at.isoformat(),
            ),
        )
        await conn.commit()

    async def get(self, application_id: str) -> Application | None:
        """
        Retrieve an application by its ID.

        Args:
            application_id: ID of the application

        Returns:
            Application if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, name, package_path, package_identifier, created_at
            FROM applications WHERE id = ?
            """,
            (application_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_application(row)

    async def list_applications(self) -> list[Application]:
        """List all registered applications."""
        conn = await self._get_connection()

        cursor = await conn.execute(
            """
            SELECT id, name, package_path, package_identifier, created_at
            FROM applications ORDER BY created_at
            """
        )
        rows = await cursor.fetchall()
        return [self._row_to_application(row) for row in rows]

    def _row_to_application(self, row: Any) -> Application:
        app_id, name, package_path, package_identifier, created_at_str = row
        return Application(
            id=app_id,
            name=name,
            package_path=package_path,
            package_identifier=package_identifier,
            created_at=_parse_datetime(created_at_str),
        )


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
