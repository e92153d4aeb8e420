"""
Admin CLI for the mobile E2E test engine.

Provides commands for registering applications, enqueueing and inspecting
test jobs, and managing the compose services and emulator containers.
"""

import asyncio
import json
import os
import sys
import uuid
from datetime import UTC, datetime

import click

from e2e_common.errors import EngineError
from e2e_common.models import MANAGED_SERVICES, Application, JobPayload
from e2e_common.repository import (
    CANCEL_DISCARDED,
    CANCEL_NOT_FOUND,
    CANCEL_REMOVED,
)
from e2e_controller.compose import ComposeRuntime
from e2e_controller.config import EngineSettings
from e2e_controller.lifecycle import LifecycleManager
from e2e_controller.orchestrator import BaseOrchestrator, create_orchestrator
from e2e_persistence.sqlite_repository import SQLiteJobRepository

JOB_KIND = "run-test"


def get_db_path() -> str:
    """Get the database path from environment variable or default."""
    return os.environ.get("E2E_DB_PATH", "e2e_jobs.db")


def get_repository() -> SQLiteJobRepository:
    """Get the repository instance."""
    return SQLiteJobRepository(get_db_path())


def get_lifecycle() -> LifecycleManager:
    """Build a lifecycle manager from E2E_* settings."""
    settings = EngineSettings.from_env()
    runtime = ComposeRuntime(settings.compose_command, settings.project_dir)
    return LifecycleManager(runtime, timeouts=settings.lifecycle)


def get_orchestrator(repo: SQLiteJobRepository) -> BaseOrchestrator:
    """Build the orchestrator for the configured mode."""
    return create_orchestrator(EngineSettings.from_env(), repo)


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


@click.group()
def cli():
    """E2E Admin - Manage applications, test jobs, services and emulators."""
    pass


@cli.group()
def app():
    """Manage applications under test."""
    pass


@cli.group()
def job():
    """Enqueue and inspect test jobs."""
    pass


@cli.group()
def services():
    """Manage the compose services (android, appium, app)."""
    pass


@cli.group()
def emulator():
    """Manage per-application emulator containers."""
    pass


# ============================================================================
# Application Commands
# ============================================================================


@app.command("register")
@click.option("--name", required=True, help="Application display name")
@click.option("--package-path", required=True, help="Path of the uploaded APK")
@click.option("--package-id", default=None, help="Android package identifier")
@click.option("--id", "app_id", default=None, help="Application ID (default: random)")
def app_register(name: str, package_path: str, package_id: str | None, app_id: str | None):
    """Register an application and its package file."""

    async def register():
        repo = get_repository()
        await repo.initialize()

        try:
            application = Application(
                id=app_id or uuid.uuid4().hex,
                name=name,
                package_path=package_path,
                package_identifier=package_id,
                created_at=datetime.now(UTC),
            )
            await repo.register_application(application)

            click.echo("✓ Application registered")
            click.echo(f"  ID:      {application.id}")
            click.echo(f"  Name:    {application.name}")
            click.echo(f"  Package: {application.package_path}")

        finally:
            await repo.close()

    run_async(register())


@app.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def app_list(json_output: bool):
    """List registered applications."""

    async def list_apps():
        repo = get_repository()
        await repo.initialize()

        try:
            applications = await repo.list_applications()

            if json_output:
                click.echo(json.dumps([a.to_dict() for a in applications], indent=2))
                return

            if not applications:
                click.echo("No applications found.")
                return

            click.echo(f"\n{'ID':<34} {'Name':<20} {'Package':<30}")
            click.echo("-" * 86)
            for a in applications:
                click.echo(f"{a.id:<34} {a.name:<20} {a.package_identifier or '-':<30}")
            click.echo()

        finally:
            await repo.close()

    run_async(list_apps())


# ============================================================================
# Job Commands
# ============================================================================


@job.command("enqueue")
@click.argument("application_id")
@click.option("--apk-file", help="APK file name (default: the registered package's)")
@click.option("--package-name", default=None, help="Android package identifier")
@click.option("--test-file", default=None, help="Spec file to run (default: whole suite)")
@click.option("--test-id", default=None, help="Test ID to attach to the job")
def job_enqueue(
    application_id: str,
    apk_file: str | None,
    package_name: str | None,
    test_file: str | None,
    test_id: str | None,
):
    """Enqueue a test run for an application."""

    async def enqueue():
        repo = get_repository()
        await repo.initialize()

        try:
            application = await repo.get(application_id)
            apk_file_name = apk_file
            package_identifier = package_name
            if application is not None:
                apk_file_name = apk_file_name or os.path.basename(application.package_path)
                package_identifier = package_identifier or application.package_identifier

            payload = JobPayload(
                application_id=application_id,
                apk_file_name=apk_file_name,
                app_package_name=package_identifier,
                test_file=test_file,
                test_id=test_id,
            )
            created = await repo.enqueue(JOB_KIND, payload)

            click.echo("✓ Job enqueued")
            click.echo(f"  Job ID: {created.id}")

        finally:
            await repo.close()

    run_async(enqueue())


@job.command("status")
@click.argument("job_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def job_status(job_id: str, json_output: bool):
    """Show a job's state, progress and log."""

    async def show():
        repo = get_repository()
        await repo.initialize()

        try:
            job_obj = await repo.get_job(job_id)
            if job_obj is None:
                fail(f"Job not found: {job_id}")
                return

            if json_output:
                click.echo(json.dumps(job_obj.to_dict(), indent=2))
                return

            click.echo("\nJob Details:")
            click.echo(f"  ID:          {job_obj.id}")
            click.echo(f"  Application: {job_obj.data.application_id}")
            click.echo(f"  State:       {job_obj.state}")
            click.echo(f"  Progress:    {job_obj.progress}%")
            if job_obj.discarded:
                click.echo("  Discarded:   yes")
            if job_obj.failed_reason:
                click.echo(f"  Reason:      {job_obj.failed_reason}")
            if job_obj.logs:
                click.echo("\nLog:")
                for line in job_obj.logs:
                    click.echo(f"  {line}")
            click.echo()

        finally:
            await repo.close()

    run_async(show())


@job.command("list")
@click.option("--application", "application_id", default=None, help="Filter by application")
@click.option("--limit", default=50, show_default=True, help="Maximum number of jobs")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def job_list(application_id: str | None, limit: int, json_output: bool):
    """List jobs, newest first."""

    async def list_jobs():
        repo = get_repository()
        await repo.initialize()

        try:
            jobs = await repo.list_jobs(application_id=application_id, limit=limit)

            if json_output:
                click.echo(json.dumps([j.to_summary_dict() for j in jobs], indent=2))
                return

            if not jobs:
                click.echo("No jobs found.")
                return

            click.echo(f"\n{'ID':<38} {'Application':<26} {'State':<10} {'Progress':<8}")
            click.echo("-" * 86)
            for j in jobs:
                click.echo(
                    f"{j.id:<38} {j.data.application_id:<26} {j.state:<10} {j.progress:>7}%"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_jobs())


@job.command("cancel")
@click.argument("job_id")
def job_cancel(job_id: str):
    """Cancel a job (waiting jobs are removed, active jobs are discarded)."""

    async def cancel():
        repo = get_repository()
        await repo.initialize()

        try:
            outcome = await repo.cancel_job(job_id)
        finally:
            await repo.close()

        if outcome == CANCEL_REMOVED:
            click.echo(f"✓ Job {job_id} removed from the queue")
        elif outcome == CANCEL_DISCARDED:
            click.echo(f"✓ Job {job_id} is running; it was flagged as discarded")
        elif outcome == CANCEL_NOT_FOUND:
            fail(f"Job not found: {job_id}")
        else:
            fail(f"Job {job_id} has already finished")

    run_async(cancel())


@job.command("results")
@click.option("--job", "job_id", default=None, help="Filter by job")
@click.option("--application", "application_id", default=None, help="Filter by application")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def job_results(job_id: str | None, application_id: str | None, json_output: bool):
    """List recorded test results."""

    async def list_results():
        repo = get_repository()
        await repo.initialize()

        try:
            results = await repo.list_results(application_id=application_id, job_id=job_id)

            if json_output:
                click.echo(json.dumps([r.to_dict() for r in results], indent=2))
                return

            if not results:
                click.echo("No results found.")
                return

            click.echo(f"\n{'Test':<40} {'Status':<8} {'Duration':>10} {'Retries':>8}")
            click.echo("-" * 70)
            for r in results:
                click.echo(
                    f"{r.test_name[:40]:<40} {r.status:<8} {r.duration:>8}ms {r.retries:>8}"
                )
            click.echo()

        finally:
            await repo.close()

    run_async(list_results())


# ============================================================================
# Service Commands
# ============================================================================


@services.command("status")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def services_status(json_output: bool):
    """Show running and health state of the managed services."""

    async def show():
        health = await get_lifecycle().container_health(MANAGED_SERVICES)

        if json_output:
            click.echo(json.dumps(health, indent=2))
            return

        if not health:
            click.echo("Service status unavailable.")
            return

        click.echo(f"\n{'Service':<10} {'Running':<8} {'Healthy':<8} {'Status'}")
        click.echo("-" * 60)
        for name, info in health.items():
            running = "yes" if info["running"] else "no"
            healthy = "yes" if info["healthy"] else "no"
            click.echo(f"{name:<10} {running:<8} {healthy:<8} {info['status']}")
        click.echo()

    run_async(show())


@services.command("start")
@click.argument("names", nargs=-1)
def services_start(names: tuple[str, ...]):
    """Start services (default: all) and wait until they are ready."""

    async def start():
        try:
            result = await get_lifecycle().smart_start(names or MANAGED_SERVICES)
        except EngineError as e:
            fail(str(e))
            return

        click.echo(f"✓ {result.message}")
        if result.started:
            click.echo(f"  Started:   {', '.join(result.started)}")
        if result.restarted:
            click.echo(f"  Restarted: {', '.join(result.restarted)}")
        click.echo(f"  Elapsed:   {result.elapsed:.1f}s")

    run_async(start())


@services.command("stop")
@click.argument("names", nargs=-1)
def services_stop(names: tuple[str, ...]):
    """Stop services (default: all)."""

    async def stop():
        try:
            await get_lifecycle().stop_services(names or MANAGED_SERVICES)
        except EngineError as e:
            fail(str(e))
            return
        click.echo("✓ Services stopped")

    run_async(stop())


@services.command("logs")
@click.argument("name")
@click.option("--tail", default=20, show_default=True, help="Number of lines")
def services_logs(name: str, tail: int):
    """Show the last log lines of a service."""

    async def show():
        logs = await get_lifecycle().get_service_logs(name, tail=tail)
        click.echo(logs.rstrip() or f"No logs available for {name}.")

    run_async(show())


# ============================================================================
# Emulator Commands
# ============================================================================


@emulator.command("start")
@click.argument("application_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def emulator_start(application_id: str, json_output: bool):
    """Start (or create) the application's emulator."""

    async def start():
        repo = get_repository()
        await repo.initialize()

        try:
            session = await get_orchestrator(repo).start_emulator(application_id)
        except Exception as e:
            fail(f"Failed to start emulator: {e}")
            return
        finally:
            await repo.close()

        if json_output:
            click.echo(json.dumps(session.to_dict(), indent=2))
            return

        click.echo("✓ Emulator ready")
        click.echo(f"  Viewer: {session.viewer_url}")
        if session.driver_url:
            click.echo(f"  Driver: {session.driver_url}")
        click.echo(f"  Container: {session.container_id} ({'created' if session.created else 're-used'})")
        if session.installed is not None:
            click.echo(f"  Package installed: {'yes' if session.installed else 'no'}")

    run_async(start())


@emulator.command("stop")
@click.argument("application_id")
def emulator_stop(application_id: str):
    """Stop and remove the application's emulator."""

    async def stop():
        repo = get_repository()
        await repo.initialize()

        try:
            result = await get_orchestrator(repo).stop_emulator(application_id)
        finally:
            await repo.close()

        if not result.success:
            fail(result.message)
            return
        click.echo(f"✓ {result.message}")

    run_async(stop())


@emulator.command("status")
@click.argument("application_id")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def emulator_status(application_id: str, json_output: bool):
    """Show whether the application's emulator is running."""

    async def show():
        repo = get_repository()
        await repo.initialize()

        try:
            status = await get_orchestrator(repo).get_emulator_status(application_id)
        finally:
            await repo.close()

        if json_output:
            click.echo(json.dumps(status.to_dict(), indent=2))
            return

        click.echo(f"Running: {'yes' if status.running else 'no'}")
        click.echo(f"Status:  {status.status}")
        if status.container_id:
            click.echo(f"ID:      {status.container_id}")
        if status.message:
            click.echo(status.message)

    run_async(show())


@emulator.command("install")
@click.argument("application_id")
@click.option("--package-name", default=None, help="Android package identifier")
def emulator_install(application_id: str, package_name: str | None):
    """Install the application's package on its running emulator."""

    async def install():
        repo = get_repository()
        await repo.initialize()

        try:
            result = await get_orchestrator(repo).install_app(application_id, package_name)
        except Exception as e:
            fail(f"Installation failed: {e}")
            return
        finally:
            await repo.close()

        if not result.success:
            if result.output:
                click.echo(result.output.rstrip(), err=True)
            fail(result.message)
            return
        click.echo(f"✓ {result.message}")

    run_async(install())


@emulator.command("installed")
@click.argument("application_id")
@click.argument("package_name")
def emulator_installed(application_id: str, package_name: str):
    """Check whether a package is installed on the application's emulator."""

    async def check():
        repo = get_repository()
        await repo.initialize()

        try:
            installed = await get_orchestrator(repo).is_app_installed(
                application_id, package_name
            )
        finally:
            await repo.close()

        click.echo(f"{package_name}: {'installed' if installed else 'not installed'}")
        if not installed:
            sys.exit(1)

    run_async(check())


if __name__ == "__main__":
    cli()
