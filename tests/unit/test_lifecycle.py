"""
Unit tests for the container lifecycle manager.

The compose runtime is simulated in memory and time runs on a fake clock, so
every wait loop completes instantly.
"""

import pytest
from conftest import service_record

from e2e_common.errors import ComposeCommandError, ReadinessTimeoutError
from e2e_common.models import ServiceStatus
from e2e_controller import lifecycle as lifecycle_module
from e2e_controller.lifecycle import classify, order_services


def statuses_of(*records: dict) -> dict[str, ServiceStatus]:
    return {r["Service"]: ServiceStatus.from_compose_record(r) for r in records}


class TestOrderServices:
    """Test suite for order_services()."""

    @pytest.mark.parametrize(
        "requested",
        [
            ["android", "appium", "app"],
            ["app", "appium", "android"],
            ["appium", "app", "android"],
        ],
    )
    def test_dependencies_first(self, requested):
        assert order_services(requested) == ["android", "appium", "app"]

    def test_unrequested_dependencies_do_not_block(self):
        assert order_services(["app", "appium"]) == ["appium", "app"]
        assert order_services(["app"]) == ["app"]

    def test_duplicates_and_unknown_services(self):
        assert order_services(["proxy", "appium", "android", "appium"]) == [
            "android",
            "proxy",
            "appium",
        ]

    def test_cycle_falls_back_to_remaining_order(self, monkeypatch):
        monkeypatch.setattr(
            lifecycle_module,
            "DEPENDENCY_GRAPH",
            {"android": ("appium",), "appium": ("android",)},
        )

        assert order_services(["appium", "android", "proxy"]) == [
            "proxy",
            "android",
            "appium",
        ]


class TestClassify:
    """Test suite for classify()."""

    def test_partial_unhealthy(self, context):
        statuses = statuses_of(
            service_record("android"),
            service_record("appium", health="unhealthy"),
            service_record("app", health=None),
        )

        analysis = classify(statuses, ["android", "appium", "app"], context, 90)

        assert analysis.ready == ["android", "app"]
        assert analysis.needs_restart == ["appium"]
        assert analysis.needs_start == []
        assert not analysis.all_ready

    def test_exited_with_error_is_restarted(self, context):
        statuses = statuses_of(service_record("app", state="exited", health=None, exit_code=1))

        analysis = classify(statuses, ["app"], context, 90)

        assert analysis.needs_restart == ["app"]

    def test_cleanly_exited_and_missing_are_started(self, context):
        statuses = statuses_of(service_record("app", state="exited", health=None))

        analysis = classify(statuses, ["android", "app"], context, 90)

        assert analysis.needs_start == ["android", "app"]

    def test_starting_within_grace_is_waiting(self, context, clock):
        statuses = statuses_of(service_record("android", health="starting"))

        first = classify(statuses, ["android"], context, 90)
        clock.now += 60
        second = classify(statuses, ["android"], context, 90)

        assert first.waiting == ["android"]
        assert second.waiting == ["android"]
        assert not second.needs_restart

    def test_starting_past_grace_is_restarted(self, context, clock):
        statuses = statuses_of(service_record("android", health="starting"))

        classify(statuses, ["android"], context, 90)
        clock.now += 91
        analysis = classify(statuses, ["android"], context, 90)

        assert analysis.needs_restart == ["android"]
        assert "android" not in context.starting_since

    def test_healthy_clears_starting_timer(self, context):
        classify(statuses_of(service_record("android", health="starting")), ["android"], context, 90)
        classify(statuses_of(service_record("android")), ["android"], context, 90)

        assert context.starting_since == {}


class TestSmartStart:
    """Test suite for LifecycleManager.smart_start()."""

    @pytest.mark.asyncio
    async def test_all_ready_takes_no_action(self, lifecycle, runtime):
        runtime.set_service("android")
        runtime.set_service("appium")
        runtime.set_service("app", health=None)

        result = await lifecycle.smart_start()

        assert result.started == []
        assert result.restarted == []
        assert result.message == "All services were already running and healthy"
        assert runtime.commands("up") == []
        assert runtime.commands("restart") == []

    @pytest.mark.asyncio
    async def test_restarts_only_unhealthy_service(self, lifecycle, runtime):
        runtime.set_service("android")
        runtime.set_service("appium", health="unhealthy")
        runtime.set_service("app", health=None)

        result = await lifecycle.smart_start()

        assert result.restarted == ["appium"]
        assert result.started == []
        assert runtime.commands("restart") == [("restart", ("appium",))]
        assert runtime.commands("up") == []

    @pytest.mark.asyncio
    async def test_restarts_are_batched(self, lifecycle, runtime):
        runtime.set_service("android", state="exited", health=None, exit_code=137)
        runtime.set_service("appium", health="unhealthy")
        runtime.set_service("app", health=None)

        result = await lifecycle.smart_start()

        assert result.restarted == ["android", "appium"]
        assert runtime.commands("restart") == [("restart", ("android", "appium"))]

    @pytest.mark.asyncio
    async def test_cold_start_in_dependency_order(self, lifecycle, runtime):
        result = await lifecycle.smart_start(["app", "appium", "android"])

        assert result.started == ["android", "appium", "app"]
        assert [call[1] for call in runtime.commands("up")] == ["android", "appium", "app"]
        assert result.elapsed > 0
        assert await lifecycle.all_healthy()

    @pytest.mark.asyncio
    async def test_second_call_is_a_no_op(self, lifecycle, runtime):
        await lifecycle.smart_start()
        calls_after_first = len(runtime.commands("up"))

        result = await lifecycle.smart_start()

        assert result.started == []
        assert result.restarted == []
        assert len(runtime.commands("up")) == calls_after_first

    @pytest.mark.asyncio
    async def test_readiness_timeout_names_pending_services(self, lifecycle, runtime, clock):
        runtime.health_after_start["appium"] = "unhealthy"
        start = clock.now

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            await lifecycle.smart_start(["android", "appium"])

        assert exc_info.value.pending == ["appium"]
        assert "appium" in str(exc_info.value)
        # Start settles plus the readiness budget, never far beyond it
        assert clock.now - start <= 2 * 2 + 2 * 30 + 120

    @pytest.mark.asyncio
    async def test_start_command_failure_propagates(self, lifecycle, runtime):
        runtime.fail_commands.add("up")

        with pytest.raises(ComposeCommandError, match="exit code 1"):
            await lifecycle.smart_start(["android"])


class TestStartMissing:
    """Test suite for LifecycleManager.start_missing()."""

    @pytest.mark.asyncio
    async def test_starts_missing_with_settle_pauses(self, lifecycle, runtime, clock):
        started = await lifecycle.start_missing()

        assert started == ["android", "appium"]
        assert clock.sleeps == [10.0, 15.0]

    @pytest.mark.asyncio
    async def test_skips_running_services(self, lifecycle, runtime, clock):
        runtime.set_service("android", health="unhealthy")

        started = await lifecycle.start_missing()

        assert started == ["appium"]
        assert runtime.commands("up") == [("up", "appium")]
        assert runtime.commands("restart") == []
        assert clock.sleeps == [15.0]


class TestServiceOperations:
    """Test suite for stop/logs/health helpers."""

    @pytest.mark.asyncio
    async def test_logs_failure_returns_empty(self, lifecycle, runtime):
        runtime.fail_commands.add("logs")

        assert await lifecycle.get_service_logs("appium") == ""

    @pytest.mark.asyncio
    async def test_logs(self, lifecycle, runtime):
        runtime.logs_output["appium"] = "appium | listening"

        assert await lifecycle.get_service_logs("appium", tail=5) == "appium | listening"
        assert runtime.commands("logs") == [("logs", "appium", 5)]

    @pytest.mark.asyncio
    async def test_stop_services_in_canonical_order(self, lifecycle, runtime):
        await lifecycle.stop_services(["app", "android"])

        assert runtime.commands("stop") == [("stop", ("android", "app"))]

    @pytest.mark.asyncio
    async def test_container_health(self, lifecycle, runtime):
        runtime.set_service("android")
        runtime.set_service("appium", health="unhealthy")

        health = await lifecycle.container_health(["android", "appium", "app"])

        assert health["android"]["healthy"] is True
        assert health["appium"] == {
            "running": True,
            "healthy": False,
            "status": "running (unhealthy)",
        }
        assert health["app"]["running"] is False
        assert not await lifecycle.all_running()
