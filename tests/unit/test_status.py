"""
Unit tests for the service status prober.
"""

import json

import pytest

from e2e_common.models import ServiceHealth, ServiceState
from e2e_controller.status import ServiceStatusProber, parse_ps_output


class TestParsePsOutput:
    """Test suite for parse_ps_output()."""

    def test_json_lines(self):
        output = "\n".join(
            [
                json.dumps({"Service": "android", "State": "running", "Health": "healthy"}),
                json.dumps({"Service": "app", "State": "exited", "ExitCode": 137}),
            ]
        )

        statuses = parse_ps_output(output)

        assert set(statuses) == {"android", "app"}
        assert statuses["android"].health is ServiceHealth.HEALTHY
        assert statuses["app"].exit_code == 137

    def test_json_array(self):
        output = json.dumps(
            [
                {"Service": "android", "State": "running", "Health": "starting"},
                {"Service": "appium", "State": "created"},
            ]
        )

        statuses = parse_ps_output(output)

        assert statuses["android"].health is ServiceHealth.STARTING
        assert statuses["appium"].state is ServiceState.CREATED

    def test_skips_garbage(self):
        """Malformed lines and records without a name are dropped, not fatal."""
        output = "\n".join(
            [
                "WARN[0000] the attribute `version` is obsolete",
                json.dumps({"Service": "android", "State": "running"}),
                json.dumps(["not", "a", "record"]),
                json.dumps({"State": "running"}),
                "",
            ]
        )

        statuses = parse_ps_output(output)

        assert list(statuses) == ["android"]

    def test_empty_and_broken_array(self):
        assert parse_ps_output("") == {}
        assert parse_ps_output("   \n") == {}
        assert parse_ps_output("[{broken") == {}


class TestServiceStatusProber:
    """Test suite for ServiceStatusProber."""

    @pytest.mark.asyncio
    async def test_missing_services_reported_not_found(self, runtime, context):
        runtime.set_service("android")
        prober = ServiceStatusProber(runtime, context)

        statuses = await prober.get_status(["android", "appium"])

        assert statuses["android"].is_running
        assert statuses["appium"].state is ServiceState.NOT_FOUND

    @pytest.mark.asyncio
    async def test_cached_within_ttl(self, runtime, context, clock):
        runtime.set_service("android", health="starting")
        prober = ServiceStatusProber(runtime, context)

        await prober.get_status(["android"])
        runtime.set_service("android", health="healthy")
        clock.now += 4.0
        cached = await prober.get_status(["android"])

        assert cached["android"].health is ServiceHealth.STARTING
        assert len(runtime.commands("ps")) == 1

        clock.now += 1.0
        fresh = await prober.get_status(["android"])

        assert fresh["android"].health is ServiceHealth.HEALTHY
        assert len(runtime.commands("ps")) == 2

    @pytest.mark.asyncio
    async def test_cache_covers_other_names(self, runtime, context):
        """One probe answers later requests for any service."""
        runtime.set_service("android")
        runtime.set_service("appium")
        prober = ServiceStatusProber(runtime, context)

        await prober.get_status(["android"])
        statuses = await prober.get_status(["appium"])

        assert statuses["appium"].is_running
        assert len(runtime.commands("ps")) == 1

    @pytest.mark.asyncio
    async def test_failure_returns_empty_and_is_not_cached(self, runtime, context):
        runtime.set_service("android")
        runtime.fail_commands.add("ps")
        prober = ServiceStatusProber(runtime, context)

        assert await prober.get_status(["android"]) == {}

        runtime.fail_commands.clear()
        statuses = await prober.get_status(["android"])

        assert statuses["android"].is_running
