"""
Unit tests for component start/stop and health reporting.
"""
import pytest

from cellar.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus


class Recorder(BaseComponent):
    def __init__(self, fail_stop: bool = False):
        super().__init__()
        self.calls: list[str] = []
        self.fail_stop = fail_stop

    async def _do_start(self) -> None:
        self.calls.append("start")

    async def _do_stop(self) -> None:
        self.calls.append("stop")
        if self.fail_stop:
            raise RuntimeError("close failed")

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.degraded("slow", latency_ms=250)


class TestBaseComponent:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self):
        component = Recorder()

        await component.start()
        await component.start()
        assert component.is_running
        assert component.uptime_seconds >= 0.0

        await component.stop()
        await component.stop()
        assert not component.is_running
        assert component.uptime_seconds == 0.0
        assert component.calls == ["start", "stop"]

    @pytest.mark.asyncio
    async def test_stopped_component_is_unhealthy(self):
        health = await Recorder().health_check()

        assert health.status == HealthStatus.UNHEALTHY
        assert health.message == "Recorder is not running"

    @pytest.mark.asyncio
    async def test_running_component_reports_own_health(self):
        component = Recorder()
        await component.start()

        health = await component.health_check()

        assert health.status == HealthStatus.DEGRADED
        assert health.details == {"latency_ms": 250}

    @pytest.mark.asyncio
    async def test_failed_stop_still_marks_stopped(self):
        component = Recorder(fail_stop=True)
        await component.start()

        with pytest.raises(RuntimeError, match="close failed"):
            await component.stop()

        assert not component.is_running
