"""
Lifecycle plumbing shared by the store adapter and the application.

A component is started once, stopped once, and reports its health in
between. Subclasses fill in the ``_do_*`` hooks.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthCheckResult:
    """Outcome of one health check; ``details`` carries structured context."""

    status: HealthStatus
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def healthy(cls, message: str = "OK", **details: Any) -> "HealthCheckResult":
        return cls(HealthStatus.HEALTHY, message, details)

    @classmethod
    def degraded(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(HealthStatus.DEGRADED, message, details)

    @classmethod
    def unhealthy(cls, message: str, **details: Any) -> "HealthCheckResult":
        return cls(HealthStatus.UNHEALTHY, message, details)


class BaseComponent:
    """Idempotent start/stop around the ``_do_start``/``_do_stop`` hooks.

    health_check() reports UNHEALTHY while the component is stopped and
    defers to ``_do_health_check`` while it runs. A component counts as
    stopped once stop() returns, even if ``_do_stop`` raised.
    """

    def __init__(self) -> None:
        self._started_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._started_at is not None

    @property
    def uptime_seconds(self) -> float:
        """Seconds since start(); 0.0 while stopped."""
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    async def start(self) -> None:
        if self.is_running:
            return
        await self._do_start()
        self._started_at = time.monotonic()

    async def stop(self) -> None:
        if not self.is_running:
            return
        try:
            await self._do_stop()
        finally:
            self._started_at = None

    async def health_check(self) -> HealthCheckResult:
        if not self.is_running:
            return HealthCheckResult.unhealthy(f"{type(self).__name__} is not running")
        return await self._do_health_check()

    async def _do_start(self) -> None:
        raise NotImplementedError

    async def _do_stop(self) -> None:
        raise NotImplementedError

    async def _do_health_check(self) -> HealthCheckResult:
        raise NotImplementedError
