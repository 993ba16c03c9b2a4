"""
Monitoring External Service Integrations
========================================

External services for compliance monitoring:
- HTTP endpoint probe executor adapter
- APScheduler for the periodic worker tick
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from grc_monitor.config import ResultStatus, Settings, TestType
from grc_monitor.monitoring.application.executors import (
    ExecutionOutcome, ExecutorAdapter, ExecutorRegistry, TransientError,
)
from grc_monitor.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class EndpointProbeAdapter(ExecutorAdapter):
    """
    Executor adapter for `endpoint` tests.

    Issues a GET against `config["url"]` and passes when the response status
    equals `config["expected_status"]` (default 200). Connection failures and
    5xx responses are transient and retried per the test's policy.
    """

    def __init__(self, timeout_seconds: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self._timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout_seconds)
        return self._http_client

    async def execute(self, config: Dict[str, Any], deadline: datetime) -> ExecutionOutcome:
        url = config.get("url")
        if not url:
            return ExecutionOutcome(
                status=ResultStatus.ERROR,
                error_message="config.url is required for endpoint tests"
            )

        try:
            expected_status = int(config.get("expected_status", 200))
        except (TypeError, ValueError):
            return ExecutionOutcome(
                status=ResultStatus.ERROR,
                error_message=f"invalid expected_status: {config.get('expected_status')!r}"
            )

        client = await self._get_client()
        try:
            response = await client.get(url, timeout=self._timeout_seconds)
        except httpx.TransportError as e:
            raise TransientError(f"request to {url} failed: {e}") from e

        details = {
            "url": url,
            "status_code": response.status_code,
            "expected_status": expected_status,
        }

        if response.status_code == expected_status:
            return ExecutionOutcome(
                status=ResultStatus.PASS,
                message=f"{url} returned {response.status_code}",
                details=details
            )

        if response.status_code >= 500:
            raise TransientError(f"{url} returned {response.status_code}")

        return ExecutionOutcome(
            status=ResultStatus.FAIL,
            message=f"{url} returned {response.status_code}, expected {expected_status}",
            details=details
        )

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


def build_default_registry(settings: Settings) -> ExecutorRegistry:
    """Registry with the executor adapters shipped in this package."""
    registry = ExecutorRegistry()
    registry.register(
        TestType.ENDPOINT,
        EndpointProbeAdapter(timeout_seconds=settings.endpoint_probe_timeout_seconds)
    )
    return registry


class MonitoringScheduler:
    """
    Wrapper for APScheduler driving the monitoring worker tick.

    Manages the lifecycle of the scheduler and its single job. A tick never
    overlaps the previous one; missed ticks are coalesced into one.
    """

    def __init__(self, interval_seconds: int = 60):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("Monitoring scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="monitoring_tick",
            name="Monitoring Worker Tick",
            misfire_grace_time=self.interval_seconds,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "Monitoring scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop scheduling new ticks; a tick already running is left to finish."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Monitoring scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running
