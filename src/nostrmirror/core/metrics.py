"""
Prometheus metrics and their HTTP exposition.

Metric objects are module-level singletons shared by every service in the
process. [BaseService.run_forever()][nostrmirror.core.base_service.BaseService.run_forever]
records cycle outcomes automatically; the synchronization engine adds its
own counters (events received, echoes suppressed, events published, ...)
through ``inc_counter()`` / ``set_gauge()``.

``MetricsServer`` serves the default registry on an aiohttp endpoint when
``MetricsConfig.enabled`` is set.
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field


class MetricsConfig(BaseModel):
    """Settings for the ``/metrics`` endpoint (disabled by default)."""

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


SERVICE_INFO = Info(
    "nostrmirror_service",
    "Service information and metadata",
)

CYCLE_DURATION_SECONDS = Histogram(
    "nostrmirror_cycle_duration_seconds",
    "Duration of a resync cycle in seconds",
    ["service"],
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120, 300),
)

# gauge names:   consecutive_failures, last_cycle_timestamp, relays_connected
# counter names: cycles_success, cycles_failed, errors_{type}, events_received,
#                events_echo_suppressed, events_published, metadata_syncs,
#                status_syncs, key_rotations
SERVICE_GAUGE = Gauge(
    "nostrmirror_service_gauge",
    "Service gauge values (point-in-time state)",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "nostrmirror_service_counter",
    "Service counter values (cumulative totals)",
    ["service", "name"],
)


class MetricsServer:
    """Async HTTP server exposing the Prometheus registry.

    Example:
        server = MetricsServer(MetricsConfig(enabled=True, port=8001))
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Bind the endpoint. No-op when metrics are disabled.

        Raises:
            OSError: If the port cannot be bound.
        """
        if not self._config.enabled:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()

    async def stop(self) -> None:
        """Release the port. Safe to call when never started."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Create and start a [MetricsServer][nostrmirror.core.metrics.MetricsServer]."""
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
