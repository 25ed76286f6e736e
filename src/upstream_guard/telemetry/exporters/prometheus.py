"""
Prometheus metrics exporter.

Provides HTTP endpoint for Prometheus scraping.
"""

from __future__ import annotations

from aiohttp import web

from upstream_guard.telemetry.logger import get_logger
from upstream_guard.telemetry.metrics import (
    BreakerMetricsCollector,
    get_metrics_collector,
)

logger = get_logger("upstream_guard.telemetry.exporters.prometheus")


class PrometheusExporter:
    """Prometheus metrics exporter.

    Serves the collector's breaker metrics over HTTP.

    Example:
        >>> exporter = PrometheusExporter(port=9090)
        >>> await exporter.start()
        >>> # Metrics available at http://localhost:9090/metrics
        >>> await exporter.stop()
    """

    def __init__(
        self,
        collector: BreakerMetricsCollector | None = None,
        port: int = 9090,
        host: str = "127.0.0.1",
        path: str = "/metrics",
    ) -> None:
        """Initialize exporter.

        Args:
            collector: Metrics collector (uses global if None)
            port: HTTP server port (0 picks a free port)
            host: HTTP server host
            path: Metrics endpoint path
        """
        self._collector = collector or get_metrics_collector()
        self._port = port
        self._host = host
        self._path = path
        self._runner: web.AppRunner | None = None

    def get_metrics(self) -> str:
        """Get metrics in Prometheus format."""
        return self._collector.to_prometheus()

    def create_app(self) -> web.Application:
        """Build the aiohttp application serving the metrics path."""
        app = web.Application()
        app.router.add_get(self._path, self._handle_metrics)
        return app

    async def start(self) -> None:
        """Start the HTTP server for Prometheus scraping."""
        if self._runner is not None:
            return

        runner = web.AppRunner(self.create_app())
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        if self._port == 0 and runner.addresses:
            self._port = runner.addresses[0][1]

        self._runner = runner
        logger.info("Prometheus exporter started", endpoint=self.endpoint)

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner is None:
            return

        await self._runner.cleanup()
        self._runner = None
        logger.info("Prometheus exporter stopped", endpoint=self.endpoint)

    async def _handle_metrics(self, request: web.Request) -> web.Response:  # noqa: ARG002
        return web.Response(
            text=self.get_metrics(),
            content_type="text/plain",
            charset="utf-8",
        )

    @property
    def is_running(self) -> bool:
        """Check if server is running."""
        return self._runner is not None

    @property
    def endpoint(self) -> str:
        """Get metrics endpoint URL."""
        return f"http://{self._host}:{self._port}{self._path}"
