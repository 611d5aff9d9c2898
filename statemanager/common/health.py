"""
Health Endpoint

Small aiohttp server exposing GET /health on localhost for each
long-running service.
"""

from datetime import datetime, timezone
from typing import Any, Callable

from aiohttp import web

from .logging_setup import get_service_logger

logger = get_service_logger("health")


class HealthServer:
    """Serves the service status snapshot returned by status_callback"""

    def __init__(
        self,
        service_name: str,
        port: int,
        status_callback: Callable[[], dict[str, Any]],
        host: str = "127.0.0.1",
    ):
        self.service_name = service_name
        self.port = port
        self.host = host
        self._status_callback = status_callback
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        """Start the health check HTTP server"""
        self._app = web.Application()
        self._app.router.add_get("/health", self._health_handler)

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Health server for {self.service_name} started on port {self.port}")

    async def stop(self) -> None:
        """Stop the health check HTTP server"""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        status = self._status_callback()
        return web.json_response({
            "status": "healthy" if status.get("running") else "unhealthy",
            "service": self.service_name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **status,
        })
