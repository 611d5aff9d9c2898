"""
Configurable State Service

Long-running process hosting every readiness category found in the rules
directory. Categories are started on the dispatch worker, so their initial
evaluation is ordered with the signals that follow it.
"""

import argparse
import asyncio
import signal
import sys

from ...bus.dbus import DbusGateway
from ...bus.resolver import LocalPropertyCache, PropertyResolver
from ...bus.router import SignalRouter
from ...common.config import ManagerConfig, read_manager_config
from ...common.exceptions import StateManagerError, TransientBusError
from ...common.health import HealthServer
from ...common.logging_setup import configure_levels, get_service_logger
from .category import ReadinessCategory
from .rules import load_rule_directory

logger = get_service_logger("readiness")


class ReadinessService:
    """Owns the bus connection, the local property cache and the categories"""

    def __init__(self, config: ManagerConfig | None = None):
        self.config = config or read_manager_config()
        configure_levels(self.config.logging.level, self.config.logging.json_format)

        self._gateway: DbusGateway | None = None
        self._router: SignalRouter | None = None
        self.cache = LocalPropertyCache()
        self.categories: list[ReadinessCategory] = []

        self._health = HealthServer("readiness", self.config.readiness.health_port, self._status)
        self._shutdown_event = asyncio.Event()
        self._is_running = False

    async def start(self) -> None:
        """Load rules, publish categories and run until a shutdown signal"""
        logger.info("Starting Configurable State Service...")
        settings = self.config.readiness
        timeout = self.config.bus.call_timeout_s

        self._gateway = await DbusGateway.connect(
            call_timeout=timeout, object_manager_path=settings.object_root,
        )
        self._router = SignalRouter(self._gateway)
        await self._router.start()
        await self._gateway.request_name(settings.bus_name)

        resolver = PropertyResolver(self._gateway, self.cache, timeout=timeout)
        for rules in load_rule_directory(settings.rules_dir):
            category = ReadinessCategory(
                rules, self._gateway, self._router, resolver, settings.object_root,
            )
            try:
                await self._router.submit(category.start)
            except StateManagerError as e:
                logger.error(f"Failed to start category {category.path}: {e}")
                continue
            self.categories.append(category)

        await self._health.start()
        self._is_running = True
        self._setup_signal_handlers()

        logger.info(f"Configurable State Service started with {len(self.categories)} categories")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service"""
        logger.info("Stopping Configurable State Service...")
        self._is_running = False

        await self._health.stop()
        if self._router:
            await self._router.stop()
        if self._gateway:
            await self._gateway.close()

        logger.info("Configurable State Service stopped")

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_shutdown)

    def _handle_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _status(self) -> dict:
        return {
            "running": self._is_running,
            "categories": [c.status() for c in self.categories],
        }


async def main(config_path: str | None = None) -> int:
    """Main entry point"""
    try:
        service = ReadinessService(read_manager_config(config_path))
    except StateManagerError as e:
        logger.critical(str(e))
        return 1

    try:
        await service.start()
    except TransientBusError as e:
        logger.critical(f"Cannot reach the bus: {e}")
        return 1
    finally:
        await service.stop()
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(description="Configurable readiness state manager")
    parser.add_argument("--config", "-c", help="Path to the manager configuration file")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.config)))


if __name__ == "__main__":
    run()
