"""
BMC State Service

Long-running process hosting the BMC entity:
- connects to the system bus and starts the signal dispatcher
- classifies the last reboot cause
- publishes /xyz/openbmc_project/state/bmc0 and claims the BMC bus name
- serves GET /health on localhost

Runs as a systemd service with Restart=always.
"""

import argparse
import asyncio
import signal
import sys

from ...bus.audit import AuditLogger
from ...bus.dbus import DbusGateway
from ...bus.router import SignalRouter
from ...bus.systemd import SystemdManager
from ...common.config import ManagerConfig, read_manager_config
from ...common.exceptions import StateManagerError, TransientBusError
from ...common.health import HealthServer
from ...common.logging_setup import configure_levels, get_service_logger
from ..system.reboot_cause import classify_reboot_cause
from .bmc import BMC

logger = get_service_logger("bmc")


class BMCStateService:
    """Owns the bus connection, the dispatcher and the BMC entity"""

    def __init__(self, config: ManagerConfig | None = None):
        self.config = config or read_manager_config()
        configure_levels(self.config.logging.level, self.config.logging.json_format)

        self._gateway: DbusGateway | None = None
        self._router: SignalRouter | None = None
        self.bmc: BMC | None = None

        self._health = HealthServer("bmc", self.config.bmc.health_port, self._status)
        self._shutdown_event = asyncio.Event()
        self._is_running = False

    async def start(self) -> None:
        """Bring the BMC entity up and run until a shutdown signal"""
        logger.info("Starting BMC State Service...")
        settings = self.config.bmc

        self._gateway = await DbusGateway.connect(call_timeout=self.config.bus.call_timeout_s)
        self._router = SignalRouter(self._gateway)
        await self._router.start()

        cause = classify_reboot_cause(settings.bootstatus_path, settings.pinhole_gpio)
        logger.info(f"Last reboot cause: {cause.value}")

        self.bmc = BMC(
            gateway=self._gateway,
            router=self._router,
            systemd=SystemdManager(self._gateway, timeout=self.config.bus.call_timeout_s),
            audit=AuditLogger(self._gateway, self.config.audit),
            settings=settings,
            reboot_cause=cause,
        )
        await self.bmc.start()
        await self._gateway.request_name(settings.bus_name)

        await self._health.start()
        self._is_running = True
        self._setup_signal_handlers()

        logger.info("BMC State Service started")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service"""
        logger.info("Stopping BMC State Service...")
        self._is_running = False

        await self._health.stop()
        if self._router:
            await self._router.stop()
        if self._gateway:
            await self._gateway.close()

        logger.info("BMC State Service stopped")

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
            "bmc": self.bmc.status() if self.bmc else None,
        }


async def main(config_path: str | None = None) -> int:
    """Main entry point"""
    try:
        service = BMCStateService(read_manager_config(config_path))
    except StateManagerError as e:
        logger.critical(str(e))
        return 1

    try:
        await service.start()
    except TransientBusError as e:
        logger.critical(f"Cannot reach the bus: {e}")
        return 1
    except StateManagerError as e:
        logger.critical(f"Startup failed: {e}")
        return 1
    finally:
        await service.stop()
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(description="BMC state manager")
    parser.add_argument("--config", "-c", help="Path to the manager configuration file")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.config)))


if __name__ == "__main__":
    run()
