"""
Host State Service

Long-running process hosting one host instance (--host N):
- restores the persisted host snapshot before going on the bus
- publishes /xyz/openbmc_project/state/hostN and claims its bus name
- serves GET /health on localhost (port offset by the host id)
"""

import argparse
import asyncio
import signal
import sys

from ...bus.audit import AuditLogger
from ...bus.dbus import DbusGateway
from ...bus.resolver import PropertyResolver
from ...bus.router import SignalRouter
from ...bus.systemd import SystemdManager
from ...common.config import ManagerConfig, read_manager_config
from ...common.exceptions import StateManagerError, TransientBusError
from ...common.health import HealthServer
from ...common.logging_setup import configure_levels, get_service_logger
from ...common.state import HostStateStore
from .host import Host

logger = get_service_logger("host")


class HostStateService:
    """Owns the bus connection, the dispatcher and one Host entity"""

    def __init__(self, host_id: int = 0, config: ManagerConfig | None = None):
        self.host_id = host_id
        self.config = config or read_manager_config()
        configure_levels(self.config.logging.level, self.config.logging.json_format)

        self._gateway: DbusGateway | None = None
        self._router: SignalRouter | None = None
        self.host: Host | None = None

        self._health = HealthServer(
            f"host{host_id}",
            self.config.host.health_port + host_id,
            self._status,
        )
        self._shutdown_event = asyncio.Event()
        self._is_running = False

    async def start(self) -> None:
        """Bring the host entity up and run until a shutdown signal"""
        logger.info(f"Starting Host State Service for host {self.host_id}...")
        settings = self.config.host
        timeout = self.config.bus.call_timeout_s

        self._gateway = await DbusGateway.connect(call_timeout=timeout)
        self._router = SignalRouter(self._gateway)
        await self._router.start()

        self.host = Host(
            host_id=self.host_id,
            gateway=self._gateway,
            router=self._router,
            systemd=SystemdManager(self._gateway, timeout=timeout),
            audit=AuditLogger(self._gateway, self.config.audit),
            resolver=PropertyResolver(self._gateway, timeout=timeout),
            settings=settings,
            store=HostStateStore(settings.persist_dir, self.host_id),
        )
        await self.host.start()
        await self._gateway.request_name(settings.bus_name_for(self.host_id))

        await self._health.start()
        self._is_running = True
        self._setup_signal_handlers()

        logger.info("Host State Service started")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service"""
        logger.info("Stopping Host State Service...")
        self._is_running = False

        await self._health.stop()
        if self._router:
            await self._router.stop()
        if self._gateway:
            await self._gateway.close()

        logger.info("Host State Service stopped")

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
            "host": self.host.status() if self.host else None,
        }


async def main(host_id: int = 0, config_path: str | None = None) -> int:
    """Main entry point"""
    try:
        service = HostStateService(host_id, read_manager_config(config_path))
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
    parser = argparse.ArgumentParser(description="Host state manager")
    parser.add_argument("--host", type=int, default=0, help="Host instance id (default: 0)")
    parser.add_argument("--config", "-c", help="Path to the manager configuration file")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.host, args.config)))


if __name__ == "__main__":
    run()
