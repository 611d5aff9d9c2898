"""
Startup Host Check

Short-lived boot-time tool: decides whether the host was left running
across a BMC reboot. If the chassis is powered and any HostFirmware
condition reports Running, the host-running file is created so the host
state manager starts in Running instead of Off.

The object mapper and the condition providers may still be coming up, so
bus errors are retried (5 attempts, 1 second apart).
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Awaitable, Callable

from ...bus.dbus import DbusGateway
from ...bus.gateway import BusGateway
from ...bus.resolver import PropertyResolver
from ...common.config import ManagerConfig, read_manager_config
from ...common.exceptions import StateManagerError, TransientBusError
from ...common.logging_setup import configure_levels, get_service_logger

logger = get_service_logger("system.host_check")

CHASSIS_IFACE = "xyz.openbmc_project.State.Chassis"
CHASSIS_POWER_ON = f"{CHASSIS_IFACE}.PowerState.On"
HOST_FIRMWARE_IFACE = "xyz.openbmc_project.Condition.HostFirmware"
FIRMWARE_RUNNING = f"{HOST_FIRMWARE_IFACE}.FirmwareCondition.Running"

CHECK_ATTEMPTS = 5
CHECK_INTERVAL_S = 1.0


async def is_chassis_power_on(gateway: BusGateway, config: ManagerConfig, chassis_id: int) -> bool:
    """
    Raises:
        BusCallError: the chassis state could not be read
    """
    state = await gateway.get_property(
        f"{config.chassis.bus_name}{chassis_id}",
        config.chassis.object_path_template.format(id=chassis_id),
        CHASSIS_IFACE,
        "CurrentPowerState",
    )
    return state == CHASSIS_POWER_ON


async def firmware_condition_running(gateway: BusGateway, resolver: PropertyResolver) -> bool:
    """
    True if any HostFirmware condition reports Running.

    Raises:
        StateManagerError: mapper or provider not answering (retryable)
    """
    subtree = await resolver.get_subtree(HOST_FIRMWARE_IFACE)
    if not subtree:
        logger.info("Mapper response for HostFirmware conditions is empty")
        return False

    for path in reversed(sorted(subtree)):
        for service in subtree[path]:
            condition = await gateway.get_property(
                service, path, HOST_FIRMWARE_IFACE, "CurrentFirmwareCondition",
            )
            logger.info(
                f"Read host fw condition {condition} from {service}, {path}",
                extra={"service_name": service, "path": path},
            )
            if condition == FIRMWARE_RUNNING:
                return True
    return False


async def check_host_running(
    gateway: BusGateway,
    config: ManagerConfig,
    host_id: int = 0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Run the check; creates the host-running file when the host is up"""
    logger.info("Check if host is running")

    try:
        if not await is_chassis_power_on(gateway, config, host_id):
            logger.info("Chassis power not on, exit")
            return False
    except StateManagerError as e:
        logger.error(f"Error reading chassis power state: {e}")
        return False

    resolver = PropertyResolver(gateway, timeout=config.bus.call_timeout_s)
    for attempt in range(1, CHECK_ATTEMPTS + 1):
        logger.debug(f"Checking host firmware condition, attempt {attempt}")
        await sleep(CHECK_INTERVAL_S)
        try:
            running = await firmware_condition_running(gateway, resolver)
        except StateManagerError as e:
            logger.debug(f"Host firmware condition not available yet: {e}")
            continue

        if running:
            logger.info("Host is running!")
            host_file = Path(config.host.host_running_file.format(id=host_id))
            host_file.parent.mkdir(parents=True, exist_ok=True)
            host_file.touch()
            return True

    logger.info("Host is not running!")
    return False


async def main(host_id: int = 0, config_path: str | None = None) -> int:
    """Main entry point"""
    try:
        config = read_manager_config(config_path)
    except StateManagerError as e:
        logger.critical(str(e))
        return 1
    configure_levels(config.logging.level, config.logging.json_format)

    try:
        gateway = await DbusGateway.connect(call_timeout=config.bus.call_timeout_s)
    except TransientBusError as e:
        logger.critical(f"Cannot reach the bus: {e}")
        return 1

    try:
        await check_host_running(gateway, config, host_id)
    finally:
        await gateway.close()
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(description="Check whether the host is running")
    parser.add_argument("--host", type=int, default=0, help="Host instance id (default: 0)")
    parser.add_argument("--config", "-c", help="Path to the manager configuration file")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.host, args.config)))


if __name__ == "__main__":
    run()
