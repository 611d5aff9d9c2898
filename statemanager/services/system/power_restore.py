"""
Power Restore Policy

Short-lived tool run once the BMC has booted: applies the configured power
restore policy to one host.

- No policy runs after a pinhole or watchdog reset of the BMC
- A one-time policy other than None is used once, then reset to None
- AlwaysOn: wait out the restore delay and BMC Ready, then power on
- AlwaysOff: request Off unless it is already requested
- Restore: power on again if the last request was not Off

With only_on_ac_loss set, AlwaysOff and Restore only run after an AC loss.
"""

import argparse
import asyncio
import sys
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from ...bus.dbus import DbusGateway
from ...bus.resolver import PropertyResolver
from ...common.config import ManagerConfig, read_manager_config
from ...common.exceptions import StateManagerError, TransientBusError
from ...common.logging_setup import configure_levels, get_service_logger
from ..bmc.bmc import BMC_IFACE, BMCState
from ..host.host import HOST_IFACE, HostTransition, RestartCause
from .reboot_cause import RebootCause, check_ac_loss

logger = get_service_logger("system.power_restore")

RESTORE_POLICY_IFACE = "xyz.openbmc_project.Control.Power.RestorePolicy"
POLICY_PREFIX = f"{RESTORE_POLICY_IFACE}.Policy"

POLICY_NONE = f"{POLICY_PREFIX}.None"
POLICY_ALWAYS_ON = f"{POLICY_PREFIX}.AlwaysOn"
POLICY_ALWAYS_OFF = f"{POLICY_PREFIX}.AlwaysOff"
POLICY_RESTORE = f"{POLICY_PREFIX}.Restore"

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class PolicyResult:
    """What the run decided, for logging and tests"""
    policy: str | None
    action: str


class PowerRestore:
    """Applies the restore policy of one host through the resolver"""

    def __init__(
        self,
        resolver: PropertyResolver,
        config: ManagerConfig,
        host_id: int = 0,
        sleep: Sleep = asyncio.sleep,
    ):
        self._resolver = resolver
        self._config = config
        self.host_id = host_id
        self._sleep = sleep
        self.host_path = config.host.object_path(host_id)
        base = config.host.settings_root.format(id=host_id)
        self.policy_path = f"{base}/power_restore_policy"
        self.one_time_path = f"{self.policy_path}/one_time"

    async def run(self) -> PolicyResult:
        """
        Raises:
            StateManagerError: a setting or the host could not be read/written
        """
        cause = await self._resolver.get(
            self._config.bmc.object_path, BMC_IFACE, "LastRebootCause",
        )
        if cause == RebootCause.PinholeReset.bus_value:
            logger.info("BMC was reset due to pinhole reset, no power restore policy will be run")
            return PolicyResult(None, "skipped")
        if cause == RebootCause.Watchdog.bus_value:
            logger.info("BMC was reset due to cold reset, no power restore policy will be run")
            return PolicyResult(None, "skipped")

        policy = await self._read_policy()
        delay_us = await self._resolver.get(
            self.policy_path, RESTORE_POLICY_IFACE, "PowerRestoreDelay",
        )
        delay_s = int(delay_us) // 1_000_000
        logger.info(f"Processing power policy {policy}", extra={"policy": policy})

        if policy == POLICY_ALWAYS_ON:
            await self.wait_bmc_ready(delay_s)
            await self._set_cause_if_unknown(RestartCause.PowerPolicyAlwaysOn)
            await self._request(HostTransition.On)
            return PolicyResult(policy, "on")

        if self._config.power_restore.only_on_ac_loss and not check_ac_loss(
            self._config.chassis.lost_power_file, self.host_id,
        ):
            logger.info("Chassis power was not on prior to BMC reboot, no power policy will be run")
            return PolicyResult(policy, "skipped")

        if policy == POLICY_ALWAYS_OFF:
            await self.wait_bmc_ready(delay_s)
            if await self._requested() != HostTransition.Off.bus_value:
                await self._request(HostTransition.Off)
                return PolicyResult(policy, "off")
            return PolicyResult(policy, "none")

        if policy == POLICY_RESTORE:
            await self.wait_bmc_ready(delay_s)
            await self._set_cause_if_unknown(RestartCause.PowerPolicyPreviousState)
            if await self._requested() != HostTransition.Off.bus_value:
                await self._set_cause(RestartCause.PowerPolicyPreviousState)
                await self._request(HostTransition.On)
                return PolicyResult(policy, "on")
            return PolicyResult(policy, "none")

        return PolicyResult(policy, "none")

    async def _read_policy(self) -> str:
        one_time = await self._resolver.get(
            self.one_time_path, RESTORE_POLICY_IFACE, "PowerRestorePolicy",
        )
        if one_time == POLICY_NONE:
            logger.info("One time not set, check user setting of power policy")
            return await self._resolver.get(
                self.policy_path, RESTORE_POLICY_IFACE, "PowerRestorePolicy",
            )

        logger.info("One time set, use it and reset to default")
        await self._resolver.set(
            self.one_time_path, RESTORE_POLICY_IFACE, "PowerRestorePolicy", "s", POLICY_NONE,
        )
        return one_time

    async def wait_bmc_ready(self, delay_s: int) -> bool:
        """Sleep delay_s, then wait (bounded) for the BMC to report Ready"""
        if delay_s:
            await self._sleep(delay_s)

        deadline = time.monotonic() + self._config.power_restore.bmc_ready_timeout_s
        while True:
            try:
                state = await self._resolver.get(
                    self._config.bmc.object_path, BMC_IFACE, "CurrentBMCState",
                )
                if state == BMCState.Ready.bus_value:
                    return True
            except StateManagerError as e:
                logger.debug(f"BMC state not readable yet: {e}")
            if time.monotonic() >= deadline:
                logger.error("BMC did not reach Ready, applying power policy anyway")
                return False
            await self._sleep(1)

    async def _requested(self) -> str:
        return await self._resolver.get(self.host_path, HOST_IFACE, "RequestedHostTransition")

    async def _request(self, transition: HostTransition) -> None:
        logger.info(f"Requesting host transition {transition.value}")
        await self._resolver.set(
            self.host_path, HOST_IFACE, "RequestedHostTransition", "s", transition.bus_value,
        )

    async def _set_cause(self, cause: RestartCause) -> None:
        await self._resolver.set(self.host_path, HOST_IFACE, "RestartCause", "s", cause.bus_value)

    async def _set_cause_if_unknown(self, cause: RestartCause) -> None:
        current = await self._resolver.get(self.host_path, HOST_IFACE, "RestartCause")
        if current == RestartCause.Unknown.bus_value:
            await self._set_cause(cause)


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
        resolver = PropertyResolver(gateway, timeout=config.bus.call_timeout_s)
        result = await PowerRestore(resolver, config, host_id).run()
        logger.info(f"Power restore finished: {result.action}")
    except StateManagerError as e:
        logger.error(f"Error applying power restore policy: {e}")
        return 1
    finally:
        await gateway.close()
    return 0


def run() -> None:
    parser = argparse.ArgumentParser(description="Apply the host power restore policy")
    parser.add_argument("--host", type=int, default=0, help="Host instance id (default: 0)")
    parser.add_argument("--config", "-c", help="Path to the manager configuration file")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.host, args.config)))


if __name__ == "__main__":
    run()
