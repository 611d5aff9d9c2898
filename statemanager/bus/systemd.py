"""
Systemd Manager Client

Thin client over org.freedesktop.systemd1.Manager: unit lookups, starting
targets, the direct reboot and the JobNew/JobRemoved signal matches the
state machines correlate completions with.

Bus errors propagate as BusCallError; callers decide whether that is an
InternalFailure or simply "not active".
"""

from ..common.exceptions import BusCallError
from ..common.logging_setup import get_service_logger
from .gateway import (
    SYSTEMD_MANAGER_IFACE,
    SYSTEMD_PATH,
    SYSTEMD_SERVICE,
    SYSTEMD_UNIT_IFACE,
    BusGateway,
)
from .router import SignalMatch

logger = get_service_logger("bus.systemd")

MODE_REPLACE = "replace"
MODE_REPLACE_IRREVERSIBLY = "replace-irreversibly"

JOB_DONE = "done"

JOB_NEW = SignalMatch(
    member="JobNew",
    interface=SYSTEMD_MANAGER_IFACE,
    path=SYSTEMD_PATH,
)
JOB_REMOVED = SignalMatch(
    member="JobRemoved",
    interface=SYSTEMD_MANAGER_IFACE,
    path=SYSTEMD_PATH,
)


class SystemdManager:
    """Calls on the service manager"""

    def __init__(self, gateway: BusGateway, timeout: float | None = None):
        self._gateway = gateway
        self._timeout = timeout

    async def _call(self, member: str, signature: str = "", body: list | None = None) -> list:
        return await self._gateway.call(
            SYSTEMD_SERVICE, SYSTEMD_PATH, SYSTEMD_MANAGER_IFACE,
            member, signature, body, timeout=self._timeout,
        )

    async def get_unit(self, unit: str) -> str:
        """Object path of a loaded unit"""
        reply = await self._call("GetUnit", "s", [unit])
        return reply[0]

    async def active_state(self, unit: str) -> str:
        path = await self.get_unit(unit)
        return await self._gateway.get_property(
            SYSTEMD_SERVICE, path, SYSTEMD_UNIT_IFACE, "ActiveState",
            timeout=self._timeout,
        )

    async def is_unit_active(self, unit: str) -> bool:
        """
        True if the unit is active or activating.

        An unloaded unit (GetUnit error) counts as inactive.
        """
        try:
            state = await self.active_state(unit)
        except BusCallError as e:
            logger.debug(f"{unit} not loaded or unreadable: {e}")
            return False
        return state in ("active", "activating")

    async def subscribe(self) -> None:
        """Ask systemd to emit job signals"""
        await self._call("Subscribe")

    async def unsubscribe(self) -> None:
        await self._call("Unsubscribe")

    async def start_unit(self, unit: str, mode: str = MODE_REPLACE) -> str:
        """Queue a start job; returns the job object path"""
        reply = await self._call("StartUnit", "ss", [unit, mode])
        return reply[0] if reply else ""

    async def reboot(self) -> None:
        """Immediate reboot, bypassing orderly target shutdown"""
        await self._call("Reboot")


def job_unit(signal_body: list) -> str | None:
    """Unit name carried by a JobNew (u,o,s) or JobRemoved (u,o,s,s) body"""
    return signal_body[2] if len(signal_body) >= 3 else None


def job_result(signal_body: list) -> str | None:
    """Result string of a JobRemoved body"""
    return signal_body[3] if len(signal_body) >= 4 else None
