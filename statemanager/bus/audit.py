"""
Audit Log Client

Creates entries through xyz.openbmc_project.Logging.Create. Every call is
bounded by a short timeout and failures are logged and swallowed: a broken
logging service must never hold up a reboot or power-off.
"""

import asyncio

from ..common.config import AuditSettings
from ..common.exceptions import StateManagerError
from ..common.logging_setup import get_service_logger
from .gateway import LOGGING_CREATE_IFACE, LOGGING_PATH, LOGGING_SERVICE, BusGateway

logger = get_service_logger("bus.audit")

LEVEL_INFORMATIONAL = "xyz.openbmc_project.Logging.Entry.Level.Informational"
LEVEL_ERROR = "xyz.openbmc_project.Logging.Entry.Level.Error"


class AuditLogger:
    """Best-effort log entry creation"""

    def __init__(self, gateway: BusGateway, settings: AuditSettings | None = None):
        self._gateway = gateway
        self._settings = settings or AuditSettings()

    async def create(self, message: str, level: str, data: dict[str, str] | None = None) -> bool:
        """
        Create one log entry.

        Returns:
            True if the logging service acknowledged the entry
        """
        try:
            await asyncio.wait_for(
                self._gateway.call(
                    LOGGING_SERVICE, LOGGING_PATH, LOGGING_CREATE_IFACE,
                    "Create", "ssa{ss}", [message, level, data or {}],
                    timeout=self._settings.timeout_s,
                ),
                timeout=self._settings.timeout_s,
            )
            return True
        except (StateManagerError, asyncio.TimeoutError) as e:
            logger.error(
                f"Failed to create log entry {message}: {e}",
                extra={"message_id": message, "level": level},
            )
            return False

    async def reboot_reason(self, message_id: str, reason: str, grace: bool = False) -> bool:
        """
        Record why the system is about to go down.

        With grace set, sleep after an acknowledged entry so the logging
        service can persist it before the process (or machine) goes away.
        """
        ok = await self.create(
            message_id,
            LEVEL_INFORMATIONAL,
            {
                "REDFISH_MESSAGE_ID": message_id,
                "REDFISH_MESSAGE_ARGS": reason,
            },
        )
        if grace and ok:
            await asyncio.sleep(self._settings.grace_s)
        return ok

    async def create_error(self, message: str, data: dict[str, str] | None = None) -> bool:
        return await self.create(message, LEVEL_ERROR, data)
