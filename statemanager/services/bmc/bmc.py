"""
BMC State Machine

Publishes xyz.openbmc_project.State.BMC and drives BMC reboot/power-off
through systemd.

Lifecycle:
- NotReady until the standby target (multi-user.target) finishes
- Ready once it has
- Quiesced if the quiesce target is reached; terminal until a reboot

Once a terminal state is reached the entity stops listening to systemd job
signals. A HardReboot moves to NotReady and stops listening before the
reboot is issued, since this process may be torn down mid-call.
"""

from typing import Callable

import psutil

from ...bus.audit import AuditLogger
from ...bus.gateway import BusGateway, Signal
from ...bus.objects import BusEnum, PublishedObject
from ...bus.router import SignalRouter
from ...bus.systemd import (
    JOB_DONE,
    JOB_REMOVED,
    MODE_REPLACE_IRREVERSIBLY,
    SystemdManager,
    job_result,
    job_unit,
)
from ...common.config import BMCSettings
from ...common.exceptions import BusCallError, InternalFailure, InvalidTransition
from ...common.logging_setup import get_service_logger, log_state_change, log_transition
from ..system.reboot_cause import RebootCause

logger = get_service_logger("bmc.state")

BMC_IFACE = "xyz.openbmc_project.State.BMC"

REBOOT_REASON_MESSAGE = "OpenBMC.0.4.BMCRebootReason"
QUIESCE_ERROR = "xyz.openbmc_project.State.Error.BMCQuiesce"


class BMCState(BusEnum):
    Ready = "Ready"
    NotReady = "NotReady"
    Quiesced = "Quiesced"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{BMC_IFACE}.BMCState"


class BMCTransition(BusEnum):
    NONE = "None"
    Reboot = "Reboot"
    HardReboot = "HardReboot"
    PowerOff = "PowerOff"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{BMC_IFACE}.Transition"


# Orderly transitions and the systemd target each one starts
TRANSITION_TARGETS: dict[BMCTransition, str] = {
    BMCTransition.Reboot: "reboot.target",
    BMCTransition.PowerOff: "poweroff.target",
}

REBOOT_REASONS: dict[BMCTransition, str] = {
    BMCTransition.HardReboot: "Force Restart",
    BMCTransition.Reboot: "Graceful Restart",
    BMCTransition.PowerOff: "Shutdown",
}


class BMC:
    """
    The BMC entity.

    Usage:
        bmc = BMC(gateway, router, systemd, audit, settings, RebootCause.POR)
        await bmc.start()
    """

    ENTITY_ID = "bmc"

    def __init__(
        self,
        gateway: BusGateway,
        router: SignalRouter,
        systemd: SystemdManager,
        audit: AuditLogger,
        settings: BMCSettings,
        reboot_cause: RebootCause = RebootCause.Unknown,
        boot_time: Callable[[], float] = psutil.boot_time,
    ):
        self._gateway = gateway
        self._router = router
        self._systemd = systemd
        self._audit = audit
        self._settings = settings
        self._boot_time = boot_time
        self._watching = False

        self.obj = PublishedObject(settings.object_path)
        self.obj.add_property(
            BMC_IFACE, "CurrentBMCState", "s", BMCState.NotReady.bus_value,
        )
        self.obj.add_property(
            BMC_IFACE, "RequestedBMCTransition", "s", BMCTransition.NONE.bus_value,
            setter=self._request_transition,
        )
        self.obj.add_property(
            BMC_IFACE, "LastRebootTime", "t", getter=self.last_reboot_time,
        )
        self.obj.add_property(
            BMC_IFACE, "LastRebootCause", "s", reboot_cause.bus_value,
        )

    @property
    def state(self) -> BMCState:
        return BMCState.from_bus(self.obj.get(BMC_IFACE, "CurrentBMCState"))

    @property
    def watching(self) -> bool:
        """True while job-completion signals are still being followed"""
        return self._watching

    async def start(self) -> None:
        """
        Subscribe to systemd, discover the initial state, then go on the bus.

        Raises:
            InternalFailure: systemd refused the signal subscription
        """
        try:
            await self._systemd.subscribe()
        except BusCallError as e:
            logger.error(f"Failed to subscribe to systemd signals: {e}")
            raise InternalFailure(str(e), entity=self.ENTITY_ID) from e

        await self._router.subscribe(self.ENTITY_ID, JOB_REMOVED, self._on_job_removed)
        self._watching = True

        await self.discover_initial_state()
        self._gateway.export(self.obj)

    async def discover_initial_state(self) -> None:
        """Quiesce target is checked before standby; no side effects"""
        for target, state in (
            (self._settings.quiesce_target, BMCState.Quiesced),
            (self._settings.standby_target, BMCState.Ready),
        ):
            if await self._systemd.is_unit_active(target):
                logger.info(f"{target} active, initial BMC state {state.value}")
                self._set_state(state)
                await self._stop_watching()
                return

        logger.info("Setting the BMCState field to NotReady")
        self._set_state(BMCState.NotReady)

    def last_reboot_time(self) -> int:
        """Milliseconds since the epoch at which the BMC booted"""
        return int(self._boot_time()) * 1000

    def _set_state(self, state: BMCState) -> None:
        old = self.obj.get(BMC_IFACE, "CurrentBMCState")
        if self.obj.set(BMC_IFACE, "CurrentBMCState", state.bus_value):
            log_state_change(logger, self.ENTITY_ID, "CurrentBMCState", old, state.bus_value)

    async def _stop_watching(self) -> None:
        """Drop the job route and tell systemd we no longer need its signals"""
        if not self._watching:
            return
        self._watching = False
        await self._router.unsubscribe(self.ENTITY_ID, JOB_REMOVED)
        try:
            await self._systemd.unsubscribe()
        except BusCallError as e:
            logger.info(f"Error in Unsubscribe: {e}")

    async def _on_job_removed(self, signal: Signal) -> None:
        unit = job_unit(signal.body)
        if job_result(signal.body) != JOB_DONE:
            return

        if unit == self._settings.quiesce_target:
            self._set_state(BMCState.Quiesced)
            await self._stop_watching()
            logger.error(
                "BMC has entered the quiesce state",
                extra={"entity": self.ENTITY_ID, "target": unit},
            )
            await self._audit.create_error(QUIESCE_ERROR, {"TARGET": unit})
        elif unit == self._settings.standby_target:
            logger.info("BMC_READY")
            self._set_state(BMCState.Ready)
            await self._stop_watching()

    async def _request_transition(self, value: str) -> str:
        """
        Setter of RequestedBMCTransition.

        Raises:
            InvalidTransition: unknown value or one with no action
            InternalFailure: systemd rejected the action
        """
        try:
            transition = BMCTransition.from_bus(value)
        except ValueError:
            raise InvalidTransition(self.ENTITY_ID, value) from None
        if transition not in REBOOT_REASONS:
            raise InvalidTransition(self.ENTITY_ID, value)

        target = TRANSITION_TARGETS.get(transition)
        log_transition(logger, self.ENTITY_ID, transition.value, target)

        await self._audit.reboot_reason(
            REBOOT_REASON_MESSAGE, REBOOT_REASONS[transition], grace=True,
        )

        if transition is BMCTransition.HardReboot:
            self._set_state(BMCState.NotReady)
            await self._stop_watching()
            try:
                await self._systemd.reboot()
            except BusCallError as e:
                logger.error(f"Error in HardReboot: {e}")
                raise InternalFailure(str(e), entity=self.ENTITY_ID) from e
        else:
            try:
                await self._systemd.start_unit(target, MODE_REPLACE_IRREVERSIBLY)
            except BusCallError as e:
                logger.error(f"Error in StartUnit {target}: {e}")
                raise InternalFailure(str(e), entity=self.ENTITY_ID) from e

        return transition.bus_value

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "requested": self.obj.get(BMC_IFACE, "RequestedBMCTransition"),
            "last_reboot_cause": self.obj.get(BMC_IFACE, "LastRebootCause"),
            "watching_jobs": self._watching,
        }
