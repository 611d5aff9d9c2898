"""
Host State Machine

Publishes one host instance (xyz.openbmc_project.State.Host and friends)
and drives host power transitions through systemd targets.

Published interfaces:
- State.Host: CurrentHostState, RequestedHostTransition, RestartCause,
  AllowedHostTransitions
- State.Boot.Progress: BootProgress, BootProgressLastUpdate
- Control.Boot.RebootAttempts: AttemptsLeft, RetryAttempts
- State.OperatingSystem.Status: OperatingSystemState

Requested transition, boot progress, OS status, restart cause and the retry
budget survive a BMC reboot through HostStateStore.

Auto-reboot budget: AttemptsLeft never exceeds RetryAttempts through an
external write. Every non-Off transition and every host crash consumes one
attempt through the internal path, which bypasses that clamp.
"""

import time
from pathlib import Path
from typing import Callable

from ...bus.audit import AuditLogger
from ...bus.gateway import BusGateway, Signal
from ...bus.objects import BusEnum, PublishedObject
from ...bus.resolver import PropertyResolver
from ...bus.router import SignalRouter
from ...bus.systemd import (
    JOB_DONE,
    JOB_NEW,
    JOB_REMOVED,
    MODE_REPLACE,
    SystemdManager,
    job_result,
    job_unit,
)
from ...common.config import HostSettings
from ...common.exceptions import (
    BusCallError,
    InternalFailure,
    InvalidPropertyValue,
    InvalidTransition,
    StateManagerError,
)
from ...common.logging_setup import get_service_logger, log_state_change, log_transition
from ...common.state import HostStateStore, PersistedRecord

logger = get_service_logger("host.state")

HOST_IFACE = "xyz.openbmc_project.State.Host"
PROGRESS_IFACE = "xyz.openbmc_project.State.Boot.Progress"
ATTEMPTS_IFACE = "xyz.openbmc_project.Control.Boot.RebootAttempts"
OS_STATUS_IFACE = "xyz.openbmc_project.State.OperatingSystem.Status"
REBOOT_POLICY_IFACE = "xyz.openbmc_project.Control.Boot.RebootPolicy"

QUIESCE_ERROR = "xyz.openbmc_project.State.Error.HostQuiesce"


class HostState(BusEnum):
    Off = "Off"
    Running = "Running"
    TransitioningToRunning = "TransitioningToRunning"
    TransitioningToOff = "TransitioningToOff"
    Standby = "Standby"
    Quiesced = "Quiesced"
    DiagnosticMode = "DiagnosticMode"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{HOST_IFACE}.HostState"


class HostTransition(BusEnum):
    Off = "Off"
    On = "On"
    Reboot = "Reboot"
    GracefulWarmReboot = "GracefulWarmReboot"
    ForceWarmReboot = "ForceWarmReboot"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{HOST_IFACE}.Transition"


class RestartCause(BusEnum):
    Unknown = "Unknown"
    RemoteCommand = "RemoteCommand"
    ScheduledPowerOn = "ScheduledPowerOn"
    PowerButton = "PowerButton"
    ResetButton = "ResetButton"
    HostCrash = "HostCrash"
    SoftReset = "SoftReset"
    PowerPolicyAlwaysOn = "PowerPolicyAlwaysOn"
    PowerPolicyPreviousState = "PowerPolicyPreviousState"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{HOST_IFACE}.RestartCause"


class ProgressStages(BusEnum):
    Unspecified = "Unspecified"
    PrimaryProcInit = "PrimaryProcInit"
    BusInit = "BusInit"
    MemoryInit = "MemoryInit"
    SecondaryProcInit = "SecondaryProcInit"
    PCIInit = "PCIInit"
    SystemInitComplete = "SystemInitComplete"
    SystemSetup = "SystemSetup"
    OSStart = "OSStart"
    OSRunning = "OSRunning"
    MotherboardInit = "MotherboardInit"
    OEM = "OEM"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{PROGRESS_IFACE}.ProgressStages"


class OSStatus(BusEnum):
    CBoot = "CBoot"
    PXEBoot = "PXEBoot"
    DiagBoot = "DiagBoot"
    CDROMBoot = "CDROMBoot"
    ROMBoot = "ROMBoot"
    BootComplete = "BootComplete"
    Inactive = "Inactive"
    Standby = "Standby"

    @classmethod
    def bus_prefix(cls) -> str:
        return f"{OS_STATUS_IFACE}.OSStatus"


def _now_us() -> int:
    return int(time.time() * 1_000_000)


class Host:
    """
    One host instance.

    Usage:
        host = Host(0, gateway, router, systemd, audit, resolver, settings, store)
        await host.start()
    """

    def __init__(
        self,
        host_id: int,
        gateway: BusGateway,
        router: SignalRouter,
        systemd: SystemdManager,
        audit: AuditLogger,
        resolver: PropertyResolver,
        settings: HostSettings,
        store: HostStateStore,
        clock_us: Callable[[], int] = _now_us,
    ):
        self.host_id = host_id
        self.entity_id = f"host{host_id}"
        self._gateway = gateway
        self._router = router
        self._systemd = systemd
        self._audit = audit
        self._resolver = resolver
        self._settings = settings
        self._store = store
        self._clock_us = clock_us

        self.state_targets: dict[HostState, str] = {
            HostState(name): template.format(id=host_id)
            for name, template in settings.state_targets.items()
        }
        self.transition_targets: dict[HostTransition, str] = {
            HostTransition(name): template.format(id=host_id)
            for name, template in settings.transition_targets.items()
        }
        self.crash_target = settings.crash_target.format(id=host_id)
        self.allowed_transitions = [HostTransition(t) for t in settings.allowed_transitions]
        self.host_running_file = Path(settings.host_running_file.format(id=host_id))

        self.obj = PublishedObject(settings.object_path(host_id))
        self._build_object()

    def _build_object(self) -> None:
        obj = self.obj
        obj.add_property(HOST_IFACE, "CurrentHostState", "s", HostState.Off.bus_value)
        obj.add_property(
            HOST_IFACE, "RequestedHostTransition", "s", HostTransition.Off.bus_value,
            setter=self._write_requested_transition,
        )
        obj.add_property(
            HOST_IFACE, "RestartCause", "s", RestartCause.Unknown.bus_value,
            setter=self._write_restart_cause,
        )
        obj.add_property(
            HOST_IFACE, "AllowedHostTransitions", "as",
            [t.bus_value for t in self.allowed_transitions],
        )
        obj.add_property(
            PROGRESS_IFACE, "BootProgress", "s", ProgressStages.Unspecified.bus_value,
            setter=self._write_boot_progress,
        )
        obj.add_property(
            PROGRESS_IFACE, "BootProgressLastUpdate", "t", 0,
            setter=self._write_boot_progress_last_update,
        )
        obj.add_property(
            ATTEMPTS_IFACE, "AttemptsLeft", "u", 0,
            setter=self._write_attempts_left,
        )
        obj.add_property(
            ATTEMPTS_IFACE, "RetryAttempts", "u", self._settings.boot_count_max_allowed,
            setter=self._write_retry_attempts,
        )
        obj.add_property(
            OS_STATUS_IFACE, "OperatingSystemState", "s", OSStatus.Inactive.bus_value,
            setter=self._write_os_status,
        )

    # Accessors

    @property
    def state(self) -> HostState:
        return HostState.from_bus(self.obj.get(HOST_IFACE, "CurrentHostState"))

    @property
    def requested_transition(self) -> HostTransition:
        return HostTransition.from_bus(self.obj.get(HOST_IFACE, "RequestedHostTransition"))

    @property
    def attempts_left(self) -> int:
        return self.obj.get(ATTEMPTS_IFACE, "AttemptsLeft")

    @property
    def retry_attempts(self) -> int:
        return self.obj.get(ATTEMPTS_IFACE, "RetryAttempts")

    # Startup

    async def start(self) -> None:
        """
        Subscribe, determine the initial state, restore persisted fields and
        only then publish the object.

        Raises:
            InternalFailure: systemd refused the signal subscription
        """
        try:
            await self._systemd.subscribe()
        except BusCallError as e:
            logger.error(f"Failed to subscribe to systemd signals: {e}")
            raise InternalFailure(str(e), entity=self.entity_id) from e

        await self._router.subscribe(self.entity_id, JOB_REMOVED, self._on_job_removed)
        await self._router.subscribe(self.entity_id, JOB_NEW, self._on_job_new)

        await self.determine_initial_state()
        self.obj.set(ATTEMPTS_IFACE, "AttemptsLeft", self.retry_attempts)

        self._gateway.export(self.obj)

    async def determine_initial_state(self) -> None:
        running_target = self.state_targets[HostState.Running]
        if await self._systemd.is_unit_active(running_target) or self.host_running_file.exists():
            logger.info("Initial host state analysis: Running")
            self._set_state(HostState.Running)
            self.obj.set(HOST_IFACE, "RequestedHostTransition", HostTransition.On.bus_value)
        else:
            logger.info("Initial host state analysis: Off")
            self._set_state(HostState.Off)
            self.obj.set(HOST_IFACE, "RequestedHostTransition", HostTransition.Off.bus_value)

        if not self.restore():
            # No usable snapshot: never resume a stale request
            self.obj.set(HOST_IFACE, "RequestedHostTransition", HostTransition.Off.bus_value)

    def restore(self) -> bool:
        """Apply the persisted snapshot without executing anything"""
        record = self._store.load(self._settings.boot_count_max_allowed)
        if record is None:
            return False

        try:
            values = {
                (HOST_IFACE, "RequestedHostTransition"):
                    HostTransition.from_bus(record.requested_transition).bus_value,
                (PROGRESS_IFACE, "BootProgress"):
                    ProgressStages.from_bus(record.boot_progress).bus_value,
                (OS_STATUS_IFACE, "OperatingSystemState"):
                    OSStatus.from_bus(record.os_status).bus_value,
                (HOST_IFACE, "RestartCause"):
                    RestartCause.from_bus(record.restart_cause).bus_value,
            }
        except ValueError as e:
            logger.error(f"Persisted host state holds an unknown value: {e}")
            return False

        for (interface, name), value in values.items():
            self.obj.set(interface, name, value)
        self.obj.set(PROGRESS_IFACE, "BootProgressLastUpdate", record.boot_progress_last_update)
        self.obj.set(ATTEMPTS_IFACE, "RetryAttempts", record.retry_attempts)
        return True

    def serialize(self) -> None:
        record = PersistedRecord(
            requested_transition=self.obj.get(HOST_IFACE, "RequestedHostTransition"),
            boot_progress=self.obj.get(PROGRESS_IFACE, "BootProgress"),
            os_status=self.obj.get(OS_STATUS_IFACE, "OperatingSystemState"),
            boot_progress_last_update=self.obj.get(PROGRESS_IFACE, "BootProgressLastUpdate"),
            restart_cause=self.obj.get(HOST_IFACE, "RestartCause"),
            retry_attempts=self.retry_attempts,
        )
        try:
            self._store.save(record)
        except OSError as e:
            logger.error(f"Failed to persist host state: {e}", extra={"entity": self.entity_id})

    # Transitions

    async def _write_requested_transition(self, value: str) -> str:
        """
        Setter of RequestedHostTransition.

        Raises:
            InvalidTransition: unknown, not allowed, or no target mapped
            InternalFailure: systemd rejected the start job
        """
        try:
            transition = HostTransition.from_bus(value)
        except ValueError:
            raise InvalidTransition(self.entity_id, value) from None
        if transition not in self.allowed_transitions:
            raise InvalidTransition(self.entity_id, value)
        target = self.transition_targets.get(transition)
        if target is None:
            raise InvalidTransition(self.entity_id, value)

        log_transition(logger, self.entity_id, transition.value, target)
        try:
            await self._systemd.start_unit(target, MODE_REPLACE)
        except BusCallError as e:
            logger.error(f"Failed to start {target}: {e}")
            raise InternalFailure(str(e), entity=self.entity_id) from e

        # Anything other than Off is a boot attempt
        if transition is not HostTransition.Off:
            self.decrement_reboot_count()

        self.obj.set(HOST_IFACE, "RequestedHostTransition", transition.bus_value)
        self.serialize()
        return transition.bus_value

    def decrement_reboot_count(self) -> int:
        """Consume one auto-reboot attempt; bypasses the external clamp"""
        left = self.attempts_left
        if left > 0:
            left -= 1
            self.obj.set(ATTEMPTS_IFACE, "AttemptsLeft", left)
        return left

    async def is_auto_reboot(self) -> bool:
        """
        True if the host may be rebooted automatically out of quiesce.

        Needs both the one-time and the user AutoReboot settings true and
        budget left. A user setting that is true with no budget left resets
        the budget and answers no.
        """
        base = self._settings.settings_root.format(id=self.host_id)
        try:
            one_time = await self._resolver.get(
                f"{base}/auto_reboot/one_time", REBOOT_POLICY_IFACE, "AutoReboot",
            )
            if not one_time:
                logger.info("Auto reboot (one-time) disabled")
                return False

            auto_reboot = await self._resolver.get(
                f"{base}/auto_reboot", REBOOT_POLICY_IFACE, "AutoReboot",
            )
        except StateManagerError as e:
            logger.error(f"Error reading auto reboot settings: {e}")
            return False

        if not auto_reboot:
            logger.info("Auto reboot disabled")
            return False

        if self.attempts_left > 0:
            logger.info(f"Auto reboot enabled, {self.attempts_left} attempts left")
            return True

        logger.info("Auto reboot enabled but no attempts left, resetting budget")
        self.obj.set(
            ATTEMPTS_IFACE, "AttemptsLeft",
            min(self._settings.boot_count_max_allowed, self.retry_attempts),
        )
        return False

    # Job signals

    async def _on_job_new(self, signal: Signal) -> None:
        unit = job_unit(signal.body)
        if unit == self.state_targets.get(HostState.DiagnosticMode):
            logger.info("Received signal that host is in diagnostic mode")
            self._set_state(HostState.DiagnosticMode)
        elif unit == self.crash_target and self.state is HostState.Running:
            # Only a crash of a running host counts against the budget
            logger.info("Host crash detected")
            self.decrement_reboot_count()
            self._update(HOST_IFACE, "RestartCause", RestartCause.HostCrash.bus_value)
            self.serialize()

    async def _on_job_removed(self, signal: Signal) -> None:
        unit = job_unit(signal.body)
        if job_result(signal.body) != JOB_DONE:
            return

        running_target = self.state_targets[HostState.Running]
        quiesce_target = self.state_targets.get(HostState.Quiesced)

        if unit == self.state_targets.get(HostState.Off):
            if await self._systemd.is_unit_active(running_target):
                return
            logger.info("Received signal that host is off")
            self._set_state(HostState.Off)
            self._set_boot_progress(ProgressStages.Unspecified)
            self._update(OS_STATUS_IFACE, "OperatingSystemState", OSStatus.Inactive.bus_value)
            self.serialize()

        elif unit == running_target:
            if not await self._systemd.is_unit_active(running_target):
                return
            logger.info("Received signal that host is running")
            self._set_state(HostState.Running)
            # A BMC reboot while the host is up is tracked through this file
            self.host_running_file.unlink(missing_ok=True)

        elif quiesce_target and unit == quiesce_target:
            if not await self._systemd.is_unit_active(quiesce_target):
                return
            if await self.is_auto_reboot():
                logger.info("Beginning reboot out of quiesce")
                try:
                    await self.obj.write(
                        HOST_IFACE, "RequestedHostTransition", HostTransition.Reboot.bus_value,
                    )
                except StateManagerError as e:
                    logger.error(f"Auto reboot failed: {e}")
            else:
                logger.error(
                    "Host is quiesced",
                    extra={"entity": self.entity_id, "target": unit},
                )
                self._set_state(HostState.Quiesced)
                await self._audit.create_error(QUIESCE_ERROR, {"HOST_ID": str(self.host_id)})

    # Property setters

    def _set_state(self, state: HostState) -> None:
        self._update(HOST_IFACE, "CurrentHostState", state.bus_value)

    def _update(self, interface: str, name: str, value) -> None:
        old = self.obj.get(interface, name)
        if self.obj.set(interface, name, value):
            log_state_change(logger, self.entity_id, name, old, value)

    def _set_boot_progress(self, stage: ProgressStages) -> None:
        self._update(PROGRESS_IFACE, "BootProgress", stage.bus_value)
        self.obj.set(PROGRESS_IFACE, "BootProgressLastUpdate", self._clock_us())

    def _parse(self, enum_cls: type[BusEnum], name: str, value: str) -> BusEnum:
        try:
            return enum_cls.from_bus(value)
        except ValueError:
            raise InvalidPropertyValue(name, value) from None

    async def _write_boot_progress(self, value: str) -> str:
        stage = self._parse(ProgressStages, "BootProgress", value)
        self._set_boot_progress(stage)
        self.serialize()
        return stage.bus_value

    async def _write_boot_progress_last_update(self, value: int) -> int:
        self.obj.set(PROGRESS_IFACE, "BootProgressLastUpdate", int(value))
        self.serialize()
        return int(value)

    async def _write_os_status(self, value: str) -> str:
        status = self._parse(OSStatus, "OperatingSystemState", value)
        self._update(OS_STATUS_IFACE, "OperatingSystemState", status.bus_value)
        self.serialize()
        return status.bus_value

    async def _write_restart_cause(self, value: str) -> str:
        cause = self._parse(RestartCause, "RestartCause", value)
        self._update(HOST_IFACE, "RestartCause", cause.bus_value)
        self.serialize()
        return cause.bus_value

    async def _write_attempts_left(self, value: int) -> int:
        """External writes can never grant more than RetryAttempts"""
        logger.debug("External request to reset reboot count")
        return min(int(value), self.retry_attempts)

    async def _write_retry_attempts(self, value: int) -> int:
        value = int(value)
        logger.info(f"Automatic reboot retry attempts set to: {value}")
        self.obj.set(ATTEMPTS_IFACE, "RetryAttempts", value)
        if self.attempts_left > value:
            self.obj.set(ATTEMPTS_IFACE, "AttemptsLeft", value)
        self.serialize()
        return value

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "requested": self.requested_transition.value,
            "boot_progress": self.obj.get(PROGRESS_IFACE, "BootProgress"),
            "attempts_left": self.attempts_left,
            "retry_attempts": self.retry_attempts,
        }
