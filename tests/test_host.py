"""
Test Suite for the Host State Machine

Covers startup, requested transitions, the auto-reboot budget, systemd job
signals and persistence of host fields.
"""

import pytest

from conftest import job_new, job_removed
from statemanager.bus.objects import PropertyNotWritable
from statemanager.bus.systemd import MODE_REPLACE
from statemanager.common.exceptions import (
    BusCallError,
    InternalFailure,
    InvalidPropertyValue,
    InvalidTransition,
)
from statemanager.common.state import PersistedRecord
from statemanager.services.host.host import (
    ATTEMPTS_IFACE,
    HOST_IFACE,
    OS_STATUS_IFACE,
    PROGRESS_IFACE,
    QUIESCE_ERROR,
    REBOOT_POLICY_IFACE,
    Host,
    HostState,
    HostTransition,
    OSStatus,
    ProgressStages,
    RestartCause,
)

SETTINGS_SERVICE = "xyz.openbmc_project.Settings"
AUTO_REBOOT = "/xyz/openbmc_project/control/host0/auto_reboot"
AUTO_REBOOT_ONE_TIME = f"{AUTO_REBOOT}/one_time"


@pytest.fixture
def host(gateway, router, systemd, audit, resolver, host_settings, store):
    return Host(
        0, gateway, router, systemd, audit, resolver, host_settings, store,
        clock_us=lambda: 123_456,
    )


@pytest.fixture
def auto_reboot(gateway, mapper_owner):
    """Configure the one-time and user AutoReboot settings"""
    def configure(one_time: bool, user: bool):
        mapper_owner(AUTO_REBOOT_ONE_TIME, SETTINGS_SERVICE)
        mapper_owner(AUTO_REBOOT, SETTINGS_SERVICE)
        gateway.properties[(AUTO_REBOOT_ONE_TIME, REBOOT_POLICY_IFACE, "AutoReboot")] = one_time
        gateway.properties[(AUTO_REBOOT, REBOOT_POLICY_IFACE, "AutoReboot")] = user
    return configure


def requested(host: Host) -> str:
    return host.obj.get(HOST_IFACE, "RequestedHostTransition")


def started_units(gateway) -> list[str]:
    return [c[4][0] for c in gateway.calls_to("StartUnit")]


class TestStartup:
    """Initial state, restore and publication"""

    async def test_defaults_to_off(self, host, gateway):
        await host.start()

        assert host.state is HostState.Off
        assert requested(host) == HostTransition.Off.bus_value
        assert host.attempts_left == 3
        assert gateway.exported == [host.obj]

    async def test_running_target_active(self, host, gateway, store):
        gateway.units["obmc-host-startmin@0.target"] = "active"
        store.save(PersistedRecord(
            requested_transition=HostTransition.On.bus_value,
            boot_progress=ProgressStages.OSRunning.bus_value,
            os_status=OSStatus.BootComplete.bus_value,
            boot_progress_last_update=42,
            restart_cause=RestartCause.PowerButton.bus_value,
            retry_attempts=3,
        ))

        await host.start()

        assert host.state is HostState.Running
        assert requested(host) == HostTransition.On.bus_value

    async def test_host_running_file_means_running(self, host):
        host.host_running_file.parent.mkdir(parents=True)
        host.host_running_file.touch()

        await host.start()

        assert host.state is HostState.Running

    async def test_no_snapshot_resets_request_to_off(self, host, gateway):
        gateway.units["obmc-host-startmin@0.target"] = "active"

        await host.start()

        assert host.state is HostState.Running
        assert requested(host) == HostTransition.Off.bus_value

    async def test_restores_persisted_fields(self, host, gateway, store):
        store.save(PersistedRecord(
            requested_transition=HostTransition.Off.bus_value,
            boot_progress=ProgressStages.PCIInit.bus_value,
            os_status=OSStatus.Standby.bus_value,
            boot_progress_last_update=987,
            restart_cause=RestartCause.ScheduledPowerOn.bus_value,
            retry_attempts=2,
        ))

        await host.start()

        assert host.obj.get(PROGRESS_IFACE, "BootProgress") == ProgressStages.PCIInit.bus_value
        assert host.obj.get(PROGRESS_IFACE, "BootProgressLastUpdate") == 987
        assert host.obj.get(OS_STATUS_IFACE, "OperatingSystemState") == OSStatus.Standby.bus_value
        assert host.obj.get(HOST_IFACE, "RestartCause") == RestartCause.ScheduledPowerOn.bus_value
        assert host.retry_attempts == 2
        assert host.attempts_left == 2
        assert started_units(gateway) == []

    async def test_unknown_persisted_value_ignored(self, host, store):
        store.save(PersistedRecord(
            requested_transition="Sideways",
            boot_progress=ProgressStages.PCIInit.bus_value,
            os_status=OSStatus.Standby.bus_value,
            boot_progress_last_update=1,
            restart_cause=RestartCause.Unknown.bus_value,
            retry_attempts=3,
        ))

        await host.start()

        assert host.obj.get(PROGRESS_IFACE, "BootProgress") == ProgressStages.Unspecified.bus_value
        assert requested(host) == HostTransition.Off.bus_value

    async def test_subscribe_failure_is_internal_failure(self, host, gateway):
        gateway.replies["Subscribe"] = BusCallError("Subscribe", "org.freedesktop.DBus.Error.Failed")

        with pytest.raises(InternalFailure):
            await host.start()

    def test_allowed_transitions_published(self, host):
        allowed = host.obj.get(HOST_IFACE, "AllowedHostTransitions")
        assert HostTransition.On.bus_value in allowed
        assert len(allowed) == 5


class TestRequestedTransition:
    """Writes of RequestedHostTransition"""

    async def test_on_starts_target_and_consumes_attempt(self, host, gateway, store):
        await host.start()

        stored = await host.obj.write(HOST_IFACE, "RequestedHostTransition", "On")

        assert stored == HostTransition.On.bus_value
        assert started_units(gateway) == ["obmc-host-start@0.target"]
        assert gateway.calls_to("StartUnit")[0][4][1] == MODE_REPLACE
        assert host.attempts_left == 2
        assert store.load(3).requested_transition == HostTransition.On.bus_value

    async def test_off_does_not_consume_attempt(self, host, gateway):
        await host.start()

        await host.obj.write(HOST_IFACE, "RequestedHostTransition", HostTransition.Off.bus_value)

        assert started_units(gateway) == ["obmc-host-shutdown@0.target"]
        assert host.attempts_left == 3

    async def test_attempts_never_below_zero(self, host):
        await host.start()

        for _ in range(5):
            await host.obj.write(HOST_IFACE, "RequestedHostTransition", "Reboot")

        assert host.attempts_left == 0

    async def test_unknown_value_rejected(self, host, gateway):
        await host.start()

        with pytest.raises(InvalidTransition):
            await host.obj.write(HOST_IFACE, "RequestedHostTransition", "Sideways")

        assert started_units(gateway) == []

    async def test_disallowed_transition_rejected(
        self, gateway, router, systemd, audit, resolver, host_settings, store,
    ):
        host_settings.allowed_transitions = ["Off", "On"]
        host = Host(0, gateway, router, systemd, audit, resolver, host_settings, store)
        await host.start()

        with pytest.raises(InvalidTransition):
            await host.obj.write(HOST_IFACE, "RequestedHostTransition", "ForceWarmReboot")

        assert started_units(gateway) == []
        assert host.attempts_left == 3

    async def test_start_failure_is_internal_failure(self, host, gateway):
        await host.start()
        gateway.replies["StartUnit"] = BusCallError("StartUnit", "org.freedesktop.DBus.Error.Failed")

        with pytest.raises(InternalFailure):
            await host.obj.write(HOST_IFACE, "RequestedHostTransition", "On")

        assert requested(host) == HostTransition.Off.bus_value
        assert host.state is HostState.Off
        assert host.attempts_left == 3


class TestRebootAttempts:
    """AttemptsLeft and RetryAttempts writes"""

    async def test_attempts_left_clamped_to_retry(self, host):
        await host.start()

        stored = await host.obj.write(ATTEMPTS_IFACE, "AttemptsLeft", 10)

        assert stored == 3
        assert host.attempts_left == 3

    async def test_attempts_left_lower_value_kept(self, host):
        await host.start()

        await host.obj.write(ATTEMPTS_IFACE, "AttemptsLeft", 1)

        assert host.attempts_left == 1

    async def test_retry_lowers_attempts_left(self, host, store):
        await host.start()

        await host.obj.write(ATTEMPTS_IFACE, "RetryAttempts", 1)

        assert host.retry_attempts == 1
        assert host.attempts_left == 1
        assert store.load(3).retry_attempts == 1

    async def test_retry_raise_keeps_attempts_left(self, host):
        await host.start()
        await host.obj.write(HOST_IFACE, "RequestedHostTransition", "On")

        await host.obj.write(ATTEMPTS_IFACE, "RetryAttempts", 5)

        assert host.retry_attempts == 5
        assert host.attempts_left == 2


class TestAutoReboot:
    """is_auto_reboot decisions"""

    async def test_both_settings_true_with_budget(self, host, auto_reboot):
        await host.start()
        auto_reboot(one_time=True, user=True)

        assert await host.is_auto_reboot()

    async def test_one_time_false(self, host, auto_reboot):
        await host.start()
        auto_reboot(one_time=False, user=True)

        assert not await host.is_auto_reboot()

    async def test_user_false(self, host, auto_reboot):
        await host.start()
        auto_reboot(one_time=True, user=False)

        assert not await host.is_auto_reboot()

    async def test_no_budget_resets_and_refuses(self, host, auto_reboot):
        await host.start()
        auto_reboot(one_time=True, user=True)
        await host.obj.write(ATTEMPTS_IFACE, "AttemptsLeft", 0)

        assert not await host.is_auto_reboot()
        assert host.attempts_left == 3

    async def test_settings_unreachable(self, host):
        await host.start()

        assert not await host.is_auto_reboot()


class TestJobSignals:
    """JobNew / JobRemoved handling"""

    async def test_diagnostic_mode(self, host, router):
        await host.start()

        await router.dispatch(job_new("obmc-host-diagnostic-mode@0.target"))

        assert host.state is HostState.DiagnosticMode

    async def test_crash_while_running(self, host, gateway, router, store):
        gateway.units["obmc-host-startmin@0.target"] = "active"
        await host.start()

        await router.dispatch(job_new("obmc-host-crash@0.target"))

        assert host.attempts_left == 2
        assert host.obj.get(HOST_IFACE, "RestartCause") == RestartCause.HostCrash.bus_value
        assert store.load(3).restart_cause == RestartCause.HostCrash.bus_value

    async def test_crash_while_off_ignored(self, host, router):
        await host.start()

        await router.dispatch(job_new("obmc-host-crash@0.target"))

        assert host.attempts_left == 3
        assert host.obj.get(HOST_IFACE, "RestartCause") == RestartCause.Unknown.bus_value

    async def test_running_target_done(self, host, gateway, router):
        await host.start()
        host.host_running_file.parent.mkdir(parents=True, exist_ok=True)
        host.host_running_file.touch()
        gateway.units["obmc-host-startmin@0.target"] = "active"

        await router.dispatch(job_removed("obmc-host-startmin@0.target"))

        assert host.state is HostState.Running
        assert not host.host_running_file.exists()

    async def test_running_target_done_but_inactive(self, host, router):
        await host.start()

        await router.dispatch(job_removed("obmc-host-startmin@0.target"))

        assert host.state is HostState.Off

    async def test_stop_target_done(self, host, gateway, router):
        gateway.units["obmc-host-startmin@0.target"] = "active"
        await host.start()
        await host.obj.write(PROGRESS_IFACE, "BootProgress", "OSRunning")
        gateway.units["obmc-host-startmin@0.target"] = "inactive"

        await router.dispatch(job_removed("obmc-host-stop@0.target"))

        assert host.state is HostState.Off
        assert host.obj.get(PROGRESS_IFACE, "BootProgress") == ProgressStages.Unspecified.bus_value
        assert host.obj.get(OS_STATUS_IFACE, "OperatingSystemState") == OSStatus.Inactive.bus_value

    async def test_stop_target_done_while_running_target_active(self, host, gateway, router):
        gateway.units["obmc-host-startmin@0.target"] = "active"
        await host.start()

        await router.dispatch(job_removed("obmc-host-stop@0.target"))

        assert host.state is HostState.Running

    async def test_failed_job_ignored(self, host, gateway, router):
        await host.start()
        gateway.units["obmc-host-startmin@0.target"] = "active"

        await router.dispatch(job_removed("obmc-host-startmin@0.target", result="failed"))

        assert host.state is HostState.Off

    async def test_quiesce_without_auto_reboot(self, host, gateway, router):
        await host.start()
        gateway.units["obmc-host-quiesce@0.target"] = "active"

        await router.dispatch(job_removed("obmc-host-quiesce@0.target"))

        assert host.state is HostState.Quiesced
        create = gateway.calls_to("Create")
        assert create and create[0][4][0] == QUIESCE_ERROR
        assert started_units(gateway) == []

    async def test_quiesce_with_auto_reboot(self, host, gateway, router, auto_reboot):
        await host.start()
        auto_reboot(one_time=True, user=True)
        gateway.units["obmc-host-quiesce@0.target"] = "active"

        await router.dispatch(job_removed("obmc-host-quiesce@0.target"))

        assert started_units(gateway) == ["obmc-host-reboot@0.target"]
        assert requested(host) == HostTransition.Reboot.bus_value
        assert host.attempts_left == 2
        assert host.state is not HostState.Quiesced


class TestProgressAndStatus:
    """Boot progress, OS status and restart cause writes"""

    async def test_boot_progress_stamps_time(self, host, store):
        await host.start()

        stored = await host.obj.write(PROGRESS_IFACE, "BootProgress", "PCIInit")

        assert stored == ProgressStages.PCIInit.bus_value
        assert host.obj.get(PROGRESS_IFACE, "BootProgressLastUpdate") == 123_456
        record = store.load(3)
        assert record.boot_progress == ProgressStages.PCIInit.bus_value
        assert record.boot_progress_last_update == 123_456

    async def test_invalid_os_status_rejected(self, host):
        await host.start()

        with pytest.raises(InvalidPropertyValue):
            await host.obj.write(OS_STATUS_IFACE, "OperatingSystemState", "Dancing")

    async def test_os_status_persisted(self, host, store):
        await host.start()

        await host.obj.write(OS_STATUS_IFACE, "OperatingSystemState", OSStatus.BootComplete.bus_value)

        assert store.load(3).os_status == OSStatus.BootComplete.bus_value

    async def test_restart_cause_persisted(self, host, store):
        await host.start()

        await host.obj.write(HOST_IFACE, "RestartCause", "PowerButton")

        assert store.load(3).restart_cause == RestartCause.PowerButton.bus_value

    async def test_current_state_is_read_only(self, host):
        await host.start()

        with pytest.raises(PropertyNotWritable):
            await host.obj.write(HOST_IFACE, "CurrentHostState", HostState.Running.bus_value)
