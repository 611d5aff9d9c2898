"""
Test Suite for the BMC State Machine

Covers initial state discovery, job completion tracking and requested
transitions (including their failure paths).
"""

import pytest

from conftest import job_removed
from statemanager.bus.audit import LEVEL_ERROR
from statemanager.bus.systemd import JOB_REMOVED, MODE_REPLACE_IRREVERSIBLY
from statemanager.common.exceptions import BusCallError, InternalFailure, InvalidTransition
from statemanager.services.bmc.bmc import BMC, BMC_IFACE, QUIESCE_ERROR, BMCState, BMCTransition
from statemanager.services.system.reboot_cause import RebootCause


@pytest.fixture
def bmc(gateway, router, systemd, audit, bmc_settings):
    return BMC(
        gateway, router, systemd, audit, bmc_settings,
        reboot_cause=RebootCause.POR,
        boot_time=lambda: 1_700_000_000.7,
    )


class TestDiscovery:
    """Initial state discovery at startup"""

    async def test_nothing_active_is_not_ready(self, bmc, gateway, router):
        await bmc.start()

        assert bmc.state is BMCState.NotReady
        assert bmc.watching
        assert router.is_subscribed(BMC.ENTITY_ID, JOB_REMOVED)
        assert gateway.exported == [bmc.obj]
        assert gateway.members()[0] == "Subscribe"

    async def test_standby_active_is_ready(self, bmc, gateway, router, bmc_settings):
        gateway.units[bmc_settings.standby_target] = "active"

        await bmc.start()

        assert bmc.state is BMCState.Ready
        assert not bmc.watching
        assert not router.is_subscribed(BMC.ENTITY_ID, JOB_REMOVED)
        assert "Unsubscribe" in gateway.members()

    async def test_quiesce_checked_before_standby(self, bmc, gateway, bmc_settings):
        gateway.units[bmc_settings.standby_target] = "active"
        gateway.units[bmc_settings.quiesce_target] = "activating"

        await bmc.start()

        assert bmc.state is BMCState.Quiesced

    async def test_published_after_discovery(self, bmc, gateway, bmc_settings):
        gateway.units[bmc_settings.standby_target] = "active"
        seen = []
        gateway.export = lambda obj: seen.append(obj.get(BMC_IFACE, "CurrentBMCState"))

        await bmc.start()

        assert seen == [BMCState.Ready.bus_value]

    async def test_subscribe_failure_is_internal_failure(self, bmc, gateway):
        gateway.replies["Subscribe"] = BusCallError("Subscribe", "org.freedesktop.DBus.Error.Failed")

        with pytest.raises(InternalFailure):
            await bmc.start()
        assert gateway.exported == []

    def test_last_reboot_time_in_milliseconds(self, bmc):
        assert bmc.obj.get(BMC_IFACE, "LastRebootTime") == 1_700_000_000_000

    def test_last_reboot_cause_published(self, bmc):
        assert bmc.obj.get(BMC_IFACE, "LastRebootCause") == (
            "xyz.openbmc_project.State.BMC.RebootCause.POR"
        )


class TestJobSignals:
    """JobRemoved correlation"""

    async def test_standby_done_becomes_ready(self, bmc, router, bmc_settings):
        await bmc.start()

        delivered = await router.dispatch(job_removed(bmc_settings.standby_target))

        assert delivered == 1
        assert bmc.state is BMCState.Ready
        assert not bmc.watching

    async def test_done_after_ready_is_not_delivered(self, bmc, router, bmc_settings):
        await bmc.start()
        await router.dispatch(job_removed(bmc_settings.standby_target))

        delivered = await router.dispatch(job_removed(bmc_settings.standby_target))

        assert delivered == 0
        assert bmc.state is BMCState.Ready

    async def test_failed_job_ignored(self, bmc, router, bmc_settings):
        await bmc.start()

        await router.dispatch(job_removed(bmc_settings.standby_target, result="failed"))

        assert bmc.state is BMCState.NotReady
        assert bmc.watching

    async def test_other_unit_ignored(self, bmc, router):
        await bmc.start()

        await router.dispatch(job_removed("sshd.service"))

        assert bmc.state is BMCState.NotReady
        assert bmc.watching

    async def test_quiesce_done_becomes_quiesced(self, bmc, gateway, router, bmc_settings):
        await bmc.start()

        await router.dispatch(job_removed(bmc_settings.quiesce_target))

        assert bmc.state is BMCState.Quiesced
        assert not bmc.watching
        create = gateway.calls_to("Create")
        assert len(create) == 1
        assert create[0][4][:2] == [QUIESCE_ERROR, LEVEL_ERROR]

    async def test_quiesce_discovered_logs_nothing(self, bmc, gateway, bmc_settings):
        gateway.units[bmc_settings.quiesce_target] = "active"

        await bmc.start()

        assert bmc.state is BMCState.Quiesced
        assert gateway.calls_to("Create") == []


class TestTransitions:
    """Writes of RequestedBMCTransition"""

    async def test_reboot_starts_target(self, bmc, gateway):
        await bmc.start()

        stored = await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", BMCTransition.Reboot.bus_value)

        assert stored == BMCTransition.Reboot.bus_value
        assert bmc.obj.get(BMC_IFACE, "RequestedBMCTransition") == stored
        start = gateway.calls_to("StartUnit")
        assert [c[4] for c in start] == [["reboot.target", MODE_REPLACE_IRREVERSIBLY]]

    async def test_audit_entry_before_start(self, bmc, gateway):
        await bmc.start()

        await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", "PowerOff")

        members = gateway.members()
        assert members.index("Create") < members.index("StartUnit")
        create = gateway.calls_to("Create")[0]
        assert create[4][2]["REDFISH_MESSAGE_ARGS"] == "Shutdown"
        assert gateway.calls_to("StartUnit")[0][4][0] == "poweroff.target"

    async def test_audit_failure_does_not_block(self, bmc, gateway):
        gateway.replies["Create"] = BusCallError("Create", "org.freedesktop.DBus.Error.ServiceUnknown")
        await bmc.start()

        await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", BMCTransition.Reboot.bus_value)

        assert len(gateway.calls_to("StartUnit")) == 1

    @pytest.mark.parametrize("value", [
        "Bogus",
        BMCTransition.NONE.bus_value,
        "xyz.openbmc_project.State.Host.Transition.Reboot",
    ])
    async def test_invalid_transition_rejected(self, bmc, gateway, value):
        await bmc.start()

        with pytest.raises(InvalidTransition):
            await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", value)

        assert gateway.calls_to("StartUnit") == []
        assert gateway.calls_to("Create") == []
        assert bmc.obj.get(BMC_IFACE, "RequestedBMCTransition") == BMCTransition.NONE.bus_value

    async def test_start_failure_is_internal_failure(self, bmc, gateway):
        gateway.replies["StartUnit"] = BusCallError("StartUnit", "org.freedesktop.systemd1.TransactionIsDestructive")
        await bmc.start()

        with pytest.raises(InternalFailure):
            await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", BMCTransition.Reboot.bus_value)

        assert bmc.state is BMCState.NotReady
        assert bmc.obj.get(BMC_IFACE, "RequestedBMCTransition") == BMCTransition.NONE.bus_value

    async def test_hard_reboot_goes_not_ready_first(self, bmc, gateway, bmc_settings):
        gateway.units[bmc_settings.standby_target] = "active"
        gateway.replies["Reboot"] = BusCallError("Reboot", "org.freedesktop.DBus.Error.AccessDenied")
        await bmc.start()
        assert bmc.state is BMCState.Ready

        with pytest.raises(InternalFailure):
            await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", "HardReboot")

        assert bmc.state is BMCState.NotReady
        assert not bmc.watching
        assert gateway.calls_to("StartUnit") == []

    async def test_hard_reboot_calls_reboot(self, bmc, gateway):
        await bmc.start()

        await bmc.obj.write(BMC_IFACE, "RequestedBMCTransition", BMCTransition.HardReboot.bus_value)

        assert len(gateway.calls_to("Reboot")) == 1
        create = gateway.calls_to("Create")[0]
        assert create[4][2]["REDFISH_MESSAGE_ARGS"] == "Force Restart"
