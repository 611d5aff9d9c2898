"""
Test Suite for Reboot Cause Classification
"""

import pytest

from statemanager.services.system import reboot_cause
from statemanager.services.system.reboot_cause import (
    RebootCause,
    check_ac_loss,
    classify_bootstatus,
    classify_reboot_cause,
    read_bootstatus,
)


@pytest.fixture
def bootstatus(tmp_path):
    def write(value: str):
        path = tmp_path / "bootstatus"
        path.write_text(value)
        return path
    return write


class TestBootstatus:
    @pytest.mark.parametrize("value, cause", [
        (4, RebootCause.Watchdog),
        (32, RebootCause.POR),
        (0, RebootCause.Unknown),
        (None, RebootCause.Unknown),
    ])
    def test_classify(self, value, cause):
        assert classify_bootstatus(value) is cause

    def test_read_decimal(self, bootstatus):
        assert read_bootstatus(bootstatus("32\n")) == 32

    def test_unreadable(self, tmp_path, bootstatus):
        assert read_bootstatus(tmp_path / "absent") is None
        assert read_bootstatus(bootstatus("garbage")) is None


class TestClassifyRebootCause:
    def test_watchdog(self, bootstatus):
        assert classify_reboot_cause(bootstatus("4")) is RebootCause.Watchdog

    def test_pinhole_wins(self, bootstatus, monkeypatch):
        monkeypatch.setattr(reboot_cause, "read_pinhole_gpio", lambda line: True)

        assert classify_reboot_cause(bootstatus("4"), "reset-cause-pinhole") is RebootCause.PinholeReset

    def test_pinhole_inactive(self, bootstatus, monkeypatch):
        monkeypatch.setattr(reboot_cause, "read_pinhole_gpio", lambda line: False)

        assert classify_reboot_cause(bootstatus("32"), "reset-cause-pinhole") is RebootCause.POR

    def test_no_bootstatus_is_unknown(self, tmp_path):
        assert classify_reboot_cause(tmp_path / "absent") is RebootCause.Unknown

    def test_bus_value(self):
        assert RebootCause.Watchdog.bus_value == "xyz.openbmc_project.State.BMC.RebootCause.Watchdog"
        assert RebootCause.from_bus(RebootCause.POR.bus_value) is RebootCause.POR


class TestAcLoss:
    def test_lost_power_file(self, tmp_path):
        template = str(tmp_path / "chassis@{id}-lost-power")
        (tmp_path / "chassis@0-lost-power").touch()

        assert check_ac_loss(template, 0)
        assert not check_ac_loss(template, 1)
