"""
Reboot Cause Classifier

Works out why the BMC last came up:
- the pinhole-reset GPIO line wins when it reads 1
- otherwise the watchdog bootstatus flags decide (external reset vs power-on)
- anything unreadable is Unknown

Also answers whether the chassis saw an AC power loss, which the power
restore policy gates on.
"""

import glob
from pathlib import Path

from ...bus.objects import BusEnum
from ...common.logging_setup import get_service_logger

logger = get_service_logger("system.reboot_cause")

# Watchdog bootstatus flags (linux/watchdog.h)
WDIOF_EXTERN1 = 0x0004
WDIOF_CARDRESET = 0x0020


class RebootCause(BusEnum):
    """Why the BMC last rebooted"""
    POR = "POR"
    PinholeReset = "PinholeReset"
    Watchdog = "Watchdog"
    Unknown = "Unknown"

    @classmethod
    def bus_prefix(cls) -> str:
        return "xyz.openbmc_project.State.BMC.RebootCause"


def read_pinhole_gpio(line_name: str) -> bool:
    """
    True if the named GPIO line is found and reads active.

    A missing line or chip is not an error: most platforms have no pinhole.
    """
    import gpiod
    from gpiod.line import Direction, Value

    for chip_path in sorted(glob.glob("/dev/gpiochip*")):
        if not gpiod.is_gpiochip_device(chip_path):
            continue
        try:
            with gpiod.Chip(chip_path) as chip:
                try:
                    offset = chip.line_offset_from_id(line_name)
                except (OSError, ValueError):
                    continue
                with chip.request_lines(
                    consumer="bmc-state-manager",
                    config={offset: gpiod.LineSettings(direction=Direction.INPUT)},
                ) as request:
                    return request.get_value(offset) == Value.ACTIVE
        except OSError as e:
            logger.error(f"Failed to read GPIO {line_name} on {chip_path}: {e}")
            return False

    logger.debug(f"GPIO line {line_name} not present")
    return False


def read_bootstatus(path: str | Path) -> int | None:
    """Watchdog bootstatus value, or None if it cannot be read"""
    try:
        return int(Path(path).read_text().strip())
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read watchdog bootstatus {path}: {e}")
        return None


def classify_bootstatus(value: int | None) -> RebootCause:
    if value == WDIOF_EXTERN1:
        return RebootCause.Watchdog
    if value == WDIOF_CARDRESET:
        return RebootCause.POR
    return RebootCause.Unknown


def classify_reboot_cause(
    bootstatus_path: str | Path,
    pinhole_line: str | None = None,
) -> RebootCause:
    """Most likely reason for the last BMC reboot"""
    if pinhole_line and read_pinhole_gpio(pinhole_line):
        return RebootCause.PinholeReset
    return classify_bootstatus(read_bootstatus(bootstatus_path))


def check_ac_loss(lost_power_file_template: str, chassis_id: int = 0) -> bool:
    """True if the chassis recorded an AC power loss before this boot"""
    return Path(lost_power_file_template.format(id=chassis_id)).exists()
