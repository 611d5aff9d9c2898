"""
System Tools

One-shot programs run during BMC boot:
- reboot_cause.py - Classify why the BMC last rebooted
- host_check.py - Detect a host left running across a BMC reboot
- power_restore.py - Apply the host power restore policy

Only the reboot cause helpers are re-exported here; the BMC service imports
them, and the two tools import the BMC and host packages.
"""

from .reboot_cause import RebootCause, classify_reboot_cause, check_ac_loss

__all__ = ["RebootCause", "classify_reboot_cause", "check_ac_loss"]
