"""
BMC State Service

Responsibilities:
- Publish CurrentBMCState from the multi-user and quiesce targets
- Accept RequestedBMCTransition and start the matching target
- Record an audit entry with the reason before any reboot
- Report LastRebootTime and LastRebootCause
"""

from .bmc import BMC, BMCState, BMCTransition
from .service import BMCStateService

__all__ = ["BMC", "BMCState", "BMCTransition", "BMCStateService"]
