"""
Host State Service

Responsibilities:
- Track CurrentHostState from systemd job signals
- Accept RequestedHostTransition and start the matching target
- Keep the auto-reboot budget (AttemptsLeft / RetryAttempts)
- Persist requested transition, boot progress and OS status
"""

from .host import Host, HostState, HostTransition, RestartCause, ProgressStages, OSStatus
from .service import HostStateService

__all__ = [
    "Host",
    "HostState",
    "HostTransition",
    "RestartCause",
    "ProgressStages",
    "OSStatus",
    "HostStateService",
]
