"""
State Manager

Platform state services for a BMC:
- bmc - BMC readiness, reboot requests and last reboot cause
- host - Host power transitions, boot progress and auto-reboot budget
- readiness - Configurable readiness categories driven by JSON rules
- system - One-shot boot tools (host check, power restore policy)
"""

__version__ = "1.0.0"
