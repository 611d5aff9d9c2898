"""
Common Utilities

Shared modules used across all services:
- config.py - Manager configuration and readiness rule dataclasses
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- state.py - Versioned persisted host snapshot
- health.py - Health endpoint server
"""

from .config import (
    ManagerConfig,
    BusSettings,
    AuditSettings,
    BMCSettings,
    HostSettings,
    ChassisSettings,
    ReadinessSettings,
    PowerRestoreSettings,
    LoggingSettings,
    Combinator,
    Condition,
    StateRule,
    RuleSet,
    load_manager_config,
    read_manager_config,
    load_rule_set,
)
from .exceptions import (
    StateManagerError,
    InvalidTransition,
    InvalidPropertyValue,
    InternalFailure,
    ResolutionFailure,
    ConfigError,
    BusCallError,
    TransientBusError,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    configure_levels,
    log_transition,
    log_state_change,
    log_evaluation,
)
from .state import (
    PersistedRecord,
    RecordVersion,
    HostStateStore,
)

__all__ = [
    # Config
    "ManagerConfig",
    "BusSettings",
    "AuditSettings",
    "BMCSettings",
    "HostSettings",
    "ChassisSettings",
    "ReadinessSettings",
    "PowerRestoreSettings",
    "LoggingSettings",
    "Combinator",
    "Condition",
    "StateRule",
    "RuleSet",
    "load_manager_config",
    "read_manager_config",
    "load_rule_set",
    # Exceptions
    "StateManagerError",
    "InvalidTransition",
    "InvalidPropertyValue",
    "InternalFailure",
    "ResolutionFailure",
    "ConfigError",
    "BusCallError",
    "TransientBusError",
    # Logging
    "setup_logging",
    "get_service_logger",
    "configure_levels",
    "log_transition",
    "log_state_change",
    "log_evaluation",
    # Persistence
    "PersistedRecord",
    "RecordVersion",
    "HostStateStore",
]
