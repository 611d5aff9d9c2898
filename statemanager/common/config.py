"""
Configuration Dataclasses

Type-safe configuration structures for the state manager services.

Two kinds of configuration exist:
- The manager configuration (YAML): bus names, object paths, systemd target
  names, persistence locations and timeouts.
- Readiness rule files (JSON, one per category): declarative conditions from
  which a composite readiness state is derived.
"""

import os
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("config")

CONFIG_ENV_VAR = "STATEMGR_CONFIG"


class Combinator(str, Enum):
    """How a list of booleans is folded into one"""
    AND = "AND"
    OR = "OR"
    SINGLE = "SINGLE"


@dataclass
class BusSettings:
    """Bus connection settings"""
    call_timeout_s: float = 25.0


@dataclass
class AuditSettings:
    """Logging-service client settings"""
    timeout_s: float = 10.0  # strict, so a failing logger cannot stall a reboot
    grace_s: float = 2.0     # time given to the logger before a reboot/poweroff


@dataclass
class BMCSettings:
    """BMC state manager settings"""
    bus_name: str = "xyz.openbmc_project.State.BMC"
    object_path: str = "/xyz/openbmc_project/state/bmc0"
    standby_target: str = "multi-user.target"
    quiesce_target: str = "obmc-bmc-service-quiesce@0.target"
    bootstatus_path: str = "/sys/class/watchdog/watchdog0/bootstatus"
    pinhole_gpio: str = "reset-cause-pinhole"
    health_port: int = 8091


def _default_state_targets() -> dict[str, str]:
    return {
        "Off": "obmc-host-stop@{id}.target",
        "Running": "obmc-host-startmin@{id}.target",
        "Quiesced": "obmc-host-quiesce@{id}.target",
        "DiagnosticMode": "obmc-host-diagnostic-mode@{id}.target",
    }


def _default_transition_targets() -> dict[str, str]:
    return {
        "Off": "obmc-host-shutdown@{id}.target",
        "On": "obmc-host-start@{id}.target",
        "Reboot": "obmc-host-reboot@{id}.target",
        "GracefulWarmReboot": "obmc-host-warm-reboot@{id}.target",
        "ForceWarmReboot": "obmc-host-force-warm-reboot@{id}.target",
    }


@dataclass
class HostSettings:
    """Host state manager settings ({id} is replaced by the host id)"""
    bus_name: str = "xyz.openbmc_project.State.Host"
    object_path_template: str = "/xyz/openbmc_project/state/host{id}"
    boot_count_max_allowed: int = 3
    persist_dir: str = "/var/lib/statemanager/host"
    allowed_transitions: list[str] = field(default_factory=lambda: [
        "Off", "On", "Reboot", "GracefulWarmReboot", "ForceWarmReboot",
    ])
    state_targets: dict[str, str] = field(default_factory=_default_state_targets)
    transition_targets: dict[str, str] = field(default_factory=_default_transition_targets)
    crash_target: str = "obmc-host-crash@{id}.target"
    host_running_file: str = "/run/openbmc/host@{id}-on"
    settings_root: str = "/xyz/openbmc_project/control/host{id}"
    health_port: int = 8092

    def object_path(self, host_id: int) -> str:
        return self.object_path_template.format(id=host_id)

    def bus_name_for(self, host_id: int) -> str:
        return f"{self.bus_name}{host_id}" if host_id else self.bus_name


@dataclass
class ChassisSettings:
    """Chassis lookups used by the system tools"""
    bus_name: str = "xyz.openbmc_project.State.Chassis"
    object_path_template: str = "/xyz/openbmc_project/state/chassis{id}"
    lost_power_file: str = "/run/openbmc/chassis@{id}-lost-power"


@dataclass
class ReadinessSettings:
    """Configurable (readiness) state manager settings"""
    bus_name: str = "xyz.openbmc_project.State.ConfigurableStateManager"
    object_root: str = "/xyz/openbmc_project/state/configurableStateManager"
    rules_dir: str = "/usr/share/configurable-state-manager"
    health_port: int = 8093


@dataclass
class PowerRestoreSettings:
    """Power restore policy runner settings"""
    only_on_ac_loss: bool = False
    bmc_ready_timeout_s: int = 120


@dataclass
class LoggingSettings:
    """Log output configuration"""
    level: str = "INFO"
    json_format: bool = True


@dataclass
class ManagerConfig:
    """Complete manager configuration"""
    bus: BusSettings = field(default_factory=BusSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    bmc: BMCSettings = field(default_factory=BMCSettings)
    host: HostSettings = field(default_factory=HostSettings)
    chassis: ChassisSettings = field(default_factory=ChassisSettings)
    readiness: ReadinessSettings = field(default_factory=ReadinessSettings)
    power_restore: PowerRestoreSettings = field(default_factory=PowerRestoreSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source: str = ""


def _section(cls: type, data: Any, name: str) -> Any:
    """Build a settings dataclass from a mapping, rejecting unknown keys"""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"unknown keys in '{name}': {sorted(unknown)}")

    return cls(**data)


def load_manager_config(data: dict, source: str = "") -> ManagerConfig:
    """Load ManagerConfig from dictionary (e.g., from the YAML file)"""
    data = data or {}
    return ManagerConfig(
        bus=_section(BusSettings, data.get("bus"), "bus"),
        audit=_section(AuditSettings, data.get("audit"), "audit"),
        bmc=_section(BMCSettings, data.get("bmc"), "bmc"),
        host=_section(HostSettings, data.get("host"), "host"),
        chassis=_section(ChassisSettings, data.get("chassis"), "chassis"),
        readiness=_section(ReadinessSettings, data.get("readiness"), "readiness"),
        power_restore=_section(PowerRestoreSettings, data.get("power_restore"), "power_restore"),
        logging=_section(LoggingSettings, data.get("logging"), "logging"),
        source=source,
    )


def find_config_path() -> Path | None:
    """Find the manager configuration file"""
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override)

    possible_paths = [
        Path("/etc/statemanager/config.yaml"),
        Path("/usr/share/statemanager/config.yaml"),
        Path(__file__).parent.parent.parent / "config" / "config.yaml",
    ]
    for path in possible_paths:
        if path.exists():
            return path
    return None


def read_manager_config(path: str | Path | None = None) -> ManagerConfig:
    """
    Read the manager configuration from YAML.

    A missing file gives the built-in defaults; a file that cannot be read or
    parsed raises ConfigError.
    """
    config_path = Path(path) if path else find_config_path()
    if config_path is None or not config_path.exists():
        logger.warning(f"No configuration file at {config_path}, using defaults")
        return ManagerConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read file: {e}", source=str(config_path)) from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse YAML: {e}", source=str(config_path)) from e

    if not isinstance(data, dict):
        raise ConfigError("top level must be a mapping", source=str(config_path))

    return load_manager_config(data, source=str(config_path))


# Readiness rules

@dataclass
class Condition:
    """One property comparison, applied to every monitored path of an interface"""
    interface: str
    property: str
    value: str
    logic: str = ""  # AND, OR, "" (single)


@dataclass
class StateRule:
    """A candidate state and the conditions that select it"""
    name: str
    conditions: list[Condition] = field(default_factory=list)
    logic: str = ""


@dataclass
class RuleSet:
    """One readiness category, loaded from one rule file"""
    interface_name: str
    category_type: str
    monitored: dict[str, list[str]]
    state_property: str
    default_state: str
    error_state: str
    states: list[StateRule] = field(default_factory=list)
    source: str = ""

    @property
    def object_name(self) -> str:
        """Leaf object name: the part of the category type after the last dot"""
        return self.category_type.rsplit(".", 1)[-1]

    def watched_pairs(self) -> list[tuple[str, str]]:
        """Every (object path, interface) pair this category depends on"""
        return [
            (path, interface)
            for interface, paths in self.monitored.items()
            for path in paths
        ]


def _require_str(data: dict, key: str, where: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise ConfigError(f"{where}: '{key}' must be a string")
    return value


def load_rule_set(data: dict, source: str = "") -> RuleSet:
    """
    Load a RuleSet from a parsed rule file.

    Declaration order of the "States" object is preserved; it is the
    evaluation order.
    """
    if not isinstance(data, dict):
        raise ConfigError("rule file must contain an object", source=source)

    try:
        interface_name = _require_str(data, "InterfaceName", "root")
        category_type = _require_str(data, "TypeInCategory", "root")

        monitored_raw = data["ServicesToBeMonitored"]
        if not isinstance(monitored_raw, dict):
            raise ConfigError("'ServicesToBeMonitored' must be an object")
        monitored: dict[str, list[str]] = {}
        for interface, paths in monitored_raw.items():
            if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
                raise ConfigError(f"monitored paths for {interface} must be a list of strings")
            monitored[interface] = list(paths)

        state_section = data["State"]
        if not isinstance(state_section, dict):
            raise ConfigError("'State' must be an object")

        states: list[StateRule] = []
        states_raw = state_section["States"]
        if not isinstance(states_raw, dict):
            raise ConfigError("'State.States' must be an object")

        for state_name, state_data in states_raw.items():
            conditions = [
                Condition(
                    interface=interface,
                    property=_require_str(cond, "Property", f"{state_name}/{interface}"),
                    value=_require_str(cond, "Value", f"{state_name}/{interface}"),
                    logic=cond.get("Logic", ""),
                )
                for interface, cond in state_data["Conditions"].items()
            ]
            states.append(StateRule(
                name=state_name,
                conditions=conditions,
                logic=state_data.get("Logic", ""),
            ))

        return RuleSet(
            interface_name=interface_name,
            category_type=category_type,
            monitored=monitored,
            state_property=_require_str(state_section, "State_property", "State"),
            default_state=_require_str(state_section, "Default", "State"),
            error_state=_require_str(state_section, "ConditionsFallback", "State"),
            states=states,
            source=source,
        )

    except ConfigError as e:
        if e.source is None:
            raise ConfigError(e.message.removeprefix("Config Error: "), source=source) from e
        raise
    except (KeyError, TypeError, AttributeError) as e:
        raise ConfigError(f"missing or malformed field: {e}", source=source) from e
