"""
Custom Exception Classes for the State Manager

Hierarchical exception structure for error handling across services.
Errors that travel back to a bus caller carry the bus error name they are
reported under.
"""

# Bus error names used when an exception is surfaced to a remote caller
ERROR_INVALID_ARGUMENT = "xyz.openbmc_project.Common.Error.InvalidArgument"
ERROR_INTERNAL_FAILURE = "xyz.openbmc_project.Common.Error.InternalFailure"


class StateManagerError(Exception):
    """Base exception for all state manager errors"""

    bus_error = ERROR_INTERNAL_FAILURE

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class InvalidTransition(StateManagerError):
    """Requested transition is unknown, not allowed, or has no target"""

    bus_error = ERROR_INVALID_ARGUMENT

    def __init__(self, entity: str, value: str):
        self.entity = entity
        self.value = value
        super().__init__(f"Invalid transition for {entity}: {value!r}")


class InternalFailure(StateManagerError):
    """A service-manager call needed by a transition failed"""

    def __init__(self, message: str, entity: str | None = None):
        self.entity = entity
        super().__init__(f"Internal failure: {message}", recoverable=False)


class ResolutionFailure(StateManagerError):
    """A monitored property could not be fetched"""

    def __init__(
        self,
        message: str,
        path: str | None = None,
        interface: str | None = None,
        prop: str | None = None,
    ):
        self.path = path
        self.interface = interface
        self.prop = prop
        super().__init__(f"Resolution failed: {message}")


class ConfigError(StateManagerError):
    """Configuration-related errors"""

    bus_error = ERROR_INVALID_ARGUMENT

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        prefix = f"Config Error [{source}]" if source else "Config Error"
        super().__init__(f"{prefix}: {message}")


class BusCallError(StateManagerError):
    """A method call on the bus returned an error or timed out"""

    def __init__(self, member: str, error_name: str, detail: str = ""):
        self.member = member
        self.error_name = error_name
        self.detail = detail
        super().__init__(f"{member} failed: {error_name} {detail}".rstrip())


class TransientBusError(StateManagerError):
    """The bus (or the object mapper) is not ready yet"""

    def __init__(self, message: str):
        super().__init__(f"Bus not ready: {message}", recoverable=True)


class InvalidPropertyValue(StateManagerError):
    """An external write carried a value the property does not accept"""

    bus_error = ERROR_INVALID_ARGUMENT

    def __init__(self, prop: str, value):
        self.prop = prop
        self.value = value
        super().__init__(f"Invalid value for {prop}: {value!r}")
