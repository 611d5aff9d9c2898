"""
Bus Gateway

Contract every bus implementation provides to the state machines and the
readiness engine: method calls, signal match rules,
property get/set and object export. Well-known names of the peers we talk
to live here as well.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from .objects import PublishedObject

PROPERTIES_IFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_IFACE = "org.freedesktop.DBus.ObjectManager"
INTROSPECTABLE_IFACE = "org.freedesktop.DBus.Introspectable"

MAPPER_SERVICE = "xyz.openbmc_project.ObjectMapper"
MAPPER_PATH = "/xyz/openbmc_project/object_mapper"
MAPPER_IFACE = "xyz.openbmc_project.ObjectMapper"

SYSTEMD_SERVICE = "org.freedesktop.systemd1"
SYSTEMD_PATH = "/org/freedesktop/systemd1"
SYSTEMD_MANAGER_IFACE = "org.freedesktop.systemd1.Manager"
SYSTEMD_UNIT_IFACE = "org.freedesktop.systemd1.Unit"

LOGGING_SERVICE = "xyz.openbmc_project.Logging"
LOGGING_PATH = "/xyz/openbmc_project/logging"
LOGGING_CREATE_IFACE = "xyz.openbmc_project.Logging.Create"


@dataclass
class Signal:
    """An inbound bus signal with its body already unwrapped to Python values"""
    path: str
    interface: str
    member: str
    body: list = field(default_factory=list)
    sender: str | None = None


SignalCallback = Callable[[Signal], None]
SetSubmitter = Callable[[Callable[[], Awaitable[Any]]], "Awaitable[Any]"]


class BusGateway(ABC):
    """Send/receive primitives on the IPC bus"""

    def __init__(self):
        self._signal_callback: SignalCallback | None = None
        self._set_submitter: SetSubmitter | None = None
        self.owned_names: set[str] = set()

    @property
    @abstractmethod
    def unique_name(self) -> str:
        """Connection's unique bus name"""

    @abstractmethod
    async def call(
        self,
        service: str,
        path: str,
        interface: str,
        member: str,
        signature: str = "",
        body: list | None = None,
        timeout: float | None = None,
    ) -> list:
        """
        Method call awaiting the reply.

        Returns:
            Reply body, variants unwrapped

        Raises:
            BusCallError: error reply or timeout
        """

    @abstractmethod
    async def get_property(
        self,
        service: str,
        path: str,
        interface: str,
        prop: str,
        timeout: float | None = None,
    ) -> Any:
        """org.freedesktop.DBus.Properties.Get, value unwrapped"""

    @abstractmethod
    async def set_property(
        self,
        service: str,
        path: str,
        interface: str,
        prop: str,
        signature: str,
        value: Any,
    ) -> None:
        """org.freedesktop.DBus.Properties.Set"""

    @abstractmethod
    async def add_match(self, rule: str) -> None:
        """Register a signal match rule with the bus daemon"""

    @abstractmethod
    async def remove_match(self, rule: str) -> None:
        """Drop a previously added match rule"""

    @abstractmethod
    async def request_name(self, name: str) -> None:
        """Own a well-known name"""

    @abstractmethod
    def export(self, obj: "PublishedObject") -> None:
        """Serve obj's properties and emit its change signals"""

    def on_signal(self, callback: SignalCallback) -> None:
        """Route every inbound signal to callback"""
        self._signal_callback = callback

    def on_set_request(self, submitter: SetSubmitter) -> None:
        """Run external property writes through submitter (the dispatcher)"""
        self._set_submitter = submitter

    def is_self(self, service: str) -> bool:
        """True if service names this very connection"""
        return service == self.unique_name or service in self.owned_names

    async def close(self) -> None:
        """Release the connection"""
