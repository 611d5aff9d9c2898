"""
Published Objects

In-process representation of an object this service hosts on the bus: a set
of named interfaces, each holding typed properties. Entities own one
PublishedObject and mutate it; the gateway serves reads from it and is
notified of every change so it can emit PropertiesChanged.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ..common.exceptions import StateManagerError

Setter = Callable[[Any], Awaitable[Any]]
Getter = Callable[[], Any]
ChangeListener = Callable[[str, str, dict[str, tuple[str, Any]]], None]


class PropertyNotWritable(StateManagerError):
    """External write to a read-only or unknown property"""

    bus_error = "org.freedesktop.DBus.Error.PropertyReadOnly"


@dataclass
class PublishedProperty:
    """One property; getter (derived) or value (stored), optional async setter"""
    name: str
    signature: str
    value: Any = None
    setter: Setter | None = None
    getter: Getter | None = None

    @property
    def writable(self) -> bool:
        return self.setter is not None

    def read(self) -> Any:
        return self.getter() if self.getter else self.value


class PublishedObject:
    """A bus object: path -> interfaces -> properties"""

    def __init__(self, path: str):
        self.path = path
        self.interfaces: dict[str, dict[str, PublishedProperty]] = {}
        self._listeners: list[ChangeListener] = []

    def add_property(
        self,
        interface: str,
        name: str,
        signature: str,
        value: Any = None,
        setter: Setter | None = None,
        getter: Getter | None = None,
    ) -> None:
        self.interfaces.setdefault(interface, {})[name] = PublishedProperty(
            name=name,
            signature=signature,
            value=value,
            setter=setter,
            getter=getter,
        )

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _lookup(self, interface: str, name: str) -> PublishedProperty:
        try:
            return self.interfaces[interface][name]
        except KeyError:
            raise KeyError(f"{self.path}: no property {interface}.{name}") from None

    def get(self, interface: str, name: str) -> Any:
        return self._lookup(interface, name).read()

    def set(self, interface: str, name: str, value: Any) -> bool:
        """
        Internal update, bypassing the setter.

        Returns:
            True if the stored value changed (and listeners were notified)
        """
        prop = self._lookup(interface, name)
        if prop.value == value:
            return False
        prop.value = value
        for listener in self._listeners:
            listener(self.path, interface, {name: (prop.signature, value)})
        return True

    async def write(self, interface: str, name: str, value: Any) -> Any:
        """
        External write: runs the property's setter and stores what it returns.

        Raises:
            PropertyNotWritable: unknown or read-only property
            StateManagerError: whatever the setter rejects the value with
        """
        try:
            prop = self._lookup(interface, name)
        except KeyError as e:
            raise PropertyNotWritable(str(e)) from None
        if not prop.writable:
            raise PropertyNotWritable(f"{self.path}: {interface}.{name} is read-only")

        stored = await prop.setter(value)
        self.set(interface, name, stored)
        return stored

    def snapshot(self, interface: str) -> dict[str, tuple[str, Any]]:
        """All properties of one interface as name -> (signature, value)"""
        return {
            name: (prop.signature, prop.read())
            for name, prop in self.interfaces.get(interface, {}).items()
        }


class BusEnum(str, Enum):
    """
    Enumerated property whose bus form is "<interface>.<Enum>.<Member>".

    Subclasses override bus_prefix().
    """

    @classmethod
    def bus_prefix(cls) -> str:
        raise NotImplementedError

    @property
    def bus_value(self) -> str:
        return f"{self.bus_prefix()}.{self.value}"

    @classmethod
    def from_bus(cls, value: str) -> "BusEnum":
        """
        Accept the full bus string or the bare member name.

        Raises:
            ValueError: not a member of this enumeration
        """
        if not isinstance(value, str):
            raise ValueError(f"{value!r} is not a {cls.__name__}")
        prefix = cls.bus_prefix() + "."
        if value.startswith(prefix):
            value = value[len(prefix):]
        elif "." in value:
            raise ValueError(f"{value!r} is not a {cls.__name__}")
        return cls(value)
