"""
D-Bus Gateway

BusGateway implementation on dbus-fast (asyncio, system bus).

Objects are served by a raw message handler rather than dbus-fast's
ServiceInterface classes: property writes have to run through the
dispatcher and may fail with our own error names, so the reply to a Set is
sent only once the entity has finished with it.
"""

import asyncio
from typing import Any

from dbus_fast import (
    BusType,
    Message,
    MessageFlag,
    MessageType,
    PropertyAccess,
    Variant,
)
from dbus_fast import introspection as intr
from dbus_fast.aio import MessageBus

from ..common.exceptions import BusCallError, StateManagerError, TransientBusError
from ..common.logging_setup import get_service_logger
from .gateway import (
    INTROSPECTABLE_IFACE,
    OBJECT_MANAGER_IFACE,
    PROPERTIES_IFACE,
    BusGateway,
    Signal,
)
from .objects import PublishedObject

logger = get_service_logger("bus.dbus")

DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_IFACE = "org.freedesktop.DBus"

ERROR_UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
ERROR_UNKNOWN_PROPERTY = "org.freedesktop.DBus.Error.UnknownProperty"
ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
ERROR_TIMEOUT = "org.freedesktop.DBus.Error.Timeout"
ERROR_DISCONNECTED = "org.freedesktop.DBus.Error.Disconnected"
ERROR_FAILED = "org.freedesktop.DBus.Error.Failed"


def unwrap(value: Any) -> Any:
    """Replace every Variant in a reply body with its plain value"""
    if isinstance(value, Variant):
        return unwrap(value.value)
    if isinstance(value, list):
        return [unwrap(v) for v in value]
    if isinstance(value, dict):
        return {k: unwrap(v) for k, v in value.items()}
    return value


def _wrap_props(props: dict[str, tuple[str, Any]]) -> dict[str, Variant]:
    return {name: Variant(sig, value) for name, (sig, value) in props.items()}


class DbusGateway(BusGateway):
    """Bus gateway over a dbus-fast MessageBus"""

    def __init__(self, bus: MessageBus, call_timeout: float | None = None,
                 object_manager_path: str = "/"):
        super().__init__()
        self._bus = bus
        self._call_timeout = call_timeout
        self._object_manager_path = object_manager_path
        self._objects: dict[str, PublishedObject] = {}
        self._pending: set[asyncio.Task] = set()
        bus.add_message_handler(self._on_message)

    @classmethod
    async def connect(
        cls,
        call_timeout: float | None = None,
        bus_type: BusType = BusType.SYSTEM,
        object_manager_path: str = "/",
    ) -> "DbusGateway":
        """
        Connect to the bus.

        Raises:
            TransientBusError: the bus daemon cannot be reached
        """
        try:
            bus = await MessageBus(bus_type=bus_type).connect()
        except (OSError, EOFError, ValueError) as e:
            raise TransientBusError(str(e)) from e
        logger.info(f"Connected to bus as {bus.unique_name}")
        return cls(bus, call_timeout=call_timeout, object_manager_path=object_manager_path)

    @property
    def unique_name(self) -> str:
        return self._bus.unique_name or ""

    # Outbound

    async def call(self, service, path, interface, member, signature="", body=None, timeout=None):
        msg = Message(
            destination=service,
            path=path,
            interface=interface,
            member=member,
            signature=signature,
            body=body or [],
        )
        timeout = timeout if timeout is not None else self._call_timeout
        try:
            reply = await asyncio.wait_for(self._bus.call(msg), timeout)
        except asyncio.TimeoutError:
            raise BusCallError(member, ERROR_TIMEOUT, f"{service} {path}") from None
        except (OSError, EOFError) as e:
            raise BusCallError(member, ERROR_DISCONNECTED, str(e)) from e

        if reply is None:
            return []
        if reply.message_type == MessageType.ERROR:
            detail = reply.body[0] if reply.body else ""
            raise BusCallError(member, reply.error_name or ERROR_FAILED, str(detail))
        return unwrap(list(reply.body))

    async def get_property(self, service, path, interface, prop, timeout=None):
        reply = await self.call(
            service, path, PROPERTIES_IFACE, "Get", "ss", [interface, prop],
            timeout=timeout,
        )
        if not reply:
            raise BusCallError("Get", ERROR_FAILED, f"empty reply for {interface}.{prop}")
        return reply[0]

    async def set_property(self, service, path, interface, prop, signature, value):
        await self.call(
            service, path, PROPERTIES_IFACE, "Set", "ssv",
            [interface, prop, Variant(signature, value)],
        )

    async def add_match(self, rule: str) -> None:
        await self.call(DBUS_SERVICE, DBUS_PATH, DBUS_IFACE, "AddMatch", "s", [rule])

    async def remove_match(self, rule: str) -> None:
        await self.call(DBUS_SERVICE, DBUS_PATH, DBUS_IFACE, "RemoveMatch", "s", [rule])

    async def request_name(self, name: str) -> None:
        await self._bus.request_name(name)
        self.owned_names.add(name)
        logger.info(f"Acquired bus name {name}")

    async def close(self) -> None:
        self._bus.disconnect()

    # Export

    def export(self, obj: PublishedObject) -> None:
        self._objects[obj.path] = obj
        obj.add_listener(self._emit_properties_changed)
        self._send_signal(
            self._object_manager_path, OBJECT_MANAGER_IFACE, "InterfacesAdded",
            "oa{sa{sv}}",
            [obj.path, {iface: _wrap_props(obj.snapshot(iface)) for iface in obj.interfaces}],
        )
        logger.debug(f"Exported {obj.path}")

    def _emit_properties_changed(self, path: str, interface: str,
                                 changed: dict[str, tuple[str, Any]]) -> None:
        self._send_signal(
            path, PROPERTIES_IFACE, "PropertiesChanged", "sa{sv}as",
            [interface, _wrap_props(changed), []],
        )

    def _send_signal(self, path: str, interface: str, member: str,
                     signature: str, body: list) -> None:
        try:
            self._bus.send(Message.new_signal(path, interface, member, signature, body))
        except Exception as e:
            logger.error(f"Failed to emit {member} on {path}: {e}")

    # Inbound

    def _on_message(self, msg: Message) -> Message | bool | None:
        if msg.message_type == MessageType.SIGNAL:
            if self._signal_callback is not None:
                self._signal_callback(Signal(
                    path=msg.path,
                    interface=msg.interface,
                    member=msg.member,
                    body=unwrap(list(msg.body)),
                    sender=msg.sender,
                ))
            return None

        if msg.message_type != MessageType.METHOD_CALL:
            return None

        if msg.interface == PROPERTIES_IFACE and msg.path in self._objects:
            return self._handle_properties(msg, self._objects[msg.path])
        if msg.interface == INTROSPECTABLE_IFACE and msg.member == "Introspect":
            return self._handle_introspect(msg)
        if (msg.interface == OBJECT_MANAGER_IFACE and msg.member == "GetManagedObjects"
                and msg.path == self._object_manager_path):
            return Message.new_method_return(msg, "a{oa{sa{sv}}}", [{
                path: {iface: _wrap_props(obj.snapshot(iface)) for iface in obj.interfaces}
                for path, obj in self._objects.items()
            }])
        return None

    def _handle_properties(self, msg: Message, obj: PublishedObject) -> Message | bool:
        if msg.member == "GetAll":
            interface = msg.body[0]
            return Message.new_method_return(msg, "a{sv}", [_wrap_props(obj.snapshot(interface))])

        if msg.member == "Get":
            interface, name = msg.body[0], msg.body[1]
            props = obj.interfaces.get(interface)
            if props is None:
                return Message.new_error(msg, ERROR_UNKNOWN_INTERFACE, interface)
            if name not in props:
                return Message.new_error(msg, ERROR_UNKNOWN_PROPERTY, name)
            prop = props[name]
            return Message.new_method_return(msg, "v", [Variant(prop.signature, prop.read())])

        if msg.member == "Set":
            task = asyncio.ensure_future(self._handle_set(msg, obj))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return True

        return Message.new_error(msg, ERROR_UNKNOWN_METHOD, msg.member or "")

    async def _handle_set(self, msg: Message, obj: PublishedObject) -> None:
        interface, name, variant = msg.body[0], msg.body[1], msg.body[2]
        value = unwrap(variant)

        async def job():
            return await obj.write(interface, name, value)

        try:
            if self._set_submitter is not None:
                await self._set_submitter(job)
            else:
                await job()
            reply = Message.new_method_return(msg)
        except StateManagerError as e:
            reply = Message.new_error(msg, e.bus_error, e.message)
        except Exception as e:
            logger.error(f"Unhandled error writing {interface}.{name}: {e}", exc_info=True)
            reply = Message.new_error(msg, ERROR_FAILED, str(e))

        if not msg.flags & MessageFlag.NO_REPLY_EXPECTED:
            self._bus.send(reply)

    def _handle_introspect(self, msg: Message) -> Message | None:
        path = msg.path
        prefix = path.rstrip("/") + "/"
        children = sorted({
            p[len(prefix):].split("/", 1)[0]
            for p in self._objects
            if p.startswith(prefix)
        })
        obj = self._objects.get(path)
        if obj is None and not children:
            return None

        node = intr.Node.default(path)
        for child in children:
            node.nodes.append(intr.Node(child))
        if obj is not None:
            for iface_name, props in obj.interfaces.items():
                node.interfaces.append(intr.Interface(iface_name, properties=[
                    intr.Property(
                        p.name,
                        p.signature,
                        PropertyAccess.READWRITE if p.writable else PropertyAccess.READ,
                    )
                    for p in props.values()
                ]))
        return Message.new_method_return(msg, "s", [node.tostring()])
