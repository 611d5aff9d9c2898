"""
Property Resolver

Fetches properties of other bus objects for the readiness engine and the
system tools.

Properties this process hosts itself are never fetched over the bus: the
dispatcher is busy running the caller, so a call to ourselves could not be
answered. Those are read from LocalPropertyCache instead, which readiness
categories update on every write.
"""

from typing import Any

from ..common.exceptions import ResolutionFailure, StateManagerError
from ..common.logging_setup import get_service_logger
from .gateway import MAPPER_IFACE, MAPPER_PATH, MAPPER_SERVICE, BusGateway

logger = get_service_logger("bus.resolver")


class LocalPropertyCache:
    """
    Object path -> {property -> value} for objects hosted by this process.

    Single writer: only code running on the dispatch worker mutates it.
    """

    def __init__(self):
        self._entries: dict[str, dict[str, Any]] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._entries

    def update(self, path: str, prop: str, value: Any) -> None:
        self._entries.setdefault(path, {})[prop] = value

    def lookup(self, path: str, prop: str) -> Any:
        """Raises KeyError if the path or property is not cached"""
        return self._entries[path][prop]

    def paths(self) -> list[str]:
        return list(self._entries)


class PropertyResolver:
    """Service lookup through the object mapper, then Properties.Get"""

    def __init__(
        self,
        gateway: BusGateway,
        cache: LocalPropertyCache | None = None,
        timeout: float | None = None,
    ):
        self._gateway = gateway
        self._cache = cache if cache is not None else LocalPropertyCache()
        self._timeout = timeout

    @property
    def cache(self) -> LocalPropertyCache:
        return self._cache

    async def get(self, path: str, interface: str, prop: str) -> Any:
        """
        Resolve one property value.

        Raises:
            ResolutionFailure: no owner, self-hosted but not cached, bus error
                or timeout
        """
        if path in self._cache:
            try:
                return self._cache.lookup(path, prop)
            except KeyError:
                raise ResolutionFailure(
                    f"{prop} not cached for {path}",
                    path=path, interface=interface, prop=prop,
                ) from None

        service = await self.get_service(path, interface)
        if self._gateway.is_self(service):
            raise ResolutionFailure(
                f"{path} is hosted by this process but not cached",
                path=path, interface=interface, prop=prop,
            )

        try:
            return await self._gateway.get_property(
                service, path, interface, prop, timeout=self._timeout,
            )
        except StateManagerError as e:
            raise ResolutionFailure(
                f"Get {interface}.{prop} on {path}: {e}",
                path=path, interface=interface, prop=prop,
            ) from e

    async def get_service(self, path: str, interface: str) -> str:
        """First service the mapper reports for (path, interface)"""
        try:
            reply = await self._gateway.call(
                MAPPER_SERVICE, MAPPER_PATH, MAPPER_IFACE,
                "GetObject", "sas", [path, [interface]],
                timeout=self._timeout,
            )
        except StateManagerError as e:
            raise ResolutionFailure(
                f"mapper lookup of {path}: {e}", path=path, interface=interface,
            ) from e

        services = reply[0] if reply else None
        if not isinstance(services, dict) or not services:
            raise ResolutionFailure(
                f"no service implements {interface} at {path}",
                path=path, interface=interface,
            )
        return next(iter(services))

    async def set(self, path: str, interface: str, prop: str, signature: str, value: Any) -> None:
        """
        Write a property on whichever service hosts it.

        Raises:
            ResolutionFailure: owner lookup failed
            BusCallError: the Set call failed
        """
        service = await self.get_service(path, interface)
        await self._gateway.set_property(service, path, interface, prop, signature, value)

    async def get_subtree(
        self,
        interface: str,
        root: str = "/",
        depth: int = 0,
    ) -> dict[str, dict[str, list[str]]]:
        """
        Every object under root implementing interface.

        Returns:
            path -> {service -> [interfaces]}; bus errors propagate
        """
        reply = await self._gateway.call(
            MAPPER_SERVICE, MAPPER_PATH, MAPPER_IFACE,
            "GetSubTree", "sias", [root, depth, [interface]],
            timeout=self._timeout,
        )
        return reply[0] if reply else {}
