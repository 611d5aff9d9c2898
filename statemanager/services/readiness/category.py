"""
Readiness Categories

One published object per rule set, at <object_root>/<last segment of
TypeInCategory>. The kind of category is picked from the rule set's
interface name and only decides which extra "type" property is published
next to the state property.

Every write to a category's properties is mirrored into the local property
cache, so categories that depend on each other read those values without
calling back into this process.
"""

import asyncio
from enum import Enum

from ...bus.gateway import OBJECT_MANAGER_IFACE, PROPERTIES_IFACE, BusGateway, Signal
from ...bus.objects import PublishedObject
from ...bus.resolver import PropertyResolver
from ...bus.router import SignalMatch, SignalRouter
from ...common.config import RuleSet
from ...common.exceptions import StateManagerError
from ...common.logging_setup import get_service_logger, log_evaluation
from .evaluator import Evaluation, evaluate

logger = get_service_logger("readiness.category")


class CategoryKind(Enum):
    """Category variants: marker in the interface name, type property"""
    FEATURE = ("FeatureReady", "FeatureType")
    DEVICE = ("DeviceReady", "DeviceType")
    INTERFACE = ("InterfaceReady", "InterfaceType")
    SERVICE = ("ServiceReady", "ServiceType")
    CHASSIS_POWER = ("State.Chassis", None)

    def __init__(self, marker: str, type_property: str | None):
        self.marker = marker
        self.type_property = type_property

    @classmethod
    def for_interface(cls, interface_name: str) -> "CategoryKind | None":
        for kind in cls:
            if kind.marker in interface_name:
                return kind
        return None


class ReadinessCategory:
    """
    A configured readiness entity.

    Usage:
        category = ReadinessCategory(rules, gateway, router, resolver, object_root)
        await category.start()
    """

    def __init__(
        self,
        rules: RuleSet,
        gateway: BusGateway,
        router: SignalRouter,
        resolver: PropertyResolver,
        object_root: str,
    ):
        kind = CategoryKind.for_interface(rules.interface_name)
        if kind is None:
            raise ValueError(f"unsupported category interface {rules.interface_name}")

        self.rules = rules
        self.kind = kind
        self.path = f"{object_root.rstrip('/')}/{rules.object_name}"
        self.entity_id = f"readiness:{self.path}"
        self.last: Evaluation | None = None

        self._gateway = gateway
        self._router = router
        self._resolver = resolver
        self._lock = asyncio.Lock()

        self.obj = PublishedObject(self.path)
        self.obj.add_property(rules.interface_name, rules.state_property, "s", rules.default_state)
        if kind.type_property:
            self.obj.add_property(rules.interface_name, kind.type_property, "s", rules.category_type)

        # object path -> monitored interfaces at that path
        self._watched: dict[str, set[str]] = {}
        for path, interface in rules.watched_pairs():
            self._watched.setdefault(path, set()).add(interface)

    @property
    def state(self) -> str:
        return self.obj.get(self.rules.interface_name, self.rules.state_property)

    async def start(self) -> None:
        """
        Follow changes, publish the default state, then evaluate once.

        Raises:
            StateManagerError: a match rule was rejected; nothing is published
        """
        try:
            await self._subscribe()
        except StateManagerError:
            await self.stop()
            raise

        self._publish(self.rules.state_property, self.rules.default_state)
        if self.kind.type_property:
            self._publish(self.kind.type_property, self.rules.category_type)
        self._gateway.export(self.obj)

        await self.evaluate()

    async def _subscribe(self) -> None:
        for path, interface in self.rules.watched_pairs():
            await self._router.subscribe(
                self.entity_id,
                SignalMatch(
                    member="PropertiesChanged",
                    interface=PROPERTIES_IFACE,
                    path=path,
                    arg0=interface,
                ),
                self._on_properties_changed,
            )
        for path in self._watched:
            await self._router.subscribe(
                self.entity_id,
                SignalMatch(
                    member="InterfacesAdded",
                    interface=OBJECT_MANAGER_IFACE,
                    arg0path=path,
                ),
                self._on_interfaces_added,
            )

    async def stop(self) -> None:
        await self._router.unsubscribe(self.entity_id)

    async def evaluate(self) -> Evaluation:
        """Run one evaluation round and publish its result"""
        async with self._lock:
            result = await evaluate(self.rules, self._resolver.get)
            log_evaluation(logger, self.rules.object_name, result.outcome.value, result.state)
            if result.reason:
                logger.debug(f"{self.rules.object_name}: {result.reason}")
            self._publish(self.rules.state_property, result.state)
            self.last = result
            return result

    def _publish(self, name: str, value: str) -> None:
        self.obj.set(self.rules.interface_name, name, value)
        self._resolver.cache.update(self.path, name, value)

    async def _on_properties_changed(self, signal: Signal) -> None:
        logger.debug(
            f"{self.rules.object_name}: {signal.path} changed",
            extra={"sender": signal.sender},
        )
        await self.evaluate()

    async def _on_interfaces_added(self, signal: Signal) -> None:
        if len(signal.body) < 2:
            return
        path, interfaces = signal.body[0], signal.body[1]
        if self._watched.get(path, set()) & set(interfaces):
            logger.debug(f"{self.rules.object_name}: {path} appeared")
            await self.evaluate()

    def status(self) -> dict:
        return {
            "path": self.path,
            "state": self.state,
            "outcome": self.last.outcome.value if self.last else None,
        }
