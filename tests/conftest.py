"""
Global test configuration and fixtures for the statemanager test suite.

FakeGateway stands in for the bus: method calls are answered from scripted
replies, properties from a dictionary, and everything sent is recorded.
"""

import asyncio

import pytest

from statemanager.bus.audit import AuditLogger
from statemanager.bus.gateway import (
    SYSTEMD_MANAGER_IFACE,
    SYSTEMD_PATH,
    SYSTEMD_SERVICE,
    SYSTEMD_UNIT_IFACE,
    BusGateway,
    Signal,
)
from statemanager.bus.resolver import PropertyResolver
from statemanager.bus.router import SignalRouter
from statemanager.bus.systemd import SystemdManager
from statemanager.common.config import AuditSettings, BMCSettings, HostSettings, ManagerConfig
from statemanager.common.exceptions import BusCallError
from statemanager.common.state import HostStateStore

NO_SUCH_UNIT = "org.freedesktop.systemd1.NoSuchUnit"
NOT_FOUND = "xyz.openbmc_project.Common.Error.ResourceNotFound"


class FakeGateway(BusGateway):
    """In-memory bus gateway recording every outbound call"""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple] = []
        self.replies: dict[str, object] = {}
        self.properties: dict[tuple[str, str, str], object] = {}
        self.set_calls: list[tuple] = []
        self.matches: list[str] = []
        self.exported = []
        self.units: dict[str, str] = {}
        self.owners: dict[str, str] = {}
        self.subtree: dict = {}

    @property
    def unique_name(self) -> str:
        return ":1.42"

    def members(self) -> list[str]:
        return [c[3] for c in self.calls]

    def calls_to(self, member: str) -> list[tuple]:
        return [c for c in self.calls if c[3] == member]

    async def call(self, service, path, interface, member, signature="", body=None, timeout=None):
        body = body or []
        self.calls.append((service, path, interface, member, body))

        reply = self.replies.get(member)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(body)
        if reply is not None:
            return reply

        if member == "GetUnit":
            if body[0] not in self.units:
                raise BusCallError(member, NO_SUCH_UNIT, body[0])
            return [f"/org/freedesktop/systemd1/unit/{body[0]}"]
        if member == "StartUnit":
            return ["/org/freedesktop/systemd1/job/1"]
        if member == "GetObject":
            owner = self.owners.get(body[0])
            if owner is None:
                raise BusCallError(member, NOT_FOUND, body[0])
            return [{owner: body[1]}]
        if member == "GetSubTree":
            return [self.subtree]
        return []

    async def get_property(self, service, path, interface, prop, timeout=None):
        if service == SYSTEMD_SERVICE and interface == SYSTEMD_UNIT_IFACE:
            unit = path.rsplit("/", 1)[-1]
            return self.units[unit]

        value = self.properties.get((path, interface, prop))
        if isinstance(value, Exception):
            raise value
        if value is None:
            raise BusCallError("Get", NOT_FOUND, f"{path} {interface}.{prop}")
        return value

    async def set_property(self, service, path, interface, prop, signature, value):
        self.set_calls.append((service, path, interface, prop, signature, value))
        self.properties[(path, interface, prop)] = value

    async def add_match(self, rule: str) -> None:
        self.matches.append(rule)

    async def remove_match(self, rule: str) -> None:
        self.matches.remove(rule)

    async def request_name(self, name: str) -> None:
        self.owned_names.add(name)

    def export(self, obj) -> None:
        self.exported.append(obj)


def job_removed(unit: str, result: str = "done") -> Signal:
    return Signal(
        path=SYSTEMD_PATH,
        interface=SYSTEMD_MANAGER_IFACE,
        member="JobRemoved",
        body=[1, "/org/freedesktop/systemd1/job/1", unit, result],
    )


def job_new(unit: str) -> Signal:
    return Signal(
        path=SYSTEMD_PATH,
        interface=SYSTEMD_MANAGER_IFACE,
        member="JobNew",
        body=[1, "/org/freedesktop/systemd1/job/1", unit],
    )


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def router(gateway):
    return SignalRouter(gateway)


@pytest.fixture
def systemd(gateway):
    return SystemdManager(gateway)


@pytest.fixture
def audit(gateway):
    return AuditLogger(gateway, AuditSettings(timeout_s=1.0, grace_s=0.0))


@pytest.fixture
def resolver(gateway):
    return PropertyResolver(gateway)


@pytest.fixture
def bmc_settings():
    return BMCSettings()


@pytest.fixture
def host_settings(tmp_path):
    return HostSettings(
        persist_dir=str(tmp_path / "persist"),
        host_running_file=str(tmp_path / "run" / "host@{id}-on"),
    )


@pytest.fixture
def store(host_settings):
    return HostStateStore(host_settings.persist_dir, 0)


@pytest.fixture
def manager_config(tmp_path, host_settings):
    config = ManagerConfig(host=host_settings)
    config.chassis.lost_power_file = str(tmp_path / "run" / "chassis@{id}-lost-power")
    return config


@pytest.fixture
def mapper_owner(gateway):
    """Register the owning service of an object path with the fake mapper"""
    def register(path: str, service: str = "xyz.openbmc_project.Settings"):
        gateway.owners[path] = service
    return register
