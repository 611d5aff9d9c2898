"""
Bus Layer

Everything that talks to the message bus:
- gateway.py - Abstract gateway contract and well-known names
- dbus.py - dbus-fast implementation (imported directly by the services)
- objects.py - Published objects, properties and bus enums
- router.py - Signal match rules and the dispatch worker
- resolver.py - Property lookup through the object mapper and local cache
- systemd.py - systemd manager client
- audit.py - Logging-service client for audit entries
"""

from .audit import AuditLogger
from .gateway import BusGateway, Signal
from .objects import BusEnum, PropertyNotWritable, PublishedObject, PublishedProperty
from .resolver import LocalPropertyCache, PropertyResolver
from .router import SignalMatch, SignalRouter
from .systemd import SystemdManager

__all__ = [
    "AuditLogger",
    "BusGateway",
    "Signal",
    "BusEnum",
    "PropertyNotWritable",
    "PublishedObject",
    "PublishedProperty",
    "LocalPropertyCache",
    "PropertyResolver",
    "SignalMatch",
    "SignalRouter",
    "SystemdManager",
]
