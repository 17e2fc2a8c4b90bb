"""GATT services, characteristics and descriptors as held in a local database.

UUIDs are little-endian bytes. Read and write handlers are callables taking
``(request, response)``; notify handlers take ``(request, notifier)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntFlag
from typing import Callable, Optional

from blekit.handler import Notifier, Request, ResponseWriter

__all__ = [
    "Property",
    "ReadHandler",
    "WriteHandler",
    "NotifyHandler",
    "Descriptor",
    "Characteristic",
    "Service",
]

ReadHandler = Callable[[Request, ResponseWriter], None]
WriteHandler = Callable[[Request, ResponseWriter], None]
NotifyHandler = Callable[[Request, Notifier], None]


class Property(IntFlag):
    """Characteristic properties [Vol 3, Part G, 3.3.1.1]."""

    BROADCAST = 0x01
    READ = 0x02
    WRITE_NR = 0x04
    WRITE = 0x08
    NOTIFY = 0x10
    INDICATE = 0x20
    SIGNED_WRITE = 0x40
    EXTENDED = 0x80


@dataclass(eq=False)
class Descriptor:
    """A characteristic descriptor."""

    uuid: bytes
    handle: int = 0
    value: Optional[bytes] = None
    read_handler: Optional[ReadHandler] = None
    write_handler: Optional[WriteHandler] = None

    def set_value(self, value: bytes) -> "Descriptor":
        """Give the descriptor a static value."""
        self.value = bytes(value)
        return self

    def handle_read(self, handler: ReadHandler) -> "Descriptor":
        """Serve reads with ``handler``."""
        self.read_handler = handler
        return self

    def handle_write(self, handler: WriteHandler) -> "Descriptor":
        """Serve writes with ``handler``."""
        self.write_handler = handler
        return self


@dataclass(eq=False)
class Characteristic:
    """A characteristic with its value, handlers and descriptors."""

    uuid: bytes
    property: Property = Property(0)
    handle: int = 0
    value_handle: int = 0
    end_handle: int = 0
    value: Optional[bytes] = None
    descriptors: list[Descriptor] = field(default_factory=list)
    cccd: Optional[Descriptor] = None
    read_handler: Optional[ReadHandler] = None
    write_handler: Optional[WriteHandler] = None
    notify_handler: Optional[NotifyHandler] = None
    indicate_handler: Optional[NotifyHandler] = None

    def new_descriptor(self, uuid: bytes) -> Descriptor:
        """Create a descriptor, add it to this characteristic and return it."""
        descriptor = Descriptor(bytes(uuid))
        self.descriptors.append(descriptor)
        return descriptor

    def set_value(self, value: bytes) -> "Characteristic":
        """Give the characteristic a static, readable value."""
        self.property |= Property.READ
        self.value = bytes(value)
        return self

    def handle_read(self, handler: ReadHandler) -> "Characteristic":
        """Serve reads with ``handler``."""
        self.property |= Property.READ
        self.read_handler = handler
        return self

    def handle_write(self, handler: WriteHandler) -> "Characteristic":
        """Serve writes and write commands with ``handler``."""
        self.property |= Property.WRITE | Property.WRITE_NR
        self.write_handler = handler
        return self

    def handle_notify(self, handler: NotifyHandler) -> "Characteristic":
        """Serve notification subscriptions with ``handler``."""
        self.property |= Property.NOTIFY
        self.notify_handler = handler
        return self

    def handle_indicate(self, handler: NotifyHandler) -> "Characteristic":
        """Serve indication subscriptions with ``handler``."""
        self.property |= Property.INDICATE
        self.indicate_handler = handler
        return self


@dataclass(eq=False)
class Service:
    """A primary service and its characteristics."""

    uuid: bytes
    handle: int = 0
    end_handle: int = 0
    characteristics: list[Characteristic] = field(default_factory=list)

    def add_characteristic(self, characteristic: Characteristic) -> Characteristic:
        """Add a characteristic to the service and return it."""
        self.characteristics.append(characteristic)
        return characteristic

    def new_characteristic(self, uuid: bytes) -> Characteristic:
        """Create a characteristic, add it to the service and return it."""
        return self.add_characteristic(Characteristic(bytes(uuid)))