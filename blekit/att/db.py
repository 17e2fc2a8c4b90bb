"""The attribute database built from GATT services."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Iterator, Optional, Protocol, Sequence

from blekit.attribute import Characteristic, Descriptor, Property, Service
from blekit.attribute import ReadHandler, WriteHandler
from blekit.const import (
    CHARACTERISTIC_UUID,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    PRIMARY_SERVICE_UUID,
    reverse,
)
from blekit.errors import ATTError
from blekit.handler import Notifier, Request, ResponseWriter

__all__ = ["Attr", "DB", "CCCConnection", "CCC_NOTIFY", "CCC_INDICATE"]

logger = logging.getLogger(__name__)

CCC_NOTIFY = 0x0001
CCC_INDICATE = 0x0002


class CCCConnection(Protocol):
    """What a client characteristic configuration descriptor needs from a connection."""

    cccs: dict[int, int]
    notifiers: dict[int, Notifier]
    indicators: dict[int, Notifier]

    def notify(self, handle: int, data: bytes) -> int: ...

    def indicate(self, handle: int, data: bytes) -> int: ...


@dataclass(eq=False)
class Attr:
    """A single attribute in the database."""

    handle: int
    end_handle: int
    typ: bytes
    value: Optional[bytes] = None
    read_handler: Optional[ReadHandler] = None
    write_handler: Optional[WriteHandler] = None


class DB:
    """A contiguous range of attributes starting at a base handle."""

    def __init__(self, services: Sequence[Service], base: int = 1) -> None:
        self.base = base
        self._attrs: list[Attr] = []
        handle = base
        for service in services:
            handle, attrs = _service_attrs(service, handle)
            self._attrs.extend(attrs)
            last_decl = attrs[0]
        if services:
            last_decl.end_handle = 0xFFFF
        _dump(self._attrs)

    def at(self, handle: int) -> Optional[Attr]:
        """The attribute with the given handle, or None if out of range."""
        index = handle - self.base
        if 0 <= index < len(self._attrs):
            return self._attrs[index]
        return None

    def subrange(self, start: int, end: int) -> list[Attr]:
        """Attributes with handles in [start, end]; empty when none fall in range."""
        start_index = max(start - self.base, 0)
        if start_index >= len(self._attrs) or end + 1 < self.base:
            return []
        end_index = min(end + 1 - self.base, len(self._attrs))
        return self._attrs[start_index:end_index]

    def __iter__(self) -> Iterator[Attr]:
        return iter(self._attrs)

    def __len__(self) -> int:
        return len(self._attrs)


def _service_attrs(service: Service, handle: int) -> tuple[int, list[Attr]]:
    decl = Attr(handle, 0, PRIMARY_SERVICE_UUID, bytes(service.uuid))
    handle += 1
    attrs = [decl]
    for characteristic in service.characteristics:
        handle, more = _characteristic_attrs(characteristic, handle)
        attrs.extend(more)
    decl.end_handle = handle - 1
    return handle, attrs


def _characteristic_attrs(c: Characteristic, handle: int) -> tuple[int, list[Attr]]:
    value_handle = handle + 1
    decl = Attr(
        handle,
        0,
        CHARACTERISTIC_UUID,
        bytes((int(c.property) & 0xFF,))
        + (value_handle & 0xFFFF).to_bytes(2, "little")
        + bytes(c.uuid),
    )
    value_attr = Attr(
        value_handle, 0, bytes(c.uuid), c.value, c.read_handler, c.write_handler
    )
    c.handle = handle
    c.value_handle = value_handle
    if (c.notify_handler is not None or c.indicate_handler is not None) and c.cccd is None:
        c.cccd = _new_cccd(c)
        c.descriptors.append(c.cccd)

    handle += 2
    attrs = [decl, value_attr]
    for descriptor in c.descriptors:
        descriptor.handle = handle
        attrs.append(
            Attr(
                handle,
                0,
                bytes(descriptor.uuid),
                descriptor.value,
                descriptor.read_handler,
                descriptor.write_handler,
            )
        )
        handle += 1
    decl.end_handle = handle - 1
    c.end_handle = handle - 1
    return handle, attrs


def _dump(attrs: Sequence[Attr]) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("Generating attribute table:")
    logger.debug("handle   endh   type")
    for a in attrs:
        line = f"0x{a.handle:04X} 0x{a.end_handle:04X} 0x{reverse(a.typ).hex().upper()}"
        if a.value is not None:
            line += f" [{a.value.hex(' ').upper()}]"
        logger.debug(line)


def _new_cccd(c: Characteristic) -> Descriptor:
    descriptor = Descriptor(CLIENT_CHARACTERISTIC_CONFIG_UUID)

    def read(req: Request, rsp: ResponseWriter) -> None:
        ccc = req.conn.cccs.get(c.handle, 0)
        rsp.write(ccc.to_bytes(2, "little"))

    def start(handler, req: Request, notifier: Notifier) -> None:
        threading.Thread(target=handler, args=(req, notifier), daemon=True).start()

    def write(req: Request, rsp: ResponseWriter) -> None:
        conn = req.conn
        if len(req.data) < 2:
            rsp.status = ATTError.INVAL_ATTR_VALUE_LEN
            return
        old = conn.cccs.get(c.handle, 0)
        ccc = int.from_bytes(req.data[:2], "little")

        old_notify, old_indicate = bool(old & CCC_NOTIFY), bool(old & CCC_INDICATE)
        new_notify, new_indicate = bool(ccc & CCC_NOTIFY), bool(ccc & CCC_INDICATE)

        if new_notify and not old_notify:
            if Property.NOTIFY not in c.property or c.notify_handler is None:
                rsp.status = ATTError.UNLIKELY
                return
            notifier = Notifier(lambda data: conn.notify(c.value_handle, data))
            conn.notifiers[c.handle] = notifier
            start(c.notify_handler, req, notifier)
        if not new_notify and old_notify:
            conn.notifiers[c.handle].close()

        if new_indicate and not old_indicate:
            if Property.INDICATE not in c.property or c.indicate_handler is None:
                rsp.status = ATTError.UNLIKELY
                return
            notifier = Notifier(lambda data: conn.indicate(c.value_handle, data))
            conn.indicators[c.handle] = notifier
            start(c.indicate_handler, req, notifier)
        if not new_indicate and old_indicate:
            conn.indicators[c.handle].close()

        conn.cccs[c.handle] = ccc

    descriptor.handle_read(read)
    descriptor.handle_write(write)
    return descriptor