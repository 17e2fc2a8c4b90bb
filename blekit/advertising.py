"""Crafting and parsing advertising packets and scan responses.

Refer to Supplement to Bluetooth Core Specification, Part A.
UUIDs are little-endian bytes, as they appear on air.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from blekit.const import reverse, uuid16

__all__ = [
    "MAX_EIR_PACKET_LENGTH",
    "FLAG_LIMITED_DISCOVERABLE",
    "FLAG_GENERAL_DISCOVERABLE",
    "FLAG_LE_ONLY",
    "FLAG_BOTH_CONTROLLER",
    "FLAG_BOTH_HOST",
    "TYPE_FLAGS",
    "TYPE_SOME_UUID16",
    "TYPE_ALL_UUID16",
    "TYPE_SOME_UUID32",
    "TYPE_ALL_UUID32",
    "TYPE_SOME_UUID128",
    "TYPE_ALL_UUID128",
    "TYPE_SHORT_NAME",
    "TYPE_COMPLETE_NAME",
    "TYPE_TX_POWER",
    "TYPE_SERVICE_SOL16",
    "TYPE_SERVICE_SOL128",
    "TYPE_SERVICE_DATA16",
    "TYPE_SERVICE_SOL32",
    "TYPE_SERVICE_DATA32",
    "TYPE_SERVICE_DATA128",
    "TYPE_MANUFACTURER_DATA",
    "ServiceData",
    "NotFitError",
    "InvalidFieldError",
    "Field",
    "Packet",
    "new_packet",
    "new_raw_packet",
    "raw",
    "ibeacon_data",
    "ibeacon",
    "flags",
    "short_name",
    "complete_name",
    "manufacturer_data",
    "all_uuid",
    "some_uuid",
    "service_data16",
]

# Maximum length of an advertising packet or scan response.
MAX_EIR_PACKET_LENGTH = 31

# Advertising flags.
FLAG_LIMITED_DISCOVERABLE = 0x01
FLAG_GENERAL_DISCOVERABLE = 0x02
FLAG_LE_ONLY = 0x04
FLAG_BOTH_CONTROLLER = 0x08
FLAG_BOTH_HOST = 0x10

# Advertising data types.
TYPE_FLAGS = 0x01
TYPE_SOME_UUID16 = 0x02
TYPE_ALL_UUID16 = 0x03
TYPE_SOME_UUID32 = 0x04
TYPE_ALL_UUID32 = 0x05
TYPE_SOME_UUID128 = 0x06
TYPE_ALL_UUID128 = 0x07
TYPE_SHORT_NAME = 0x08
TYPE_COMPLETE_NAME = 0x09
TYPE_TX_POWER = 0x0A
TYPE_CLASS_OF_DEVICE = 0x0D
TYPE_SIMPLE_PAIRING_C192 = 0x0E
TYPE_SIMPLE_PAIRING_R192 = 0x0F
TYPE_SEC_MANAGER_TK = 0x10
TYPE_SEC_MANAGER_OOB = 0x11
TYPE_SLAVE_CONN_INT = 0x12
TYPE_SERVICE_SOL16 = 0x14
TYPE_SERVICE_SOL128 = 0x15
TYPE_SERVICE_DATA16 = 0x16
TYPE_PUB_TARGET_ADDR = 0x17
TYPE_RAND_TARGET_ADDR = 0x18
TYPE_APPEARANCE = 0x19
TYPE_ADV_INTERVAL = 0x1A
TYPE_LE_DEVICE_ADDR = 0x1B
TYPE_LE_ROLE = 0x1C
TYPE_SERVICE_SOL32 = 0x1F
TYPE_SERVICE_DATA32 = 0x20
TYPE_SERVICE_DATA128 = 0x21
TYPE_LE_SEC_CONFIRM = 0x22
TYPE_LE_SEC_RANDOM = 0x23
TYPE_MANUFACTURER_DATA = 0xFF

_APPLE_COMPANY_ID = 0x004C


@dataclass(frozen=True)
class ServiceData:
    """Data advertised for a service UUID."""

    uuid: bytes
    data: bytes


class NotFitError(ValueError):
    """A field does not fit into the packet."""

    def __init__(self, message: str = "data not fit") -> None:
        super().__init__(message)


class InvalidFieldError(ValueError):
    """A field was given an invalid argument."""

    def __init__(self, message: str = "invalid argument") -> None:
        super().__init__(message)


Field = Callable[["Packet"], None]


def _uuid_list(data: bytes, width: int) -> list[bytes]:
    return [data[i : i + width] for i in range(0, len(data) - width + 1, width)]


class Packet:
    """An advertising packet or scan response."""

    def __init__(self, data: bytes = b"") -> None:
        self._data = bytearray(data)

    def __bytes__(self) -> bytes:
        return bytes(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Packet({bytes(self._data).hex()})"

    def append(self, field: Field) -> None:
        """Append a field; raise NotFitError, leaving the packet intact, if it does not fit."""
        field(self)

    def _append(self, typ: int, payload: bytes) -> None:
        if len(self._data) + 2 + len(payload) > MAX_EIR_PACKET_LENGTH:
            raise NotFitError()
        self._data += bytes((len(payload) + 1, typ)) + bytes(payload)

    def _append_raw(self, data: bytes) -> None:
        if len(self._data) + len(data) > MAX_EIR_PACKET_LENGTH:
            raise NotFitError()
        self._data += data

    def _records(self) -> Iterator[tuple[int, bytes]]:
        """Yield (type, payload) of well-formed records, stopping at a malformed one."""
        data = bytes(self._data)
        pos = 0
        while len(data) - pos >= 2:
            length, typ = data[pos], data[pos + 1]
            if length < 1 or len(data) - pos < 1 + length:
                return
            yield typ, data[pos + 2 : pos + 1 + length]
            pos += 1 + length

    def field(self, typ: int) -> Optional[bytes]:
        """Payload of the first field of a type, or None if it is absent."""
        return next((payload for t, payload in self._records() if t == typ), None)

    def fields(self, typ: int) -> list[bytes]:
        """Payloads of every field of a type; zero-length records are skipped."""
        data = bytes(self._data)
        found = []
        pos = 0
        while len(data) - pos >= 2:
            length, t = data[pos], data[pos + 1]
            if length < 1:
                pos += 1
                continue
            if len(data) - pos < 1 + length:
                break
            if t == typ:
                found.append(data[pos + 2 : pos + 1 + length])
            pos += 1 + length
        return found

    def flags(self) -> Optional[int]:
        """The advertising flags, or None if absent."""
        payload = self.field(TYPE_FLAGS)
        return payload[0] if payload else None

    def local_name(self) -> str:
        """The short name if present, otherwise the complete name, otherwise ''."""
        payload = self.field(TYPE_SHORT_NAME)
        if payload is None:
            payload = self.field(TYPE_COMPLETE_NAME) or b""
        return payload.decode("utf-8", errors="replace")

    def tx_power(self) -> Optional[int]:
        """The signed Tx power level in dBm, or None if absent."""
        payload = self.field(TYPE_TX_POWER)
        if not payload:
            return None
        return int.from_bytes(payload[:1], "little", signed=True)

    def uuids(self) -> list[bytes]:
        """Service UUIDs from all incomplete and complete UUID lists."""
        widths = (
            (TYPE_SOME_UUID16, 2),
            (TYPE_ALL_UUID16, 2),
            (TYPE_SOME_UUID32, 4),
            (TYPE_ALL_UUID32, 4),
            (TYPE_SOME_UUID128, 16),
            (TYPE_ALL_UUID128, 16),
        )
        return [
            uuid
            for typ, width in widths
            for t, payload in self._records()
            if t == typ
            for uuid in _uuid_list(payload, width)
        ]

    def service_sol(self) -> list[bytes]:
        """Service solicitation UUIDs."""
        result: list[bytes] = []
        for typ, width in (
            (TYPE_SERVICE_SOL16, 2),
            (TYPE_SERVICE_SOL32, 4),
            (TYPE_SERVICE_SOL128, 16),
        ):
            payload = self.field(typ)
            if payload is not None:
                result.extend(_uuid_list(payload, width))
        return result

    def service_data(self) -> list[ServiceData]:
        """Service data for 16, 32 and 128-bit service UUIDs."""
        result = []
        for typ, width in (
            (TYPE_SERVICE_DATA16, 2),
            (TYPE_SERVICE_DATA32, 4),
            (TYPE_SERVICE_DATA128, 16),
        ):
            payload = self.field(typ)
            if payload is not None and len(payload) >= width:
                result.append(ServiceData(payload[:width], payload[width:]))
        return result

    def manufacturer_data(self, *keys: int) -> Optional[bytes]:
        """Manufacturer data, optionally the first field whose company id matches keys[0]."""
        if not keys:
            return self.field(TYPE_MANUFACTURER_DATA)
        key = (keys[0] & 0xFFFF).to_bytes(2, "little")
        return next(
            (
                md
                for md in self.fields(TYPE_MANUFACTURER_DATA)
                if len(md) > 2 and md[:2] == key
            ),
            None,
        )


def new_packet(*args: Field) -> Packet:
    """Build a packet from fields."""
    packet = Packet()
    for field in args:
        packet.append(field)
    return packet


def new_raw_packet(*args: bytes) -> Packet:
    """Build a packet from raw byte chunks."""
    return Packet(b"".join(bytes(chunk) for chunk in args))


def raw(data: bytes) -> Field:
    """A field appending raw bytes as they are."""

    def apply(packet: Packet) -> None:
        packet._append_raw(bytes(data))

    return apply


def manufacturer_data(company_id: int, data: bytes) -> Field:
    """Manufacturer specific data, prefixed by the little-endian company id."""

    def apply(packet: Packet) -> None:
        packet._append(
            TYPE_MANUFACTURER_DATA,
            (company_id & 0xFFFF).to_bytes(2, "little") + bytes(data),
        )

    return apply


def ibeacon_data(data: bytes) -> Field:
    """iBeacon manufacturer data."""
    return manufacturer_data(_APPLE_COMPANY_ID, data)


def ibeacon(uuid: bytes, major: int, minor: int, power: int) -> Field:
    """An iBeacon advertisement; ``uuid`` must be a 128-bit UUID."""

    def apply(packet: Packet) -> None:
        if len(uuid) != 16:
            raise InvalidFieldError()
        md = (
            bytes((0x02, 0x15))
            + reverse(uuid)
            + (major & 0xFFFF).to_bytes(2, "big")
            + (minor & 0xFFFF).to_bytes(2, "big")
            + bytes((power & 0xFF,))
        )
        manufacturer_data(_APPLE_COMPANY_ID, md)(packet)

    return apply


def flags(value: int) -> Field:
    """The advertising flags field."""

    def apply(packet: Packet) -> None:
        packet._append(TYPE_FLAGS, bytes((value & 0xFF,)))

    return apply


def short_name(name: str) -> Field:
    """A shortened local name."""

    def apply(packet: Packet) -> None:
        packet._append(TYPE_SHORT_NAME, name.encode("utf-8"))

    return apply


def complete_name(name: str) -> Field:
    """A complete local name."""

    def apply(packet: Packet) -> None:
        packet._append(TYPE_COMPLETE_NAME, name.encode("utf-8"))

    return apply


def _uuid_field(uuid: bytes, types: tuple[int, int, int]) -> Field:
    def apply(packet: Packet) -> None:
        typ16, typ32, typ128 = types
        typ = {2: typ16, 4: typ32}.get(len(uuid), typ128)
        packet._append(typ, bytes(uuid))

    return apply


def all_uuid(uuid: bytes) -> Field:
    """A one-entry complete list of service UUIDs."""
    return _uuid_field(uuid, (TYPE_ALL_UUID16, TYPE_ALL_UUID32, TYPE_ALL_UUID128))


def some_uuid(uuid: bytes) -> Field:
    """A one-entry incomplete list of service UUIDs."""
    return _uuid_field(uuid, (TYPE_SOME_UUID16, TYPE_SOME_UUID32, TYPE_SOME_UUID128))


def service_data16(uuid: int, data: bytes) -> Field:
    """Service data for a 16-bit service UUID, preceded by that UUID's list field."""

    def apply(packet: Packet) -> None:
        encoded = uuid16(uuid)
        packet._append(TYPE_ALL_UUID16, encoded)
        packet._append(TYPE_SERVICE_DATA16, encoded + bytes(data))

    return apply