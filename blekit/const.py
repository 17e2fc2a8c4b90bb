"""Protocol constants and well-known 16-bit UUIDs.

UUIDs are held as little-endian bytes, as they travel over the air.
"""

from __future__ import annotations

__all__ = [
    "DEFAULT_MTU",
    "MAX_MTU",
    "uuid16",
    "reverse",
    "GAP_UUID",
    "GATT_UUID",
    "CURRENT_TIME_UUID",
    "DEVICE_INFO_UUID",
    "BATTERY_UUID",
    "HID_UUID",
    "PRIMARY_SERVICE_UUID",
    "SECONDARY_SERVICE_UUID",
    "INCLUDE_UUID",
    "CHARACTERISTIC_UUID",
    "CLIENT_CHARACTERISTIC_CONFIG_UUID",
    "SERVER_CHARACTERISTIC_CONFIG_UUID",
    "DEVICE_NAME_UUID",
    "APPEARANCE_UUID",
    "PERIPHERAL_PRIVACY_UUID",
    "RECONNECTION_ADDR_UUID",
    "PREFERRED_PARAMS_UUID",
    "SERVICE_CHANGED_UUID",
]

# Default ATT_MTU, including the 3-byte ATT header.
DEFAULT_MTU = 23

# Maximum ATT_MTU: 512 bytes of attribute value plus the 3-byte header.
MAX_MTU = 512 + 3


def uuid16(value: int) -> bytes:
    """Return the little-endian encoding of a 16-bit UUID."""
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"16-bit UUID out of range: {value:#x}")
    return value.to_bytes(2, "little")


def reverse(data: bytes) -> bytes:
    """Return the bytes in reverse order."""
    return bytes(reversed(data))


GAP_UUID = uuid16(0x1800)
GATT_UUID = uuid16(0x1801)
CURRENT_TIME_UUID = uuid16(0x1805)
DEVICE_INFO_UUID = uuid16(0x180A)
BATTERY_UUID = uuid16(0x180F)
HID_UUID = uuid16(0x1812)

PRIMARY_SERVICE_UUID = uuid16(0x2800)
SECONDARY_SERVICE_UUID = uuid16(0x2801)
INCLUDE_UUID = uuid16(0x2802)
CHARACTERISTIC_UUID = uuid16(0x2803)

CLIENT_CHARACTERISTIC_CONFIG_UUID = uuid16(0x2902)
SERVER_CHARACTERISTIC_CONFIG_UUID = uuid16(0x2903)

DEVICE_NAME_UUID = uuid16(0x2A00)
APPEARANCE_UUID = uuid16(0x2A01)
PERIPHERAL_PRIVACY_UUID = uuid16(0x2A02)
RECONNECTION_ADDR_UUID = uuid16(0x2A03)
PREFERRED_PARAMS_UUID = uuid16(0x2A04)
SERVICE_CHANGED_UUID = uuid16(0x2A05)