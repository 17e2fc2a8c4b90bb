"""Attribute Protocol error codes and library errors."""

from __future__ import annotations

from enum import IntEnum

__all__ = [
    "ATTError",
    "AttError",
    "EIRPacketTooLongError",
    "DefaultDeviceError",
    "att_error_message",
]


class ATTError(IntEnum):
    """Error codes of the Attribute Protocol [Vol 3, Part F, 3.4.1.1]."""

    SUCCESS = 0x00
    INVALID_HANDLE = 0x01
    READ_NOT_PERM = 0x02
    WRITE_NOT_PERM = 0x03
    INVALID_PDU = 0x04
    AUTHENTICATION = 0x05
    REQ_NOT_SUPP = 0x06
    INVALID_OFFSET = 0x07
    AUTHORIZATION = 0x08
    PREP_QUEUE_FULL = 0x09
    ATTR_NOT_FOUND = 0x0A
    ATTR_NOT_LONG = 0x0B
    INSUFF_ENCR_KEY_SIZE = 0x0C
    INVAL_ATTR_VALUE_LEN = 0x0D
    UNLIKELY = 0x0E
    INSUFF_ENC = 0x0F
    UNSUPP_GRP_TYPE = 0x10
    INSUFF_RESOURCES = 0x11


_NAMES = {
    ATTError.SUCCESS: "success",
    ATTError.INVALID_HANDLE: "invalid handle",
    ATTError.READ_NOT_PERM: "read not permitted",
    ATTError.WRITE_NOT_PERM: "write not permitted",
    ATTError.INVALID_PDU: "invalid PDU",
    ATTError.AUTHENTICATION: "insufficient authentication",
    ATTError.REQ_NOT_SUPP: "request not supported",
    ATTError.INVALID_OFFSET: "invalid offset",
    ATTError.AUTHORIZATION: "insufficient authorization",
    ATTError.PREP_QUEUE_FULL: "prepare queue full",
    ATTError.ATTR_NOT_FOUND: "attribute not found",
    ATTError.ATTR_NOT_LONG: "attribute not long",
    ATTError.INSUFF_ENCR_KEY_SIZE: "insufficient encryption key size",
    ATTError.INVAL_ATTR_VALUE_LEN: "invalid attribute value length",
    ATTError.UNLIKELY: "unlikely error",
    ATTError.INSUFF_ENC: "insufficient encryption",
    ATTError.UNSUPP_GRP_TYPE: "unsupported group type",
    ATTError.INSUFF_RESOURCES: "insufficient resources",
}


def att_error_message(code: int) -> str:
    """Describe an ATT error code."""
    i = int(code)
    if 0 <= i < 0x11:
        return _NAMES[ATTError(i)]
    if 0x12 <= i <= 0x7F or 0xA0 <= i <= 0xDF:
        return f"reserved error code (0x{i:02X})"
    if 0x80 <= i <= 0x9F:
        return f"application error code (0x{i:02X})"
    if 0xE0 <= i <= 0xFF:
        return "profile or service error"
    return "unknown error"


class AttError(Exception):
    """An error reported by an ATT peer or handler."""

    def __init__(self, code: int) -> None:
        value = int(code)
        if not 0 <= value <= 0xFF:
            raise ValueError(f"ATT error code out of range: {value}")
        try:
            self.code: int = ATTError(value)
        except ValueError:
            self.code = value
        super().__init__(att_error_message(value))


class EIRPacketTooLongError(ValueError):
    """An advertising or scan response packet is too long."""

    def __init__(self, message: str = "max packet length is 31") -> None:
        super().__init__(message)


class DefaultDeviceError(RuntimeError):
    """No default device has been set."""

    def __init__(self, message: str = "default device is not set") -> None:
        super().__init__(message)