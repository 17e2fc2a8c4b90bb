"""Attribute Protocol opcodes, request/response pairing and error PDUs."""

from __future__ import annotations

import struct
from enum import IntEnum
from typing import Optional

from blekit.errors import ATTError

__all__ = [
    "Opcode",
    "InvalidArgumentError",
    "InvalidResponseError",
    "RequestTimeoutError",
    "response_opcode",
    "error_response",
]


class Opcode(IntEnum):
    """ATT PDU opcodes [Vol 3, Part F, 3.4.8]."""

    ERROR_RESPONSE = 0x01
    EXCHANGE_MTU_REQUEST = 0x02
    EXCHANGE_MTU_RESPONSE = 0x03
    FIND_INFORMATION_REQUEST = 0x04
    FIND_INFORMATION_RESPONSE = 0x05
    FIND_BY_TYPE_VALUE_REQUEST = 0x06
    FIND_BY_TYPE_VALUE_RESPONSE = 0x07
    READ_BY_TYPE_REQUEST = 0x08
    READ_BY_TYPE_RESPONSE = 0x09
    READ_REQUEST = 0x0A
    READ_RESPONSE = 0x0B
    READ_BLOB_REQUEST = 0x0C
    READ_BLOB_RESPONSE = 0x0D
    READ_MULTIPLE_REQUEST = 0x0E
    READ_MULTIPLE_RESPONSE = 0x0F
    READ_BY_GROUP_TYPE_REQUEST = 0x10
    READ_BY_GROUP_TYPE_RESPONSE = 0x11
    WRITE_REQUEST = 0x12
    WRITE_RESPONSE = 0x13
    PREPARE_WRITE_REQUEST = 0x16
    PREPARE_WRITE_RESPONSE = 0x17
    EXECUTE_WRITE_REQUEST = 0x18
    EXECUTE_WRITE_RESPONSE = 0x19
    HANDLE_VALUE_NOTIFICATION = 0x1B
    HANDLE_VALUE_INDICATION = 0x1D
    HANDLE_VALUE_CONFIRMATION = 0x1E
    WRITE_COMMAND = 0x52
    SIGNED_WRITE_COMMAND = 0xD2


class InvalidArgumentError(ValueError):
    """One or more of the arguments are invalid."""

    def __init__(self, message: str = "invalid argument") -> None:
        super().__init__(message)


class InvalidResponseError(Exception):
    """One or more of the response fields are invalid."""

    def __init__(self, message: str = "invalid response") -> None:
        super().__init__(message)


class RequestTimeoutError(TimeoutError):
    """A request was not acknowledged within 30 seconds [Vol 3, Part F, 3.3.3]."""

    def __init__(self, message: str = "req timeout") -> None:
        super().__init__(message)


_RESPONSE_OF = {
    Opcode.EXCHANGE_MTU_REQUEST: Opcode.EXCHANGE_MTU_RESPONSE,
    Opcode.FIND_INFORMATION_REQUEST: Opcode.FIND_INFORMATION_RESPONSE,
    Opcode.FIND_BY_TYPE_VALUE_REQUEST: Opcode.FIND_BY_TYPE_VALUE_RESPONSE,
    Opcode.READ_BY_TYPE_REQUEST: Opcode.READ_BY_TYPE_RESPONSE,
    Opcode.READ_REQUEST: Opcode.READ_RESPONSE,
    Opcode.READ_BLOB_REQUEST: Opcode.READ_BLOB_RESPONSE,
    Opcode.READ_MULTIPLE_REQUEST: Opcode.READ_MULTIPLE_RESPONSE,
    Opcode.READ_BY_GROUP_TYPE_REQUEST: Opcode.READ_BY_GROUP_TYPE_RESPONSE,
    Opcode.WRITE_REQUEST: Opcode.WRITE_RESPONSE,
    Opcode.PREPARE_WRITE_REQUEST: Opcode.PREPARE_WRITE_RESPONSE,
    Opcode.EXECUTE_WRITE_REQUEST: Opcode.EXECUTE_WRITE_RESPONSE,
    Opcode.HANDLE_VALUE_INDICATION: Opcode.HANDLE_VALUE_CONFIRMATION,
}


def response_opcode(request_opcode: int) -> Optional[Opcode]:
    """The opcode answering a request, or None if the PDU expects no answer."""
    try:
        return _RESPONSE_OF.get(Opcode(request_opcode))
    except ValueError:
        return None


def error_response(opcode: int, handle: int, code: ATTError) -> bytes:
    """Build an Error Response PDU for a failed request."""
    return struct.pack(
        "<BBHB", Opcode.ERROR_RESPONSE, opcode & 0xFF, handle & 0xFFFF, int(code) & 0xFF
    )