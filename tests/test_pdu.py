import pytest

from blekit.att.pdu import (
    InvalidArgumentError,
    InvalidResponseError,
    Opcode,
    RequestTimeoutError,
    error_response,
    response_opcode,
)
from blekit.errors import ATTError


@pytest.mark.parametrize(
    "request_op, response_op",
    [
        (Opcode.EXCHANGE_MTU_REQUEST, Opcode.EXCHANGE_MTU_RESPONSE),
        (Opcode.READ_REQUEST, Opcode.READ_RESPONSE),
        (Opcode.READ_BY_GROUP_TYPE_REQUEST, Opcode.READ_BY_GROUP_TYPE_RESPONSE),
        (Opcode.EXECUTE_WRITE_REQUEST, Opcode.EXECUTE_WRITE_RESPONSE),
        (Opcode.HANDLE_VALUE_INDICATION, Opcode.HANDLE_VALUE_CONFIRMATION),
    ],
)
def test_response_opcode_pairs(request_op, response_op):
    assert response_opcode(request_op) is response_op


def test_response_opcode_accepts_plain_int():
    assert response_opcode(int(Opcode.WRITE_REQUEST)) is Opcode.WRITE_RESPONSE


def test_commands_have_no_response():
    assert response_opcode(Opcode.WRITE_COMMAND) is None
    assert response_opcode(Opcode.HANDLE_VALUE_NOTIFICATION) is None
    assert response_opcode(0x7F) is None


def test_error_response_layout():
    pdu = error_response(Opcode.READ_REQUEST, 0x0003, ATTError.INVALID_HANDLE)
    assert pdu == bytes([0x01, 0x0A, 0x03, 0x00, 0x01])


def test_error_response_fields():
    pdu = error_response(Opcode.WRITE_REQUEST, 0xFFFF, ATTError.WRITE_NOT_PERM)
    assert len(pdu) == 5
    assert pdu[0] == Opcode.ERROR_RESPONSE
    assert pdu[1] == Opcode.WRITE_REQUEST
    assert int.from_bytes(pdu[2:4], "little") == 0xFFFF
    assert pdu[4] == ATTError.WRITE_NOT_PERM


def test_error_messages():
    assert str(InvalidArgumentError()) == "invalid argument"
    assert str(InvalidResponseError()) == "invalid response"
    assert str(RequestTimeoutError()) == "req timeout"