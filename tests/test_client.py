import queue
import struct
import threading
import time

import pytest

from blekit.att.client import Client
from blekit.att.pdu import (
    InvalidArgumentError,
    InvalidResponseError,
    Opcode,
    RequestTimeoutError,
    error_response,
)
from blekit.errors import ATTError, AttError


class FakeConn:
    def __init__(self, responder=None):
        self.rx_mtu = 23
        self.tx_mtu = 23
        self.written = []
        self._lock = threading.Lock()
        self._inbound = queue.Queue()
        self._responder = responder or (lambda pdu: [])

    def write(self, data):
        data = bytes(data)
        with self._lock:
            self.written.append(data)
        for reply in self._responder(data):
            self._inbound.put(reply)
        return len(data)

    def read(self, size):
        return self._inbound.get()

    def push(self, pdu):
        self._inbound.put(pdu)

    def close(self):
        self._inbound.put(b"")

    def sent(self):
        with self._lock:
            return list(self.written)


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def make_client(request):
    def factory(responder=None, handler=None):
        conn = FakeConn(responder)
        client = Client(conn, handler)
        thread = threading.Thread(target=client.loop, daemon=True)
        thread.start()

        def finish():
            conn.close()
            thread.join(timeout=2)

        request.addfinalizer(finish)
        return client, conn, thread

    return factory


def reply_with(*replies):
    def responder(pdu):
        if pdu[0] in (Opcode.HANDLE_VALUE_CONFIRMATION, Opcode.ERROR_RESPONSE):
            return []
        return list(replies)

    return responder


def test_exchange_mtu_updates_connection(make_client):
    client, conn, _ = make_client(reply_with(struct.pack("<BH", Opcode.EXCHANGE_MTU_RESPONSE, 100)))
    assert client.exchange_mtu(200) == 100
    assert conn.tx_mtu == 100
    assert conn.rx_mtu == 200
    assert conn.sent()[0] == struct.pack("<BH", Opcode.EXCHANGE_MTU_REQUEST, 200)


@pytest.mark.parametrize("mtu", [22, 516])
def test_exchange_mtu_rejects_out_of_range(make_client, mtu):
    client, conn, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.exchange_mtu(mtu)
    assert conn.sent() == []


def test_exchange_mtu_bad_length_response(make_client):
    client, _, _ = make_client(reply_with(bytes((Opcode.EXCHANGE_MTU_RESPONSE, 0x40))))
    with pytest.raises(InvalidResponseError):
        client.exchange_mtu(100)


def test_read_returns_value(make_client):
    client, conn, _ = make_client(reply_with(bytes((Opcode.READ_RESPONSE,)) + b"hello"))
    assert client.read(5) == b"hello"
    assert conn.sent() == [struct.pack("<BH", Opcode.READ_REQUEST, 5)]


def test_read_error_response_raises_att_error(make_client):
    client, _, _ = make_client(
        reply_with(error_response(Opcode.READ_REQUEST, 5, ATTError.READ_NOT_PERM))
    )
    with pytest.raises(AttError) as info:
        client.read(5)
    assert info.value.code == ATTError.READ_NOT_PERM


def test_malformed_error_response_is_invalid(make_client):
    client, _, _ = make_client(reply_with(bytes((Opcode.ERROR_RESPONSE, 0x0A))))
    with pytest.raises(InvalidResponseError):
        client.read(1)


def test_read_blob_sends_offset(make_client):
    client, conn, _ = make_client(reply_with(bytes((Opcode.READ_BLOB_RESPONSE,)) + b"tail"))
    assert client.read_blob(7, 22) == b"tail"
    assert conn.sent() == [struct.pack("<BHH", Opcode.READ_BLOB_REQUEST, 7, 22)]


def test_find_information_format_one(make_client):
    data = struct.pack("<HH", 1, 0x2800) + struct.pack("<HH", 2, 0x2803)
    client, conn, _ = make_client(
        reply_with(bytes((Opcode.FIND_INFORMATION_RESPONSE, 0x01)) + data)
    )
    assert client.find_information(1, 0xFFFF) == (1, data)
    assert conn.sent() == [struct.pack("<BHH", Opcode.FIND_INFORMATION_REQUEST, 1, 0xFFFF)]


def test_find_information_misaligned_is_invalid(make_client):
    client, _, _ = make_client(
        reply_with(bytes((Opcode.FIND_INFORMATION_RESPONSE, 0x01)) + b"\x01\x00\x00\x28\x02")
    )
    with pytest.raises(InvalidResponseError):
        client.find_information(1, 10)


@pytest.mark.parametrize("start,end", [(0, 5), (6, 5)])
def test_find_information_bad_range(make_client, start, end):
    client, _, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.find_information(start, end)


def test_read_by_type_returns_length_and_list(make_client):
    entries = struct.pack("<H", 3) + b"ab" + struct.pack("<H", 4) + b"cd"
    client, conn, _ = make_client(reply_with(bytes((Opcode.READ_BY_TYPE_RESPONSE, 4)) + entries))
    uuid = b"\x03\x28"
    assert client.read_by_type(1, 10, uuid) == (4, entries)
    assert conn.sent() == [struct.pack("<BHH", Opcode.READ_BY_TYPE_REQUEST, 1, 10) + uuid]


def test_read_by_type_rejects_bad_uuid(make_client):
    client, _, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.read_by_type(1, 10, b"\x01\x02\x03\x04")


def test_read_by_group_type_inconsistent_length(make_client):
    client, _, _ = make_client(
        reply_with(bytes((Opcode.READ_BY_GROUP_TYPE_RESPONSE, 6)) + b"\x01\x00\x05\x00\x00")
    )
    with pytest.raises(InvalidResponseError):
        client.read_by_group_type(1, 0xFFFF, b"\x00\x28")


def test_read_by_group_type_returns_entries(make_client):
    entries = struct.pack("<HH", 1, 5) + b"\x0f\x18"
    client, _, _ = make_client(
        reply_with(bytes((Opcode.READ_BY_GROUP_TYPE_RESPONSE, 6)) + entries)
    )
    assert client.read_by_group_type(1, 0xFFFF, b"\x00\x28") == (6, entries)


def test_read_multiple(make_client):
    client, conn, _ = make_client(reply_with(bytes((Opcode.READ_MULTIPLE_RESPONSE,)) + b"xy"))
    assert client.read_multiple([3, 9]) == b"xy"
    assert conn.sent() == [bytes((Opcode.READ_MULTIPLE_REQUEST,)) + struct.pack("<HH", 3, 9)]


def test_read_multiple_needs_two_handles(make_client):
    client, _, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.read_multiple([3])


def test_write_waits_for_response(make_client):
    client, conn, _ = make_client(reply_with(bytes((Opcode.WRITE_RESPONSE,))))
    client.write(8, b"on")
    assert conn.sent() == [struct.pack("<BH", Opcode.WRITE_REQUEST, 8) + b"on"]


def test_write_too_long(make_client):
    client, conn, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.write(8, bytes(conn.tx_mtu - 2))


def test_write_command_has_no_response(make_client):
    client, conn, _ = make_client()
    client.write_command(8, b"go")
    assert conn.sent() == [struct.pack("<BH", Opcode.WRITE_COMMAND, 8) + b"go"]


def test_signed_write_appends_signature(make_client):
    client, conn, _ = make_client()
    signature = bytes(range(12))
    client.signed_write(8, b"v", signature)
    assert conn.sent() == [struct.pack("<BH", Opcode.SIGNED_WRITE_COMMAND, 8) + b"v" + signature]


def test_signed_write_rejects_long_value(make_client):
    client, conn, _ = make_client()
    with pytest.raises(InvalidArgumentError):
        client.signed_write(8, bytes(conn.tx_mtu - 14), bytes(12))


def test_prepare_write_returns_echo(make_client):
    echo = struct.pack("<BHH", Opcode.PREPARE_WRITE_RESPONSE, 8, 4) + b"part"
    client, conn, _ = make_client(reply_with(echo))
    assert client.prepare_write(8, 4, b"part") == (8, 4, b"part")
    assert conn.sent()[0] == struct.pack("<BHH", Opcode.PREPARE_WRITE_REQUEST, 8, 4) + b"part"


def test_execute_write(make_client):
    client, conn, _ = make_client(reply_with(bytes((Opcode.EXECUTE_WRITE_RESPONSE,))))
    client.execute_write(1)
    assert conn.sent() == [bytes((Opcode.EXECUTE_WRITE_REQUEST, 1))]


def test_unexpected_pdu_refused_while_waiting(make_client):
    stray = struct.pack("<BH", Opcode.READ_REQUEST, 1)
    client, conn, _ = make_client(reply_with(stray, bytes((Opcode.READ_RESPONSE,)) + b"ok"))
    assert client.read(2) == b"ok"
    assert error_response(Opcode.READ_REQUEST, 0, ATTError.REQ_NOT_SUPP) in conn.sent()


def test_notification_delivered_to_handler(make_client):
    received = []
    client, conn, _ = make_client(handler=received.append)
    pdu = struct.pack("<BH", Opcode.HANDLE_VALUE_NOTIFICATION, 5) + b"hi"
    conn.push(pdu)
    assert wait_until(lambda: received == [pdu])
    assert bytes((Opcode.HANDLE_VALUE_CONFIRMATION,)) not in conn.sent()


def test_indication_is_confirmed(make_client):
    received = []
    client, conn, _ = make_client(handler=received.append)
    pdu = struct.pack("<BH", Opcode.HANDLE_VALUE_INDICATION, 5) + b"yo"
    confirmation = bytes((Opcode.HANDLE_VALUE_CONFIRMATION,))
    conn.push(pdu)
    wait_until(lambda: confirmation in conn.sent() and received == [pdu])
    assert conn.sent() == [confirmation]
    assert received == [pdu]


def test_server_exchange_mtu_request(make_client):
    client, conn, _ = make_client()
    conn.rx_mtu = 100
    conn.push(struct.pack("<BH", Opcode.EXCHANGE_MTU_REQUEST, 64))
    expected = struct.pack("<BH", Opcode.EXCHANGE_MTU_RESPONSE, 100)
    assert wait_until(lambda: expected in conn.sent())
    assert conn.tx_mtu == 64


def test_server_exchange_mtu_request_too_small(make_client):
    client, conn, _ = make_client()
    conn.push(struct.pack("<BH", Opcode.EXCHANGE_MTU_REQUEST, 16))
    expected = error_response(Opcode.EXCHANGE_MTU_REQUEST, 0, ATTError.INVALID_PDU)
    assert wait_until(lambda: expected in conn.sent())
    assert conn.tx_mtu == 23


def test_request_times_out(make_client):
    client, _, _ = make_client()
    client.request_timeout = 0.05
    with pytest.raises(RequestTimeoutError):
        client.read(1)


def test_closed_connection_fails_request(make_client):
    client, conn, thread = make_client()
    conn.close()
    thread.join(timeout=2)
    assert not thread.is_alive()
    with pytest.raises(EOFError):
        client.read(1)