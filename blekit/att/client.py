"""Attribute Protocol client."""

from __future__ import annotations

import logging
import queue
import struct
import threading
from typing import Any, Callable, Optional, Sequence

from blekit.att.pdu import (
    InvalidArgumentError,
    InvalidResponseError,
    Opcode,
    RequestTimeoutError,
    error_response,
    response_opcode,
)
from blekit.const import DEFAULT_MTU, MAX_MTU
from blekit.errors import ATTError, AttError

__all__ = ["Client"]

logger = logging.getLogger(__name__)

_WORK_QUEUE_SIZE = 16


class Client:
    """An Attribute Protocol client over an L2CAP connection.

    ``conn`` provides ``read(size) -> bytes`` (empty bytes at end of stream),
    ``write(data)``, and settable ``rx_mtu`` and ``tx_mtu`` attributes.
    ``handler`` is called with each complete notification or indication PDU.
    ``loop`` must run, usually in its own thread, for requests to get answers.
    """

    request_timeout = 30.0

    def __init__(self, conn: Any, handler: Optional[Callable[[bytes], None]]) -> None:
        self._conn = conn
        self._handler = handler
        self._responses: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._tx_mtu: int = conn.tx_mtu

    # Requests -----------------------------------------------------------

    def exchange_mtu(self, client_rx_mtu: int) -> int:
        """Tell the server our receive MTU; return the server's [Vol 3, Part F, 3.4.2.1]."""
        if not DEFAULT_MTU <= client_rx_mtu <= MAX_MTU:
            raise InvalidArgumentError()
        with self._lock:
            self._conn.rx_mtu = client_rx_mtu
            req = struct.pack("<BH", Opcode.EXCHANGE_MTU_REQUEST, client_rx_mtu)
            rsp = self._send_request(req)
            self._check(rsp, Opcode.EXCHANGE_MTU_RESPONSE)
            if len(rsp) != 3:
                raise InvalidResponseError()
            (tx_mtu,) = struct.unpack_from("<H", rsp, 1)
            if tx_mtu != self._tx_mtu:
                self._conn.tx_mtu = tx_mtu
                self._tx_mtu = tx_mtu
            return tx_mtu

    def find_information(self, start: int, end: int) -> tuple[int, bytes]:
        """Discover handles and types in a range; return (format, information data)."""
        if start == 0 or start > end:
            raise InvalidArgumentError()
        with self._lock:
            req = struct.pack("<BHH", Opcode.FIND_INFORMATION_REQUEST, start, end)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.FIND_INFORMATION_RESPONSE)
        if len(rsp) < 6:
            raise InvalidResponseError()
        fmt = rsp[1]
        if (fmt == 0x01 and (len(rsp) - 2) % 4) or (fmt == 0x02 and (len(rsp) - 2) % 18):
            raise InvalidResponseError()
        return fmt, rsp[2:]

    def read_by_type(self, start: int, end: int, uuid: bytes) -> tuple[int, bytes]:
        """Read attributes of a known type; return (entry length, attribute data list)."""
        self._check_range_and_uuid(start, end, uuid)
        with self._lock:
            req = struct.pack("<BHH", Opcode.READ_BY_TYPE_REQUEST, start, end) + bytes(uuid)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.READ_BY_TYPE_RESPONSE)
        return self._length_and_list(rsp)

    def read(self, handle: int) -> bytes:
        """Read an attribute value [Vol 3, Part F, 3.4.4.3]."""
        with self._lock:
            rsp = self._send_request(struct.pack("<BH", Opcode.READ_REQUEST, handle))
        self._check(rsp, Opcode.READ_RESPONSE)
        return rsp[1:]

    def read_blob(self, handle: int, offset: int) -> bytes:
        """Read part of an attribute value from an offset [Vol 3, Part F, 3.4.4.5]."""
        with self._lock:
            req = struct.pack("<BHH", Opcode.READ_BLOB_REQUEST, handle, offset)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.READ_BLOB_RESPONSE)
        return rsp[1:]

    def read_multiple(self, handles: Sequence[int]) -> bytes:
        """Read two or more attribute values at once [Vol 3, Part F, 3.4.4.7]."""
        if len(handles) < 2 or len(handles) * 2 > self._conn.tx_mtu - 1:
            raise InvalidArgumentError()
        with self._lock:
            req = bytes((Opcode.READ_MULTIPLE_REQUEST,)) + struct.pack(
                f"<{len(handles)}H", *handles
            )
            rsp = self._send_request(req)
        self._check(rsp, Opcode.READ_MULTIPLE_RESPONSE)
        return rsp[1:]

    def read_by_group_type(self, start: int, end: int, uuid: bytes) -> tuple[int, bytes]:
        """Read grouping attributes of a type; return (entry length, attribute data list)."""
        self._check_range_and_uuid(start, end, uuid)
        with self._lock:
            req = struct.pack("<BHH", Opcode.READ_BY_GROUP_TYPE_REQUEST, start, end) + bytes(uuid)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.READ_BY_GROUP_TYPE_RESPONSE)
        return self._length_and_list(rsp)

    def write(self, handle: int, value: bytes) -> None:
        """Write an attribute value and wait for acknowledgement [Vol 3, Part F, 3.4.5.1]."""
        if len(value) > self._conn.tx_mtu - 3:
            raise InvalidArgumentError()
        with self._lock:
            req = struct.pack("<BH", Opcode.WRITE_REQUEST, handle) + bytes(value)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.WRITE_RESPONSE)

    def write_command(self, handle: int, value: bytes) -> None:
        """Write an attribute value without acknowledgement [Vol 3, Part F, 3.4.5.3]."""
        if len(value) > self._conn.tx_mtu - 3:
            raise InvalidArgumentError()
        with self._lock:
            self._conn.write(struct.pack("<BH", Opcode.WRITE_COMMAND, handle) + bytes(value))

    def signed_write(self, handle: int, value: bytes, signature: bytes) -> None:
        """Write an attribute value with a 12-byte signature [Vol 3, Part F, 3.4.5.4]."""
        if len(value) > self._conn.tx_mtu - 15 or len(signature) != 12:
            raise InvalidArgumentError()
        with self._lock:
            req = (
                struct.pack("<BH", Opcode.SIGNED_WRITE_COMMAND, handle)
                + bytes(value)
                + bytes(signature)
            )
            self._conn.write(req)

    def prepare_write(self, handle: int, offset: int, value: bytes) -> tuple[int, int, bytes]:
        """Queue part of a value; return the echoed (handle, offset, value) [Vol 3, Part F, 3.4.6.1]."""
        if len(value) > self._conn.tx_mtu - 5:
            raise InvalidArgumentError()
        with self._lock:
            req = struct.pack("<BHH", Opcode.PREPARE_WRITE_REQUEST, handle, offset) + bytes(value)
            rsp = self._send_request(req)
        self._check(rsp, Opcode.PREPARE_WRITE_RESPONSE)
        if len(rsp) < 5:
            raise InvalidResponseError()
        rsp_handle, rsp_offset = struct.unpack_from("<HH", rsp, 1)
        return rsp_handle, rsp_offset, rsp[5:]

    def execute_write(self, flags: int) -> None:
        """Write (flags=1) or cancel (flags=0) all prepared values [Vol 3, Part F, 3.4.6.3]."""
        with self._lock:
            rsp = self._send_request(bytes((Opcode.EXECUTE_WRITE_REQUEST, flags & 0xFF)))
        self._check(rsp, Opcode.EXECUTE_WRITE_RESPONSE)

    # Receiving ----------------------------------------------------------

    def loop(self) -> None:
        """Read PDUs until the connection ends, dispatching each to its consumer."""
        work: queue.Queue = queue.Queue(maxsize=_WORK_QUEUE_SIZE)
        worker = threading.Thread(target=self._run_work, args=(work,), daemon=True)
        worker.start()
        try:
            while True:
                try:
                    data = bytes(self._conn.read(MAX_MTU))
                except Exception as exc:  # the bearer failed: hand it to the pending request
                    self._responses.put(exc)
                    return
                if not data:
                    self._responses.put(EOFError("connection closed"))
                    return
                logger.debug("client rsp %s", data.hex(" ").upper())

                opcode = data[0]
                if opcode == Opcode.EXCHANGE_MTU_REQUEST:
                    self._enqueue(work, self._handle_request, data, "request")
                    continue
                if opcode not in (
                    Opcode.HANDLE_VALUE_NOTIFICATION,
                    Opcode.HANDLE_VALUE_INDICATION,
                ):
                    self._responses.put(data)
                    continue

                if self._handler is not None:
                    self._enqueue(work, self._handler, data, "notification")
                # An indication is always acknowledged, even if it was invalid.
                if opcode == Opcode.HANDLE_VALUE_INDICATION:
                    try:
                        self._conn.write(bytes((Opcode.HANDLE_VALUE_CONFIRMATION,)))
                    except Exception:
                        logger.debug("can't send confirmation", exc_info=True)
        finally:
            work.put(None)

    # Internals ----------------------------------------------------------

    @staticmethod
    def _enqueue(work: queue.Queue, fn: Callable[[bytes], Any], data: bytes, what: str) -> None:
        try:
            work.put_nowait((fn, data))
        except queue.Full:
            logger.error("can't enqueue incoming %s", what)

    @staticmethod
    def _run_work(work: queue.Queue) -> None:
        while (item := work.get()) is not None:
            fn, data = item
            try:
                fn(data)
            except Exception:
                logger.exception("handler failed")

    def _handle_request(self, pdu: bytes) -> None:
        if pdu[0] == Opcode.EXCHANGE_MTU_REQUEST:
            rsp = self._handle_exchange_mtu_request(pdu)
            try:
                self._conn.write(rsp)
            except Exception as exc:
                logger.error("error sending MTU response: %s", exc)
            return
        try:
            self._conn.write(error_response(pdu[0], 0x0000, ATTError.REQ_NOT_SUPP))
        except Exception:
            logger.debug("can't send error response", exc_info=True)
        logger.warning("received unhandled request [0x%s]", pdu.hex().upper())

    def _handle_exchange_mtu_request(self, pdu: bytes) -> bytes:
        with self._lock:
            if len(pdu) != 3:
                return error_response(pdu[0], 0x0000, ATTError.INVALID_PDU)
            (tx_mtu,) = struct.unpack_from("<H", pdu, 1)
            if tx_mtu < DEFAULT_MTU:
                return error_response(pdu[0], 0x0000, ATTError.INVALID_PDU)
            rx_mtu = self._conn.rx_mtu
            logger.debug("server requested an MTU change to TX:%d RX:%d", tx_mtu, rx_mtu)
            self._conn.tx_mtu = tx_mtu
            self._tx_mtu = tx_mtu
            return struct.pack("<BH", Opcode.EXCHANGE_MTU_RESPONSE, rx_mtu)

    def _send_request(self, pdu: bytes) -> bytes:
        logger.debug("client req %s", pdu.hex(" ").upper())
        self._conn.write(pdu)
        expected = response_opcode(pdu[0])
        while True:
            try:
                item = self._responses.get(timeout=self.request_timeout)
            except queue.Empty:
                raise RequestTimeoutError() from None
            if isinstance(item, BaseException):
                raise item
            if item[0] == Opcode.ERROR_RESPONSE or item[0] == expected:
                return item
            # Some peers send requests of their own while ours is pending;
            # refuse them and keep waiting for our response.
            self._conn.write(error_response(item[0], 0x0000, ATTError.REQ_NOT_SUPP))

    @staticmethod
    def _check(rsp: bytes, expected: int) -> None:
        if rsp[0] == Opcode.ERROR_RESPONSE:
            if len(rsp) == 5:
                raise AttError(rsp[4])
            raise InvalidResponseError()
        if rsp[0] != expected:
            raise InvalidResponseError()

    @staticmethod
    def _check_range_and_uuid(start: int, end: int, uuid: bytes) -> None:
        if start > end or len(uuid) not in (2, 16):
            raise InvalidArgumentError()

    @staticmethod
    def _length_and_list(rsp: bytes) -> tuple[int, bytes]:
        if len(rsp) < 4:
            raise InvalidResponseError()
        length, data = rsp[1], rsp[2:]
        if length == 0 or len(data) % length:
            raise InvalidResponseError()
        return length, data