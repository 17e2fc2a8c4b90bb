"""Attribute Protocol server."""

from __future__ import annotations

import logging
import queue
import struct
import threading
from typing import Any, Callable, Optional

from blekit.att.db import CCC_INDICATE, CCC_NOTIFY, DB, Attr
from blekit.att.pdu import Opcode, RequestTimeoutError, error_response, response_opcode
from blekit.const import DEFAULT_MTU, MAX_MTU, uuid16
from blekit.errors import ATTError, AttError
from blekit.handler import Notifier, Request, ResponseWriter, ShortWriteError

__all__ = ["Server"]

logger = logging.getLogger(__name__)

_FIND_BY_TYPE_VALUE_REQUEST = 0x06


class _Connection:
    """The per-connection state seen by handlers; other attributes come from the bearer."""

    def __init__(self, conn: Any, server: "Server") -> None:
        self.raw = conn
        self.server = server
        self.cccs: dict[int, int] = {}
        self.notifiers: dict[int, Notifier] = {}
        self.indicators: dict[int, Notifier] = {}

    def notify(self, handle: int, data: bytes) -> int:
        return self.server.notify(handle, data)

    def indicate(self, handle: int, data: bytes) -> int:
        return self.server.indicate(handle, data)

    def __getattr__(self, name: str) -> Any:
        return getattr(self.raw, name)


class Server:
    """An Attribute Protocol server answering one connection from a database.

    ``conn`` provides ``read(size) -> bytes`` (empty bytes at end of stream),
    ``write(data)``, optionally ``close()``, and settable ``rx_mtu`` and
    ``tx_mtu`` attributes. Until the central exchanges MTUs, only the default
    ATT_MTU is used for outgoing PDUs.
    """

    confirmation_timeout = 30.0

    def __init__(self, db: DB, conn: Any) -> None:
        mtu = conn.rx_mtu
        if not DEFAULT_MTU <= mtu <= MAX_MTU:
            raise ValueError("invalid MTU")
        self._db = db
        self._raw = conn
        self.conn = _Connection(conn, self)
        self._rx_mtu: int = mtu
        self._tx_mtu: int = DEFAULT_MTU

        self._notify_lock = threading.Lock()
        self._indicate_lock = threading.Lock()
        self._confirm = threading.Condition()
        self._awaiting = False
        self._confirmed = False
        self._closed = False

        self._prepared_attr: Optional[Attr] = None
        self._prepared_data = bytearray()

        self._handlers: dict[int, Callable[[bytes], Optional[bytes]]] = {
            Opcode.EXCHANGE_MTU_REQUEST: self._exchange_mtu,
            Opcode.FIND_INFORMATION_REQUEST: self._find_information,
            _FIND_BY_TYPE_VALUE_REQUEST: self._find_by_type_value,
            Opcode.READ_BY_TYPE_REQUEST: self._read_by_type,
            Opcode.READ_REQUEST: self._read,
            Opcode.READ_BLOB_REQUEST: self._read_blob,
            Opcode.READ_BY_GROUP_TYPE_REQUEST: self._read_by_group,
            Opcode.WRITE_REQUEST: self._write,
            Opcode.WRITE_COMMAND: self._write_command,
            Opcode.PREPARE_WRITE_REQUEST: self._prepare_write,
            Opcode.EXECUTE_WRITE_REQUEST: self._execute_write,
        }

    # Server-initiated PDUs ------------------------------------------------

    def notify(self, handle: int, data: bytes) -> int:
        """Send a notification, truncated to fit the MTU; return the PDU length."""
        with self._notify_lock:
            pdu = struct.pack("<BH", Opcode.HANDLE_VALUE_NOTIFICATION, handle)
            pdu += bytes(data)[: self._tx_mtu - 3]
            self._raw.write(pdu)
            return len(pdu)

    def indicate(self, handle: int, data: bytes) -> int:
        """Send an indication and wait for its confirmation; return the PDU length."""
        with self._indicate_lock:
            pdu = struct.pack("<BH", Opcode.HANDLE_VALUE_INDICATION, handle)
            pdu += bytes(data)[: self._tx_mtu - 3]
            with self._confirm:
                self._awaiting = True
                self._confirmed = False
            try:
                self._raw.write(pdu)
                with self._confirm:
                    self._confirm.wait_for(
                        lambda: self._confirmed or self._closed,
                        timeout=self.confirmation_timeout,
                    )
                    if self._confirmed:
                        return len(pdu)
                    if self._closed:
                        raise BrokenPipeError("connection closed")
                    raise RequestTimeoutError()
            finally:
                with self._confirm:
                    self._awaiting = False

    # Serving --------------------------------------------------------------

    def loop(self) -> None:
        """Answer requests until the connection ends, then end all subscriptions."""
        pending: queue.Queue = queue.Queue(maxsize=1)
        reader = threading.Thread(target=self._read_loop, args=(pending,), daemon=True)
        reader.start()
        while (pdu := pending.get()) is not None:
            rsp = self.handle_request(pdu)
            if rsp:
                try:
                    self._raw.write(rsp)
                except Exception:
                    logger.debug("can't send response", exc_info=True)
        reader.join()
        self._cleanup()

    def handle_request(self, request: bytes) -> Optional[bytes]:
        """Answer one request PDU; None when no response is due."""
        request = bytes(request)
        if not request:
            return None
        logger.debug("server req %s", request.hex(" ").upper())
        opcode = request[0]
        handler = self._handlers.get(opcode)
        if handler is None:
            rsp: Optional[bytes] = bytes(error_response(opcode, 0x0000, ATTError.REQ_NOT_SUPP))
        else:
            rsp = handler(request)
        if rsp is not None:
            logger.debug("server rsp %s", rsp.hex(" ").upper())
        return rsp

    # Internals ------------------------------------------------------------

    def _read_loop(self, pending: queue.Queue) -> None:
        try:
            while True:
                try:
                    data = bytes(self._raw.read(self._rx_mtu))
                except Exception:
                    logger.debug("read failed", exc_info=True)
                    break
                if not data:
                    break
                if data[0] == Opcode.HANDLE_VALUE_CONFIRMATION:
                    self._on_confirmation()
                    continue
                pending.put(data)
        finally:
            with self._confirm:
                self._closed = True
                self._confirm.notify_all()
            pending.put(None)
            close = getattr(self._raw, "close", None)
            if callable(close):
                try:
                    close()
                except Exception:
                    logger.debug("close failed", exc_info=True)

    def _on_confirmation(self) -> None:
        with self._confirm:
            if self._awaiting and not self._confirmed:
                self._confirmed = True
                self._confirm.notify_all()
                return
        logger.error("received a spurious confirmation")

    def _cleanup(self) -> None:
        for handle, ccc in list(self.conn.cccs.items()):
            if ccc:
                logger.info("cleanup ccc 0x%02X", ccc)
            if ccc & CCC_INDICATE and handle in self.conn.indicators:
                self.conn.indicators[handle].close()
            if ccc & CCC_NOTIFY and handle in self.conn.notifiers:
                self.conn.notifiers[handle].close()

    @staticmethod
    def _error(opcode: int, handle: int, code: int) -> bytes:
        return bytes(error_response(opcode, handle, code))

    def _call(self, handler: Callable, req: Request, rsp: ResponseWriter) -> None:
        try:
            handler(req, rsp)
        except AttError as exc:
            rsp.status = exc.code
        except ShortWriteError:
            pass
        except Exception:
            logger.exception("attribute handler failed")
            rsp.status = ATTError.UNLIKELY

    def _serve(self, a: Attr, pdu: bytes, rsp: ResponseWriter) -> int:
        """Pass a request to the attribute's handler; return the resulting status."""
        rsp.status = ATTError.SUCCESS
        op = pdu[0]
        if op in (Opcode.READ_BY_TYPE_REQUEST, Opcode.READ_REQUEST, Opcode.READ_BLOB_REQUEST):
            if a.read_handler is None:
                return ATTError.READ_NOT_PERM
            offset = struct.unpack_from("<H", pdu, 3)[0] if op == Opcode.READ_BLOB_REQUEST else 0
            self._call(a.read_handler, Request(self.conn, b"", offset), rsp)
        elif op == Opcode.PREPARE_WRITE_REQUEST:
            if a.write_handler is None:
                return ATTError.WRITE_NOT_PERM
            if self._prepared_attr is None:
                self._prepared_attr = a
                self._prepared_data.clear()
            self._prepared_data += pdu[5:]
        elif op == Opcode.EXECUTE_WRITE_REQUEST:
            if a.write_handler is None:
                return ATTError.WRITE_NOT_PERM
            data = bytes(self._prepared_data)
            self._call(a.write_handler, Request(self.conn, data, 0), rsp)
            self._prepared_attr = None
        elif op in (Opcode.WRITE_REQUEST, Opcode.WRITE_COMMAND):
            if a.write_handler is None:
                return ATTError.WRITE_NOT_PERM
            self._call(a.write_handler, Request(self.conn, pdu[3:], 0), rsp)
        else:
            return ATTError.REQ_NOT_SUPP
        return rsp.status

    @staticmethod
    def _range(pdu: bytes) -> tuple[int, int]:
        return struct.unpack_from("<HH", pdu, 1)

    def _exchange_mtu(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.2]"""
        if len(pdu) != 3 or struct.unpack_from("<H", pdu, 1)[0] < DEFAULT_MTU:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        (tx_mtu,) = struct.unpack_from("<H", pdu, 1)
        self._raw.tx_mtu = tx_mtu
        rsp = struct.pack("<BH", Opcode.EXCHANGE_MTU_RESPONSE, self._rx_mtu)
        # The new MTU applies to every PDU after this response.
        with self._notify_lock:
            self._tx_mtu = tx_mtu
        return rsp

    def _find_information(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.3.1 & 3.4.3.2]"""
        if len(pdu) != 5:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        start, end = self._range(pdu)
        if start == 0 or start > end:
            return self._error(pdu[0], start, ATTError.INVALID_HANDLE)

        capacity = self._tx_mtu - 2
        fmt = 0
        data = bytearray()
        # Every entry in a response has a type of the same format.
        for a in self._db.subrange(start, end):
            if fmt == 0:
                fmt = 0x02 if len(a.typ) == 16 else 0x01
            if fmt == 0x01 and len(a.typ) != 2:
                break
            if fmt == 0x02 and len(a.typ) != 16:
                break
            if len(data) + 2 + len(a.typ) > capacity:
                break
            data += struct.pack("<H", a.handle) + bytes(a.typ)

        if fmt == 0:
            return self._error(pdu[0], start, ATTError.ATTR_NOT_FOUND)
        return bytes((Opcode.FIND_INFORMATION_RESPONSE, fmt)) + bytes(data)

    def _find_by_type_value(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.3.3 & 3.4.3.4]"""
        if len(pdu) < 7:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        start, end = self._range(pdu)
        if start == 0 or start > end:
            return self._error(pdu[0], start, ATTError.INVALID_HANDLE)

        typ = uuid16(struct.unpack_from("<H", pdu, 5)[0])
        wanted = pdu[7:]
        capacity = self._tx_mtu - 1
        data = bytearray()
        for a in self._db.subrange(start, end):
            if a.typ != typ:
                continue
            value, group_end = a.value, a.end_handle
            if value is None:
                # The value must not exceed ATT_MTU - 7; one extra byte shows overflow.
                rsp = ResponseWriter(self._tx_mtu - 7 + 1)
                status = self._serve(a, pdu, rsp)
                if status != ATTError.SUCCESS or len(rsp) > self._tx_mtu - 7:
                    return self._error(pdu[0], start, ATTError.INVALID_HANDLE)
                group_end = a.handle
            if bytes(value or b"") != wanted:
                continue
            if len(data) + 4 > capacity:
                break
            data += struct.pack("<HH", a.handle, group_end)

        if not data:
            return self._error(pdu[0], start, ATTError.ATTR_NOT_FOUND)
        return bytes((response_opcode(_FIND_BY_TYPE_VALUE_REQUEST),)) + bytes(data)

    def _read_by_type(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.4.1 & 3.4.4.2]"""
        if len(pdu) not in (7, 21):
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        start, end = self._range(pdu)
        if start == 0 or start > end:
            return self._error(pdu[0], start, ATTError.INVALID_HANDLE)

        typ = pdu[5:]
        capacity = self._tx_mtu - 2
        data = bytearray()
        # Each entry is a 2-byte handle plus a value; all entries share a length.
        dlen = 0
        for a in self._db.subrange(start, end):
            if a.typ != typ:
                continue
            value = a.value
            if value is None:
                rsp = ResponseWriter(self._tx_mtu - 2)
                status = self._serve(a, pdu, rsp)
                if status != ATTError.SUCCESS:
                    if dlen == 0:
                        return self._error(pdu[0], start, status)
                    break
                value = rsp.getvalue()
            if dlen == 0:
                dlen = min(2 + len(value), 255, capacity)
            elif 2 + len(value) != dlen:
                break
            if len(data) + dlen > capacity:
                break
            data += struct.pack("<H", a.handle) + bytes(value[: dlen - 2])

        if dlen == 0:
            return self._error(pdu[0], start, ATTError.ATTR_NOT_FOUND)
        return bytes((Opcode.READ_BY_TYPE_RESPONSE, dlen)) + bytes(data)

    def _read(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.4.3 & 3.4.4.4]"""
        if len(pdu) != 3:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        (handle,) = struct.unpack_from("<H", pdu, 1)
        return self._read_value(pdu, handle, Opcode.READ_RESPONSE)

    def _read_blob(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.4.5 & 3.4.4.6]"""
        if len(pdu) != 5:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        (handle,) = struct.unpack_from("<H", pdu, 1)
        return self._read_value(pdu, handle, Opcode.READ_BLOB_RESPONSE)

    def _read_value(self, pdu: bytes, handle: int, rsp_opcode: int) -> bytes:
        a = self._db.at(handle)
        if a is None:
            return self._error(pdu[0], handle, ATTError.INVALID_HANDLE)
        capacity = self._tx_mtu - 1
        # Static value: no authorization, no authentication.
        if a.value is not None:
            return bytes((rsp_opcode,)) + bytes(a.value)[:capacity]
        rsp = ResponseWriter(capacity)
        status = self._serve(a, pdu, rsp)
        if status != ATTError.SUCCESS:
            return self._error(pdu[0], handle, status)
        return bytes((rsp_opcode,)) + rsp.getvalue()

    def _read_by_group(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.4.9 & 3.4.4.10]"""
        if len(pdu) not in (7, 21):
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        start, end = self._range(pdu)
        if start == 0 or start > end:
            return self._error(pdu[0], start, ATTError.INVALID_HANDLE)

        capacity = self._tx_mtu - 2
        data = bytearray()
        dlen = 0
        for a in self._db.subrange(start, end):
            value = a.value
            if value is None:
                rsp = ResponseWriter(max(capacity - len(data) - 4, 0))
                status = self._serve(a, pdu, rsp)
                if status != ATTError.SUCCESS:
                    return self._error(pdu[0], start, status)
                value = rsp.getvalue()
            if dlen == 0:
                dlen = min(4 + len(value), 255, capacity)
            elif 4 + len(value) != dlen:
                break
            if len(data) + dlen > capacity:
                break
            data += struct.pack("<HH", a.handle, a.end_handle) + bytes(value[: dlen - 4])

        if dlen == 0:
            return self._error(pdu[0], start, ATTError.ATTR_NOT_FOUND)
        return bytes((Opcode.READ_BY_GROUP_TYPE_RESPONSE, dlen)) + bytes(data)

    def _write(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.5.1 & 3.4.5.2]"""
        if len(pdu) < 3:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        (handle,) = struct.unpack_from("<H", pdu, 1)
        a = self._db.at(handle)
        if a is None:
            return self._error(pdu[0], handle, ATTError.INVALID_HANDLE)
        status = self._serve(a, pdu, ResponseWriter(None))
        if status != ATTError.SUCCESS:
            return self._error(pdu[0], handle, status)
        return bytes((Opcode.WRITE_RESPONSE,))

    def _prepare_write(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.6.1 & 3.4.6.2]"""
        if len(pdu) < 5:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        (handle,) = struct.unpack_from("<H", pdu, 1)
        a = self._db.at(handle)
        if a is None:
            return self._error(pdu[0], handle, ATTError.INVALID_HANDLE)
        status = self._serve(a, pdu, ResponseWriter(None))
        if status != ATTError.SUCCESS:
            return self._error(pdu[0], handle, status)
        return bytes((Opcode.PREPARE_WRITE_RESPONSE,)) + pdu[1:]

    def _execute_write(self, pdu: bytes) -> bytes:
        """[Vol 3, Part F, 3.4.6.3 & 3.4.6.4]"""
        if len(pdu) < 2:
            return self._error(pdu[0], 0x0000, ATTError.INVALID_PDU)
        flags = pdu[1]
        if flags == 0:
            # Cancel all prepared writes.
            self._prepared_attr = None
        elif flags == 1 and self._prepared_attr is not None:
            # Write all pending prepared values now.
            status = self._serve(self._prepared_attr, pdu, ResponseWriter(None))
            if status != ATTError.SUCCESS:
                return self._error(pdu[0], 0x0000, status)
        return bytes((Opcode.EXECUTE_WRITE_RESPONSE,))

    def _write_command(self, pdu: bytes) -> None:
        """[Vol 3, Part F, 3.4.5.3]"""
        if len(pdu) <= 3:
            return None
        (handle,) = struct.unpack_from("<H", pdu, 1)
        a = self._db.at(handle)
        if a is not None:
            self._serve(a, pdu, ResponseWriter(None))
        return None