"""Sample services and characteristics for trying out a GATT server."""

from __future__ import annotations

import logging
import queue
import threading
import time

from blekit.attribute import Characteristic, Service
from blekit.const import reverse, uuid16
from blekit.handler import Notifier, Request, ResponseWriter

__all__ = [
    "TEST_SVC_UUID",
    "COUNT_CHAR_UUID",
    "ECHO_CHAR_UUID",
    "new_battery_service",
    "new_count_char",
    "new_echo_char",
]

logger = logging.getLogger(__name__)


def _parse_uuid(text: str) -> bytes:
    return reverse(bytes.fromhex(text.replace("-", "")))


# Private 128-bit UUIDs, outside the base of the pre-defined 16/32-bit UUIDs
# xxxxxxxx-0000-1000-8000-00805F9B34FB [Vol 3, Part B, 2.5.1].
TEST_SVC_UUID = _parse_uuid("00010000-0001-1000-8000-00805F9B34FB")
COUNT_CHAR_UUID = _parse_uuid("00010000-0002-1000-8000-00805F9B34FB")
ECHO_CHAR_UUID = _parse_uuid("00020000-0002-1000-8000-00805F9B34FB")

_ECHO_TIMEOUT = 20.0
_POLL = 0.05


def new_battery_service() -> Service:
    """A battery service whose level drops by one on every read."""
    level = 100
    service = Service(uuid16(0x180F))
    characteristic = service.new_characteristic(uuid16(0x2A19))

    def read(req: Request, rsp: ResponseWriter) -> None:
        nonlocal level
        rsp.write(bytes((level,)))
        level = (level - 1) & 0xFF

    characteristic.handle_read(read)
    # Characteristic User Description
    characteristic.new_descriptor(uuid16(0x2901)).set_value(
        b"Battery level between 0 and 100 percent"
    )
    # Characteristic Presentation Format
    characteristic.new_descriptor(uuid16(0x2904)).set_value(bytes([4, 1, 39, 173, 1, 0, 0]))
    return service


def _counting(kind: str, notifier: Notifier) -> None:
    count = 0
    logger.info("count: %s subscribed", kind)
    while not notifier.context.wait(1.0):
        logger.info("count: %s: %d", kind, count)
        try:
            notifier.write(f"Count: {count}".encode())
        except Exception as exc:
            # The client disconnected before unsubscribing.
            logger.info("count: Failed to %s : %s", kind.lower(), exc)
            return
        count += 1
    logger.info("count: %s unsubscribed", kind)


def new_count_char() -> Characteristic:
    """A characteristic counting reads, and sending a count every second when subscribed."""
    reads = 0
    characteristic = Characteristic(COUNT_CHAR_UUID)

    def read(req: Request, rsp: ResponseWriter) -> None:
        nonlocal reads
        message = f"count: Read {reads}"
        try:
            rsp.write(message.encode())
        except Exception:
            logger.debug("count: read response truncated", exc_info=True)
        logger.info(message)
        reads += 1

    def write(req: Request, rsp: ResponseWriter) -> None:
        logger.info("count: Wrote %s", bytes(req.data).decode("utf-8", errors="replace"))

    characteristic.handle_read(read)
    characteristic.handle_write(write)
    characteristic.handle_notify(lambda req, n: _counting("Notification", n))
    characteristic.handle_indicate(lambda req, n: _counting("Indication", n))
    return characteristic


class _Echo:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, queue.Queue] = {}

    def written(self, req: Request, rsp: ResponseWriter) -> None:
        key = str(req.conn.remote_addr)
        with self._lock:
            target = self._queues.get(key)
        if target is not None:
            target.put(bytes(req.data))

    def echo(self, req: Request, notifier: Notifier) -> None:
        key = str(req.conn.remote_addr)
        inbox: queue.Queue = queue.Queue()
        with self._lock:
            self._queues[key] = inbox
        logger.info("echo: Notification subscribed")
        try:
            deadline = time.monotonic() + _ECHO_TIMEOUT
            while True:
                if notifier.closed():
                    logger.info("echo: Notification unsubscribed")
                    return
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.info("echo: timeout")
                    return
                try:
                    message = inbox.get(timeout=min(_POLL, remaining))
                except queue.Empty:
                    continue
                try:
                    notifier.write(message)
                except Exception as exc:
                    logger.info("echo: can't indicate: %s", exc)
                    return
                deadline = time.monotonic() + _ECHO_TIMEOUT
        finally:
            with self._lock:
                if self._queues.get(key) is inbox:
                    del self._queues[key]


def new_echo_char() -> Characteristic:
    """A characteristic echoing what a central writes back to it as notifications."""
    echo = _Echo()
    characteristic = Characteristic(ECHO_CHAR_UUID)
    characteristic.handle_write(echo.written)
    characteristic.handle_notify(echo.echo)
    characteristic.handle_indicate(echo.echo)
    return characteristic