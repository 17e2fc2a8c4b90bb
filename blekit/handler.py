"""Request, response and notification objects passed to GATT handlers.

Read and write handlers are callables taking ``(request, response)``;
notify handlers are callables taking ``(request, notifier)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from blekit.context import Context
from blekit.errors import ATTError, AttError

__all__ = ["Request", "ShortWriteError", "ResponseWriter", "Notifier"]


@dataclass
class Request:
    """A GATT request as seen by a handler."""

    conn: Any
    data: bytes = b""
    offset: int = 0


class ShortWriteError(IOError):
    """The data did not fit in the remaining response space."""

    def __init__(self, message: str = "short write") -> None:
        super().__init__(message)


class ResponseWriter:
    """Collects a handler's response value up to a fixed capacity.

    A writer made with ``capacity=None`` stands for a write command, which
    carries no response: it holds nothing and refuses writes.
    """

    def __init__(self, capacity: Optional[int] = None) -> None:
        if capacity is not None and capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._buf: Optional[bytearray] = None if capacity is None else bytearray()
        self.status: ATTError = ATTError.SUCCESS

    def write(self, data: bytes) -> int:
        """Append data to the response value; return the number of bytes written."""
        if self._buf is None or self._capacity is None:
            raise AttError(ATTError.REQ_NOT_SUPP)
        if len(data) > self._capacity - len(self._buf):
            raise ShortWriteError()
        self._buf += data
        return len(data)

    def getvalue(self) -> bytes:
        """The bytes written so far."""
        return bytes(self._buf) if self._buf is not None else b""

    def __len__(self) -> int:
        return len(self._buf) if self._buf is not None else 0

    def capacity(self) -> int:
        """The maximum value length; 0 for a write command."""
        return self._capacity if self._capacity is not None else 0


class Notifier:
    """Sends notifications or indications to a subscribed central."""

    def __init__(self, send: Callable[[bytes], int]) -> None:
        self._send = send
        self.context = Context()

    def write(self, data: bytes) -> int:
        """Send data to the central."""
        return self._send(data)

    def close(self) -> None:
        """End the subscription."""
        self.context.cancel()

    def closed(self) -> bool:
        """Whether the subscription has ended."""
        return self.context.done()