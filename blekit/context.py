"""Cancellation scopes with deadlines and carried values."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Optional

__all__ = ["ContextKey", "Cancelled", "DeadlineExceeded", "Context"]


class ContextKey(str, Enum):
    """Keys for values carried by a context."""

    SIG = "sig"
    CCC = "ccc"


class Cancelled(Exception):
    """The context was cancelled."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(TimeoutError):
    """The context's deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


_NO_KEY = object()


class Context:
    """A cancellation scope; cancelling it also cancels every derived context."""

    def __init__(self, parent: Optional["Context"] = None) -> None:
        self._parent = parent
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: set[Context] = set()
        self._err: Optional[BaseException] = None
        self._timer: Optional[threading.Timer] = None
        self._key: Any = _NO_KEY
        self._value: Any = None
        if parent is not None:
            parent._attach(self)

    def _attach(self, child: "Context") -> None:
        with self._lock:
            err = self._err
            if err is None:
                self._children.add(child)
        if err is not None:
            child._finish(err)

    def _detach(self, child: "Context") -> None:
        with self._lock:
            self._children.discard(child)

    def _finish(self, err: BaseException) -> None:
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            children, self._children = self._children, set()
            timer, self._timer = self._timer, None
        self._event.set()
        if timer is not None:
            timer.cancel()
        for child in children:
            child._finish(err)
        if self._parent is not None:
            self._parent._detach(self)

    def with_cancel(self) -> "Context":
        """Return a derived context that can be cancelled on its own."""
        return Context(self)

    def with_timeout(self, timeout: float) -> "Context":
        """Return a derived context that expires after ``timeout`` seconds."""
        child = Context(self)
        if timeout <= 0:
            child._finish(DeadlineExceeded())
            return child
        timer = threading.Timer(timeout, child._finish, args=(DeadlineExceeded(),))
        timer.daemon = True
        with child._lock:
            if child._err is None:
                child._timer = timer
                timer.start()
        return child

    def with_value(self, key: Any, value: Any) -> "Context":
        """Return a derived context carrying ``value`` under ``key``."""
        child = Context(self)
        child._key = key
        child._value = value
        return child

    def value(self, key: Any) -> Any:
        """Look up ``key`` in this context and its ancestors; None if absent."""
        ctx: Optional[Context] = self
        while ctx is not None:
            if ctx._key is not _NO_KEY and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None

    def cancel(self) -> None:
        """Cancel this context and everything derived from it."""
        self._finish(Cancelled())

    def done(self) -> bool:
        """Whether the context has been cancelled or has expired."""
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until done or until ``timeout`` passes; return done()."""
        return self._event.wait(timeout)

    def error(self) -> Optional[BaseException]:
        """The reason the context ended, or None while it is live."""
        with self._lock:
            return self._err