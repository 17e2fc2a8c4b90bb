"""Device interface and module-level helpers acting on a default device."""

from __future__ import annotations

import signal
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Sequence

from blekit.addr import Addr
from blekit.advertising import ServiceData
from blekit.context import Cancelled, Context, ContextKey, DeadlineExceeded
from blekit.errors import DefaultDeviceError

__all__ = [
    "Advertisement",
    "Device",
    "AdvHandler",
    "AdvFilter",
    "NotificationHandler",
    "set_default_device",
    "add_service",
    "remove_all_services",
    "set_services",
    "stop",
    "advertise_name_and_services",
    "advertise_ibeacon_data",
    "advertise_ibeacon",
    "scan",
    "find",
    "dial",
    "connect",
    "with_sig_handler",
]


class Advertisement(ABC):
    """A received advertisement."""

    @abstractmethod
    def local_name(self) -> str: ...

    @abstractmethod
    def manufacturer_data(self, *keys: int) -> Optional[bytes]: ...

    @abstractmethod
    def service_data(self) -> list[ServiceData]: ...

    @abstractmethod
    def services(self) -> list[bytes]: ...

    @abstractmethod
    def overflow_service(self) -> list[bytes]: ...

    @abstractmethod
    def tx_power_level(self) -> int: ...

    @abstractmethod
    def connectable(self) -> bool: ...

    @abstractmethod
    def solicited_service(self) -> list[bytes]: ...

    @abstractmethod
    def rssi(self) -> int: ...

    @abstractmethod
    def addr(self) -> Addr: ...


AdvHandler = Callable[[Advertisement], None]
AdvFilter = Callable[[Advertisement], bool]
NotificationHandler = Callable[[bytes], None]


class Device(ABC):
    """A local device acting as GATT server, advertiser and central.

    Advertising and scanning methods block until ``ctx`` is done and then
    raise the context's error.
    """

    @abstractmethod
    def add_service(self, service: Any) -> None:
        """Add a service to the database."""

    @abstractmethod
    def remove_all_services(self) -> None:
        """Remove every service from the database."""

    @abstractmethod
    def set_services(self, services: Sequence[Any]) -> None:
        """Replace the database's services."""

    @abstractmethod
    def stop(self) -> None:
        """Detach the GATT server from the device."""

    @abstractmethod
    def advertise(self, ctx: Context, adv: Advertisement) -> None:
        """Advertise the given advertisement."""

    @abstractmethod
    def advertise_name_and_services(self, ctx: Context, name: str, *uuids: bytes) -> None:
        """Advertise a name and service UUIDs."""

    @abstractmethod
    def advertise_mfg_data(self, ctx: Context, company_id: int, data: bytes) -> None:
        """Advertise manufacturer data."""

    @abstractmethod
    def advertise_service_data16(self, ctx: Context, uuid: int, data: bytes) -> None:
        """Advertise data for a 16-bit service UUID."""

    @abstractmethod
    def advertise_ibeacon_data(self, ctx: Context, data: bytes) -> None:
        """Advertise iBeacon manufacturer data."""

    @abstractmethod
    def advertise_ibeacon(
        self, ctx: Context, uuid: bytes, major: int, minor: int, power: int
    ) -> None:
        """Advertise an iBeacon."""

    @abstractmethod
    def scan(self, ctx: Context, allow_dup: bool, handler: AdvHandler) -> None:
        """Scan, passing each advertisement to ``handler``."""

    @abstractmethod
    def dial(self, ctx: Context, addr: Addr) -> Any:
        """Connect to a peripheral and return its client."""


_default_device: Optional[Device] = None


def set_default_device(device: Optional[Device]) -> None:
    """Set the device the module-level functions act on."""
    global _default_device
    _default_device = device


def _device() -> Device:
    if _default_device is None:
        raise DefaultDeviceError()
    return _default_device


@contextmanager
def _trap(ctx: Context) -> Iterator[None]:
    """Cancel via the context's signal handler on SIGINT or SIGTERM."""
    cancel = ctx.value(ContextKey.SIG)
    if not callable(cancel) or threading.current_thread() is not threading.main_thread():
        yield
        return

    def on_signal(signum: int, frame: Any) -> None:
        cancel()

    previous = {
        sig: signal.signal(sig, on_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, signal.SIG_DFL if handler is None else handler)


def add_service(service: Any) -> None:
    """Add a service to the default device's database."""
    _device().add_service(service)


def remove_all_services() -> None:
    """Remove all services from the default device's database."""
    _device().remove_all_services()


def set_services(services: Sequence[Any]) -> None:
    """Replace the default device's services."""
    _device().set_services(services)


def stop() -> None:
    """Detach the GATT server from the default device."""
    _device().stop()


def advertise_name_and_services(ctx: Context, name: str, *args: bytes) -> None:
    """Advertise a name and service UUIDs until ``ctx`` is done."""
    device = _device()
    with _trap(ctx):
        device.advertise_name_and_services(ctx, name, *args)


def advertise_ibeacon_data(ctx: Context, data: bytes) -> None:
    """Advertise iBeacon manufacturer data until ``ctx`` is done."""
    device = _device()
    with _trap(ctx):
        device.advertise_ibeacon_data(ctx, data)


def advertise_ibeacon(ctx: Context, uuid: bytes, major: int, minor: int, power: int) -> None:
    """Advertise an iBeacon until ``ctx`` is done."""
    device = _device()
    with _trap(ctx):
        device.advertise_ibeacon(ctx, uuid, major, minor, power)


def scan(
    ctx: Context,
    allow_dup: bool,
    handler: AdvHandler,
    adv_filter: Optional[AdvFilter] = None,
) -> None:
    """Scan until ``ctx`` is done, passing advertisements that pass the filter."""
    device = _device()
    with _trap(ctx):
        if adv_filter is None:
            device.scan(ctx, allow_dup, handler)
            return

        def filtered(adv: Advertisement) -> None:
            if adv_filter(adv):
                handler(adv)

        device.scan(ctx, allow_dup, filtered)


def find(
    ctx: Context, allow_dup: bool, adv_filter: Optional[AdvFilter] = None
) -> list[Advertisement]:
    """Scan until ``ctx`` is done and return the advertisements seen."""
    _device()
    found: list[Advertisement] = []
    lock = threading.Lock()

    def collect(adv: Advertisement) -> None:
        with lock:
            found.append(adv)

    try:
        scan(ctx, allow_dup, collect, adv_filter)
    except (Cancelled, DeadlineExceeded):
        pass
    with lock:
        return list(found)


def dial(ctx: Context, addr: Addr) -> Any:
    """Connect to the peripheral at ``addr``."""
    device = _device()
    with _trap(ctx):
        return device.dial(ctx, addr)


def connect(ctx: Context, adv_filter: Optional[AdvFilter]) -> Any:
    """Scan for the first peripheral matching the filter and connect to it."""
    scan_ctx = ctx.with_cancel()
    found: list[Advertisement] = []
    lock = threading.Lock()

    def on_adv(adv: Advertisement) -> None:
        with lock:
            if not found:
                found.append(adv)
        scan_ctx.cancel()

    try:
        scan(scan_ctx, False, on_adv, adv_filter)
    except Cancelled:
        pass
    with lock:
        target = found[0] if found else None
    if target is None:
        raise scan_ctx.error() or Cancelled()
    return dial(ctx, target.addr())


def with_sig_handler(ctx: Context, cancel: Callable[[], None]) -> Context:
    """Return a context whose operations call ``cancel`` on SIGINT or SIGTERM."""
    return ctx.with_value(ContextKey.SIG, cancel)