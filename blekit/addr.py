"""Network end point addresses: a MAC address or a device UUID."""

from __future__ import annotations

from dataclasses import dataclass

__all__ = ["Addr", "new_addr"]


@dataclass(frozen=True)
class Addr:
    """A device address, always held in lower case."""

    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self.value.lower())

    def __str__(self) -> str:
        return self.value


def new_addr(s: str) -> Addr:
    """Create an address from its textual form."""
    return Addr(s)