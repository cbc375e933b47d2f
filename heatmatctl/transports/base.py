"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from heatmatctl.core.model import DetectedDevice

NotifyCallback = Callable[[bytes], None]


class Subscription(Protocol):
    async def cancel(self) -> None:
        """Stop delivering notifications. Cancelling twice is a no-op."""


class Characteristic(Protocol):
    uuid: str

    async def read(self) -> bytes:
        """Read the current attribute value."""

    async def write(self, data: bytes, *, response: bool = False) -> None:
        """Write ``data``; ``response=False`` issues a write command."""

    async def subscribe(self, callback: NotifyCallback) -> Subscription:
        """Deliver value-change notifications to ``callback``."""


class Connection(Protocol):
    address: str

    def get_characteristic(self, service_uuid: str, char_uuid: str) -> Characteristic | None:
        """Resolve a characteristic of a primary service, or None when absent."""

    def has_service(self, service_uuid: str) -> bool:
        """Return whether the primary service was discovered."""

    async def disconnect(self) -> None:
        """Close the link."""


class Adapter(Protocol):
    async def discover(self, duration_s: float) -> list[DetectedDevice]:
        """Run discovery for ``duration_s`` and return the visible devices."""

    async def connect(self, address: str, *, on_disconnect: Callable[[], None]) -> Connection:
        """Open a GATT connection; ``on_disconnect`` fires on unsolicited drops."""
