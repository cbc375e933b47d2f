"""Stable public API for building tooling on top of heatmatctl.

This module is the supported integration surface for third-party callers
(smart-home shims, scripts, GUIs). Avoid importing from internal modules
unless intentionally depending on non-stable internals.
"""

from __future__ import annotations

from pathlib import Path

from heatmatctl.core.codec import decode, encode
from heatmatctl.core.device_match import is_target
from heatmatctl.core.errors import (
    CharacteristicsMissingError,
    CommunicationError,
    ConfigurationError,
    CorruptedPacketError,
    DeviceDiscoveryError,
    FatalAttributeError,
    HeatmatError,
    NotConnectedError,
    ProtocolError,
    TransportConnectError,
    TransportError,
    TransportReadError,
    TransportSendError,
    VariantValidationError,
)
from heatmatctl.core.loader import load_config, load_variants
from heatmatctl.core.model import (
    ConnectionState,
    DetectedDevice,
    DeviceIdentity,
    DeviceSnapshot,
    DeviceVariant,
    DisconnectReason,
    MatConfig,
    Timings,
)
from heatmatctl.core.scheduler import PendingCommand
from heatmatctl.core.service import HeatingMatService
from heatmatctl.core.session import SnapshotListener
from heatmatctl.transports.base import Adapter
from heatmatctl.transports.ble_gatt import BLEGATTAdapter

__all__ = [
    "HeatmatError",
    "ConfigurationError",
    "VariantValidationError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportReadError",
    "DeviceDiscoveryError",
    "FatalAttributeError",
    "ProtocolError",
    "CorruptedPacketError",
    "CharacteristicsMissingError",
    "CommunicationError",
    "NotConnectedError",
    "ConnectionState",
    "DetectedDevice",
    "DeviceIdentity",
    "DeviceSnapshot",
    "DeviceVariant",
    "DisconnectReason",
    "MatConfig",
    "Timings",
    "PendingCommand",
    "BLEGATTAdapter",
    "Client",
    "decode",
    "encode",
    "load_config",
    "load_variants",
    "scan",
]


class Client:
    """Public client for one heating mat.

    Use as an async context manager: entering starts the background
    scan/connect loop, leaving tears the link down.

        async with Client(load_config()) as mat:
            await mat.wait_ready(30)
            await mat.set_temperature(40)
    """

    def __init__(
        self,
        config: MatConfig | None = None,
        *,
        config_path: Path | None = None,
        adapter: Adapter | None = None,
    ) -> None:
        self.config = config or load_config(config_path)
        self._adapter = adapter
        self._service: HeatingMatService | None = None

    async def __aenter__(self) -> Client:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()

    @property
    def service(self) -> HeatingMatService:
        if self._service is None:
            raise HeatmatError("Client is not started")
        return self._service

    @property
    def state(self) -> ConnectionState:
        return self.service.state

    async def start(self) -> None:
        if self._service is None:
            self._service = HeatingMatService(self.config, adapter=self._adapter)
        await self._service.start()

    async def stop(self) -> None:
        if self._service is not None:
            await self._service.stop()

    async def wait_ready(self, timeout: float | None = None) -> None:
        await self.service.wait_ready(timeout)

    async def refresh(self) -> None:
        await self.service.refresh()

    def add_listener(self, listener: SnapshotListener) -> None:
        self.service.add_listener(listener)

    def get_snapshot(self) -> DeviceSnapshot:
        return self.service.get_snapshot()

    def request_temperature(self, celsius: float) -> PendingCommand | None:
        return self.service.request_temperature(celsius)

    def request_power(self, on: bool) -> PendingCommand | None:
        return self.service.request_power(on)

    async def request_timer_hours(self, hours: float) -> bool:
        return await self.service.request_timer_hours(hours)

    async def request_timer_on(self, on: bool) -> bool:
        return await self.service.request_timer_on(on)

    async def set_temperature(self, celsius: float) -> bool:
        """Request a temperature and wait until it is written (False if redundant)."""
        pending = self.request_temperature(celsius)
        if pending is None:
            return False
        return await pending.wait()

    async def set_power(self, on: bool) -> bool:
        pending = self.request_power(on)
        if pending is None:
            return False
        return await pending.wait()


async def scan(
    duration_s: float = 5.0,
    *,
    adapter: Adapter | None = None,
    adapter_id: str = "hci0",
    target_address: str | None = None,
) -> list[tuple[DetectedDevice, bool]]:
    """Discover nearby devices, flagging those matching ``target_address``."""
    active = adapter or BLEGATTAdapter(adapter_id)
    devices = await active.discover(duration_s)
    return [(device, bool(target_address) and is_target(device, target_address)) for device in devices]
