"""BLE GATT transport implementation."""

from __future__ import annotations

import logging
from collections.abc import Callable

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from heatmatctl.core.errors import (
    FATAL_ATT_ERROR,
    DeviceDiscoveryError,
    FatalAttributeError,
    TransportConnectError,
    TransportReadError,
    TransportSendError,
    attribute_error_code,
)
from heatmatctl.core.model import DetectedDevice
from heatmatctl.transports.base import NotifyCallback

LOGGER = logging.getLogger(__name__)


class BleakSubscription:
    def __init__(self, client: BleakClient, char: BleakGATTCharacteristic) -> None:
        self._client = client
        self._char = char
        self._active = True

    async def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        if not self._client.is_connected:
            return
        try:
            await self._client.stop_notify(self._char)
        except BleakError as exc:
            LOGGER.debug("stop_notify on %s failed: %s", self._char.uuid, exc)


class BleakCharacteristic:
    def __init__(self, client: BleakClient, char: BleakGATTCharacteristic) -> None:
        self._client = client
        self._char = char
        self.uuid = char.uuid

    async def read(self) -> bytes:
        try:
            return bytes(await self._client.read_gatt_char(self._char))
        except (BleakError, OSError) as exc:
            raise TransportReadError(f"BLE read of {self.uuid} failed: {exc}", att_error=attribute_error_code(exc)) from exc

    async def write(self, data: bytes, *, response: bool = False) -> None:
        try:
            await self._client.write_gatt_char(self._char, data, response=response)
        except (BleakError, OSError) as exc:
            code = attribute_error_code(exc)
            error_cls = FatalAttributeError if code == FATAL_ATT_ERROR else TransportSendError
            raise error_cls(f"BLE write to {self.uuid} failed: {exc}", att_error=code) from exc

    async def subscribe(self, callback: NotifyCallback) -> BleakSubscription:
        def _notify_handler(_: BleakGATTCharacteristic, data: bytearray) -> None:
            callback(bytes(data))

        try:
            await self._client.start_notify(self._char, _notify_handler)
        except (BleakError, OSError) as exc:
            raise TransportSendError(f"Subscribing to {self.uuid} failed: {exc}") from exc
        return BleakSubscription(self._client, self._char)


class BleakConnection:
    def __init__(self, client: BleakClient, address: str) -> None:
        self._client = client
        self.address = address

    def _service(self, service_uuid: str) -> BleakGATTService | None:
        try:
            return self._client.services.get_service(service_uuid)
        except BleakError as exc:
            raise TransportConnectError(f"GATT services of {self.address} unavailable: {exc}") from exc

    def has_service(self, service_uuid: str) -> bool:
        return self._service(service_uuid) is not None

    def get_characteristic(self, service_uuid: str, char_uuid: str) -> BleakCharacteristic | None:
        service = self._service(service_uuid)
        if service is None:
            return None
        char = service.get_characteristic(char_uuid)
        if char is None:
            return None
        return BleakCharacteristic(self._client, char)

    async def disconnect(self) -> None:
        try:
            await self._client.disconnect()
        except (BleakError, OSError) as exc:
            raise TransportConnectError(f"BLE disconnect from {self.address} failed: {exc}") from exc


class BLEGATTAdapter:
    def __init__(self, adapter_id: str = "hci0", *, connect_timeout_s: float = 10.0) -> None:
        self.adapter_id = adapter_id
        self.connect_timeout_s = connect_timeout_s

    async def discover(self, duration_s: float) -> list[DetectedDevice]:
        try:
            found = await BleakScanner.discover(timeout=duration_s, adapter=self.adapter_id)
        except (BleakError, OSError) as exc:
            raise DeviceDiscoveryError(
                f"Bluetooth discovery on {self.adapter_id} failed. Ensure BlueZ is running. Details: {exc}"
            ) from exc
        return [DetectedDevice(address=d.address.upper(), name=d.name or "<unknown-device>") for d in found]

    async def connect(self, address: str, *, on_disconnect: Callable[[], None]) -> BleakConnection:
        def _disconnected(_: BleakClient) -> None:
            on_disconnect()

        client = BleakClient(
            address,
            disconnected_callback=_disconnected,
            timeout=self.connect_timeout_s,
            adapter=self.adapter_id,
        )
        try:
            await client.connect()
        except (BleakError, OSError, TimeoutError) as exc:
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc
        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {address}")
        return BleakConnection(client, address)
