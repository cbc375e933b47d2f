"""Scan/connect lifecycle for the managed mat."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Coroutine
from typing import Any

from heatmatctl.core.characteristics import CharacteristicSession
from heatmatctl.core.device_match import find_target
from heatmatctl.core.errors import CharacteristicsMissingError, TransportError
from heatmatctl.core.model import ConnectionState, DetectedDevice, DisconnectReason, Timings
from heatmatctl.core.session import Session
from heatmatctl.transports.base import Adapter, Connection, Subscription

LOGGER = logging.getLogger(__name__)

_LINKED_STATES = frozenset({ConnectionState.CONNECTING, ConnectionState.RESOLVING, ConnectionState.READY})
_BENIGN_CLOSE_ERRORS = ("not connected", "does not exist")


class ConnectionManager:
    """Drives the session through scan, connect, resolve and back.

    The loop never terminates on its own: every failure path ends in
    ``DISCONNECTED`` and the next cycle scans again.
    """

    def __init__(
        self,
        session: Session,
        adapter: Adapter,
        characteristics: CharacteristicSession,
        timings: Timings,
    ) -> None:
        self.session = session
        self.adapter = adapter
        self.characteristics = characteristics
        self.timings = timings
        self._wake = asyncio.Event()
        self._running = False
        self._cached: DetectedDevice | None = None
        self._generation = 0
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def cached_device(self) -> DetectedDevice | None:
        return self._cached

    async def run(self) -> None:
        self._running = True
        LOGGER.info("[BLE] scan/connect loop started for %s", self.session.identity.address)
        while self._running:
            try:
                await self.step()
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("[BLE] connection cycle failed")
                if self.session.state in _LINKED_STATES:
                    self.force_disconnect(DisconnectReason.SETUP_FAILED, True)
                await self._idle(self.timings.scan_interval_s)
        LOGGER.info("[BLE] scan/connect loop stopped")

    async def step(self) -> ConnectionState:
        """Run one cycle of the lifecycle and return the resulting state."""
        if self.session.is_ready:
            LOGGER.debug("[BLE] connected, next check in %.1fs", self.timings.idle_poll_s)
            await self._idle(self.timings.idle_poll_s)
            return self.session.state

        self._wake.clear()
        self.session.transition(ConnectionState.SCANNING)
        device = await self.scan()
        if device is None:
            await self._idle(self.timings.scan_interval_s)
            return self.session.state

        await self.connect(device)
        return self.session.state

    async def scan(self) -> DetectedDevice | None:
        if self._cached is not None:
            LOGGER.debug("[BLE] reusing known device %s", self._cached.address)
            return self._cached

        target_address = self.session.identity.address
        try:
            devices = await self.adapter.discover(self.timings.scan_window_s)
        except TransportError as exc:
            LOGGER.error("[BLE] scan failed: %s", exc)
            return None
        await asyncio.sleep(self.timings.post_scan_settle_s)

        target = find_target(devices, target_address)
        if target is not None:
            LOGGER.info("[BLE] mat found: %s", target.address)
        elif devices:
            LOGGER.debug(
                "[BLE] mat %s not found. Visible devices: %s",
                target_address,
                ", ".join(d.address for d in devices),
            )
        else:
            LOGGER.debug("[BLE] mat %s not found, no devices visible", target_address)
        return target

    async def connect(self, device: DetectedDevice) -> None:
        self.session.transition(ConnectionState.CONNECTING)
        self._generation += 1
        on_disconnect = functools.partial(self._on_peer_disconnect, self._generation)
        try:
            connection = await self.adapter.connect(device.address, on_disconnect=on_disconnect)
        except TransportError as exc:
            LOGGER.error("[BLE] connect to %s failed: %s. Rescanning.", device.address, exc)
            self._cached = None
            self.session.transition(ConnectionState.DISCONNECTED, DisconnectReason.CONNECT_FAILED)
            return

        LOGGER.info("[BLE] connected to %s", device.address)
        self.session.attach(connection)
        self._cached = device

        # attribute reads right after connect() fail on real hardware
        await asyncio.sleep(self.timings.post_connect_settle_s)
        if self.session.connection is not connection:
            return

        self.session.transition(ConnectionState.RESOLVING)
        try:
            await self.characteristics.setup(connection)
        except CharacteristicsMissingError as exc:
            LOGGER.error("[BLE] %s. Disconnecting.", exc)
            self.force_disconnect(DisconnectReason.CHARACTERISTICS_MISSING, True)
            return
        except TransportError as exc:
            LOGGER.error("[BLE] characteristic setup failed: %s. Disconnecting.", exc)
            self.force_disconnect(DisconnectReason.SETUP_FAILED, True)
            return

        if self.session.connection is not connection:
            _, stale = self.session.detach()
            self._spawn(self._close(None, stale))
            return

        self.session.transition(ConnectionState.READY)
        self.characteristics.seed()

    def force_disconnect(self, reason: DisconnectReason, reset_device: bool = False) -> None:
        """Tear the link down now; the close itself runs in the background."""
        state = self.session.state
        connection, subscriptions = self.session.detach()
        if reset_device:
            self._cached = None
        if state in _LINKED_STATES:
            self.session.transition(ConnectionState.DISCONNECTED, reason)
        else:
            LOGGER.debug("[BLE] disconnect (%s) requested while %s", reason.value, state.value)
        self._wake.set()
        if connection is not None or subscriptions:
            self._spawn(self._close(connection, subscriptions))

    def _on_peer_disconnect(self, generation: int) -> None:
        if generation != self._generation or self.session.connection is None:
            return
        LOGGER.warning("[BLE] mat disconnected. Restarting scan loop.")
        self.force_disconnect(DisconnectReason.PEER_DROPPED, True)

    async def stop(self) -> None:
        self._running = False
        if self.session.state in _LINKED_STATES:
            self.force_disconnect(DisconnectReason.SHUTDOWN, False)
        self._wake.set()
        await self.wait_closed()

    async def wait_closed(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _idle(self, delay_s: float) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay_s)
        except TimeoutError:
            pass
        self._wake.clear()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close(self, connection: Connection | None, subscriptions: list[Subscription]) -> None:
        for subscription in subscriptions:
            try:
                await subscription.cancel()
            except TransportError as exc:
                LOGGER.debug("[BLE] unsubscribe failed: %s", exc)
        if connection is None:
            return
        try:
            await connection.disconnect()
        except TransportError as exc:
            message = str(exc).lower()
            if not any(marker in message for marker in _BENIGN_CLOSE_ERRORS):
                LOGGER.warning("[BLE] disconnect failed: %s", exc)
