"""Service layer used by the public API, the CLI and smart-home shims."""

from __future__ import annotations

import asyncio
import logging

from heatmatctl.core.characteristics import CharacteristicSession
from heatmatctl.core.connection import ConnectionManager
from heatmatctl.core.dispatcher import NotificationDispatcher
from heatmatctl.core.errors import CommunicationError
from heatmatctl.core.keepalive import KeepAlive
from heatmatctl.core.model import ConnectionState, DeviceSnapshot, DisconnectReason, MatConfig
from heatmatctl.core.reads import ReadSequencer
from heatmatctl.core.scheduler import CommandScheduler, PendingCommand
from heatmatctl.core.session import Session, SnapshotListener
from heatmatctl.transports.base import Adapter
from heatmatctl.transports.ble_gatt import BLEGATTAdapter

LOGGER = logging.getLogger(__name__)


class HeatingMatService:
    """One managed mat: the connection loop plus the consumer operations.

    Must be constructed and used inside a running event loop.
    """

    def __init__(self, config: MatConfig, *, adapter: Adapter | None = None) -> None:
        self.config = config
        timings = config.timings
        self.session = Session(config.identity, config.variant)
        self.adapter = adapter or BLEGATTAdapter(config.identity.adapter_id)
        self.dispatcher = NotificationDispatcher(self.session)
        self.reads = ReadSequencer(
            self.session,
            self.dispatcher,
            gap_s=timings.read_gap_s,
            on_worker_exit=self._on_read_worker_exit,
        )
        self.characteristics = CharacteristicSession(
            self.session,
            self.dispatcher,
            self.reads,
            init_settle_s=timings.init_settle_s,
        )
        self.connection = ConnectionManager(self.session, self.adapter, self.characteristics, timings)
        self.scheduler = CommandScheduler(self.session, timings, force_disconnect=self.connection.force_disconnect)
        self.keepalive = KeepAlive(
            self.session,
            initial_delay_s=timings.keepalive_initial_s,
            interval_s=timings.keepalive_interval_s,
        )
        self._ready = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self.session.add_state_listener(self._on_state)

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def add_listener(self, listener: SnapshotListener) -> None:
        self.session.add_snapshot_listener(listener)

    def remove_listener(self, listener: SnapshotListener) -> None:
        self.session.remove_snapshot_listener(listener)

    async def start(self) -> None:
        if self.running:
            return
        self.dispatcher.start()
        self.reads.start()
        self._loop_task = asyncio.create_task(self.connection.run(), name="heatmat-connection")

    async def stop(self) -> None:
        self.scheduler.cancel_pending()
        task, self._loop_task = self._loop_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.connection.stop()
        self.keepalive.stop()
        await self.reads.stop()
        await self.dispatcher.stop()

    async def wait_ready(self, timeout: float | None = None) -> None:
        if self.session.is_ready:
            return
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except TimeoutError:
            raise CommunicationError(
                f"Mat {self.config.identity.address} not ready after {timeout:.0f}s"
            ) from None

    def get_snapshot(self) -> DeviceSnapshot:
        return self.session.snapshot

    def request_temperature(self, celsius: float) -> PendingCommand | None:
        return self.scheduler.request_temperature(celsius)

    def request_power(self, on: bool) -> PendingCommand | None:
        return self.scheduler.request_power(on)

    async def request_timer_hours(self, hours: float) -> bool:
        return await self.scheduler.request_timer_hours(hours)

    async def request_timer_on(self, on: bool) -> bool:
        return await self.scheduler.request_timer_on(on)

    async def refresh(self) -> None:
        """Re-read both characteristics through the read queue."""
        self.characteristics.seed()
        await self.reads.join()
        await self.dispatcher.drain()

    def _on_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.READY:
            self.reads.start()
            self._ready.set()
        elif old is ConnectionState.READY:
            self._ready.clear()

    def _on_read_worker_exit(self, exc: BaseException) -> None:
        self.connection.force_disconnect(DisconnectReason.READ_LOOP_EXIT, False)
