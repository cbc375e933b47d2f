"""Inbound packet handling: notifications and seed reads update the snapshot."""

from __future__ import annotations

import asyncio
import logging

from heatmatctl.core import codec
from heatmatctl.core.errors import ProtocolError
from heatmatctl.core.model import ROLE_TEMPERATURE, ROLE_TIMER
from heatmatctl.core.session import Session

LOGGER = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 64


class NotificationDispatcher:
    def __init__(self, session: Session, *, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self.session = session
        self._queue: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue(maxsize=maxsize)
        self._worker: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="heatmat-dispatcher")

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    async def drain(self) -> None:
        await self._queue.join()

    def submit(self, role: str, payload: bytes) -> None:
        try:
            self._queue.put_nowait((role, bytes(payload)))
        except asyncio.QueueFull:
            LOGGER.warning("Dispatcher queue full, dropping %s packet %s", role, bytes(payload).hex())

    async def _run(self) -> None:
        while True:
            role, payload = await self._queue.get()
            try:
                self.handle(role, payload)
            except Exception:
                LOGGER.exception("Failed to apply %s packet %s", role, payload.hex())
            finally:
                self._queue.task_done()

    def handle(self, role: str, payload: bytes) -> bool:
        """Apply one packet to the snapshot. Returns False when it was dropped."""
        if role not in (ROLE_TEMPERATURE, ROLE_TIMER):
            LOGGER.warning("Ignoring packet for unknown role '%s'", role)
            return False

        try:
            value = codec.decode(payload)
        except ProtocolError as exc:
            LOGGER.debug("Dropping %s packet: %s", role, exc)
            return False

        if role == ROLE_TEMPERATURE:
            return self._apply_temperature(value)
        return self._apply_timer(value)

    def _apply_temperature(self, level: int) -> bool:
        variant = self.session.variant
        celsius = variant.temperature_for(level)
        if celsius is None:
            LOGGER.warning("Temperature level %d is not in variant '%s', ignoring", level, variant.id)
            return False

        heating = level > 0
        changes: dict[str, object] = {
            "target_temperature": celsius,
            "current_temperature": celsius,
            "heating": heating,
            "confirmed_level": level,
        }
        if heating:
            changes["last_heat_temperature"] = celsius
        self.session.update_snapshot(**changes)
        LOGGER.info("[Sync] temperature %s C (level %d)", celsius, level)
        return True

    def _apply_timer(self, hours: int) -> bool:
        variant = self.session.variant
        if hours > variant.max_timer_hours:
            LOGGER.warning("Timer value %d exceeds %d hours, ignoring", hours, variant.max_timer_hours)
            return False

        changes: dict[str, object] = {"timer_hours": hours, "timer_on": hours > 0}
        if hours > 0:
            changes["last_timer_hours"] = hours
        self.session.update_snapshot(**changes)
        LOGGER.info("[Sync] timer %d h (%d%%)", hours, round(variant.timer_percent(hours)))
        return True
