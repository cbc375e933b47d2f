"""Temperature/timer command scheduling and the retrying write path."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from heatmatctl.core import codec
from heatmatctl.core.errors import (
    CommunicationError,
    NotConnectedError,
    TransportError,
    is_fatal_attribute_error,
)
from heatmatctl.core.model import ROLE_TEMPERATURE, ROLE_TIMER, DisconnectReason, Timings
from heatmatctl.core.session import Session
from heatmatctl.transports.base import Characteristic

LOGGER = logging.getLogger(__name__)

ForceDisconnect = Callable[[DisconnectReason, bool], None]


class PendingCommand:
    """A debounced temperature write that has not fired yet.

    ``wait()`` returns True once the packet was written, False if the command
    was superseded or skipped, and raises :class:`CommunicationError` if the
    write failed.
    """

    def __init__(self, celsius: float, level: int, display_temperature: float) -> None:
        self.celsius = celsius
        self.level = level
        self.display_temperature = display_temperature
        self.task: asyncio.Task[None] | None = None
        self.sent = False
        self.error: CommunicationError | None = None

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> bool:
        if self.task is None:
            return False
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if self.task.cancelled():
                return False
            raise
        if self.error is not None:
            raise self.error
        return self.sent


class CommandScheduler:
    def __init__(self, session: Session, timings: Timings, *, force_disconnect: ForceDisconnect) -> None:
        self.session = session
        self.timings = timings
        self.force_disconnect = force_disconnect
        self._pending: PendingCommand | None = None

    @property
    def pending(self) -> PendingCommand | None:
        return self._pending

    def cancel_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None:
            pending.cancel()

    def request_temperature(self, celsius: float) -> PendingCommand | None:
        variant = self.session.variant
        level = variant.level_for(celsius)
        display = variant.levels[level]
        snapshot = self.session.snapshot

        if level == snapshot.confirmed_level and display == snapshot.target_temperature:
            LOGGER.debug("[Temp] level %d already applied, dropping request for %s C", level, celsius)
            self.cancel_pending()
            return None

        self.cancel_pending()
        pending = PendingCommand(celsius, level, display)
        pending.task = asyncio.create_task(self._fire(pending), name=f"heatmat-temp-{level}")
        self._pending = pending
        LOGGER.debug("[Temp] %s C -> %s C (level %d), armed", celsius, display, level)
        return pending

    def request_power(self, on: bool) -> PendingCommand | None:
        if not on:
            LOGGER.info("[Power] OFF requested, setting level 0")
            return self.request_temperature(self.session.variant.off_temperature)
        resume = self.session.snapshot.last_heat_temperature or self.session.variant.default_heat_temperature
        LOGGER.info("[Power] ON requested, resuming %s C", resume)
        return self.request_temperature(resume)

    async def request_timer_hours(self, hours: float) -> bool:
        variant = self.session.variant
        clamped = max(0, min(int(round(hours)), variant.max_timer_hours))

        heat_off: PendingCommand | None = None
        if clamped == 0:
            LOGGER.info("[Timer] 0 hours requested, switching heat off")
            heat_off = self.request_power(False)
            packet = variant.timer_off_packet or codec.encode(0)
        else:
            packet = codec.encode(clamped)

        LOGGER.info("[Timer] %d h, packet %s", clamped, packet.hex())
        written = await self.safe_write(self.session.characteristic(ROLE_TIMER), packet, is_off=clamped == 0)
        if written:
            changes: dict[str, object] = {"timer_hours": clamped, "timer_on": clamped > 0}
            if clamped > 0:
                changes["last_timer_hours"] = clamped
            self.session.update_snapshot(**changes)
        # settle the heat-off write before returning
        if heat_off is not None:
            await heat_off.wait()
        return written

    async def request_timer_on(self, on: bool) -> bool:
        if not on:
            return await self.request_timer_hours(0)
        snapshot = self.session.snapshot
        hours = snapshot.timer_hours or snapshot.last_timer_hours or 1
        return await self.request_timer_hours(hours)

    async def _fire(self, pending: PendingCommand) -> None:
        await asyncio.sleep(self.timings.debounce_s)
        if self._pending is pending:
            self._pending = None
        try:
            pending.sent = await self._send_temperature(pending.level)
        except CommunicationError as exc:
            LOGGER.error("[Temp] level %d not applied: %s", pending.level, exc)
            pending.error = exc

    async def _send_temperature(self, level: int) -> bool:
        packet = codec.encode(level)
        LOGGER.debug("[Temp] sending level %d, packet %s", level, packet.hex())
        written = await self.safe_write(self.session.characteristic(ROLE_TEMPERATURE), packet, is_off=level == 0)
        if not written:
            return False

        celsius = self.session.variant.levels[level]
        changes: dict[str, object] = {
            "target_temperature": celsius,
            "current_temperature": celsius,
            "heating": level > 0,
            "confirmed_level": level,
        }
        if level > 0:
            changes["last_heat_temperature"] = celsius
        self.session.update_snapshot(**changes)
        return True

    async def safe_write(self, characteristic: Characteristic | None, packet: bytes, *, is_off: bool = False) -> bool:
        """Write ``packet`` without response, retrying transient failures.

        Returns False only for an OFF command issued before the mat was ever
        connected; there is nothing to turn off in that case.
        """
        if characteristic is None or not self.session.is_ready:
            if is_off and not self.session.ever_connected:
                LOGGER.warning("[Write] not connected yet, skipping OFF packet %s", packet.hex())
                return False
            raise NotConnectedError("Device not connected; reconnecting in the background")

        connection = self.session.connection
        retries = self.timings.write_retries
        async with self.session.io_lock:
            for attempt in range(1, retries + 1):
                if self.session.connection is not connection or not self.session.is_ready:
                    raise NotConnectedError("Link dropped before the write could be applied")
                try:
                    await characteristic.write(packet, response=False)
                except TransportError as exc:
                    LOGGER.warning("[Write] attempt %d/%d failed: %s", attempt, retries, exc)
                    if is_fatal_attribute_error(exc):
                        LOGGER.error("[Write] fatal ATT error, disconnecting")
                        self.force_disconnect(DisconnectReason.WRITE_FATAL, True)
                        raise CommunicationError(f"Write of {packet.hex()} hit a fatal link error: {exc}") from exc
                    if attempt == retries:
                        LOGGER.error("[Write] giving up after %d attempts, disconnecting", retries)
                        self.force_disconnect(DisconnectReason.WRITE_EXHAUSTED, False)
                        raise CommunicationError(f"Write of {packet.hex()} failed after {retries} attempts: {exc}") from exc
                    await asyncio.sleep(self.timings.write_retry_delay_s)
                    continue

                LOGGER.debug("[Write] %s ok (attempt %d/%d)", packet.hex(), attempt, retries)
                await asyncio.sleep(self.timings.write_stabilize_s)
                return True
        raise CommunicationError(f"Write of {packet.hex()} was not attempted")
