"""Periodic re-send of the vendor init packet while the link is ready."""

from __future__ import annotations

import asyncio
import logging

from heatmatctl.core.errors import TransportError
from heatmatctl.core.model import ROLE_SET, ConnectionState
from heatmatctl.core.session import Session

LOGGER = logging.getLogger(__name__)


class KeepAlive:
    def __init__(self, session: Session, *, initial_delay_s: float = 3.0, interval_s: float = 10.0) -> None:
        self.session = session
        self.initial_delay_s = initial_delay_s
        self.interval_s = interval_s
        self.sent = 0
        self._task: asyncio.Task[None] | None = None
        session.add_state_listener(self._on_state)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _on_state(self, old: ConnectionState, new: ConnectionState) -> None:
        if new is ConnectionState.READY:
            self.start()
        elif old is ConnectionState.READY:
            self.stop()

    def start(self) -> None:
        self.stop()
        if self.session.characteristic(ROLE_SET) is None or not self.session.identity.init_payload:
            LOGGER.debug("[KeepAlive] no set characteristic or init payload, not starting")
            return
        LOGGER.debug(
            "[KeepAlive] starting in %.1fs, every %.1fs", self.initial_delay_s, self.interval_s
        )
        self._task = asyncio.create_task(self._run(), name="heatmat-keepalive")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            LOGGER.debug("[KeepAlive] stopped")

    async def _run(self) -> None:
        await asyncio.sleep(self.initial_delay_s)
        while self.session.is_ready:
            await self._send()
            await asyncio.sleep(self.interval_s)

    async def _send(self) -> None:
        characteristic = self.session.characteristic(ROLE_SET)
        payload = self.session.identity.init_payload
        if characteristic is None or not payload:
            return
        try:
            async with self.session.io_lock:
                await characteristic.write(payload, response=False)
        except TransportError as exc:
            LOGGER.debug("[KeepAlive] send failed, waiting for the link to recover: %s", exc)
            return
        except Exception:
            LOGGER.exception("[KeepAlive] unexpected failure sending init packet")
            return
        self.sent += 1
        LOGGER.debug("[KeepAlive] init packet re-sent")
