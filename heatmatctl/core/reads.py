"""Serialized characteristic reads."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from heatmatctl.core.dispatcher import NotificationDispatcher
from heatmatctl.core.errors import TransportError
from heatmatctl.core.session import Session
from heatmatctl.transports.base import Characteristic

LOGGER = logging.getLogger(__name__)


class ReadSequencer:
    """FIFO of pending reads drained by one worker.

    Results are handed to the dispatcher exactly like notifications. Failed
    reads are logged and skipped; they never tear the link down.
    """

    def __init__(
        self,
        session: Session,
        dispatcher: NotificationDispatcher,
        *,
        gap_s: float = 0.2,
        on_worker_exit: Callable[[BaseException], None] | None = None,
    ) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.gap_s = gap_s
        self.on_worker_exit = on_worker_exit
        self._queue: asyncio.Queue[tuple[Characteristic, str]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name="heatmat-reads")
            self._worker.add_done_callback(self._worker_done)

    async def stop(self) -> None:
        worker, self._worker = self._worker, None
        if worker is None:
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    def enqueue(self, characteristic: Characteristic, role: str) -> None:
        self._queue.put_nowait((characteristic, role))

    def enqueue_role(self, role: str) -> bool:
        characteristic = self.session.characteristic(role)
        if characteristic is None:
            LOGGER.debug("No %s characteristic resolved, read skipped", role)
            return False
        self.enqueue(characteristic, role)
        return True

    async def join(self) -> None:
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            characteristic, role = await self._queue.get()
            try:
                await self._read_one(characteristic, role)
                await asyncio.sleep(self.gap_s)
            finally:
                self._queue.task_done()

    async def _read_one(self, characteristic: Characteristic, role: str) -> None:
        if not self.session.is_ready:
            LOGGER.debug("Skipping %s read, session is %s", role, self.session.state.value)
            return
        try:
            async with self.session.io_lock:
                payload = await characteristic.read()
        except TransportError as exc:
            LOGGER.warning("[Read] %s read failed, skipping: %s", role, exc)
            return
        LOGGER.debug("[Read] %s -> %s", role, payload.hex())
        self.dispatcher.submit(role, payload)

    def _worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error("Read worker stopped unexpectedly: %s", exc)
        if self.on_worker_exit is not None:
            self.on_worker_exit(exc)
