"""Post-connect GATT setup: resolve, initialize, subscribe, seed."""

from __future__ import annotations

import asyncio
import functools
import logging

from heatmatctl.core.dispatcher import NotificationDispatcher
from heatmatctl.core.errors import CharacteristicsMissingError
from heatmatctl.core.model import ROLE_SET, ROLE_TEMPERATURE, ROLE_TIMER
from heatmatctl.core.reads import ReadSequencer
from heatmatctl.core.session import Session
from heatmatctl.transports.base import Characteristic, Connection, Subscription

LOGGER = logging.getLogger(__name__)


class CharacteristicSession:
    def __init__(
        self,
        session: Session,
        dispatcher: NotificationDispatcher,
        reads: ReadSequencer,
        *,
        init_settle_s: float = 0.5,
    ) -> None:
        self.session = session
        self.dispatcher = dispatcher
        self.reads = reads
        self.init_settle_s = init_settle_s

    async def setup(self, connection: Connection) -> None:
        """Resolve and bind every characteristic on ``connection``.

        Raises CharacteristicsMissingError when the service or a mandatory
        characteristic is absent; transport errors propagate unchanged.
        """
        identity = self.session.identity
        if not connection.has_service(identity.service_uuid):
            raise CharacteristicsMissingError(
                f"Service {identity.service_uuid} not found. Check that all UUIDs are full 128-bit values."
            )

        temp = connection.get_characteristic(identity.service_uuid, identity.temp_char_uuid)
        timer = connection.get_characteristic(identity.service_uuid, identity.timer_char_uuid)
        if temp is None or timer is None:
            raise CharacteristicsMissingError(
                f"Mandatory characteristic missing (temperature: {temp is not None}, timer: {timer is not None})"
            )

        resolved: dict[str, Characteristic] = {ROLE_TEMPERATURE: temp, ROLE_TIMER: timer}
        if identity.set_char_uuid:
            set_char = connection.get_characteristic(identity.service_uuid, identity.set_char_uuid)
            if set_char is None:
                LOGGER.warning("Optional set characteristic %s not found", identity.set_char_uuid)
            else:
                resolved[ROLE_SET] = set_char
        LOGGER.info("Temperature and timer characteristics resolved")

        if ROLE_SET in resolved and identity.init_payload:
            LOGGER.info("[Init] sending init packet %s", identity.init_payload.hex())
            async with self.session.io_lock:
                await resolved[ROLE_SET].write(identity.init_payload, response=False)
            await asyncio.sleep(self.init_settle_s)

        subscriptions: list[Subscription] = []
        try:
            for role in (ROLE_TEMPERATURE, ROLE_TIMER):
                subscription = await resolved[role].subscribe(functools.partial(self.dispatcher.submit, role))
                subscriptions.append(subscription)
        except BaseException:
            for subscription in subscriptions:
                await subscription.cancel()
            raise

        self.session.bind(resolved, subscriptions)

    def seed(self) -> None:
        """Queue one read of each mandatory characteristic."""
        for role in (ROLE_TEMPERATURE, ROLE_TIMER):
            self.reads.enqueue_role(role)
