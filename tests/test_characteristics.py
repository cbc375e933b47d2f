from __future__ import annotations

import asyncio
import logging

import pytest
from fakes import INIT_PAYLOAD, STEPPED, FakeConnection, make_characteristics, make_identity

from heatmatctl.core.characteristics import CharacteristicSession
from heatmatctl.core.codec import encode
from heatmatctl.core.dispatcher import NotificationDispatcher
from heatmatctl.core.errors import CharacteristicsMissingError, TransportSendError
from heatmatctl.core.model import ROLE_SET, ROLE_TEMPERATURE, ROLE_TIMER, DeviceIdentity
from heatmatctl.core.reads import ReadSequencer
from heatmatctl.core.session import Session


def _build(identity: DeviceIdentity | None = None) -> CharacteristicSession:
    session = Session(identity or make_identity(), STEPPED)
    dispatcher = NotificationDispatcher(session)
    reads = ReadSequencer(session, dispatcher, gap_s=0)
    return CharacteristicSession(session, dispatcher, reads, init_settle_s=0)


def test_setup_initializes_and_subscribes() -> None:
    async def scenario():
        characteristics = _build()
        connection = FakeConnection()
        await characteristics.setup(connection)

        characteristics.dispatcher.start()
        connection.roles[ROLE_TEMPERATURE].notify(encode(6))
        connection.roles[ROLE_TIMER].notify(encode(9))
        await characteristics.dispatcher.drain()
        await characteristics.dispatcher.stop()
        return characteristics.session, connection

    session, connection = asyncio.run(scenario())
    assert connection.roles[ROLE_SET].writes == [INIT_PAYLOAD]
    assert connection.roles[ROLE_SET].responses == [False]
    assert set(session.characteristics) == {ROLE_TEMPERATURE, ROLE_TIMER, ROLE_SET}
    assert len(session.subscriptions) == 2
    assert session.snapshot.confirmed_level == 6
    assert session.snapshot.timer_hours == 9


def test_missing_service_rejected() -> None:
    async def scenario():
        await _build().setup(FakeConnection(service_uuid="0000abcd-0000-1000-8000-00805f9b34fb"))

    with pytest.raises(CharacteristicsMissingError, match="Service"):
        asyncio.run(scenario())


def test_missing_timer_characteristic_rejected() -> None:
    async def scenario():
        chars = make_characteristics()
        del chars[ROLE_TIMER]
        characteristics = _build()
        with pytest.raises(CharacteristicsMissingError, match="timer: False"):
            await characteristics.setup(FakeConnection(characteristics=chars))
        return characteristics.session

    session = asyncio.run(scenario())
    assert session.characteristics == {}


def test_missing_set_characteristic_is_optional(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario():
        characteristics = _build()
        connection = FakeConnection(characteristics=make_characteristics(with_set=False))
        await characteristics.setup(connection)
        return characteristics.session

    with caplog.at_level(logging.WARNING):
        session = asyncio.run(scenario())
    assert "Optional set characteristic" in caplog.text
    assert ROLE_SET not in session.characteristics
    assert session.characteristic(ROLE_TEMPERATURE) is not None


def test_init_write_failure_propagates() -> None:
    async def scenario():
        connection = FakeConnection()
        connection.roles[ROLE_SET].fail_writes_with = TransportSendError("write refused")
        characteristics = _build()
        with pytest.raises(TransportSendError):
            await characteristics.setup(connection)
        return connection

    connection = asyncio.run(scenario())
    assert connection.roles[ROLE_TEMPERATURE].callback is None


def test_no_init_write_without_payload() -> None:
    async def scenario():
        connection = FakeConnection()
        await _build(make_identity(init_payload=None)).setup(connection)
        return connection

    connection = asyncio.run(scenario())
    assert connection.roles[ROLE_SET].writes == []


def test_seed_queues_both_reads() -> None:
    async def scenario():
        characteristics = _build()
        await characteristics.setup(FakeConnection())
        characteristics.seed()
        return characteristics.reads.pending

    assert asyncio.run(scenario()) == 2
