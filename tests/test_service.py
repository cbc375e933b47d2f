from __future__ import annotations

import asyncio

import pytest
from fakes import INIT_PAYLOAD, FakeAdapter, make_config

from heatmatctl.core.codec import encode
from heatmatctl.core.errors import CommunicationError, TransportSendError
from heatmatctl.core.model import ROLE_SET, ROLE_TEMPERATURE, ROLE_TIMER, ConnectionState, DisconnectReason
from heatmatctl.core.service import HeatingMatService


def test_service_connects_seeds_and_writes() -> None:
    adapter = FakeAdapter()

    async def scenario():
        service = HeatingMatService(make_config(), adapter=adapter)
        snapshots = []
        service.add_listener(snapshots.append)
        await service.start()
        await service.wait_ready(1)
        await service.refresh()
        seeded = service.get_snapshot()

        pending = service.request_temperature(45)
        assert await pending.wait() is True
        assert await service.request_timer_hours(8) is True
        await service.stop()
        return service, seeded, snapshots

    service, seeded, snapshots = asyncio.run(scenario())
    connection = adapter.connections[0]
    assert seeded.confirmed_level == 3
    assert seeded.timer_hours == 2
    assert connection.roles[ROLE_SET].writes[0] == INIT_PAYLOAD
    assert connection.roles[ROLE_TEMPERATURE].writes == [encode(6)]
    assert connection.roles[ROLE_TIMER].writes == [encode(8)]
    assert snapshots[-1].timer_hours == 8
    assert service.state is ConnectionState.DISCONNECTED
    assert service.session.disconnect_reason is DisconnectReason.SHUTDOWN
    assert connection.disconnects == 1
    assert not service.running


def test_redundant_request_after_seed_is_dropped() -> None:
    adapter = FakeAdapter()

    async def scenario():
        service = HeatingMatService(make_config(), adapter=adapter)
        await service.start()
        await service.wait_ready(1)
        await service.refresh()
        pending = service.request_temperature(31)
        await service.stop()
        return pending

    assert asyncio.run(scenario()) is None
    assert adapter.connections[0].roles[ROLE_TEMPERATURE].writes == []


def test_wait_ready_times_out_without_device() -> None:
    async def scenario():
        service = HeatingMatService(make_config(), adapter=FakeAdapter(devices=[]))
        await service.start()
        try:
            await service.wait_ready(0.05)
        finally:
            await service.stop()

    with pytest.raises(CommunicationError, match="not ready"):
        asyncio.run(scenario())


def test_exhausted_write_reconnects() -> None:
    adapter = FakeAdapter()

    async def scenario():
        service = HeatingMatService(make_config(), adapter=adapter)
        await service.start()
        await service.wait_ready(1)
        adapter.connections[0].roles[ROLE_TIMER].fail_writes_with = TransportSendError("Device busy")
        with pytest.raises(CommunicationError):
            await service.request_timer_hours(4)
        await service.wait_ready(1)
        reconnected = service.session.connection
        await service.stop()
        return reconnected

    reconnected = asyncio.run(scenario())
    assert len(adapter.connections) == 2
    assert reconnected is adapter.connections[1]
    assert len(adapter.connections[0].roles[ROLE_TIMER].writes) == 3
