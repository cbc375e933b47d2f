from __future__ import annotations

import asyncio
import logging

import pytest
from fakes import FINE, STEPPED, make_identity

from heatmatctl.core.codec import encode
from heatmatctl.core.dispatcher import NotificationDispatcher
from heatmatctl.core.model import ROLE_TEMPERATURE, ROLE_TIMER, DeviceVariant
from heatmatctl.core.session import Session


def _dispatcher(variant: DeviceVariant = STEPPED) -> NotificationDispatcher:
    return NotificationDispatcher(Session(make_identity(), variant))


def test_temperature_packet_updates_snapshot() -> None:
    dispatcher = _dispatcher()
    assert dispatcher.handle(ROLE_TEMPERATURE, encode(5))
    snapshot = dispatcher.session.snapshot
    assert snapshot.target_temperature == 40.0
    assert snapshot.current_temperature == 40.0
    assert snapshot.heating is True
    assert snapshot.confirmed_level == 5
    assert snapshot.last_heat_temperature == 40.0


def test_off_packet_keeps_last_heat_temperature() -> None:
    dispatcher = _dispatcher(FINE)
    dispatcher.handle(ROLE_TEMPERATURE, encode(6))
    dispatcher.handle(ROLE_TEMPERATURE, encode(0))
    snapshot = dispatcher.session.snapshot
    assert snapshot.heating is False
    assert snapshot.target_temperature == 0.0
    assert snapshot.confirmed_level == 0
    assert snapshot.last_heat_temperature == 41.0


def test_timer_packet_updates_snapshot() -> None:
    dispatcher = _dispatcher()
    assert dispatcher.handle(ROLE_TIMER, encode(6))
    snapshot = dispatcher.session.snapshot
    assert snapshot.timer_hours == 6
    assert snapshot.timer_on is True
    assert dispatcher.session.variant.timer_percent(snapshot.timer_hours) == pytest.approx(40.0)

    dispatcher.handle(ROLE_TIMER, encode(0))
    assert dispatcher.session.snapshot.timer_on is False
    assert dispatcher.session.snapshot.last_timer_hours == 6


def test_corrupted_packets_are_dropped() -> None:
    dispatcher = _dispatcher()
    before = dispatcher.session.snapshot
    assert not dispatcher.handle(ROLE_TEMPERATURE, bytes.fromhex("05fb05fa"))
    assert not dispatcher.handle(ROLE_TIMER, bytes.fromhex("05"))
    assert dispatcher.session.snapshot is before


def test_out_of_range_values_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    dispatcher = _dispatcher(FINE)
    with caplog.at_level(logging.WARNING):
        assert not dispatcher.handle(ROLE_TEMPERATURE, encode(9))
        assert not dispatcher.handle(ROLE_TIMER, encode(13))
        assert not dispatcher.handle("set", encode(1))
    assert dispatcher.session.snapshot.confirmed_level is None
    assert "exceeds 12 hours" in caplog.text


def test_duplicate_notifications_publish_once() -> None:
    dispatcher = _dispatcher()
    published = []
    dispatcher.session.add_snapshot_listener(published.append)
    dispatcher.handle(ROLE_TEMPERATURE, encode(3))
    dispatcher.handle(ROLE_TEMPERATURE, encode(3))
    assert len(published) == 1


def test_queued_packets_applied_in_order() -> None:
    async def scenario() -> NotificationDispatcher:
        dispatcher = _dispatcher()
        dispatcher.start()
        dispatcher.submit(ROLE_TEMPERATURE, encode(2))
        dispatcher.submit(ROLE_TEMPERATURE, bytearray(encode(7)))
        dispatcher.submit(ROLE_TIMER, encode(1))
        await dispatcher.drain()
        await dispatcher.stop()
        return dispatcher

    dispatcher = asyncio.run(scenario())
    assert dispatcher.session.snapshot.confirmed_level == 7
    assert dispatcher.session.snapshot.timer_hours == 1


def test_full_queue_drops_packet(caplog: pytest.LogCaptureFixture) -> None:
    async def scenario() -> NotificationDispatcher:
        dispatcher = NotificationDispatcher(Session(make_identity(), STEPPED), maxsize=1)
        dispatcher.submit(ROLE_TEMPERATURE, encode(2))
        dispatcher.submit(ROLE_TEMPERATURE, encode(4))
        dispatcher.start()
        await dispatcher.drain()
        await dispatcher.stop()
        return dispatcher

    with caplog.at_level(logging.WARNING):
        dispatcher = asyncio.run(scenario())
    assert dispatcher.session.snapshot.confirmed_level == 2
    assert "queue full" in caplog.text
