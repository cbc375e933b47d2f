"""Shared per-device session: connection state, snapshot and resolved handles."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable

from heatmatctl.core.errors import InvalidTransitionError
from heatmatctl.core.model import (
    ConnectionState,
    DeviceIdentity,
    DeviceSnapshot,
    DeviceVariant,
    DisconnectReason,
)
from heatmatctl.transports.base import Characteristic, Connection, Subscription

LOGGER = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState, ConnectionState], None]
SnapshotListener = Callable[[DeviceSnapshot], None]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.SCANNING}),
    ConnectionState.SCANNING: frozenset({ConnectionState.SCANNING, ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset({ConnectionState.RESOLVING, ConnectionState.DISCONNECTED}),
    ConnectionState.RESOLVING: frozenset({ConnectionState.READY, ConnectionState.DISCONNECTED}),
    ConnectionState.READY: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.SCANNING}),
}


class Session:
    """Single owner of everything the components share about one mat.

    State changes go through :meth:`transition`, snapshot changes through
    :meth:`update_snapshot`; both notify their listeners synchronously.
    """

    def __init__(self, identity: DeviceIdentity, variant: DeviceVariant) -> None:
        self.identity = identity
        self.variant = variant
        self.io_lock = asyncio.Lock()
        self.connection: Connection | None = None
        self.characteristics: dict[str, Characteristic] = {}
        self.subscriptions: list[Subscription] = []
        self.ever_connected = False
        self.disconnect_reason: DisconnectReason | None = None
        self._state = ConnectionState.IDLE
        self._snapshot = DeviceSnapshot.initial(variant)
        self._state_listeners: list[StateListener] = []
        self._snapshot_listeners: list[SnapshotListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def snapshot(self) -> DeviceSnapshot:
        return self._snapshot

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    def add_snapshot_listener(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    def remove_snapshot_listener(self, listener: SnapshotListener) -> None:
        if listener in self._snapshot_listeners:
            self._snapshot_listeners.remove(listener)

    def transition(self, new_state: ConnectionState, reason: DisconnectReason | None = None) -> None:
        old_state = self._state
        if new_state not in _TRANSITIONS[old_state]:
            raise InvalidTransitionError(f"Cannot move from {old_state.value} to {new_state.value}")
        if new_state is ConnectionState.DISCONNECTED:
            self.disconnect_reason = reason
        elif new_state is ConnectionState.READY:
            self.ever_connected = True
        self._state = new_state
        if old_state is new_state:
            return
        if reason is not None:
            LOGGER.info("[%s] %s -> %s (%s)", self.identity.address, old_state.value, new_state.value, reason.value)
        else:
            LOGGER.info("[%s] %s -> %s", self.identity.address, old_state.value, new_state.value)
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception:
                LOGGER.exception("State listener failed on %s -> %s", old_state.value, new_state.value)

    def attach(self, connection: Connection) -> None:
        self.connection = connection

    def bind(self, characteristics: dict[str, Characteristic], subscriptions: list[Subscription]) -> None:
        self.characteristics = dict(characteristics)
        self.subscriptions = list(subscriptions)

    def characteristic(self, role: str) -> Characteristic | None:
        return self.characteristics.get(role)

    def detach(self) -> tuple[Connection | None, list[Subscription]]:
        """Drop the link and every handle resolved on it."""
        connection, subscriptions = self.connection, self.subscriptions
        self.connection = None
        self.characteristics = {}
        self.subscriptions = []
        return connection, subscriptions

    def update_snapshot(self, **changes: object) -> DeviceSnapshot:
        updated = dataclasses.replace(self._snapshot, **changes)
        if updated == self._snapshot:
            return self._snapshot
        self._snapshot = updated
        for listener in list(self._snapshot_listeners):
            try:
                listener(updated)
            except Exception:
                LOGGER.exception("Snapshot listener failed")
        return updated
