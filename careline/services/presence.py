"""
Presence registry: who is connected right now, and through which transport.

The registry is a plain in-memory index mutated from the event loop thread.
Every mutation is a single-key update followed by a fresh snapshot, so there
is no lock and nothing here awaits. Broadcasting the new counts is handed to
a background task; the registry never waits for it and never sees its errors.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from careline.domain.models import (
    ConnectionHandle,
    EventType,
    NotificationEvent,
    PresenceSnapshot,
    Role,
)
from careline.services.clock import Clock, SystemClock

logger = structlog.get_logger()

Broadcaster = Callable[[NotificationEvent], Awaitable[object]]


class PresenceRegistry:
    """
    Bidirectional index of live connections.

    `user_id -> {transport_id -> handle}` (insertion ordered, newest last) and
    `transport_id -> user_id`, so unregistering by transport is O(1). The
    newest handle of a user is their push target; older transports stay
    registered as fallbacks until they disconnect. Counts are per distinct
    user, not per transport.
    """

    def __init__(self, broadcaster: Broadcaster | None = None, clock: Clock | None = None) -> None:
        self._broadcaster = broadcaster
        self.clock = clock or SystemClock()
        self._by_user: dict[str, dict[str, ConnectionHandle]] = {}
        self._by_transport: dict[str, str] = {}
        self._pending: set[asyncio.Task[None]] = set()
        self.logger = logger.bind(component="presence_registry")

    def register(self, user_id: str, role: Role, transport_id: str) -> PresenceSnapshot:
        owner = self._by_transport.get(transport_id)
        if owner is not None and owner != user_id:
            # Transport ids are unique per connection; a reused id belongs to the newest user.
            self._drop(transport_id)

        handles = self._by_user.setdefault(user_id, {})
        handles.pop(transport_id, None)
        handles[transport_id] = ConnectionHandle(
            user_id=user_id, role=role, transport_id=transport_id, connected_at=self.clock.now()
        )
        self._by_transport[transport_id] = user_id

        self.logger.info(
            "user_connected", user_id=user_id, role=role.value, transport_id=transport_id
        )
        return self._publish()

    def unregister(self, transport_id: str) -> PresenceSnapshot | None:
        """Forget a transport. Unknown transports are ignored and nothing is broadcast."""
        user_id = self._drop(transport_id)
        if user_id is None:
            return None
        self.logger.info("user_disconnected", user_id=user_id, transport_id=transport_id)
        return self._publish()

    def snapshot(self) -> PresenceSnapshot:
        elders = caregivers = 0
        for handles in self._by_user.values():
            newest = handles[next(reversed(handles))]
            if newest.role is Role.ELDER:
                elders += 1
            else:
                caregivers += 1
        return PresenceSnapshot(
            active_elders=elders, active_caregivers=caregivers, as_of=self.clock.now()
        )

    def current_transport(self, user_id: str) -> str | None:
        handles = self._by_user.get(user_id)
        if not handles:
            return None
        return next(reversed(handles))

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._by_user

    def connected_users(self, role: Role | None = None) -> list[str]:
        if role is None:
            return list(self._by_user)
        return [
            user_id
            for user_id, handles in self._by_user.items()
            if handles[next(reversed(handles))].role is role
        ]

    async def drain(self) -> None:
        """Wait for broadcasts already handed off. Used on shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _drop(self, transport_id: str) -> str | None:
        user_id = self._by_transport.pop(transport_id, None)
        if user_id is None:
            return None
        handles = self._by_user.get(user_id, {})
        handles.pop(transport_id, None)
        if not handles:
            self._by_user.pop(user_id, None)
        return user_id

    def _publish(self) -> PresenceSnapshot:
        snapshot = self.snapshot()
        if self._broadcaster is None:
            return snapshot

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("presence_broadcast_skipped", reason="no running event loop")
            return snapshot

        event = NotificationEvent(
            type=EventType.ACTIVE_USERS_UPDATE,
            payload={
                "active_elders": snapshot.active_elders,
                "active_caregivers": snapshot.active_caregivers,
            },
            occurred_at=snapshot.as_of,
        )
        task = loop.create_task(self._broadcast(self._broadcaster, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return snapshot

    async def _broadcast(self, broadcaster: Broadcaster, event: NotificationEvent) -> None:
        try:
            await broadcaster(event)
        except Exception as e:
            self.logger.warning("presence_broadcast_failed", event_id=event.event_id, error=str(e))
