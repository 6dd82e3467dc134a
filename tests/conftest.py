"""
Shared fixtures: a real SQLite store per test, a seeded directory, a manual
clock and in-memory channel doubles.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from careline.config import NotificationConfig, SchedulingConfig
from careline.domain.errors import ChannelFailure
from careline.domain.models import (
    CaregiverContact,
    Channel,
    NotificationEvent,
    Role,
    UserProfile,
)
from careline.services.channels.push import PushChannel
from careline.services.clock import ManualClock
from careline.services.fanout import NotificationFanout
from careline.services.presence import PresenceRegistry
from careline.services.result import Result
from careline.storage.directory import SqlDirectory
from careline.storage.seed import add_users, link_caregiver
from careline.storage.sql import SqlStore

# Monday, 08:00 UTC
START = datetime(2026, 3, 2, 8, 0, tzinfo=UTC)

ELDER = UserProfile(
    id="elder-1",
    name="Margaret",
    role=Role.ELDER,
    phone="+15550000001",
    email="margaret@example.com",
)
SON = UserProfile(
    id="cg-1", name="Daniel", role=Role.CAREGIVER, phone="+15550000002", email="daniel@example.com"
)
NURSE = UserProfile(id="cg-2", name="Priya", role=Role.CAREGIVER, email="priya@example.com")
FORMER = UserProfile(id="cg-9", name="Sam", role=Role.CAREGIVER, phone="+15550000009")


class FakeTransport:
    """Stands in for a WebSocket: records every JSON message it is sent."""

    def __init__(self, fail: bool = False) -> None:
        self.messages: list[dict[str, Any]] = []
        self.fail = fail

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("socket closed")
        self.messages.append(message)

    def events(self) -> list[str]:
        return [m["event"] for m in self.messages]


class RecordingChannel:
    """Off-line channel double with switchable failure modes."""

    def __init__(
        self,
        name: Channel,
        configured: bool = True,
        fail: bool = False,
        raise_error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.name = name
        self.configured = configured
        self.fail = fail
        self.raise_error = raise_error
        self.delay = delay
        self.sent: list[tuple[str, NotificationEvent]] = []

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def send(self, target: str, event: NotificationEvent) -> Result[str, Exception]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail:
            return Result.err(ChannelFailure(f"{self.name.value} provider down"))
        self.sent.append((target, event))
        return Result.ok(f"{self.name.value}-{len(self.sent)}")

    def targets(self) -> list[str]:
        return [target for target, _ in self.sent]


class FakeDirectory:
    """In-memory directory, optionally broken."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.users: dict[str, UserProfile] = {u.id: u for u in (ELDER, SON, NURSE, FORMER)}
        self.links: dict[str, list[str]] = {ELDER.id: [SON.id, NURSE.id]}

    async def get_caregivers_of(self, elder_id: str) -> list[CaregiverContact]:
        if self.fail:
            raise ConnectionError("directory unavailable")
        return [
            CaregiverContact(
                id=self.users[cid].id,
                name=self.users[cid].name,
                email=self.users[cid].email,
                phone=self.users[cid].phone,
            )
            for cid in self.links.get(elder_id, [])
        ]

    async def get_user(self, user_id: str) -> UserProfile | None:
        if self.fail:
            raise ConnectionError("directory unavailable")
        return self.users.get(user_id)

    async def get_elders_of(self, caregiver_id: str) -> list[UserProfile]:
        return [
            self.users[elder_id]
            for elder_id, caregivers in self.links.items()
            if caregiver_id in caregivers
        ]


class CountingTicker:
    """Ticker that lets a loop run `limit` times, then stops it."""

    def __init__(self, limit: int = 1) -> None:
        self.limit = limit
        self.ticks = 0
        self.stopped = False

    async def wait(self) -> bool:
        await asyncio.sleep(0)
        self.ticks += 1
        return not self.stopped and self.ticks < self.limit

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def scheduling() -> SchedulingConfig:
    return SchedulingConfig()


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[SqlStore]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'careline.db'}")
    sql_store = SqlStore(engine)
    await sql_store.create_schema()
    yield sql_store
    await sql_store.aclose()


@pytest_asyncio.fixture
async def directory(store: SqlStore) -> SqlDirectory:
    await add_users(store, [ELDER, SON, NURSE, FORMER])
    await link_caregiver(store, ELDER.id, SON.id, relationship="son")
    await link_caregiver(store, ELDER.id, NURSE.id, relationship="nurse")
    await link_caregiver(store, ELDER.id, FORMER.id, relationship="neighbour", is_active=False)
    return SqlDirectory(store)


@pytest.fixture
def push() -> PushChannel:
    return PushChannel()


@pytest.fixture
def voice() -> RecordingChannel:
    return RecordingChannel(Channel.VOICE)


@pytest.fixture
def email() -> RecordingChannel:
    return RecordingChannel(Channel.EMAIL)


@pytest.fixture
def presence(push: PushChannel, clock: ManualClock) -> PresenceRegistry:
    return PresenceRegistry(broadcaster=push.broadcast, clock=clock)


@pytest.fixture
def fanout(
    push: PushChannel,
    voice: RecordingChannel,
    email: RecordingChannel,
    store: SqlStore,
    presence: PresenceRegistry,
    clock: ManualClock,
) -> NotificationFanout:
    return NotificationFanout(
        [push, voice, email],
        store,
        presence,
        config=NotificationConfig(channel_timeout_seconds=0.5),
        clock=clock,
    )


def connect(
    push: PushChannel,
    presence: PresenceRegistry,
    user_id: str,
    role: Role,
    transport_id: str,
    fail: bool = False,
) -> FakeTransport:
    transport = FakeTransport(fail=fail)
    push.attach(transport_id, transport)
    presence.register(user_id, role, transport_id)
    return transport
