"""
Composition root: builds every component from configuration and exposes the
handful of calls the edge (HTTP/WebSocket server) needs.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from careline.config import AppConfig, get_config
from careline.domain.models import PresenceSnapshot, Role
from careline.services.channels import EmailChannel, PushChannel, PushTransport, VoiceChannel
from careline.services.channels.base import DeliveryChannel
from careline.services.clock import Clock, SystemClock, Ticker
from careline.services.emergency import EmergencyLifecycle
from careline.services.fanout import NotificationFanout
from careline.services.medication import MedicationService
from careline.services.presence import PresenceRegistry
from careline.services.scheduler import (
    AdherenceScheduler,
    MissedEscalationPoller,
    ReminderPoller,
    ScheduleMaterializer,
)
from careline.storage.directory import Directory, SqlDirectory
from careline.storage.sql import SqlStore

logger = structlog.get_logger()


class CareAlertEngine:
    def __init__(
        self,
        config: AppConfig,
        store: SqlStore,
        directory: Directory | None = None,
        off_line_channels: list[DeliveryChannel] | None = None,
        clock: Clock | None = None,
        tickers: dict[str, Ticker] | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.store = store
        self.directory = directory or SqlDirectory(store)

        self.push = PushChannel()
        if off_line_channels is None:
            off_line_channels = [VoiceChannel(config.voice), EmailChannel(config.email)]
        self.off_line_channels = off_line_channels

        self.presence = PresenceRegistry(broadcaster=self.push.broadcast, clock=self.clock)
        self.fanout = NotificationFanout(
            [self.push, *off_line_channels],
            store,
            self.presence,
            config=config.notifications,
            clock=self.clock,
        )
        self.emergencies = EmergencyLifecycle(store, self.directory, self.fanout, clock=self.clock)

        scheduling = config.scheduling
        self.materializer = ScheduleMaterializer(store, scheduling, clock=self.clock)
        self.medications = MedicationService(
            store, self.directory, self.fanout, self.materializer, scheduling, clock=self.clock
        )
        self.reminders = ReminderPoller(
            store, self.directory, self.fanout, scheduling, clock=self.clock
        )
        self.escalations = MissedEscalationPoller(
            store, self.directory, self.fanout, scheduling, clock=self.clock
        )
        self.scheduler = AdherenceScheduler(
            self.materializer, self.reminders, self.escalations, scheduling, tickers=tickers
        )
        self.logger = logger.bind(component="care_alert_engine")

    @classmethod
    def from_config(
        cls, config: AppConfig | None = None, clock: Clock | None = None
    ) -> "CareAlertEngine":
        config = config or get_config()
        return cls(config, SqlStore.from_config(config.database), clock=clock)

    async def start(self) -> None:
        await self.store.create_schema()
        self.logger.info(
            "engine_started",
            environment=self.config.environment,
            channels=[ch.name.value for ch in self.off_line_channels if ch.is_configured],
        )

    def connect(
        self, user_id: str, role: Role, transport_id: str, transport: PushTransport
    ) -> PresenceSnapshot:
        self.push.attach(transport_id, transport)
        return self.presence.register(user_id, role, transport_id)

    def disconnect(self, transport_id: str) -> PresenceSnapshot | None:
        snapshot = self.presence.unregister(transport_id)
        self.push.detach(transport_id)
        return snapshot

    @asynccontextmanager
    async def running(self) -> AsyncIterator["CareAlertEngine"]:
        """Run the background loops for the duration of the block."""
        loops = asyncio.create_task(self.scheduler.run())
        try:
            yield self
        finally:
            self.scheduler.stop()
            await loops

    async def aclose(self) -> None:
        self.scheduler.stop()
        await self.presence.drain()
        for channel in self.off_line_channels:
            if isinstance(channel, VoiceChannel):
                await channel.aclose()
        await self.store.aclose()
        self.logger.info("engine_stopped")
