"""
Notification fan-out.

One event, many recipients, up to three channels each. Recipients run in
parallel and, within a recipient, channels run in parallel; every attempt is
bounded by its own timeout and turned into a DeliveryOutcome, so a slow or
broken channel can delay only itself. notify() returns after every attempt
has settled and its audit records have been written.
"""

import asyncio
from collections.abc import Collection, Sequence

import structlog

from careline.config import NotificationConfig
from careline.domain.errors import ChannelUnavailable, PersistenceFailure
from careline.domain.models import (
    Channel,
    DeliveryOutcome,
    DeliveryRecord,
    DeliveryStatus,
    NotificationEvent,
    Recipient,
)
from careline.services.channels.base import DeliveryChannel
from careline.services.clock import Clock, SystemClock
from careline.services.presence import PresenceRegistry
from careline.storage.base import Store

logger = structlog.get_logger()


class NotificationFanout:
    def __init__(
        self,
        channels: Sequence[DeliveryChannel],
        store: Store,
        presence: PresenceRegistry,
        config: NotificationConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.channels: dict[Channel, DeliveryChannel] = {ch.name: ch for ch in channels}
        self.store = store
        self.presence = presence
        self.config = config or NotificationConfig()
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="notification_fanout")

    async def notify(
        self,
        event: NotificationEvent,
        recipients: Sequence[Recipient],
        channels: Collection[Channel] | None = None,
    ) -> list[DeliveryOutcome]:
        """
        Deliver `event` to every recipient on every selected channel.

        `channels` restricts the attempt to a subset (push-only events);
        None means all channels. Never raises for delivery or audit failures.
        """
        selected = [ch for ch in Channel if channels is None or ch in channels]

        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self._notify_recipient(event, recipient, selected))
                for recipient in recipients
            ]
        outcomes = [outcome for task in tasks for outcome in task.result()]

        self.logger.info(
            "event_fanned_out",
            event_id=event.event_id,
            event_type=event.type.value,
            recipients=len(recipients),
            sent=sum(1 for o in outcomes if o.status is DeliveryStatus.SENT),
            failed=sum(1 for o in outcomes if o.status is DeliveryStatus.FAILED),
            skipped=sum(1 for o in outcomes if o.status is DeliveryStatus.SKIPPED),
        )
        return outcomes

    async def _notify_recipient(
        self, event: NotificationEvent, recipient: Recipient, channels: Sequence[Channel]
    ) -> list[DeliveryOutcome]:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(self._attempt(event, recipient, ch)) for ch in channels]
        outcomes = [task.result() for task in tasks]
        await self._record(event, recipient, outcomes)
        return outcomes

    def target_for(self, recipient: Recipient, channel: Channel) -> str | None:
        if channel is Channel.PUSH:
            return recipient.push_target or self.presence.current_transport(recipient.id)
        if channel is Channel.VOICE:
            return recipient.voice_target
        return recipient.email_target

    async def _attempt(
        self, event: NotificationEvent, recipient: Recipient, channel_name: Channel
    ) -> DeliveryOutcome:
        def outcome(status: DeliveryStatus, detail: str | None) -> DeliveryOutcome:
            return DeliveryOutcome(
                event_id=event.event_id,
                recipient_id=recipient.id,
                channel=channel_name,
                status=status,
                detail=detail,
            )

        channel = self.channels.get(channel_name)
        if channel is None or not channel.is_configured:
            return outcome(DeliveryStatus.SKIPPED, "channel not configured")

        target = self.target_for(recipient, channel_name)
        if not target:
            return outcome(DeliveryStatus.SKIPPED, f"no {channel_name.value} target")

        timeout = self.config.channel_timeout_seconds
        try:
            result = await asyncio.wait_for(channel.send(target, event), timeout=timeout)
        except TimeoutError:
            self.logger.warning(
                "channel_timeout",
                event_id=event.event_id,
                recipient_id=recipient.id,
                channel=channel_name.value,
                timeout_seconds=timeout,
            )
            return outcome(DeliveryStatus.FAILED, f"timed out after {timeout}s")
        except ChannelUnavailable as e:
            return outcome(DeliveryStatus.SKIPPED, str(e))
        except Exception as e:
            self.logger.error(
                "channel_error",
                event_id=event.event_id,
                recipient_id=recipient.id,
                channel=channel_name.value,
                error=str(e),
                exc_info=True,
            )
            return outcome(DeliveryStatus.FAILED, f"{type(e).__name__}: {e}")

        if result.is_err():
            error = result.unwrap_err()
            if isinstance(error, ChannelUnavailable):
                return outcome(DeliveryStatus.SKIPPED, str(error))
            return outcome(DeliveryStatus.FAILED, str(error))
        return outcome(DeliveryStatus.SENT, result.unwrap())

    async def _record(
        self, event: NotificationEvent, recipient: Recipient, outcomes: Sequence[DeliveryOutcome]
    ) -> None:
        at = self.clock.now()
        records = [
            DeliveryRecord(
                event_id=event.event_id,
                event_type=event.type,
                recipient_id=recipient.id,
                recipient_role=recipient.role,
                channel=o.channel,
                outcome=o.status,
                detail=o.detail,
                at=at,
            )
            for o in outcomes
            if o.attempted
        ]
        if not records:
            return
        try:
            await self.store.append_delivery_records(records)
        except PersistenceFailure as e:
            self.logger.error(
                "delivery_audit_failed",
                event_id=event.event_id,
                recipient_id=recipient.id,
                records=len(records),
                error=str(e),
            )
