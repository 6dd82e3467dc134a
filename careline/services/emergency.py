"""
Emergency alert lifecycle: trigger -> active -> resolved.

The alert row is the source of truth and is written before anyone is told
about it. Resolution is a compare-and-set on the stored status, so when two
caregivers race to resolve the same alert exactly one of them wins.
"""

import asyncio
from dataclasses import dataclass, field

import structlog

from careline.domain.errors import ValidationError
from careline.domain.models import (
    AlertPriority,
    CaregiverContact,
    Channel,
    DeliveryOutcome,
    EmergencyAlert,
    EventType,
    Location,
    NotificationEvent,
    Recipient,
    Role,
    UserProfile,
)
from careline.services.clock import Clock, SystemClock
from careline.services.fanout import NotificationFanout
from careline.storage.base import Store
from careline.storage.directory import Directory

logger = structlog.get_logger()


@dataclass
class TriggerResult:
    alert: EmergencyAlert
    caregivers_notified: int
    outcomes: list[DeliveryOutcome] = field(default_factory=list)


@dataclass
class ResolveResult:
    alert: EmergencyAlert
    outcomes: list[DeliveryOutcome] = field(default_factory=list)


class EmergencyLifecycle:
    def __init__(
        self,
        store: Store,
        directory: Directory,
        fanout: NotificationFanout,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.fanout = fanout
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="emergency_lifecycle")

    async def trigger(
        self,
        elder_id: str,
        location: Location,
        notes: str | None = None,
        priority: AlertPriority = AlertPriority.CRITICAL,
    ) -> TriggerResult:
        """
        Persist a new active alert, then notify.

        A store failure propagates before anyone is notified. Failing to look
        up caregivers does not undo the alert: it is logged and the alert is
        returned with nobody notified.
        """
        alert = EmergencyAlert(
            elder_id=elder_id,
            location=location,
            notes=notes,
            priority=priority,
            created_at=self.clock.now(),
        )
        await self.store.create_alert(alert)
        self.logger.warning(
            "emergency_triggered",
            alert_id=alert.id,
            elder_id=elder_id,
            priority=priority.value,
            location=location.describe(),
        )

        caregivers: list[CaregiverContact] = []
        elder: UserProfile | None = None
        try:
            caregivers = await self.directory.get_caregivers_of(elder_id)
            elder = await self.directory.get_user(elder_id)
        except Exception as e:
            self.logger.error(
                "caregiver_lookup_failed", alert_id=alert.id, elder_id=elder_id, error=str(e)
            )

        elder_name = elder.name if elder else None
        event = NotificationEvent(
            type=EventType.EMERGENCY_TRIGGERED,
            payload={
                "alert_id": alert.id,
                "elder_id": elder_id,
                "elder_name": elder_name,
                "priority": alert.priority.value,
                "location": location.model_dump(),
                "location_text": location.describe(),
                "notes": notes,
                "created_at": alert.created_at.isoformat(),
            },
            occurred_at=alert.created_at,
        )
        elder_recipient = Recipient(id=elder_id, role=Role.ELDER, name=elder_name)

        async with asyncio.TaskGroup() as tg:
            to_caregivers = tg.create_task(
                self.fanout.notify(event, [c.as_recipient() for c in caregivers])
            )
            to_elder = tg.create_task(
                self.fanout.notify(event, [elder_recipient], channels=[Channel.PUSH])
            )

        return TriggerResult(
            alert=alert,
            caregivers_notified=len(caregivers),
            outcomes=to_caregivers.result() + to_elder.result(),
        )

    async def resolve(
        self, alert_id: str, caregiver_id: str, notes: str | None = None
    ) -> ResolveResult:
        """
        Resolve an active alert on behalf of a linked caregiver.

        Raises ValidationError for an unknown alert or a caregiver without an
        active relationship to the elder, ConflictError when the alert was
        already resolved.
        """
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise ValidationError(f"Unknown alert {alert_id}")

        caregivers = await self.directory.get_caregivers_of(alert.elder_id)
        resolver = next((c for c in caregivers if c.id == caregiver_id), None)
        if resolver is None:
            raise ValidationError(
                f"Caregiver {caregiver_id} has no active relationship with elder {alert.elder_id}"
            )

        resolved_at = self.clock.now()
        resolved = await self.store.resolve_alert(alert_id, caregiver_id, resolved_at, notes)
        self.logger.info(
            "emergency_resolved",
            alert_id=alert_id,
            elder_id=resolved.elder_id,
            resolved_by=caregiver_id,
            open_seconds=(resolved_at - resolved.created_at).total_seconds(),
        )

        event = NotificationEvent(
            type=EventType.EMERGENCY_RESOLVED,
            payload={
                "alert_id": alert_id,
                "elder_id": resolved.elder_id,
                "resolved_by": caregiver_id,
                "resolver_name": resolver.name,
                "resolved_at": resolved_at.isoformat(),
                "notes": notes,
            },
            occurred_at=resolved_at,
        )
        outcomes = await self.fanout.notify(
            event, [Recipient(id=resolved.elder_id, role=Role.ELDER)], channels=[Channel.PUSH]
        )
        return ResolveResult(alert=resolved, outcomes=outcomes)

    async def active_alerts_for_caregiver(self, caregiver_id: str) -> list[EmergencyAlert]:
        elders = await self.directory.get_elders_of(caregiver_id)
        return await self.store.list_alerts([e.id for e in elders], active_only=True)

    async def alert_history(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> list[EmergencyAlert]:
        """Elders see their own alerts; caregivers see the alerts of every linked elder."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")

        user = await self.directory.get_user(user_id)
        if user is None:
            raise ValidationError(f"Unknown user {user_id}")

        if user.role is Role.ELDER:
            elder_ids = [user_id]
        else:
            elder_ids = [e.id for e in await self.directory.get_elders_of(user_id)]
        return await self.store.list_alerts(elder_ids, limit=limit, offset=(page - 1) * limit)
