"""
Medication API: definitions, dose transitions and adherence figures.

Definitions are edited here and materialized on the spot, so a new schedule
shows up in "today" without waiting for the next materializer pass.
"""

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import pydantic
import structlog

from careline.config import SchedulingConfig
from careline.domain.errors import ValidationError
from careline.domain.models import (
    AdherenceStats,
    Channel,
    EventType,
    InstanceStatus,
    MedicationDefinition,
    MedicationInstance,
    NotificationEvent,
    Role,
)
from careline.services.clock import Clock, SystemClock
from careline.services.fanout import NotificationFanout
from careline.services.scheduler import (
    ScheduleMaterializer,
    local_today,
    medication_payload,
    planned_times,
)
from careline.storage.base import Store
from careline.storage.directory import Directory

logger = structlog.get_logger()

UPDATABLE_FIELDS = frozenset(
    {"name", "dosage", "instructions", "time_slots", "end_date", "timezone"}
)


@dataclass
class ScheduledDose:
    instance: MedicationInstance
    definition: MedicationDefinition


class MedicationService:
    def __init__(
        self,
        store: Store,
        directory: Directory,
        fanout: NotificationFanout,
        materializer: ScheduleMaterializer,
        config: SchedulingConfig,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.fanout = fanout
        self.materializer = materializer
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="medication_service")

    async def add_definition(
        self,
        owner_id: str,
        name: str,
        dosage: str,
        time_slots: list[str] | list[time],
        start_date: date | None = None,
        end_date: date | None = None,
        instructions: str | None = None,
        timezone: str | None = None,
    ) -> MedicationDefinition:
        owner = await self.directory.get_user(owner_id)
        if owner is None or owner.role is not Role.ELDER:
            raise ValidationError(f"Unknown elder {owner_id}")

        timezone = _zone_name(timezone or self.config.default_timezone)
        definition = _validated(
            owner_id=owner_id,
            name=name,
            dosage=dosage,
            instructions=instructions,
            time_slots=time_slots,
            start_date=start_date or local_today(self.clock, timezone),
            end_date=end_date,
            timezone=timezone,
            created_at=self.clock.now(),
        )
        await self.store.save_definition(definition)
        created = await self.materializer.materialize(definition)
        self.logger.info(
            "medication_added",
            definition_id=definition.id,
            owner_id=owner_id,
            slots=definition.slot_labels(),
            instances_created=created,
        )
        return definition

    async def update_definition(
        self, definition_id: str, owner_id: str, /, **changes: Any
    ) -> MedicationDefinition:
        """
        Apply changes to an active definition.

        Future pending instances that no longer match the new schedule are
        skipped; newly planned ones are materialized. A definition deleted
        while the update is in flight stays deleted.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        current = await self._owned_definition(definition_id, owner_id)
        if "timezone" in changes:
            changes["timezone"] = _zone_name(changes["timezone"])
        updated = _validated(**{**current.model_dump(), **changes})
        if not await self.store.update_active_definition(updated):
            raise ValidationError(f"Unknown medication {definition_id}")

        today = local_today(self.clock, updated.timezone)
        keep = planned_times(updated, today, self.config.horizon_days)
        skipped = await self.store.skip_pending_instances(
            definition_id, after=self.clock.now(), keep=keep
        )
        created = await self.materializer.materialize(updated)
        self.logger.info(
            "medication_updated",
            definition_id=definition_id,
            fields=sorted(changes),
            instances_skipped=skipped,
            instances_created=created,
        )
        return updated

    async def delete_definition(self, definition_id: str, owner_id: str) -> int:
        """Deactivate a definition and skip its future pending doses. Returns the skip count."""
        await self._owned_definition(definition_id, owner_id)
        await self.store.deactivate_definition(definition_id)
        skipped = await self.store.skip_pending_instances(definition_id, after=self.clock.now())
        self.logger.info(
            "medication_deactivated", definition_id=definition_id, instances_skipped=skipped
        )
        return skipped

    async def mark_taken(
        self, instance_id: str, owner_id: str, notes: str | None = None
    ) -> MedicationInstance:
        return await self._transition(
            instance_id, owner_id, InstanceStatus.TAKEN, EventType.MEDICATION_TAKEN, notes
        )

    async def mark_missed(
        self, instance_id: str, owner_id: str, notes: str | None = None
    ) -> MedicationInstance:
        return await self._transition(
            instance_id, owner_id, InstanceStatus.MISSED, EventType.MEDICATION_MISSED, notes
        )

    async def list_definitions(self, owner_id: str) -> list[MedicationDefinition]:
        """Active definitions of an elder, newest first."""
        return await self.store.list_definitions(owner_id)

    async def todays_schedule(
        self, owner_id: str, timezone: str | None = None
    ) -> list[ScheduledDose]:
        """
        Doses falling on the elder's "today".

        With an explicit `timezone` every dose is placed in that zone's day;
        otherwise each dose uses the time zone of its own definition.
        """
        if timezone is not None:
            timezone = _zone_name(timezone)
        definitions: dict[str, MedicationDefinition] = {
            d.id: d for d in await self.store.list_definitions(owner_id)
        }
        zones = {timezone} if timezone else {d.timezone for d in definitions.values()}
        windows = {
            name: _day_window(self.clock, name)
            for name in zones or {self.config.default_timezone}
        }
        start = min(window[0] for window in windows.values())
        end = max(window[1] for window in windows.values())

        doses = []
        for instance in await self.store.instances_for_owner(owner_id, start, end):
            definition = definitions.get(instance.definition_id)
            if definition is None:
                definition = await self.store.get_definition(instance.definition_id)
                if definition is None:
                    continue
                definitions[definition.id] = definition
            zone_name = timezone or definition.timezone
            if zone_name not in windows:
                windows[zone_name] = _day_window(self.clock, zone_name)
            day_start, day_end = windows[zone_name]
            if day_start <= instance.scheduled_at < day_end:
                doses.append(ScheduledDose(instance=instance, definition=definition))
        return doses

    async def adherence_stats(self, owner_id: str, days: int = 7) -> AdherenceStats:
        if days < 1:
            raise ValidationError("days must be at least 1")
        now = self.clock.now()
        return await self.store.adherence_counts(owner_id, now - timedelta(days=days), now)

    async def _owned_definition(self, definition_id: str, owner_id: str) -> MedicationDefinition:
        definition = await self.store.get_definition(definition_id)
        if definition is None or definition.owner_id != owner_id or not definition.active:
            raise ValidationError(f"Unknown medication {definition_id}")
        return definition

    async def _transition(
        self,
        instance_id: str,
        owner_id: str,
        new: InstanceStatus,
        event_type: EventType,
        notes: str | None,
    ) -> MedicationInstance:
        instance = await self.store.transition_instance(
            instance_id,
            expected=InstanceStatus.PENDING,
            new=new,
            at=self.clock.now(),
            notes=notes,
            owner_id=owner_id,
        )
        self.logger.info("dose_recorded", instance_id=instance_id, status=new.value)

        try:
            definition = await self.store.get_definition(instance.definition_id)
            elder = await self.directory.get_user(owner_id)
            caregivers = await self.directory.get_caregivers_of(owner_id)
        except Exception as e:
            self.logger.error(
                "dose_notification_lookup_failed", instance_id=instance_id, error=str(e)
            )
            return instance

        event = NotificationEvent(
            type=event_type, payload=medication_payload(instance, definition, elder)
        )
        await self.fanout.notify(
            event, [c.as_recipient() for c in caregivers], channels=[Channel.PUSH]
        )
        return instance


def _zone_name(name: str) -> str:
    try:
        ZoneInfo(name)
    except (KeyError, ValueError) as e:
        raise ValidationError(f"Unknown time zone: {name}") from e
    return name


def _validated(**fields: Any) -> MedicationDefinition:
    try:
        return MedicationDefinition(**fields)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e)) from e


def _day_window(clock: Clock, zone_name: str) -> tuple[datetime, datetime]:
    """UTC bounds of the current local day in `zone_name`."""
    zone = ZoneInfo(zone_name)
    today = local_today(clock, zone_name)
    start = datetime.combine(today, time.min, tzinfo=zone)
    end = datetime.combine(today + timedelta(days=1), time.min, tzinfo=zone)
    return start.astimezone(UTC), end.astimezone(UTC)
