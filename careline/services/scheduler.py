"""
Medication schedule materialization and the adherence loops.

Three independent jobs share the store and nothing else:

1. Materializer: turns active definitions into dated instances for a rolling
   horizon. Re-running is a no-op thanks to the (definition_id, scheduled_at)
   uniqueness key.
2. Reminder poller: reminds elders (and their caregivers) of doses coming up
   within the lead window, once per instance.
3. Missed-escalation poller: moves doses still pending after the grace period
   to `missed` and escalates to caregivers on every channel.

Each status change is a compare-and-set, so the pollers can race a user
marking the same dose taken without any lock: whoever moves the row out of
`pending` first wins and the other side backs off.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog

from careline.config import SchedulingConfig
from careline.domain.errors import ConflictError, PersistenceFailure
from careline.domain.models import (
    Channel,
    EventType,
    InstanceStatus,
    MedicationDefinition,
    MedicationInstance,
    NotificationEvent,
    Recipient,
    Role,
    UserProfile,
)
from careline.services.clock import Clock, IntervalTicker, SystemClock, Ticker
from careline.services.fanout import NotificationFanout
from careline.storage.base import Store
from careline.storage.directory import Directory

logger = structlog.get_logger()

AUTO_MISSED_NOTE = "Automatically marked as missed"


def planned_times(
    definition: MedicationDefinition, today: date, horizon_days: int
) -> list[datetime]:
    """
    Every scheduled moment of `definition` within the horizon, in UTC.

    Days run from max(today, start_date) to min(today + horizon_days - 1,
    end_date) inclusive; each slot is a wall-clock time in the definition's
    time zone. Slots that fall in a DST gap resolve to the pre-transition
    offset.
    """
    if horizon_days < 1:
        raise ValueError("horizon_days must be at least 1")

    zone = ZoneInfo(definition.timezone)
    first = max(today, definition.start_date)
    last = today + timedelta(days=horizon_days - 1)
    if definition.end_date is not None:
        last = min(last, definition.end_date)

    times: list[datetime] = []
    day = first
    while day <= last:
        for slot in definition.time_slots:
            times.append(datetime.combine(day, slot, tzinfo=zone).astimezone(UTC))
        day += timedelta(days=1)
    return times


def local_today(clock: Clock, timezone: str) -> date:
    return clock.now().astimezone(ZoneInfo(timezone)).date()


def medication_payload(
    instance: MedicationInstance,
    definition: MedicationDefinition | None,
    elder: UserProfile | None,
) -> dict[str, Any]:
    """Event payload shared by every medication event."""
    zone = ZoneInfo(definition.timezone) if definition else UTC
    return {
        "instance_id": instance.id,
        "definition_id": instance.definition_id,
        "elder_id": instance.owner_id,
        "elder_name": elder.name if elder else None,
        "medication_name": definition.name if definition else None,
        "dosage": definition.dosage if definition else None,
        "instructions": definition.instructions if definition else None,
        "scheduled_at": instance.scheduled_at.isoformat(),
        "scheduled_time": instance.scheduled_at.astimezone(zone).strftime("%H:%M"),
        "status": instance.status.value,
        "notes": instance.notes,
    }


class ScheduleMaterializer:
    def __init__(self, store: Store, config: SchedulingConfig, clock: Clock | None = None) -> None:
        self.store = store
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="schedule_materializer")

    async def materialize(self, definition: MedicationDefinition) -> int:
        """Create the missing instances for one definition. Returns how many were new."""
        if not definition.active:
            return 0
        today = local_today(self.clock, definition.timezone)
        created = 0
        for scheduled_at in planned_times(definition, today, self.config.horizon_days):
            instance = MedicationInstance(
                definition_id=definition.id,
                owner_id=definition.owner_id,
                scheduled_at=scheduled_at,
            )
            if await self.store.insert_instance(instance):
                created += 1
        if created:
            self.logger.debug(
                "instances_materialized", definition_id=definition.id, created=created
            )
        return created

    async def run_once(self) -> int:
        # A day of slack keeps definitions ending "today" in zones behind UTC.
        as_of = self.clock.now().date() - timedelta(days=1)
        definitions = await self.store.list_active_definitions(as_of)
        created = 0
        for definition in definitions:
            created += await self.materialize(definition)
        self.logger.info("schedule_materialized", definitions=len(definitions), created=created)
        return created


class ReminderPoller:
    def __init__(
        self,
        store: Store,
        directory: Directory,
        fanout: NotificationFanout,
        config: SchedulingConfig,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.fanout = fanout
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="reminder_poller")

    async def run_once(self) -> int:
        """Remind every due, not yet reminded instance. Returns how many reminders went out."""
        now = self.clock.now()
        window_end = now + timedelta(minutes=self.config.reminder_lead_minutes)
        due = await self.store.due_instances(now, window_end)

        reminded = 0
        for instance, definition in due:
            if not await self.store.claim_reminder(instance.id, now):
                continue
            try:
                await self._remind(instance, definition)
            except PersistenceFailure as e:
                self.logger.error("reminder_failed", instance_id=instance.id, error=str(e))
                continue
            reminded += 1

        if due:
            self.logger.info("reminders_sent", due=len(due), reminded=reminded)
        return reminded

    async def _remind(self, instance: MedicationInstance, definition: MedicationDefinition) -> None:
        elder = await self.directory.get_user(instance.owner_id)
        caregivers = await self.directory.get_caregivers_of(instance.owner_id)
        payload = medication_payload(instance, definition, elder)

        async with asyncio.TaskGroup() as tg:
            tg.create_task(
                self.fanout.notify(
                    NotificationEvent(type=EventType.MEDICATION_REMINDER, payload=payload),
                    [Recipient(id=instance.owner_id, role=Role.ELDER)],
                    channels=[Channel.PUSH],
                )
            )
            tg.create_task(
                self.fanout.notify(
                    NotificationEvent(
                        type=EventType.MEDICATION_REMINDER_CAREGIVER, payload=payload
                    ),
                    [c.as_recipient() for c in caregivers],
                    channels=[Channel.PUSH],
                )
            )


class MissedEscalationPoller:
    def __init__(
        self,
        store: Store,
        directory: Directory,
        fanout: NotificationFanout,
        config: SchedulingConfig,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.directory = directory
        self.fanout = fanout
        self.config = config
        self.clock = clock or SystemClock()
        self.logger = logger.bind(component="missed_escalation_poller")

    async def run_once(self) -> int:
        """Auto-miss every dose past its grace period. Returns how many this run won."""
        now = self.clock.now()
        cutoff = now - timedelta(minutes=self.config.grace_period_minutes)
        overdue = await self.store.overdue_instances(cutoff)

        escalated = 0
        for instance in overdue:
            try:
                missed = await self.store.transition_instance(
                    instance.id,
                    expected=InstanceStatus.PENDING,
                    new=InstanceStatus.MISSED,
                    at=now,
                    notes=AUTO_MISSED_NOTE,
                )
            except ConflictError as e:
                # The elder got there first; their transition stands.
                self.logger.info(
                    "auto_miss_superseded", instance_id=instance.id, status=e.current_status
                )
                continue
            await self._escalate(missed)
            escalated += 1

        if overdue:
            self.logger.info("missed_doses_escalated", overdue=len(overdue), escalated=escalated)
        return escalated

    async def _escalate(self, instance: MedicationInstance) -> None:
        try:
            definition = await self.store.get_definition(instance.definition_id)
            elder = await self.directory.get_user(instance.owner_id)
            caregivers = await self.directory.get_caregivers_of(instance.owner_id)
        except PersistenceFailure as e:
            self.logger.error("escalation_lookup_failed", instance_id=instance.id, error=str(e))
            return

        event = NotificationEvent(
            type=EventType.MEDICATION_AUTO_MISSED,
            payload=medication_payload(instance, definition, elder),
        )
        await self.fanout.notify(event, [c.as_recipient() for c in caregivers])


class AdherenceScheduler:
    """Runs the three jobs on their own tickers until stop() is called."""

    def __init__(
        self,
        materializer: ScheduleMaterializer,
        reminders: ReminderPoller,
        escalations: MissedEscalationPoller,
        config: SchedulingConfig,
        tickers: dict[str, Ticker] | None = None,
    ) -> None:
        tickers = tickers or {}
        self._jobs: list[tuple[str, Callable[[], Awaitable[int]], Ticker]] = [
            (
                "materialize",
                materializer.run_once,
                tickers.get("materialize") or IntervalTicker(config.materialize_interval_seconds),
            ),
            (
                "remind",
                reminders.run_once,
                tickers.get("remind") or IntervalTicker(config.reminder_interval_seconds),
            ),
            (
                "escalate",
                escalations.run_once,
                tickers.get("escalate") or IntervalTicker(config.escalation_interval_seconds),
            ),
        ]
        self.logger = logger.bind(component="adherence_scheduler")

    async def run(self) -> None:
        self.logger.info("scheduler_started", jobs=[name for name, _, _ in self._jobs])
        async with asyncio.TaskGroup() as tg:
            for name, job, ticker in self._jobs:
                tg.create_task(self._loop(name, job, ticker))
        self.logger.info("scheduler_stopped")

    def stop(self) -> None:
        for _, _, ticker in self._jobs:
            ticker.stop()

    async def _loop(self, name: str, job: Callable[[], Awaitable[int]], ticker: Ticker) -> None:
        while True:
            try:
                await job()
            except Exception as e:
                self.logger.error("scheduled_job_failed", job=name, error=str(e), exc_info=True)
            if not await ticker.wait():
                break
