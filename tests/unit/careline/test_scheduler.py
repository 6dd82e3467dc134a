"""
Schedule materialization, reminder and missed-dose escalation tests.

Every test drives time through a ManualClock; nothing here sleeps on the wall
clock except the tickers' zero-length yields.
"""

import asyncio
from datetime import UTC, date, datetime, time, timedelta

import pytest
from conftest import ELDER, CountingTicker, RecordingChannel, connect
from hypothesis import given
from hypothesis import strategies as st

from careline.config import SchedulingConfig
from careline.domain.errors import ConflictError
from careline.domain.models import (
    Channel,
    DeliveryStatus,
    InstanceStatus,
    MedicationDefinition,
    MedicationInstance,
    Role,
)
from careline.services.channels.push import PushChannel
from careline.services.clock import ManualClock
from careline.services.fanout import NotificationFanout
from careline.services.medication import MedicationService
from careline.services.presence import PresenceRegistry
from careline.services.scheduler import (
    AdherenceScheduler,
    MissedEscalationPoller,
    ReminderPoller,
    ScheduleMaterializer,
    planned_times,
)
from careline.storage.directory import SqlDirectory
from careline.storage.sql import SqlStore

TODAY = date(2026, 3, 2)


def definition_with(slots: list[str], **overrides: object) -> MedicationDefinition:
    fields: dict[str, object] = {
        "owner_id": ELDER.id,
        "name": "Metformin",
        "dosage": "500mg",
        "time_slots": slots,
        "start_date": TODAY,
    }
    fields.update(overrides)
    return MedicationDefinition(**fields)  # type: ignore[arg-type]


@pytest.fixture
def materializer(
    store: SqlStore, scheduling: SchedulingConfig, clock: ManualClock
) -> ScheduleMaterializer:
    return ScheduleMaterializer(store, scheduling, clock=clock)


@pytest.fixture
def reminders(
    store: SqlStore,
    directory: SqlDirectory,
    fanout: NotificationFanout,
    scheduling: SchedulingConfig,
    clock: ManualClock,
) -> ReminderPoller:
    return ReminderPoller(store, directory, fanout, scheduling, clock=clock)


@pytest.fixture
def escalations(
    store: SqlStore,
    directory: SqlDirectory,
    fanout: NotificationFanout,
    scheduling: SchedulingConfig,
    clock: ManualClock,
) -> MissedEscalationPoller:
    return MissedEscalationPoller(store, directory, fanout, scheduling, clock=clock)


async def materialized(
    store: SqlStore, materializer: ScheduleMaterializer, definition: MedicationDefinition
) -> list[MedicationInstance]:
    await store.save_definition(definition)
    await materializer.materialize(definition)
    start = datetime.combine(TODAY, time.min, tzinfo=UTC)
    return await store.instances_for_owner(definition.owner_id, start, start + timedelta(days=30))


class TestPlannedTimes:
    def test_one_slot_over_default_horizon_gives_seven(self) -> None:
        times = planned_times(definition_with(["08:00"]), TODAY, 7)

        assert len(times) == 7
        assert times[0] == datetime(2026, 3, 2, 8, 0, tzinfo=UTC)
        assert times[-1] == datetime(2026, 3, 8, 8, 0, tzinfo=UTC)

    def test_future_start_and_end_date_clamp_the_window(self) -> None:
        definition = definition_with(
            ["08:00", "20:00"], start_date=date(2026, 3, 4), end_date=date(2026, 3, 5)
        )

        times = planned_times(definition, TODAY, 7)

        assert [t.day for t in times] == [4, 4, 5, 5]

    def test_ended_definition_plans_nothing(self) -> None:
        definition = definition_with(
            ["08:00"], start_date=date(2026, 2, 1), end_date=date(2026, 2, 28)
        )

        assert planned_times(definition, TODAY, 7) == []

    def test_slots_are_local_wall_clock_times(self) -> None:
        definition = definition_with(["08:00"], timezone="America/New_York")

        times = planned_times(definition, TODAY, 7)

        # EST until 8 March, EDT afterwards
        assert times[0] == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)
        assert times[-1] == datetime(2026, 3, 8, 12, 0, tzinfo=UTC)

    def test_horizon_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            planned_times(definition_with(["08:00"]), TODAY, 0)

    @given(
        slots=st.lists(
            st.times().map(lambda t: t.replace(second=0, microsecond=0)), min_size=1, max_size=6
        ),
        horizon=st.integers(min_value=1, max_value=30),
        start_offset=st.integers(min_value=-10, max_value=10),
    )
    def test_plan_is_unique_sorted_and_within_horizon(
        self, slots: list[time], horizon: int, start_offset: int
    ) -> None:
        definition = definition_with(["08:00"], start_date=TODAY + timedelta(days=start_offset))
        definition = definition.model_copy(update={"time_slots": sorted(set(slots))})

        times = planned_times(definition, TODAY, horizon)

        days = horizon - max(0, start_offset)
        assert len(times) == max(0, days) * len(definition.time_slots)
        assert times == sorted(set(times))
        assert all(t.tzinfo == UTC for t in times)
        horizon_end = datetime.combine(TODAY + timedelta(days=horizon), time.min, tzinfo=UTC)
        assert all(t < horizon_end for t in times)


class TestMaterializer:
    @pytest.mark.asyncio
    async def test_materializes_seven_pending_instances_once(
        self, store: SqlStore, materializer: ScheduleMaterializer
    ) -> None:
        definition = definition_with(["08:00"])

        instances = await materialized(store, materializer, definition)

        assert len(instances) == 7
        assert {i.status for i in instances} == {InstanceStatus.PENDING}
        assert await materializer.materialize(definition) == 0
        assert await materializer.run_once() == 0

    @pytest.mark.asyncio
    async def test_run_once_picks_up_new_days(
        self, store: SqlStore, materializer: ScheduleMaterializer, clock: ManualClock
    ) -> None:
        await materialized(store, materializer, definition_with(["08:00"]))

        clock.advance(timedelta(days=1))

        assert await materializer.run_once() == 1

    @pytest.mark.asyncio
    async def test_concurrent_materializers_do_not_duplicate(
        self, store: SqlStore, materializer: ScheduleMaterializer
    ) -> None:
        definition = definition_with(["08:00", "20:00"])
        await store.save_definition(definition)

        created = await asyncio.gather(
            materializer.materialize(definition), materializer.materialize(definition)
        )

        assert sum(created) == 14

    @pytest.mark.asyncio
    async def test_inactive_definition_is_not_materialized(
        self, store: SqlStore, materializer: ScheduleMaterializer
    ) -> None:
        definition = definition_with(["08:00"], active=False)

        assert await materializer.materialize(definition) == 0


class TestReminders:
    @pytest.mark.asyncio
    async def test_reminds_elder_and_caregivers_once(
        self,
        store: SqlStore,
        materializer: ScheduleMaterializer,
        reminders: ReminderPoller,
        push: PushChannel,
        presence: PresenceRegistry,
        voice: RecordingChannel,
    ) -> None:
        elder = connect(push, presence, ELDER.id, Role.ELDER, "t-elder")
        son = connect(push, presence, "cg-1", Role.CAREGIVER, "t-son")
        await materialized(store, materializer, definition_with(["08:10"]))

        assert await reminders.run_once() == 1
        assert await reminders.run_once() == 0

        assert elder.events().count("medication-reminder") == 1
        assert son.events().count("medication-reminder-caregiver") == 1
        reminder = next(m for m in son.messages if m["event"] == "medication-reminder-caregiver")
        assert reminder["data"]["elder_name"] == "Margaret"
        assert reminder["data"]["scheduled_time"] == "08:10"
        assert voice.sent == []  # reminders are push-only

    @pytest.mark.asyncio
    async def test_doses_outside_lead_window_wait(
        self,
        store: SqlStore,
        materializer: ScheduleMaterializer,
        reminders: ReminderPoller,
        clock: ManualClock,
    ) -> None:
        await materialized(store, materializer, definition_with(["09:00"]))

        assert await reminders.run_once() == 0

        clock.set(datetime(2026, 3, 2, 8, 50, tzinfo=UTC))
        assert await reminders.run_once() == 1


class TestMissedEscalation:
    @pytest.mark.asyncio
    async def test_overdue_dose_is_missed_and_escalated_once(
        self,
        store: SqlStore,
        materializer: ScheduleMaterializer,
        escalations: MissedEscalationPoller,
        push: PushChannel,
        presence: PresenceRegistry,
        voice: RecordingChannel,
        email: RecordingChannel,
    ) -> None:
        son = connect(push, presence, "cg-1", Role.CAREGIVER, "t-son")
        instances = await materialized(store, materializer, definition_with(["07:29"]))
        overdue = instances[0]

        assert await escalations.run_once() == 1

        stored = await store.get_instance(overdue.id)
        assert stored is not None and stored.status is InstanceStatus.MISSED
        assert "medication-auto-missed" in son.events()
        assert sorted(voice.targets()) == ["+15550000002"]
        assert sorted(email.targets()) == ["daniel@example.com", "priya@example.com"]

        records = await store.delivery_records(recipient_id="cg-1")
        assert {r.channel for r in records if r.outcome is DeliveryStatus.SENT} == {
            Channel.PUSH,
            Channel.VOICE,
            Channel.EMAIL,
        }

        assert await escalations.run_once() == 0
        assert len(voice.sent) == 1

    @pytest.mark.asyncio
    async def test_dose_within_grace_period_stays_pending(
        self,
        store: SqlStore,
        materializer: ScheduleMaterializer,
        escalations: MissedEscalationPoller,
    ) -> None:
        instances = await materialized(store, materializer, definition_with(["07:45"]))

        assert await escalations.run_once() == 0
        stored = await store.get_instance(instances[0].id)
        assert stored is not None and stored.status is InstanceStatus.PENDING

    @pytest.mark.asyncio
    async def test_mark_taken_races_the_poller(
        self,
        store: SqlStore,
        directory: SqlDirectory,
        fanout: NotificationFanout,
        materializer: ScheduleMaterializer,
        escalations: MissedEscalationPoller,
        scheduling: SchedulingConfig,
        clock: ManualClock,
    ) -> None:
        medications = MedicationService(
            store, directory, fanout, materializer, scheduling, clock=clock
        )
        instances = await materialized(store, materializer, definition_with(["07:29"]))
        overdue = instances[0]

        taken, escalated = await asyncio.gather(
            medications.mark_taken(overdue.id, ELDER.id),
            escalations.run_once(),
            return_exceptions=True,
        )

        stored = await store.get_instance(overdue.id)
        assert stored is not None
        if isinstance(taken, ConflictError):
            assert escalated == 1
            assert stored.status is InstanceStatus.MISSED
        else:
            assert escalated == 0
            assert stored.status is InstanceStatus.TAKEN

    @pytest.mark.asyncio
    async def test_deleted_medication_is_never_escalated(
        self,
        store: SqlStore,
        directory: SqlDirectory,
        fanout: NotificationFanout,
        materializer: ScheduleMaterializer,
        escalations: MissedEscalationPoller,
        scheduling: SchedulingConfig,
        clock: ManualClock,
        voice: RecordingChannel,
        email: RecordingChannel,
    ) -> None:
        medications = MedicationService(
            store, directory, fanout, materializer, scheduling, clock=clock
        )
        definition = await medications.add_definition(ELDER.id, "Metformin", "500mg", ["07:50"])
        await medications.delete_definition(definition.id, ELDER.id)
        clock.advance(timedelta(minutes=45))

        assert await escalations.run_once() == 0

        assert voice.sent == [] and email.sent == []
        start = datetime.combine(TODAY, time.min, tzinfo=UTC)
        earlier = await store.instances_for_owner(ELDER.id, start, clock.now())
        assert [i.status for i in earlier] == [InstanceStatus.PENDING]


class FailingJob:
    def __init__(self) -> None:
        self.calls = 0

    async def run_once(self) -> int:
        self.calls += 1
        raise RuntimeError("store hiccup")


class CountingJob:
    def __init__(self) -> None:
        self.calls = 0

    async def run_once(self) -> int:
        self.calls += 1
        return 0


class TestAdherenceScheduler:
    @pytest.mark.asyncio
    async def test_loops_run_per_tick_and_survive_failures(
        self, scheduling: SchedulingConfig
    ) -> None:
        failing, reminders, escalations = FailingJob(), CountingJob(), CountingJob()
        scheduler = AdherenceScheduler(
            failing,  # type: ignore[arg-type]
            reminders,  # type: ignore[arg-type]
            escalations,  # type: ignore[arg-type]
            scheduling,
            tickers={
                "materialize": CountingTicker(limit=3),
                "remind": CountingTicker(limit=2),
                "escalate": CountingTicker(limit=1),
            },
        )

        await asyncio.wait_for(scheduler.run(), timeout=5)

        assert failing.calls == 3
        assert reminders.calls == 2
        assert escalations.calls == 1

    @pytest.mark.asyncio
    async def test_stop_ends_interval_loops(self, scheduling: SchedulingConfig) -> None:
        jobs = [CountingJob(), CountingJob(), CountingJob()]
        scheduler = AdherenceScheduler(*jobs, scheduling)  # type: ignore[arg-type]

        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        assert [job.calls for job in jobs] == [1, 1, 1]
