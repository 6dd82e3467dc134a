"""
SQLAlchemy implementation of the Store protocol.

Status transitions are single UPDATE statements guarded by the expected prior
status, so concurrent callers race on the database row rather than on
in-process state: exactly one UPDATE matches, the loser sees rowcount 0 and
gets a ConflictError. Materialization relies on the unique constraint on
(definition_id, scheduled_at) the same way.
"""

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import date, datetime, time

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from careline.config import DatabaseConfig
from careline.domain.errors import ConflictError, PersistenceFailure, ValidationError
from careline.domain.models import (
    AdherenceStats,
    AlertPriority,
    AlertStatus,
    Channel,
    DeliveryRecord,
    DeliveryStatus,
    EmergencyAlert,
    EventType,
    InstanceStatus,
    Location,
    MedicationDefinition,
    MedicationInstance,
    Role,
)
from careline.storage.tables import (
    Base,
    DeliveryRecordRow,
    EmergencyAlertRow,
    MedicationDefinitionRow,
    MedicationInstanceRow,
)

logger = structlog.get_logger()


class SqlStore:
    """Store backed by an async SQLAlchemy engine (aiosqlite by default)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        self.logger = logger.bind(component="sql_store")

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "SqlStore":
        return cls(create_async_engine(config.url, echo=config.echo))

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("schema_ready", url=self.engine.url.render_as_string(hide_password=True))

    async def aclose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Session with driver errors translated into PersistenceFailure.

        IntegrityError passes through untouched: callers use it to detect an
        existing idempotency key.
        """
        try:
            async with self._sessions() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as e:
            self.logger.error("store_unavailable", error=str(e.orig or e))
            raise PersistenceFailure(f"store operation failed: {e.orig or e}") from e

    # --- alerts ---

    async def create_alert(self, alert: EmergencyAlert) -> EmergencyAlert:
        async with self.session() as session:
            session.add(_alert_row(alert))
            await session.commit()
        return alert

    async def get_alert(self, alert_id: str) -> EmergencyAlert | None:
        async with self.session() as session:
            row = await session.get(EmergencyAlertRow, alert_id)
            return _alert_model(row) if row else None

    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolved_at: datetime, notes: str | None
    ) -> EmergencyAlert:
        async with self.session() as session:
            result = await session.execute(
                update(EmergencyAlertRow)
                .where(
                    EmergencyAlertRow.id == alert_id,
                    EmergencyAlertRow.status == AlertStatus.ACTIVE.value,
                )
                .values(
                    status=AlertStatus.RESOLVED.value,
                    resolved_at=resolved_at,
                    resolved_by=resolved_by,
                    resolution_notes=notes,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            row = await session.get(EmergencyAlertRow, alert_id)

        if row is None:
            raise ValidationError(f"Unknown alert {alert_id}")
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise ConflictError(f"Alert {alert_id} already resolved", current_status=row.status)
        return _alert_model(row)

    async def list_alerts(
        self,
        elder_ids: Sequence[str],
        *,
        active_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EmergencyAlert]:
        if not elder_ids:
            return []
        query = select(EmergencyAlertRow).where(EmergencyAlertRow.elder_id.in_(list(elder_ids)))
        if active_only:
            query = query.where(EmergencyAlertRow.status == AlertStatus.ACTIVE.value)
        query = query.order_by(EmergencyAlertRow.created_at.desc()).limit(limit).offset(offset)
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_alert_model(row) for row in rows]

    # --- medication definitions ---

    async def save_definition(self, definition: MedicationDefinition) -> MedicationDefinition:
        async with self.session() as session:
            await session.merge(_definition_row(definition))
            await session.commit()
        return definition

    async def update_active_definition(self, definition: MedicationDefinition) -> bool:
        """Overwrite the editable fields only while the definition is still active."""
        async with self.session() as session:
            result = await session.execute(
                update(MedicationDefinitionRow)
                .where(
                    MedicationDefinitionRow.id == definition.id,
                    MedicationDefinitionRow.owner_id == definition.owner_id,
                    MedicationDefinitionRow.active.is_(True),
                )
                .values(
                    name=definition.name,
                    dosage=definition.dosage,
                    instructions=definition.instructions,
                    time_slots=definition.slot_labels(),
                    end_date=definition.end_date,
                    timezone=definition.timezone,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def get_definition(self, definition_id: str) -> MedicationDefinition | None:
        async with self.session() as session:
            row = await session.get(MedicationDefinitionRow, definition_id)
            return _definition_model(row) if row else None

    async def list_active_definitions(self, as_of: date) -> list[MedicationDefinition]:
        query = select(MedicationDefinitionRow).where(
            MedicationDefinitionRow.active.is_(True),
            or_(
                MedicationDefinitionRow.end_date.is_(None),
                MedicationDefinitionRow.end_date >= as_of,
            ),
        )
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_definition_model(row) for row in rows]

    async def list_definitions(self, owner_id: str) -> list[MedicationDefinition]:
        query = (
            select(MedicationDefinitionRow)
            .where(
                MedicationDefinitionRow.owner_id == owner_id,
                MedicationDefinitionRow.active.is_(True),
            )
            .order_by(MedicationDefinitionRow.created_at.desc())
        )
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_definition_model(row) for row in rows]

    async def deactivate_definition(self, definition_id: str) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(MedicationDefinitionRow)
                .where(
                    MedicationDefinitionRow.id == definition_id,
                    MedicationDefinitionRow.active.is_(True),
                )
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    # --- medication instances ---

    async def insert_instance(self, instance: MedicationInstance) -> bool:
        try:
            async with self.session() as session:
                session.add(_instance_row(instance))
                await session.commit()
        except IntegrityError:
            return False
        return True

    async def get_instance(self, instance_id: str) -> MedicationInstance | None:
        async with self.session() as session:
            row = await session.get(MedicationInstanceRow, instance_id)
            return _instance_model(row) if row else None

    async def transition_instance(
        self,
        instance_id: str,
        *,
        expected: InstanceStatus,
        new: InstanceStatus,
        at: datetime,
        notes: str | None = None,
        owner_id: str | None = None,
    ) -> MedicationInstance:
        values: dict[str, object] = {"status": new.value}
        if new is InstanceStatus.TAKEN:
            values["taken_at"] = at
        if notes is not None:
            values["notes"] = notes

        conditions = [
            MedicationInstanceRow.id == instance_id,
            MedicationInstanceRow.status == expected.value,
        ]
        if owner_id is not None:
            conditions.append(MedicationInstanceRow.owner_id == owner_id)

        async with self.session() as session:
            result = await session.execute(
                update(MedicationInstanceRow)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            row = await session.get(MedicationInstanceRow, instance_id)

        if row is None or (owner_id is not None and row.owner_id != owner_id):
            raise ValidationError(f"Unknown medication instance {instance_id}")
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise ConflictError(
                f"Medication instance {instance_id} is already {row.status}",
                current_status=row.status,
            )
        return _instance_model(row)

    async def skip_pending_instances(
        self, definition_id: str, *, after: datetime, keep: Sequence[datetime] = ()
    ) -> int:
        conditions = [
            MedicationInstanceRow.definition_id == definition_id,
            MedicationInstanceRow.status == InstanceStatus.PENDING.value,
            MedicationInstanceRow.scheduled_at > after,
        ]
        if keep:
            conditions.append(MedicationInstanceRow.scheduled_at.notin_(list(keep)))

        async with self.session() as session:
            result = await session.execute(
                update(MedicationInstanceRow)
                .where(*conditions)
                .values(status=InstanceStatus.SKIPPED.value)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount  # type: ignore[attr-defined]

    async def due_instances(
        self, window_start: datetime, window_end: datetime
    ) -> list[tuple[MedicationInstance, MedicationDefinition]]:
        query = (
            select(MedicationInstanceRow, MedicationDefinitionRow)
            .join(
                MedicationDefinitionRow,
                MedicationInstanceRow.definition_id == MedicationDefinitionRow.id,
            )
            .where(
                MedicationInstanceRow.status == InstanceStatus.PENDING.value,
                MedicationInstanceRow.scheduled_at >= window_start,
                MedicationInstanceRow.scheduled_at <= window_end,
                MedicationInstanceRow.reminded_at.is_(None),
                MedicationDefinitionRow.active.is_(True),
            )
            .order_by(MedicationInstanceRow.scheduled_at)
        )
        async with self.session() as session:
            rows = (await session.execute(query)).all()
        return [(_instance_model(inst), _definition_model(defn)) for inst, defn in rows]

    async def claim_reminder(self, instance_id: str, at: datetime) -> bool:
        async with self.session() as session:
            result = await session.execute(
                update(MedicationInstanceRow)
                .where(
                    MedicationInstanceRow.id == instance_id,
                    MedicationInstanceRow.status == InstanceStatus.PENDING.value,
                    MedicationInstanceRow.reminded_at.is_(None),
                )
                .values(reminded_at=at)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def overdue_instances(self, cutoff: datetime) -> list[MedicationInstance]:
        query = (
            select(MedicationInstanceRow)
            .join(
                MedicationDefinitionRow,
                MedicationInstanceRow.definition_id == MedicationDefinitionRow.id,
            )
            .where(
                MedicationInstanceRow.status == InstanceStatus.PENDING.value,
                MedicationInstanceRow.scheduled_at < cutoff,
                MedicationDefinitionRow.active.is_(True),
            )
            .order_by(MedicationInstanceRow.scheduled_at)
        )
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_instance_model(row) for row in rows]

    async def instances_for_owner(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[MedicationInstance]:
        query = (
            select(MedicationInstanceRow)
            .where(
                MedicationInstanceRow.owner_id == owner_id,
                MedicationInstanceRow.scheduled_at >= start,
                MedicationInstanceRow.scheduled_at < end,
            )
            .order_by(MedicationInstanceRow.scheduled_at)
        )
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_instance_model(row) for row in rows]

    async def adherence_counts(
        self, owner_id: str, since: datetime, until: datetime
    ) -> AdherenceStats:
        query = (
            select(MedicationInstanceRow.status, func.count())
            .where(
                MedicationInstanceRow.owner_id == owner_id,
                MedicationInstanceRow.scheduled_at >= since,
                MedicationInstanceRow.scheduled_at <= until,
            )
            .group_by(MedicationInstanceRow.status)
        )
        async with self.session() as session:
            counts = {status: count for status, count in (await session.execute(query)).all()}
        return AdherenceStats(
            total_scheduled=sum(counts.values()),
            taken=counts.get(InstanceStatus.TAKEN.value, 0),
            missed=counts.get(InstanceStatus.MISSED.value, 0),
            skipped=counts.get(InstanceStatus.SKIPPED.value, 0),
        )

    # --- delivery audit ---

    async def append_delivery_records(self, records: Sequence[DeliveryRecord]) -> None:
        if not records:
            return
        async with self.session() as session:
            session.add_all([_delivery_row(record) for record in records])
            await session.commit()

    async def delivery_records(
        self, *, event_id: str | None = None, recipient_id: str | None = None
    ) -> list[DeliveryRecord]:
        query = select(DeliveryRecordRow).order_by(DeliveryRecordRow.id)
        if event_id is not None:
            query = query.where(DeliveryRecordRow.event_id == event_id)
        if recipient_id is not None:
            query = query.where(DeliveryRecordRow.recipient_id == recipient_id)
        async with self.session() as session:
            rows = (await session.scalars(query)).all()
        return [_delivery_model(row) for row in rows]


# --- row <-> model mapping ---


def _alert_row(alert: EmergencyAlert) -> EmergencyAlertRow:
    return EmergencyAlertRow(
        id=alert.id,
        elder_id=alert.elder_id,
        latitude=alert.location.latitude,
        longitude=alert.location.longitude,
        address=alert.location.address,
        notes=alert.notes,
        status=alert.status.value,
        priority=alert.priority.value,
        created_at=alert.created_at,
        resolved_at=alert.resolved_at,
        resolved_by=alert.resolved_by,
        resolution_notes=alert.resolution_notes,
    )


def _alert_model(row: EmergencyAlertRow) -> EmergencyAlert:
    return EmergencyAlert(
        id=row.id,
        elder_id=row.elder_id,
        location=Location(latitude=row.latitude, longitude=row.longitude, address=row.address),
        notes=row.notes,
        status=AlertStatus(row.status),
        priority=AlertPriority(row.priority),
        created_at=row.created_at,
        resolved_at=row.resolved_at,
        resolved_by=row.resolved_by,
        resolution_notes=row.resolution_notes,
    )


def _definition_row(definition: MedicationDefinition) -> MedicationDefinitionRow:
    return MedicationDefinitionRow(
        id=definition.id,
        owner_id=definition.owner_id,
        name=definition.name,
        dosage=definition.dosage,
        instructions=definition.instructions,
        time_slots=definition.slot_labels(),
        start_date=definition.start_date,
        end_date=definition.end_date,
        timezone=definition.timezone,
        active=definition.active,
        created_at=definition.created_at,
    )


def _definition_model(row: MedicationDefinitionRow) -> MedicationDefinition:
    return MedicationDefinition(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        dosage=row.dosage,
        instructions=row.instructions,
        time_slots=[time.fromisoformat(slot) for slot in row.time_slots],
        start_date=row.start_date,
        end_date=row.end_date,
        timezone=row.timezone,
        active=row.active,
        created_at=row.created_at,
    )


def _instance_row(instance: MedicationInstance) -> MedicationInstanceRow:
    return MedicationInstanceRow(
        id=instance.id,
        definition_id=instance.definition_id,
        owner_id=instance.owner_id,
        scheduled_at=instance.scheduled_at,
        status=instance.status.value,
        taken_at=instance.taken_at,
        notes=instance.notes,
        reminded_at=instance.reminded_at,
    )


def _instance_model(row: MedicationInstanceRow) -> MedicationInstance:
    return MedicationInstance(
        id=row.id,
        definition_id=row.definition_id,
        owner_id=row.owner_id,
        scheduled_at=row.scheduled_at,
        status=InstanceStatus(row.status),
        taken_at=row.taken_at,
        notes=row.notes,
        reminded_at=row.reminded_at,
    )


def _delivery_row(record: DeliveryRecord) -> DeliveryRecordRow:
    return DeliveryRecordRow(
        event_id=record.event_id,
        event_type=record.event_type.value,
        recipient_id=record.recipient_id,
        recipient_role=record.recipient_role.value,
        channel=record.channel.value,
        outcome=record.outcome.value,
        detail=record.detail,
        at=record.at,
    )


def _delivery_model(row: DeliveryRecordRow) -> DeliveryRecord:
    return DeliveryRecord(
        event_id=row.event_id,
        event_type=EventType(row.event_type),
        recipient_id=row.recipient_id,
        recipient_role=Role(row.recipient_role),
        channel=Channel(row.channel),
        outcome=DeliveryStatus(row.outcome),
        detail=row.detail,
        at=row.at,
    )
