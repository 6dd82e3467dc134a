"""
Store protocol: the persistence operations the engine relies on.

Every write is a single-row conditional operation (or an insert of independent
audit rows); nothing here spans a multi-row transaction between the
scheduler and the request path.
"""

from collections.abc import Sequence
from datetime import date, datetime
from typing import Protocol

from careline.domain.models import (
    AdherenceStats,
    DeliveryRecord,
    EmergencyAlert,
    InstanceStatus,
    MedicationDefinition,
    MedicationInstance,
)


class Store(Protocol):
    """Persistent store for alerts, medication definitions/instances and delivery audit."""

    # --- alerts ---

    async def create_alert(self, alert: EmergencyAlert) -> EmergencyAlert: ...

    async def get_alert(self, alert_id: str) -> EmergencyAlert | None: ...

    async def resolve_alert(
        self, alert_id: str, resolved_by: str, resolved_at: datetime, notes: str | None
    ) -> EmergencyAlert:
        """Compare-and-set active -> resolved. Raises ValidationError or ConflictError."""
        ...

    async def list_alerts(
        self,
        elder_ids: Sequence[str],
        *,
        active_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[EmergencyAlert]: ...

    # --- medication definitions ---

    async def save_definition(self, definition: MedicationDefinition) -> MedicationDefinition: ...

    async def update_active_definition(self, definition: MedicationDefinition) -> bool:
        """Conditional update of editable fields. False if the definition is gone or inactive."""
        ...

    async def get_definition(self, definition_id: str) -> MedicationDefinition | None: ...

    async def list_active_definitions(self, as_of: date) -> list[MedicationDefinition]: ...

    async def list_definitions(self, owner_id: str) -> list[MedicationDefinition]:
        """Active definitions of one elder, newest first."""
        ...

    async def deactivate_definition(self, definition_id: str) -> bool: ...

    # --- medication instances ---

    async def insert_instance(self, instance: MedicationInstance) -> bool:
        """Insert under the (definition_id, scheduled_at) key. False if it already existed."""
        ...

    async def get_instance(self, instance_id: str) -> MedicationInstance | None: ...

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
        """Compare-and-set on status. Raises ValidationError or ConflictError."""
        ...

    async def skip_pending_instances(
        self, definition_id: str, *, after: datetime, keep: Sequence[datetime] = ()
    ) -> int: ...

    async def due_instances(
        self, window_start: datetime, window_end: datetime
    ) -> list[tuple[MedicationInstance, MedicationDefinition]]: ...

    async def claim_reminder(self, instance_id: str, at: datetime) -> bool: ...

    async def overdue_instances(self, cutoff: datetime) -> list[MedicationInstance]:
        """Pending instances scheduled before `cutoff` whose definition is still active."""
        ...


    async def instances_for_owner(
        self, owner_id: str, start: datetime, end: datetime
    ) -> list[MedicationInstance]: ...

    async def adherence_counts(
        self, owner_id: str, since: datetime, until: datetime
    ) -> AdherenceStats: ...

    # --- delivery audit ---

    async def append_delivery_records(self, records: Sequence[DeliveryRecord]) -> None: ...

    async def delivery_records(
        self, *, event_id: str | None = None, recipient_id: str | None = None
    ) -> list[DeliveryRecord]: ...
