"""
Domain models for the alert & adherence engine.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; persistence lives in careline.storage.
"""

from datetime import UTC, date, datetime, time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid4())


class Role(str, Enum):
    """Account roles the engine cares about."""

    ELDER = "elder"
    CAREGIVER = "caregiver"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


class AlertPriority(str, Enum):
    """Alert priority, mirrors the severity ladder used for monitoring alerts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class InstanceStatus(str, Enum):
    """Status of one dated medication instance. Everything but PENDING is terminal."""

    PENDING = "pending"
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.PENDING


class Channel(str, Enum):
    PUSH = "push"
    VOICE = "voice"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class EventType(str, Enum):
    """Event names as they appear on the wire."""

    EMERGENCY_TRIGGERED = "emergency-triggered"
    EMERGENCY_RESOLVED = "emergency-resolved"
    MEDICATION_REMINDER = "medication-reminder"
    MEDICATION_REMINDER_CAREGIVER = "medication-reminder-caregiver"
    MEDICATION_TAKEN = "medication-taken"
    MEDICATION_MISSED = "medication-missed"
    MEDICATION_AUTO_MISSED = "medication-auto-missed"
    ACTIVE_USERS_UPDATE = "active-users-update"


# --- Presence ---


class ConnectionHandle(BaseModel):
    """One live connection. Owned by the presence registry."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role
    transport_id: str
    connected_at: datetime = Field(default_factory=utcnow)


class PresenceSnapshot(BaseModel):
    """Live counts by distinct user, recomputed on every registry mutation."""

    model_config = ConfigDict(frozen=True)

    active_elders: int = Field(ge=0)
    active_caregivers: int = Field(ge=0)
    as_of: datetime = Field(default_factory=utcnow)


# --- Emergencies ---


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str | None = None

    def describe(self) -> str:
        """Human readable location, the address when the device resolved one."""
        return self.address or f"{self.latitude}, {self.longitude}"


class EmergencyAlert(BaseModel):
    """An SOS raised by an elder. Moves one way: active -> resolved."""

    id: str = Field(default_factory=new_id)
    elder_id: str
    location: Location
    notes: str | None = None
    status: AlertStatus = AlertStatus.ACTIVE
    priority: AlertPriority = AlertPriority.CRITICAL
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    @model_validator(mode="after")
    def resolution_fields_together(self) -> "EmergencyAlert":
        """resolved_at/resolved_by are set together, and only on resolved alerts."""
        has_resolution = self.resolved_at is not None or self.resolved_by is not None
        if has_resolution and (self.resolved_at is None or self.resolved_by is None):
            raise ValueError("resolved_at and resolved_by must be set together")
        if has_resolution != (self.status is AlertStatus.RESOLVED):
            raise ValueError("resolution fields must match the alert status")
        return self


# --- Medication ---


def parse_time_slot(value: str | time) -> time:
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    if not isinstance(value, str):
        raise ValueError(f"Invalid time slot {value!r}, expected HH:MM")
    hours, _, minutes = value.strip().partition(":")
    try:
        return time(int(hours), int(minutes or 0))
    except ValueError as e:
        raise ValueError(f"Invalid time slot {value!r}, expected HH:MM") from e


class MedicationDefinition(BaseModel):
    """A recurring medication schedule owned by an elder."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str = Field(min_length=1, max_length=200)
    dosage: str = Field(min_length=1, max_length=100)
    instructions: str | None = None
    time_slots: list[time] = Field(min_length=1)
    start_date: date
    end_date: date | None = None
    timezone: str = "UTC"
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("time_slots", mode="before")
    def normalize_time_slots(cls, v: Any) -> list[time]:
        """Time slots are an ordered set: parsed, de-duplicated and sorted."""
        if isinstance(v, str | time):
            v = [v]
        if not isinstance(v, list | tuple | set | frozenset):
            raise ValueError("time_slots must be a list of HH:MM times")
        return sorted({parse_time_slot(slot) for slot in v})

    @model_validator(mode="after")
    def end_not_before_start(self) -> "MedicationDefinition":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    def slot_labels(self) -> list[str]:
        return [slot.strftime("%H:%M") for slot in self.time_slots]


class MedicationInstance(BaseModel):
    """One dated, timed occurrence of a definition ("log")."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    owner_id: str
    scheduled_at: datetime
    status: InstanceStatus = InstanceStatus.PENDING
    taken_at: datetime | None = None
    notes: str | None = None
    reminded_at: datetime | None = None


class AdherenceStats(BaseModel):
    total_scheduled: int = 0
    taken: int = 0
    missed: int = 0
    skipped: int = 0

    @property
    def adherence_rate(self) -> int:
        """Whole percentage of scheduled doses that were taken."""
        if self.total_scheduled == 0:
            return 0
        return round(self.taken / self.total_scheduled * 100)


# --- Notifications ---


class NotificationEvent(BaseModel):
    """One logical event handed to the fan-out."""

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_id)
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    def to_message(self) -> dict[str, Any]:
        """JSON-ready envelope pushed to live transports."""
        return {
            "event": self.type.value,
            "event_id": self.event_id,
            "occurred_at": self.occurred_at.isoformat(),
            "data": self.payload,
        }


class Recipient(BaseModel):
    """Somebody to notify and the per-channel targets known for them."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    name: str | None = None
    push_target: str | None = None
    voice_target: str | None = None
    email_target: str | None = None


class DeliveryOutcome(BaseModel):
    """Result of one channel attempt (or skip) for one recipient."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    recipient_id: str
    channel: Channel
    status: DeliveryStatus
    detail: str | None = None

    @property
    def attempted(self) -> bool:
        return self.status is not DeliveryStatus.SKIPPED


class DeliveryRecord(BaseModel):
    """Append-only audit row, one per attempted (event, recipient, channel)."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: EventType
    recipient_id: str
    recipient_role: Role
    channel: Channel
    outcome: DeliveryStatus
    detail: str | None = None
    at: datetime = Field(default_factory=utcnow)

    @field_validator("outcome")
    def outcome_was_attempted(cls, v: DeliveryStatus) -> DeliveryStatus:
        if v is DeliveryStatus.SKIPPED:
            raise ValueError("skipped deliveries are not recorded")
        return v


# --- Directory views (owned by the user-management collaborator) ---


class UserProfile(BaseModel):
    id: str
    name: str
    role: Role
    email: str | None = None
    phone: str | None = None


class CaregiverContact(BaseModel):
    id: str
    name: str
    email: str | None = None
    phone: str | None = None
    relationship: str | None = None

    def as_recipient(self) -> Recipient:
        return Recipient(
            id=self.id,
            role=Role.CAREGIVER,
            name=self.name,
            voice_target=self.phone,
            email_target=self.email,
        )
