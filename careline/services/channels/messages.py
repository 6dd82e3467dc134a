"""Human readable text for the off-line channels, one template per event type."""

from html import escape
from typing import Any

from careline.domain.models import EventType, NotificationEvent

SUBJECTS: dict[EventType, str] = {
    EventType.EMERGENCY_TRIGGERED: "EMERGENCY: {elder_name} needs help",
    EventType.EMERGENCY_RESOLVED: "Emergency resolved",
    EventType.MEDICATION_REMINDER: "Medication reminder: {medication_name}",
    EventType.MEDICATION_REMINDER_CAREGIVER: "{elder_name} has {medication_name} due",
    EventType.MEDICATION_TAKEN: "{elder_name} took {medication_name}",
    EventType.MEDICATION_MISSED: "{elder_name} missed {medication_name}",
    EventType.MEDICATION_AUTO_MISSED: "Missed dose: {elder_name} did not take {medication_name}",
    EventType.ACTIVE_USERS_UPDATE: "Active users update",
}

BODIES: dict[EventType, str] = {
    EventType.EMERGENCY_TRIGGERED: (
        "EMERGENCY ALERT: {elder_name} has triggered an emergency alert.\n"
        "Location: {location_text}\n"
        "Time: {created_at}\n"
        "Notes: {notes}\n"
        "Please check on them immediately."
    ),
    EventType.EMERGENCY_RESOLVED: (
        "Your emergency alert was resolved by {resolver_name} at {resolved_at}.\nNotes: {notes}"
    ),
    EventType.MEDICATION_REMINDER: (
        "Time to take {medication_name} ({dosage}) at {scheduled_time}.\n{instructions}"
    ),
    EventType.MEDICATION_REMINDER_CAREGIVER: (
        "{elder_name} is due to take {medication_name} ({dosage}) at {scheduled_time}."
    ),
    EventType.MEDICATION_TAKEN: (
        "{elder_name} marked {medication_name} ({dosage}) scheduled for {scheduled_time} as taken."
    ),
    EventType.MEDICATION_MISSED: (
        "{elder_name} marked {medication_name} ({dosage}) scheduled for {scheduled_time} as missed."
    ),
    EventType.MEDICATION_AUTO_MISSED: (
        "{elder_name} has not taken {medication_name} ({dosage}) scheduled for {scheduled_time}.\n"
        "Please follow up with them."
    ),
    EventType.ACTIVE_USERS_UPDATE: (
        "Active elders: {active_elders}, active caregivers: {active_caregivers}"
    ),
}


class _Fields(dict[str, Any]):
    def __missing__(self, key: str) -> str:
        return "-"


def _fields(event: NotificationEvent) -> _Fields:
    return _Fields({k: ("-" if v is None else v) for k, v in event.payload.items()})


def subject(event: NotificationEvent) -> str:
    return SUBJECTS[event.type].format_map(_fields(event))


def text_body(event: NotificationEvent) -> str:
    return BODIES[event.type].format_map(_fields(event)).strip()


def html_body(event: NotificationEvent) -> str:
    accent = "#d32f2f" if event.type is EventType.EMERGENCY_TRIGGERED else "#1976d2"
    paragraphs = "\n".join(
        f"<p>{escape(line)}</p>" for line in text_body(event).splitlines() if line.strip()
    )
    return f"""
    <html>
      <body style="font-family: Arial, sans-serif; padding: 20px;">
        <h2 style="color: {accent};">{escape(subject(event))}</h2>
        <div style="background-color: #f5f5f5; padding: 15px; border-radius: 5px;">
          {paragraphs}
        </div>
        <p style="color: #666; font-size: 12px;">Event {escape(event.event_id)}</p>
      </body>
    </html>
    """
