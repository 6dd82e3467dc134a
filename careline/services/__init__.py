"""
Services of the alert & adherence engine.

Presence tracking, notification fan-out, the emergency lifecycle, medication
scheduling and the engine that wires them together.
"""

from .emergency import EmergencyLifecycle, ResolveResult, TriggerResult
from .engine import CareAlertEngine
from .fanout import NotificationFanout
from .medication import MedicationService, ScheduledDose
from .presence import PresenceRegistry
from .result import Result
from .scheduler import (
    AdherenceScheduler,
    MissedEscalationPoller,
    ReminderPoller,
    ScheduleMaterializer,
    planned_times,
)

__all__ = [
    "AdherenceScheduler",
    "CareAlertEngine",
    "EmergencyLifecycle",
    "MedicationService",
    "MissedEscalationPoller",
    "NotificationFanout",
    "PresenceRegistry",
    "ReminderPoller",
    "ResolveResult",
    "Result",
    "ScheduleMaterializer",
    "ScheduledDose",
    "TriggerResult",
    "planned_times",
]
