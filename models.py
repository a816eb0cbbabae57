"""Domain models for appointments, queue entries and audit records.

We use SQLModel to define the document shapes.  The models are not tables:
documents live in the key-path store (see ``store.py``) as JSON, and these
classes validate what is read back and serialise what is written.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel


class AppointmentType(str, Enum):
    online = "online"
    walkin = "walkin"


class AppointmentStatus(str, Enum):
    """Possible statuses for an appointment."""

    scheduled = "scheduled"
    checked_in = "checked-in"
    in_progress = "in-progress"
    completed = "completed"
    missed = "missed"
    cancelled = "cancelled"


TERMINAL_APPOINTMENT_STATUSES = {
    AppointmentStatus.completed,
    AppointmentStatus.missed,
    AppointmentStatus.cancelled,
}


class QueueStatus(str, Enum):
    """Possible statuses for a queue entry."""

    waiting = "waiting"
    in_progress = "in-progress"
    completed = "completed"


class PriorityFlag(str, Enum):
    normal = "normal"
    high = "high"


class Appointment(SQLModel):
    id: Optional[str] = None
    patient_full_name: str = ""
    patient_birthdate: Optional[str] = None
    patient_sex: Optional[str] = None
    contact_number: Optional[str] = None
    email_address: Optional[str] = None
    booked_by_name: Optional[str] = None
    relationship_to_patient: Optional[str] = None
    service_ref: Optional[str] = None
    preferred_date: Optional[str] = None
    appointment_type: AppointmentType = AppointmentType.online
    status: AppointmentStatus = AppointmentStatus.scheduled
    checked_in: bool = False
    queue_number: Optional[str] = None
    queue_date: Optional[str] = None
    booked_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    reason_for_visit: Optional[str] = None
    medical_notes: Optional[str] = None
    missed_by_system: Optional[bool] = None
    missed_timestamp: Optional[datetime] = None
    reminder_sent: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_APPOINTMENT_STATUSES


class QueueEntry(SQLModel):
    id: Optional[str] = None
    queue_date: Optional[str] = None
    queue_number: Optional[str] = None
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    service_ref: Optional[str] = None
    appointment_type: AppointmentType = AppointmentType.walkin
    status: QueueStatus = QueueStatus.waiting
    priority_flag: PriorityFlag = PriorityFlag.normal
    booked_at: Optional[datetime] = None
    arrival_time: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed_by_system: Optional[bool] = None
    completion_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AuditRecord(SQLModel):
    user_ref: str
    staff_full_name: str
    action: str
    ip_address: str = "Unknown"
    timestamp: str
    appointment_id: Optional[str] = None
    reason: Optional[str] = None
    affected_count: Optional[int] = Field(default=None, ge=0)


def appointment_from_doc(key: str, doc: Dict[str, Any]) -> Appointment:
    return Appointment.model_validate({**doc, "id": key})


def queue_entry_from_doc(key: str, doc: Dict[str, Any], date_key: Optional[str] = None) -> QueueEntry:
    data = {**doc, "id": key}
    if date_key is not None:
        data["queue_date"] = date_key
    return QueueEntry.model_validate(data)


def queue_entries_from_snapshot(snapshot: Optional[Dict[str, Any]], date_key: Optional[str] = None) -> List[QueueEntry]:
    """Turn the value of ``queue/{date}`` into models, keeping key order."""
    if not snapshot:
        return []
    return [
        queue_entry_from_doc(key, doc, date_key)
        for key, doc in snapshot.items()
        if isinstance(doc, dict)
    ]

