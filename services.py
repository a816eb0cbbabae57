"""Appointment lifecycle and queue business logic.

All operations take the :class:`~store.DocumentStore` explicitly, plus the
staff member performing them where an audit record is written.  Anything
that reads state and then writes based on it runs inside
``store.transaction()`` so concurrent requests cannot interleave.

Appointment states::

    scheduled -> checked-in -> in-progress -> completed
    scheduled -> missed
    (any non-terminal) -> cancelled

Queue entry states::

    waiting -> in-progress -> completed
"""

from __future__ import annotations

import logging
import os
import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from audit import StaffContext, emit_audit
from clock import business_date, business_date_key, isoformat, normalize_date, utc_now
from errors import AmbiguousMatchError, InvalidTransitionError, NotFoundError, ValidationError
from models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    PriorityFlag,
    QueueEntry,
    QueueStatus,
    TERMINAL_APPOINTMENT_STATUSES,
    appointment_from_doc,
    queue_entries_from_snapshot,
)
from notifications import called_message, enqueue_sms
from numbering import format_queue_number, next_queue_number, peek_next_queue_number
from ordering import order_entries, priority_then_number_order, type_then_time_order
from store import DocumentStore

logger = logging.getLogger(__name__)

# Weekdays the clinic does not take bookings (Monday=0 ... Sunday=6).
CLOSED_WEEKDAYS = {
    int(day) for day in os.getenv("CLINIC_CLOSED_WEEKDAYS", "").split(",") if day.strip()
}

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PH_MOBILE_RE = re.compile(r"^(\+63|0)?9\d{9}$")

QUEUE_TRANSITIONS = {
    QueueStatus.waiting: {QueueStatus.in_progress, QueueStatus.completed},
    QueueStatus.in_progress: {QueueStatus.completed},
    QueueStatus.completed: set(),
}

# Appointment status that mirrors each queue status.
APPOINTMENT_MIRROR = {
    QueueStatus.waiting: AppointmentStatus.checked_in,
    QueueStatus.in_progress: AppointmentStatus.in_progress,
    QueueStatus.completed: AppointmentStatus.completed,
}


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return str(value).strip() if value is not None else ""


# ===== VALIDATION =====

def _full_name(data: Mapping[str, Any]) -> str:
    name = _text(data, "patient_full_name")
    if name:
        return name
    parts = [_text(data, k) for k in ("patient_first_name", "patient_middle_name", "patient_last_name")]
    return " ".join(p for p in parts if p)


def _check_preferred_date(value: Any, today: date, errors: Dict[str, str]) -> Optional[date]:
    if not value:
        errors["preferred_date"] = "Date is required"
        return None
    preferred = normalize_date(value)
    if preferred is None:
        errors["preferred_date"] = "Please enter a valid date"
    elif preferred < today:
        errors["preferred_date"] = "Please select today or a future date"
    elif preferred.weekday() in CLOSED_WEEKDAYS:
        errors["preferred_date"] = "The clinic is closed on that day"
    return preferred


def validate_booking(data: Mapping[str, Any], today: date) -> Dict[str, Any]:
    """Check an online booking form and return the cleaned appointment fields.

    Raises :class:`ValidationError` carrying one message per bad field.
    """
    errors: Dict[str, str] = {}

    full_name = _full_name(data)
    if not full_name:
        errors["patient_full_name"] = "Full name is required"

    birthdate = None
    if not data.get("patient_birthdate"):
        errors["patient_birthdate"] = "Date of birth is required"
    else:
        birthdate = normalize_date(data.get("patient_birthdate"))
        if birthdate is None:
            errors["patient_birthdate"] = "Please enter a valid date of birth"
        elif birthdate >= today:
            errors["patient_birthdate"] = "Date of birth cannot be today or in the future"

    sex = _text(data, "patient_sex")
    if not sex:
        errors["patient_sex"] = "Sex is required"

    contact_number = re.sub(r"\s+", "", _text(data, "contact_number"))
    if not contact_number:
        errors["contact_number"] = "Phone number is required"
    elif not PH_MOBILE_RE.match(contact_number):
        errors["contact_number"] = "Please enter a valid phone number"

    email = _text(data, "email_address")
    if not email:
        errors["email_address"] = "Email is required"
    elif not EMAIL_RE.match(email):
        errors["email_address"] = "Please enter a valid email address"

    service_ref = _text(data, "service_ref")
    if not service_ref:
        errors["service_ref"] = "Please select a service"

    preferred = _check_preferred_date(data.get("preferred_date"), today, errors)

    if errors:
        raise ValidationError("Please correct the highlighted fields", errors)

    return {
        "patient_full_name": full_name,
        "patient_birthdate": birthdate.isoformat(),
        "patient_sex": sex,
        "contact_number": contact_number,
        "email_address": email,
        "booked_by_name": _text(data, "booked_by_name") or full_name,
        "relationship_to_patient": _text(data, "relationship_to_patient") or "self",
        "service_ref": service_ref,
        "preferred_date": preferred.isoformat(),
        "reason_for_visit": _text(data, "reason_for_visit"),
        "medical_notes": _text(data, "medical_notes"),
    }


# ===== APPOINTMENTS =====

def _load_appointment(store: DocumentStore, appointment_id: str) -> Dict[str, Any]:
    doc = store.read(f"appointments/{appointment_id}") if appointment_id else None
    if not isinstance(doc, dict):
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return doc


def _is_check_in_eligible(doc: Mapping[str, Any]) -> bool:
    return (
        doc.get("appointment_type") == AppointmentType.online.value
        and doc.get("status") == AppointmentStatus.scheduled.value
        and not doc.get("checked_in")
    )


def create_online_appointment(
    store: DocumentStore, data: Mapping[str, Any], now: Optional[datetime] = None
) -> str:
    """Book an online appointment.  No queue number is given until check-in."""
    now = now or utc_now()
    fields = validate_booking(data, business_date(now))
    stamp = isoformat(now)
    appointment_id = store.create("appointments", {
        **fields,
        "appointment_type": AppointmentType.online.value,
        "status": AppointmentStatus.scheduled.value,
        "checked_in": False,
        "queue_number": None,
        "booked_at": stamp,
        "created_at": stamp,
        "updated_at": stamp,
    })
    logger.info(f"Booked online appointment {appointment_id} for {fields['preferred_date']}")
    return appointment_id


def get_appointment(store: DocumentStore, appointment_id: str) -> Appointment:
    return appointment_from_doc(appointment_id, _load_appointment(store, appointment_id))


def record_patient(
    store: DocumentStore,
    full_name: str,
    email: Optional[str],
    phone_number: Optional[str],
    now: Optional[datetime] = None,
    **details: Any,
) -> str:
    """Return the ID of the matching ``patients`` record, creating it if needed.

    Patients are matched on name and email, ignoring case and whitespace.
    """
    for key, doc in store.read_children("patients"):
        if _norm(doc.get("full_name")) == _norm(full_name) and _norm(doc.get("email")) == _norm(email):
            return key
    stamp = isoformat(now or utc_now())
    return store.create("patients", {
        "full_name": full_name,
        "email": email or "",
        "phone_number": phone_number or "",
        "date_of_birth": details.get("date_of_birth") or "",
        "gender": details.get("gender") or "",
        "address": details.get("address") or "",
        "created_at": stamp,
    })


def find_online_appointments(store: DocumentStore, search: str = "") -> List[Appointment]:
    """Appointments still waiting for check-in whose name, email or phone contain ``search``."""
    needle = _norm(search)
    found = []
    for key, doc in store.read_children("appointments"):
        if not _is_check_in_eligible(doc):
            continue
        haystack = (_norm(doc.get("patient_full_name")), _norm(doc.get("email_address")), _norm(doc.get("contact_number")))
        if not needle or any(needle in field for field in haystack):
            found.append(appointment_from_doc(key, doc))
    return found


def get_online_appointments_for_date(store: DocumentStore, date_key: Optional[str] = None) -> List[Appointment]:
    """Every online booking for one preferred date, whatever its status."""
    target = normalize_date(date_key) if date_key else business_date()
    if target is None:
        raise ValidationError("Please enter a valid date", {"date": "Invalid date"})
    return [
        appointment_from_doc(key, doc)
        for key, doc in store.read_children("appointments")
        if doc.get("appointment_type") == AppointmentType.online.value
        and normalize_date(doc.get("preferred_date")) == target
    ]


def check_in(
    store: DocumentStore,
    criteria: Mapping[str, Any],
    staff: StaffContext,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move a scheduled online appointment into today's queue.

    ``criteria`` must carry ``patient_full_name`` and ``email_address``; an
    optional ``appointment_id`` picks one booking when the same patient has
    several.  The queue entry and the appointment update are written in one
    atomic multi-path update.
    """
    name = _text(criteria, "patient_full_name")
    email = _text(criteria, "email_address")
    if not name or not email:
        raise ValidationError(
            "Full name and email are required to check in",
            {k: "Required" for k, v in (("patient_full_name", name), ("email_address", email)) if not v},
        )
    wanted_id = _text(criteria, "appointment_id")

    now = now or utc_now()
    stamp = isoformat(now)
    today_key = business_date_key(now)

    with store.transaction():
        matches = [
            (key, doc)
            for key, doc in store.read_children("appointments")
            if _is_check_in_eligible(doc)
            and _norm(doc.get("patient_full_name")) == _norm(name)
            and _norm(doc.get("email_address")) == _norm(email)
            and (not wanted_id or key == wanted_id)
        ]
        if not matches:
            raise NotFoundError("Online appointment not found or already checked in")
        if len(matches) > 1:
            candidates = [key for key, _ in matches]
            logger.warning(f"Duplicate online bookings for {name} <{email}>: {candidates}")
            raise AmbiguousMatchError(
                "More than one booking matches; choose which appointment to check in",
                candidates,
            )

        appointment_id, appointment = matches[0]
        queue_number = format_queue_number(next_queue_number(store, today_key), AppointmentType.online)
        entry_id = store.new_key()
        store.multi_update({
            f"queue/{today_key}/{entry_id}": {
                "queue_number": queue_number,
                "appointment_id": appointment_id,
                "patient_name": appointment.get("patient_full_name"),
                "email": appointment.get("email_address"),
                "phone": appointment.get("contact_number"),
                "service_ref": appointment.get("service_ref"),
                "appointment_type": AppointmentType.online.value,
                "status": QueueStatus.waiting.value,
                "priority_flag": PriorityFlag.normal.value,
                "booked_at": appointment.get("booked_at"),
                "arrival_time": stamp,
                "checked_in_at": stamp,
                "created_at": stamp,
                "updated_at": stamp,
            },
            f"appointments/{appointment_id}": {
                "status": AppointmentStatus.checked_in.value,
                "checked_in": True,
                "checked_in_at": stamp,
                "queue_number": queue_number,
                "queue_date": today_key,
                "updated_at": stamp,
            },
        })
        emit_audit(
            store,
            staff,
            f"Checked in online appointment for: {appointment.get('patient_full_name')}",
            now=now,
            appointment_id=appointment_id,
        )

    logger.info(f"Checked in appointment {appointment_id} as {queue_number} on {today_key}")
    return {
        "appointment_id": appointment_id,
        "queue_entry_id": entry_id,
        "queue_number": queue_number,
        "queue_date": today_key,
    }


def register_walkin(
    store: DocumentStore,
    patient: Mapping[str, Any],
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Put a walk-in patient straight into today's queue."""
    full_name = _text(patient, "full_name")
    if not full_name:
        raise ValidationError("Full name is required", {"full_name": "Full name is required"})
    try:
        priority = PriorityFlag(_text(patient, "priority_flag") or PriorityFlag.normal.value)
    except ValueError:
        raise ValidationError(
            "Priority must be 'normal' or 'high'", {"priority_flag": "Invalid priority"}
        ) from None

    now = now or utc_now()
    stamp = isoformat(now)
    today_key = business_date_key(now)
    email = _text(patient, "email")
    phone = re.sub(r"\s+", "", _text(patient, "phone_number"))

    with store.transaction():
        patient_id = _text(patient, "patient_id") or record_patient(
            store,
            full_name,
            email,
            phone,
            now=now,
            date_of_birth=_text(patient, "date_of_birth"),
            gender=_text(patient, "gender"),
            address=_text(patient, "address"),
        )
        queue_number = format_queue_number(
            next_queue_number(store, today_key), AppointmentType.walkin, priority
        )
        entry_id = store.create(f"queue/{today_key}", {
            "queue_number": queue_number,
            "appointment_id": None,
            "patient_id": patient_id,
            "patient_name": full_name,
            "email": email,
            "phone": phone,
            "service_ref": _text(patient, "service_ref") or None,
            "appointment_type": AppointmentType.walkin.value,
            "status": QueueStatus.waiting.value,
            "priority_flag": priority.value,
            "booked_at": None,
            "arrival_time": stamp,
            "checked_in_at": stamp,
            "created_at": stamp,
            "updated_at": stamp,
        })
        emit_audit(store, staff, f"Registered walk-in patient: {full_name}", now=now)

    logger.info(f"Registered walk-in {queue_number} on {today_key}")
    return {
        "queue_entry_id": entry_id,
        "queue_number": queue_number,
        "queue_date": today_key,
        "patient_id": patient_id,
    }


def mark_missed(
    store: DocumentStore,
    appointment_id: str,
    staff: StaffContext,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Staff marks a scheduled online appointment as missed."""
    now = now or utc_now()
    stamp = isoformat(now)
    with store.transaction():
        doc = _load_appointment(store, appointment_id)
        if not _is_check_in_eligible(doc):
            raise InvalidTransitionError(
                f"Only scheduled online appointments that have not checked in can be marked missed "
                f"(current status: {doc.get('status')})"
            )
        store.update(f"appointments/{appointment_id}", {
            "status": AppointmentStatus.missed.value,
            "missed_by_system": False,
            "missed_by": staff.user_ref,
            "missed_by_name": staff.full_name,
            "missed_reason": "Marked by staff: patient did not arrive",
            "missed_timestamp": stamp,
            "updated_at": stamp,
        })
        emit_audit(
            store,
            staff,
            f"Marked appointment as missed: {doc.get('patient_full_name')}",
            now=now,
            appointment_id=appointment_id,
        )
    return {"appointment_id": appointment_id, "status": AppointmentStatus.missed.value}


def reschedule_appointment(
    store: DocumentStore,
    appointment_id: str,
    new_date: Any,
    staff: StaffContext,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move a scheduled appointment that has not checked in to another date."""
    now = now or utc_now()
    errors: Dict[str, str] = {}
    preferred = _check_preferred_date(new_date, business_date(now), errors)
    if errors:
        raise ValidationError("Please choose a valid date", errors)

    stamp = isoformat(now)
    with store.transaction():
        doc = _load_appointment(store, appointment_id)
        if doc.get("status") != AppointmentStatus.scheduled.value or doc.get("checked_in"):
            raise InvalidTransitionError(
                f"Only scheduled appointments can be rescheduled (current status: {doc.get('status')})"
            )
        store.update(f"appointments/{appointment_id}", {
            "preferred_date": preferred.isoformat(),
            "previous_preferred_date": doc.get("preferred_date"),
            "rescheduled_at": stamp,
            "reminder_sent": False,
            "updated_at": stamp,
        })
        emit_audit(
            store,
            staff,
            f"Rescheduled appointment for: {doc.get('patient_full_name')} to {preferred.isoformat()}",
            now=now,
            appointment_id=appointment_id,
        )
    return {"appointment_id": appointment_id, "preferred_date": preferred.isoformat()}


def cancel_appointment(
    store: DocumentStore,
    appointment_id: str,
    staff: StaffContext,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Cancel any appointment that has not reached a terminal state.

    If the patient is already in a queue, that entry is closed as well.
    """
    now = now or utc_now()
    stamp = isoformat(now)
    reason = reason or "Cancelled by staff"
    with store.transaction():
        doc = _load_appointment(store, appointment_id)
        if doc.get("status") in {s.value for s in TERMINAL_APPOINTMENT_STATUSES}:
            raise InvalidTransitionError(f"Appointment is already {doc.get('status')}")

        writes: Dict[str, Dict[str, Any]] = {
            f"appointments/{appointment_id}": {
                "status": AppointmentStatus.cancelled.value,
                "cancelled_at": stamp,
                "cancelled_by": staff.user_ref,
                "cancellation_reason": reason,
                "updated_at": stamp,
            }
        }
        queue_date = doc.get("queue_date")
        if queue_date:
            for key, entry in store.read_children(f"queue/{queue_date}"):
                if entry.get("appointment_id") == appointment_id and entry.get("status") != QueueStatus.completed.value:
                    writes[f"queue/{queue_date}/{key}"] = {
                        "status": QueueStatus.completed.value,
                        "completed_at": stamp,
                        "completion_reason": f"Appointment cancelled: {reason}",
                        "updated_at": stamp,
                    }
        store.multi_update(writes)
        emit_audit(
            store,
            staff,
            f"Cancelled appointment for: {doc.get('patient_full_name')}",
            now=now,
            appointment_id=appointment_id,
            reason=reason,
        )
    return {"appointment_id": appointment_id, "status": AppointmentStatus.cancelled.value}


# ===== QUEUE =====

def advance_status(
    store: DocumentStore,
    entry_id: str,
    new_status: Any,
    date_key: Optional[str] = None,
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move a queue entry forward and mirror the status onto linked records."""
    try:
        target = QueueStatus(new_status)
    except ValueError:
        raise ValidationError(f"Unknown queue status: {new_status}", {"status": "Invalid status"}) from None

    now = now or utc_now()
    stamp = isoformat(now)
    date_key = date_key or business_date_key(now)
    path = f"queue/{date_key}/{entry_id}"

    with store.transaction():
        entry = store.read(path)
        if not isinstance(entry, dict):
            raise NotFoundError(f"Queue entry {entry_id} not found for {date_key}")
        current = QueueStatus(entry.get("status") or QueueStatus.waiting.value)
        result = {"queue_entry_id": entry_id, "queue_date": date_key, "status": target.value, "changed": False}
        if current == target:
            return result
        if target not in QUEUE_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot move a queue entry from {current.value} to {target.value}")

        updates: Dict[str, Any] = {"status": target.value, "updated_at": stamp}
        if target == QueueStatus.in_progress and not entry.get("called_at"):
            updates["called_at"] = stamp
        if target == QueueStatus.completed:
            updates["completed_at"] = stamp
        writes = {path: updates}

        appointment_id = entry.get("appointment_id")
        if appointment_id:
            appointment = store.read(f"appointments/{appointment_id}")
            if isinstance(appointment, dict) and appointment.get("status") != AppointmentStatus.cancelled.value:
                writes[f"appointments/{appointment_id}"] = {
                    "status": APPOINTMENT_MIRROR[target].value,
                    "updated_at": stamp,
                }
        patient_id = entry.get("patient_id")
        if patient_id and store.exists(f"patients/{patient_id}"):
            writes[f"patients/{patient_id}"] = {"status": target.value}

        store.multi_update(writes)
        emit_audit(
            store,
            staff,
            f"Updated queue status to {target.value} for: {entry.get('patient_name')} ({entry.get('queue_number')})",
            now=now,
        )
        result["changed"] = True

    if target == QueueStatus.in_progress:
        enqueue_sms(
            entry.get("phone"),
            called_message(entry.get("queue_number") or "", entry.get("patient_name") or "there"),
            "called",
            queue_number=entry.get("queue_number"),
        )
    return result


def mark_completed(
    store: DocumentStore,
    entry_id: str,
    date_key: Optional[str] = None,
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    return advance_status(store, entry_id, QueueStatus.completed, date_key=date_key, staff=staff, now=now)


def get_queue(store: DocumentStore, date_key: Optional[str] = None) -> List[QueueEntry]:
    """The live queue for a date, online bookings first."""
    date_key = date_key or business_date_key()
    return type_then_time_order(queue_entries_from_snapshot(store.read(f"queue/{date_key}"), date_key))


def get_admin_queue(store: DocumentStore, date_key: Optional[str] = None) -> List[QueueEntry]:
    """The admin view for a date, high priority first then by number."""
    date_key = date_key or business_date_key()
    return priority_then_number_order(queue_entries_from_snapshot(store.read(f"queue/{date_key}"), date_key))


def call_next(
    store: DocumentStore,
    date_key: Optional[str] = None,
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Call the first waiting patient of the live queue."""
    now = now or utc_now()
    date_key = date_key or business_date_key(now)
    with store.transaction():
        waiting = [e for e in get_queue(store, date_key) if e.status == QueueStatus.waiting]
        if not waiting:
            raise NotFoundError("No patients are waiting")
        result = advance_status(store, waiting[0].id, QueueStatus.in_progress, date_key=date_key, staff=staff, now=now)
    result["queue_number"] = waiting[0].queue_number
    return result


def get_queue_stats(store: DocumentStore, date_key: Optional[str] = None) -> Dict[str, Any]:
    date_key = date_key or business_date_key()
    queue = get_queue(store, date_key)
    return {
        "date": date_key,
        "total": len(queue),
        "waiting": sum(1 for q in queue if q.status == QueueStatus.waiting),
        "in_progress": sum(1 for q in queue if q.status == QueueStatus.in_progress),
        "completed": sum(1 for q in queue if q.status == QueueStatus.completed),
        "online": sum(1 for q in queue if q.appointment_type == AppointmentType.online),
        "walkin": sum(1 for q in queue if q.appointment_type == AppointmentType.walkin),
        "high_priority_waiting": sum(
            1 for q in queue if q.priority_flag == PriorityFlag.high and q.status != QueueStatus.completed
        ),
        "next_number": peek_next_queue_number(store, date_key),
    }


def subscribe_to_queue(
    store: DocumentStore,
    callback: Callable[[List[QueueEntry]], None],
    date_key: Optional[str] = None,
    ordering: str = "type_then_time",
) -> Callable[[], None]:
    """Deliver the ordered queue for ``date_key`` now and after every change."""
    date_key = date_key or business_date_key()

    def handle(snapshot: Any) -> None:
        callback(order_entries(queue_entries_from_snapshot(snapshot, date_key), ordering))

    return store.subscribe(f"queue/{date_key}", handle)
