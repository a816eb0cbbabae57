"""Day-before SMS reminders for online appointments."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional

from clock import business_date, isoformat, normalize_date, utc_now
from models import Appointment, AppointmentStatus, AppointmentType, appointment_from_doc
from notifications import enqueue_sms, get_redis
from store import DocumentStore

logger = logging.getLogger(__name__)


def find_appointments_needing_reminder(store: DocumentStore, today: date) -> List[Appointment]:
    tomorrow = today + timedelta(days=1)
    return [
        appointment_from_doc(key, doc)
        for key, doc in store.read_children("appointments")
        if doc.get("appointment_type") == AppointmentType.online.value
        and doc.get("status") == AppointmentStatus.scheduled.value
        and not doc.get("reminder_sent")
        and normalize_date(doc.get("preferred_date")) == tomorrow
    ]


def reminder_message(appointment: Appointment) -> str:
    return (
        f"Hi {appointment.patient_full_name}, this is a reminder of your clinic appointment "
        f"tomorrow ({appointment.preferred_date}). Please check in at the front desk when you arrive."
    )


def queue_appointment_reminders(store: DocumentStore, now: Optional[datetime] = None) -> int:
    """Queue a reminder SMS for each of tomorrow's bookings and return how many were queued.

    An appointment is only stamped ``reminder_sent`` once its SMS is on the
    Redis list, so nothing is lost while Redis is unavailable.
    """
    if get_redis() is None:
        logger.debug("Redis not configured; skipping appointment reminders")
        return 0

    now = now or utc_now()
    stamp = isoformat(now)
    queued = 0
    for appointment in find_appointments_needing_reminder(store, business_date(now)):
        if not enqueue_sms(
            appointment.contact_number,
            reminder_message(appointment),
            "reminder",
            appointment_id=appointment.id,
        ):
            continue
        store.update(f"appointments/{appointment.id}", {"reminder_sent": True, "reminder_sent_at": stamp})
        queued += 1

    if queued:
        logger.info(f"Queued {queued} appointment reminders")
    return queued
