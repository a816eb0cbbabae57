"""Automatic reconciliation of stale queue entries and unattended bookings.

The sweep closes out queue partitions from earlier days and marks online
appointments whose preferred date has fully elapsed as missed.  It only
ever moves records forward, so running it again is harmless.

:class:`ReconciliationScheduler` drives the sweep from one asyncio task: a
minute tick watches for the business date changing (so the sweep runs
within a minute after midnight) and the sweep also runs whenever
``SWEEP_INTERVAL_SECONDS`` has passed since the previous one.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from audit import SYSTEM_STAFF, StaffContext, emit_audit
from clock import business_date, business_date_key, isoformat, normalize_date, parse_timestamp, utc_now
from errors import StoreError, ValidationError
from models import AppointmentStatus, AppointmentType, QueueStatus
from reminders import queue_appointment_reminders
from store import DocumentStore

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600"))
ROLLOVER_CHECK_SECONDS = int(os.getenv("ROLLOVER_CHECK_SECONDS", "60"))

COMPLETION_REASON = "Auto-completed: Queue reset at midnight"
MISSED_REASON = "Auto-marked: Day reset without check-in"

_FINAL_APPOINTMENT_STATUSES = {
    AppointmentStatus.completed.value,
    AppointmentStatus.missed.value,
    AppointmentStatus.cancelled.value,
}


def complete_past_queue_entries(
    store: DocumentStore,
    today_key: str,
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> int:
    """Complete every unfinished entry in partitions dated before ``today_key``.

    Linked appointments are mirrored to ``completed`` unless they already
    reached a final state.  Returns how many entries were closed.
    """
    staff = staff or SYSTEM_STAFF
    now = now or utc_now()
    stamp = isoformat(now)
    completed = 0

    for date_key, partition in store.read_children("queue"):
        if date_key >= today_key:
            continue
        for entry_id, entry in partition.items():
            if not isinstance(entry, dict) or entry.get("status") == QueueStatus.completed.value:
                continue
            path = f"queue/{date_key}/{entry_id}"
            try:
                with store.transaction():
                    current = store.read(path)
                    if not isinstance(current, dict) or current.get("status") == QueueStatus.completed.value:
                        continue
                    writes = {
                        path: {
                            "status": QueueStatus.completed.value,
                            "completed_at": stamp,
                            "completed_by_system": True,
                            "completion_reason": COMPLETION_REASON,
                            "updated_at": stamp,
                        }
                    }
                    appointment_id = current.get("appointment_id")
                    if appointment_id:
                        appointment = store.read(f"appointments/{appointment_id}")
                        if isinstance(appointment, dict) and appointment.get("status") not in _FINAL_APPOINTMENT_STATUSES:
                            writes[f"appointments/{appointment_id}"] = {
                                "status": AppointmentStatus.completed.value,
                                "completed_by_system": True,
                                "updated_at": stamp,
                            }
                    store.multi_update(writes)
                completed += 1
            except StoreError as e:
                logger.error(f"Failed to complete queue entry {date_key}/{entry_id}: {e}")

    if completed:
        try:
            emit_audit(
                store,
                staff,
                f"Auto-completed {completed} past queue entries (queue reset)",
                now=now,
                affected_count=completed,
                reason=COMPLETION_REASON,
            )
        except StoreError as e:
            logger.error(f"Failed to record queue reset audit entry: {e}")
        logger.info(f"Completed {completed} queue entries from previous days")
    return completed


def should_mark_missed(appointment: Mapping[str, Any], today: date) -> bool:
    """True for an online booking never checked in whose date is before ``today``."""
    if appointment.get("appointment_type") != AppointmentType.online.value:
        return False
    if appointment.get("status") != AppointmentStatus.scheduled.value or appointment.get("checked_in"):
        return False
    preferred = normalize_date(appointment.get("preferred_date"))
    return preferred is not None and preferred < today


def mark_appointment_missed_by_system(
    store: DocumentStore,
    appointment_id: str,
    appointment: Mapping[str, Any],
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Mark one appointment missed.  Returns False if it no longer qualifies."""
    staff = staff or SYSTEM_STAFF
    now = now or utc_now()
    stamp = isoformat(now)
    with store.transaction():
        current = store.read(f"appointments/{appointment_id}")
        if not isinstance(current, dict) or not should_mark_missed(current, business_date(now)):
            return False
        store.update(f"appointments/{appointment_id}", {
            "status": AppointmentStatus.missed.value,
            "missed_by_system": True,
            "missed_reason": MISSED_REASON,
            "missed_timestamp": stamp,
            "updated_at": stamp,
        })
        emit_audit(
            store,
            staff,
            f"Auto-marked appointment as missed (day reset): "
            f"{appointment.get('patient_full_name')} - Date: {appointment.get('preferred_date')}",
            now=now,
            appointment_id=appointment_id,
            reason=MISSED_REASON,
        )
    return True


def run_reconciliation_sweep(
    store: DocumentStore,
    now: Optional[datetime] = None,
    staff: Optional[StaffContext] = None,
) -> Dict[str, Any]:
    """Complete stale queue entries, then mark elapsed bookings missed."""
    now = now or utc_now()
    today = business_date(now)
    logger.info(f"Running reconciliation sweep for {today.isoformat()}")

    try:
        completed = complete_past_queue_entries(store, today.isoformat(), staff=staff, now=now)
        processed = 0
        for appointment_id, appointment in store.read_children("appointments"):
            if not should_mark_missed(appointment, today):
                continue
            try:
                if mark_appointment_missed_by_system(store, appointment_id, appointment, staff=staff, now=now):
                    processed += 1
            except StoreError as e:
                logger.error(f"Failed to mark appointment {appointment_id} as missed: {e}")
    except StoreError as e:
        logger.error(f"Reconciliation sweep failed: {e}")
        return {
            "processed_count": 0,
            "completed_count": 0,
            "message": "Reconciliation sweep failed",
            "error": str(e),
        }

    message = f"Marked {processed} appointments as missed and completed {completed} past queue entries"
    logger.info(message)
    return {"processed_count": processed, "completed_count": completed, "message": message}


def mark_missed_appointments_for_date(
    store: DocumentStore,
    target_date: Any,
    staff: Optional[StaffContext] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Mark missed the unattended bookings of one date that has already passed."""
    now = now or utc_now()
    target = normalize_date(target_date)
    if target is None:
        raise ValidationError("Please enter a valid date", {"date": "Invalid date"})
    if target >= business_date(now):
        raise ValidationError(
            "Can only mark missed appointments for dates that have passed",
            {"date": "Date has not passed yet"},
        )

    processed = 0
    for appointment_id, appointment in store.read_children("appointments"):
        if normalize_date(appointment.get("preferred_date")) != target:
            continue
        if not should_mark_missed(appointment, business_date(now)):
            continue
        try:
            if mark_appointment_missed_by_system(store, appointment_id, appointment, staff=staff, now=now):
                processed += 1
        except StoreError as e:
            logger.error(f"Failed to mark appointment {appointment_id} as missed: {e}")

    return {
        "processed_count": processed,
        "date": target.isoformat(),
        "message": f"Marked {processed} appointments as missed for {target.isoformat()}",
    }


def get_missed_appointment_stats(
    store: DocumentStore, days: int = 7, now: Optional[datetime] = None
) -> Dict[str, int]:
    now = now or utc_now()
    cutoff = now - timedelta(days=days)
    missed = [
        doc
        for _, doc in store.read_children("appointments")
        if doc.get("status") == AppointmentStatus.missed.value
    ]
    recent = 0
    for doc in missed:
        stamp = parse_timestamp(doc.get("missed_timestamp"))
        if stamp is not None and stamp >= cutoff:
            recent += 1
    auto = sum(1 for doc in missed if doc.get("missed_by_system"))
    return {
        "total_missed": len(missed),
        "recent_missed": recent,
        "auto_missed": auto,
        "manual_missed": len(missed) - auto,
    }


class ReconciliationScheduler:
    """Runs the reconciliation sweep from a single cancellable asyncio task."""

    def __init__(
        self,
        store: DocumentStore,
        sweep_interval: int = SWEEP_INTERVAL_SECONDS,
        check_interval: int = ROLLOVER_CHECK_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        staff: StaffContext = SYSTEM_STAFF,
    ) -> None:
        self.store = store
        self.sweep_interval = sweep_interval
        self.check_interval = check_interval
        self.clock = clock
        self.staff = staff
        self.last_date_key: Optional[str] = None
        self.last_sweep_at: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def initialize(self) -> Dict[str, Any]:
        """Catch up on anything missed while the app was down, then start ticking."""
        now = self.clock()
        self.last_date_key = business_date_key(now)
        result = await self.run_now(now)
        self.start()
        logger.info("Reconciliation scheduler initialised")
        return result

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reconciliation scheduler stopped")

    async def cleanup(self) -> None:
        await self.stop()
        self.last_date_key = None
        self.last_sweep_at = None
        self.last_result = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.tick(self.clock())
            except Exception:
                logger.exception("Reconciliation tick failed")

    def check_for_date_change(self, now: datetime) -> bool:
        """Record the business date of ``now``; True if it differs from the last one seen."""
        date_key = business_date_key(now)
        changed = self.last_date_key is not None and date_key != self.last_date_key
        if changed:
            logger.info(f"Business date changed from {self.last_date_key} to {date_key}")
        self.last_date_key = date_key
        return changed

    async def tick(self, now: datetime) -> Optional[Dict[str, Any]]:
        if self.check_for_date_change(now):
            return await self.run_now(now)
        due = self.last_sweep_at is None or (now - self.last_sweep_at).total_seconds() >= self.sweep_interval
        if not due:
            return None
        result = await self.run_now(now)
        await asyncio.to_thread(queue_appointment_reminders, self.store, now)
        return result

    async def run_now(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Run a sweep immediately unless one is already in progress."""
        if self._lock.locked():
            logger.info("Reconciliation sweep already in progress, skipping")
            return {
                "processed_count": 0,
                "completed_count": 0,
                "message": "Reconciliation sweep already in progress",
                "skipped": True,
            }
        async with self._lock:
            now = now or self.clock()
            result = await asyncio.to_thread(run_reconciliation_sweep, self.store, now, self.staff)
            self.last_sweep_at = now
            self.last_result = result
            return result
