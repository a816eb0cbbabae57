"""FastAPI application for the clinic front-office queue.

The app exposes online booking, staff check-in and walk-in registration,
the live queue (JSON and server-sent events) and the admin queue tools.  It
reads configuration from environment variables and keeps its data in the
sqlite-backed document store (see ``store.py``).  Redis is optional and used
only to publish queue updates and to hand SMS messages to
``notification_worker.py``.

On startup the reconciliation scheduler is initialised once, which runs a
catch-up sweep and then keeps running in the background.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from audit import StaffContext, staff_from_store
from clock import business_date_key
from errors import NotFoundError, StoreError, ValidationError
from models import QueueEntry, QueueStatus
from notifications import get_redis, publish_queue_update
from reconciliation import (
    ROLLOVER_CHECK_SECONDS,
    ReconciliationScheduler,
    get_missed_appointment_stats,
    mark_missed_appointments_for_date,
    run_reconciliation_sweep,
)
from schemas import (
    ActionRequest,
    BookingRequest,
    CancelRequest,
    CheckInRequest,
    PasscodeRequest,
    ReconcileDateRequest,
    RescheduleRequest,
    WalkinRequest,
)
from services import (
    advance_status,
    call_next,
    cancel_appointment,
    check_in,
    create_online_appointment,
    find_online_appointments,
    get_admin_queue,
    get_appointment,
    get_online_appointments_for_date,
    get_queue,
    get_queue_stats,
    mark_missed,
    record_patient,
    register_walkin,
    reschedule_appointment,
    subscribe_to_queue,
)
from store import DocumentStore, open_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ADMIN_PASS = os.getenv("ADMIN_PASS", "demo")
AUTO_RECONCILE = os.getenv("AUTO_RECONCILE", "1") == "1"
PORT = int(os.getenv("PORT", "8000"))
STREAM_HEARTBEAT_SECONDS = 15

app = FastAPI(title="Clinic Front-Office Queue")
app.state.store = None
app.state.scheduler = None
app.state.publisher = None

_cleanup: List[Callable[[], None]] = []


class QueuePublisher:
    """Publishes today's queue to Redis and moves to the new partition after midnight."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.date_key: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def refresh(self, now: Optional[datetime] = None) -> bool:
        """Subscribe to the current business date's partition.  True if it changed."""
        date_key = business_date_key(now)
        if date_key == self.date_key:
            return False
        self.close()
        self.date_key = date_key
        self._unsubscribe = subscribe_to_queue(
            self.store, lambda entries: publish_queue_update(date_key, _dump(entries)), date_key
        )
        logger.info(f"Publishing queue updates for {date_key}")
        return True

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


async def _follow_business_date(publisher: QueuePublisher) -> None:
    while True:
        await asyncio.sleep(ROLLOVER_CHECK_SECONDS)
        try:
            publisher.refresh()
        except StoreError as e:
            logger.error(f"Failed to move queue publisher to the new date: {e}")


@app.on_event("startup")
async def on_startup() -> None:
    if app.state.store is None:
        app.state.store = open_store()
        _cleanup.append(app.state.store.close)
    store: DocumentStore = app.state.store

    if get_redis() is not None:
        publisher = QueuePublisher(store)
        publisher.refresh()
        app.state.publisher = publisher
        follower = asyncio.create_task(_follow_business_date(publisher))
        _cleanup.insert(0, publisher.close)
        _cleanup.insert(0, follower.cancel)

    if AUTO_RECONCILE:
        app.state.scheduler = ReconciliationScheduler(store)
        await app.state.scheduler.initialize()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if app.state.scheduler is not None:
        await app.state.scheduler.cleanup()
        app.state.scheduler = None
    while _cleanup:
        _cleanup.pop(0)()
    app.state.publisher = None


def _dump(entries: List[QueueEntry]) -> List[Dict[str, Any]]:
    return [entry.model_dump(mode="json") for entry in entries]


# ===== ERROR HANDLING =====

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc), "errors": exc.errors})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": str(exc)}
    candidates = getattr(exc, "candidates", None)
    if candidates:
        content["candidates"] = candidates
    return JSONResponse(status_code=404, content=content)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"Store error on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"success": False, "error": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


# ===== DEPENDENCIES =====

def get_store(request: Request) -> DocumentStore:
    return request.app.state.store


def current_staff(request: Request, store: DocumentStore = Depends(get_store)) -> StaffContext:
    """Resolve the ``X-Staff-Id`` header against ``staff/{id}``."""
    ip_address = request.client.host if request.client else "Unknown"
    try:
        return staff_from_store(store, request.headers.get("X-Staff-Id", ""), ip_address)
    except NotFoundError as e:
        raise HTTPException(status_code=401, detail=str(e))


def require_admin(passcode: str) -> None:
    if passcode != ADMIN_PASS:
        raise HTTPException(status_code=401, detail="Invalid passcode")


# ===== PATIENT & STAFF =====

@app.get("/health")
def health(request: Request) -> Dict[str, Any]:
    scheduler = request.app.state.scheduler
    return {
        "status": "ok",
        "date": business_date_key(),
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "redis": get_redis() is not None,
    }


@app.post("/appointments", status_code=201)
def book_appointment(body: BookingRequest, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    """Online booking form.  The appointment gets its queue number at check-in."""
    appointment_id = create_online_appointment(store, body.model_dump(exclude_none=True))
    appointment = get_appointment(store, appointment_id)
    record_patient(
        store,
        appointment.patient_full_name,
        appointment.email_address,
        appointment.contact_number,
        date_of_birth=appointment.patient_birthdate,
        gender=appointment.patient_sex,
    )
    return {
        "success": True,
        "message": "Appointment booked. Please check in at the front desk on your visit.",
        "appointment_id": appointment_id,
        "preferred_date": appointment.preferred_date,
    }


@app.get("/appointments")
def list_online_appointments(
    date: Optional[str] = None,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    appointments = get_online_appointments_for_date(store, date)
    return {"appointments": [a.model_dump(mode="json") for a in appointments]}


@app.get("/appointments/search")
def search_appointments(
    q: str = "",
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    appointments = find_online_appointments(store, q)
    return {"appointments": [a.model_dump(mode="json") for a in appointments]}


@app.post("/checkin")
def checkin(
    body: CheckInRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    result = check_in(store, body.model_dump(exclude_none=True), staff)
    return {
        "success": True,
        "message": f"{body.patient_full_name} checked in with queue number {result['queue_number']}",
        **result,
    }


@app.post("/walkins", status_code=201)
def walkin(
    body: WalkinRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    result = register_walkin(store, body.model_dump(exclude_none=True), staff)
    return {
        "success": True,
        "message": f"{body.full_name} added to the queue as {result['queue_number']}",
        **result,
    }


@app.get("/queue")
def queue(date: Optional[str] = None, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    """Live queue for a date (today by default), online bookings first."""
    date_key = date or business_date_key()
    return {"date": date_key, "queue": _dump(get_queue(store, date_key))}


@app.get("/queue/stream")
async def queue_stream(request: Request, date: Optional[str] = None, store: DocumentStore = Depends(get_store)):
    """Server-Sent Events with the ordered queue on every change."""
    date_key = date or business_date_key()
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    def push(entries: List[QueueEntry]) -> None:
        loop.call_soon_threadsafe(updates.put_nowait, _dump(entries))

    async def event_stream():
        unsubscribe = subscribe_to_queue(store, push, date_key=date_key)
        try:
            while not await request.is_disconnected():
                try:
                    entries = await asyncio.wait_for(updates.get(), timeout=STREAM_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                    continue
                yield f"data: {json.dumps({'type': 'queue_update', 'date': date_key, 'data': entries})}\n\n"
        finally:
            unsubscribe()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


# ===== ADMIN =====

@app.get("/admin/queue")
def admin_queue(passcode: str, date: Optional[str] = None, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    """All entries for a date, high priority first then by number."""
    require_admin(passcode)
    date_key = date or business_date_key()
    return {"date": date_key, "queue": _dump(get_admin_queue(store, date_key))}


@app.get("/admin/queue/stats")
def admin_queue_stats(passcode: str, date: Optional[str] = None, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    require_admin(passcode)
    return get_queue_stats(store, date)


@app.post("/admin/queue/action")
def admin_queue_action(
    body: ActionRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    """Move a queue entry along (call, complete) or call the next patient.

    Returns the admin queue for the date after the change.
    """
    require_admin(body.passcode)
    status_map = {
        "call": QueueStatus.in_progress,
        "start": QueueStatus.in_progress,
        "complete": QueueStatus.completed,
        "done": QueueStatus.completed,
    }
    if body.action == "call_next":
        result = call_next(store, body.date, staff)
    elif body.action in status_map:
        if not body.entry_id:
            raise HTTPException(status_code=400, detail="entry_id is required")
        result = advance_status(store, body.entry_id, status_map[body.action], date_key=body.date, staff=staff)
    else:
        raise HTTPException(status_code=400, detail="Invalid action")

    message = f"Queue entry is now {result['status']}" if result["changed"] else f"Queue entry was already {result['status']}"
    return {
        "success": True,
        "message": message,
        **result,
        "queue": _dump(get_admin_queue(store, result["queue_date"])),
    }


@app.post("/admin/appointments/{appointment_id}/missed")
def admin_mark_missed(
    appointment_id: str,
    body: PasscodeRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    require_admin(body.passcode)
    result = mark_missed(store, appointment_id, staff)
    return {"success": True, "message": "Appointment marked as missed", **result}


@app.post("/admin/appointments/{appointment_id}/reschedule")
def admin_reschedule(
    appointment_id: str,
    body: RescheduleRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    require_admin(body.passcode)
    result = reschedule_appointment(store, appointment_id, body.preferred_date, staff)
    return {"success": True, "message": f"Appointment moved to {result['preferred_date']}", **result}


@app.post("/admin/appointments/{appointment_id}/cancel")
def admin_cancel(
    appointment_id: str,
    body: CancelRequest,
    store: DocumentStore = Depends(get_store),
    staff: StaffContext = Depends(current_staff),
) -> Dict[str, Any]:
    require_admin(body.passcode)
    result = cancel_appointment(store, appointment_id, staff, reason=body.reason)
    return {"success": True, "message": "Appointment cancelled", **result}


@app.post("/admin/reconcile")
async def admin_reconcile(body: PasscodeRequest, request: Request, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    """Run the reconciliation sweep now (the "check now" button)."""
    require_admin(body.passcode)
    scheduler: Optional[ReconciliationScheduler] = request.app.state.scheduler
    if scheduler is not None:
        result = await scheduler.run_now()
    else:
        result = await asyncio.to_thread(run_reconciliation_sweep, store)
    return {"success": "error" not in result, **result}


@app.post("/admin/reconcile/date")
def admin_reconcile_date(body: ReconcileDateRequest, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    require_admin(body.passcode)
    result = mark_missed_appointments_for_date(store, body.date)
    return {"success": True, **result}


@app.get("/admin/missed-stats")
def admin_missed_stats(passcode: str, days: int = 7, store: DocumentStore = Depends(get_store)) -> Dict[str, Any]:
    require_admin(passcode)
    return get_missed_appointment_stats(store, days)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
