import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

import services
from errors import AmbiguousMatchError, InvalidTransitionError, NotFoundError, ValidationError
from notifications import SMS_QUEUE_KEY
from services import (
    advance_status,
    call_next,
    cancel_appointment,
    check_in,
    create_online_appointment,
    find_online_appointments,
    get_admin_queue,
    get_online_appointments_for_date,
    get_queue,
    get_queue_stats,
    mark_completed,
    mark_missed,
    register_walkin,
    reschedule_appointment,
    subscribe_to_queue,
)
from tests.conftest import NOW

CRITERIA = {"patient_full_name": "Juan Dela Cruz", "email_address": "juan@example.com"}


def audit_actions(store):
    return [doc["action"] for _, doc in store.read_children("audit_logs")]


# ----- booking ---------------------------------------------------------------

def test_booking_creates_scheduled_appointment_without_number(store, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    doc = store.read(f"appointments/{appointment_id}")

    assert doc["status"] == "scheduled"
    assert doc["appointment_type"] == "online"
    assert doc["queue_number"] is None
    assert doc["checked_in"] is False
    assert doc["contact_number"] == "09171234567"
    assert store.read("queue") is None


def test_booking_validation_reports_every_bad_field(store, booking):
    booking.update(
        patient_birthdate="2025-01-06",
        contact_number="12345",
        email_address="juan@",
        service_ref="",
        preferred_date="2025-01-05",
    )
    with pytest.raises(ValidationError) as exc:
        create_online_appointment(store, booking, now=NOW)

    assert set(exc.value.errors) == {
        "patient_birthdate",
        "contact_number",
        "email_address",
        "service_ref",
        "preferred_date",
    }
    assert store.read("appointments") is None


def test_booking_accepts_split_name_and_plus63_number(store, booking):
    del booking["patient_full_name"]
    booking.update(patient_first_name="Juan", patient_last_name="Dela Cruz", contact_number="+639171234567")
    appointment_id = create_online_appointment(store, booking, now=NOW)
    assert store.read(f"appointments/{appointment_id}")["patient_full_name"] == "Juan Dela Cruz"


def test_booking_rejects_closed_weekday(store, booking, monkeypatch):
    monkeypatch.setattr(services, "CLOSED_WEEKDAYS", {6})
    booking["preferred_date"] = "2025-01-12"
    with pytest.raises(ValidationError) as exc:
        create_online_appointment(store, booking, now=NOW)
    assert "preferred_date" in exc.value.errors


# ----- check-in --------------------------------------------------------------

def test_check_in_before_preferred_date_succeeds(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)

    result = check_in(store, CRITERIA, staff, now=NOW)

    assert result["appointment_id"] == appointment_id
    assert result["queue_number"] == "O-001"
    assert result["queue_date"] == "2025-01-06"


def test_check_in_links_exactly_one_queue_entry(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    result = check_in(store, CRITERIA, staff, now=NOW)

    entries = [doc for _, doc in store.read_children("queue/2025-01-06") if doc["appointment_id"] == appointment_id]
    appointment = store.read(f"appointments/{appointment_id}")

    assert len(entries) == 1
    assert entries[0]["queue_number"] == appointment["queue_number"] == result["queue_number"]
    assert appointment["status"] == "checked-in"
    assert appointment["checked_in"] is True
    assert appointment["queue_date"] == "2025-01-06"
    assert entries[0]["status"] == "waiting"
    assert entries[0]["booked_at"] == appointment["booked_at"]


def test_check_in_succeeds_once(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    check_in(store, CRITERIA, staff, now=NOW)
    with pytest.raises(NotFoundError):
        check_in(store, CRITERIA, staff, now=NOW)


def test_check_in_matches_case_insensitively(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    result = check_in(
        store, {"patient_full_name": "  juan dela CRUZ ", "email_address": "JUAN@example.com"}, staff, now=NOW
    )
    assert result["queue_number"] == "O-001"


def test_check_in_without_match(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    with pytest.raises(NotFoundError):
        check_in(store, {**CRITERIA, "email_address": "other@example.com"}, staff, now=NOW)
    with pytest.raises(ValidationError):
        check_in(store, {"patient_full_name": "Juan Dela Cruz"}, staff, now=NOW)


def test_duplicate_bookings_need_an_appointment_id(store, staff, booking):
    first = create_online_appointment(store, booking, now=NOW)
    second = create_online_appointment(store, booking, now=NOW + timedelta(minutes=1))

    with pytest.raises(AmbiguousMatchError) as exc:
        check_in(store, CRITERIA, staff, now=NOW)
    assert exc.value.candidates == [first, second]
    assert store.read("queue") is None

    result = check_in(store, {**CRITERIA, "appointment_id": second}, staff, now=NOW)
    assert result["appointment_id"] == second
    assert store.read(f"appointments/{first}")["status"] == "scheduled"


def test_check_in_writes_audit_record(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    check_in(store, CRITERIA, staff, now=NOW)

    [(_, record)] = store.read_children("audit_logs")
    assert record["action"] == "Checked in online appointment for: Juan Dela Cruz"
    assert record["user_ref"] == "staff/nurse1"
    assert record["staff_full_name"] == "Maria Santos"
    assert record["ip_address"] == "127.0.0.1"
    assert record["appointment_id"] == appointment_id


def test_numbers_follow_check_in_order_but_display_follows_booking(store, staff, booking):
    early = create_online_appointment(store, booking, now=NOW - timedelta(hours=1))
    late = create_online_appointment(
        store,
        {**booking, "patient_full_name": "Rosa Reyes", "email_address": "rosa@example.com"},
        now=NOW - timedelta(minutes=55),
    )

    late_result = check_in(
        store, {"patient_full_name": "Rosa Reyes", "email_address": "rosa@example.com"}, staff, now=NOW
    )
    early_result = check_in(store, CRITERIA, staff, now=NOW + timedelta(minutes=1))

    assert late_result["queue_number"] == "O-001"
    assert early_result["queue_number"] == "O-002"
    assert [e.appointment_id for e in get_queue(store, "2025-01-06")] == [early, late]


def test_find_online_appointments(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    assert [a.patient_full_name for a in find_online_appointments(store, "juan")] == ["Juan Dela Cruz"]
    assert len(find_online_appointments(store, "0917")) == 1
    assert find_online_appointments(store, "maria") == []

    check_in(store, CRITERIA, staff, now=NOW)
    assert find_online_appointments(store, "juan") == []


def test_online_appointments_for_date_include_every_status(store, staff, booking):
    kept = create_online_appointment(store, booking, now=NOW)
    cancelled = create_online_appointment(
        store, {**booking, "patient_full_name": "Rosa Reyes", "email_address": "rosa@example.com"}, now=NOW
    )
    cancel_appointment(store, cancelled, staff, now=NOW)
    create_online_appointment(
        store,
        {**booking, "patient_full_name": "Ana Cruz", "email_address": "ana@example.com", "preferred_date": "2025-01-08"},
        now=NOW,
    )
    register_walkin(store, {"full_name": "Walk In"}, staff, now=NOW + timedelta(days=1))

    found = get_online_appointments_for_date(store, "2025-01-07")

    assert sorted(a.id for a in found) == sorted([kept, cancelled])
    assert {a.status.value for a in found} == {"scheduled", "cancelled"}
    assert [a.patient_full_name for a in get_online_appointments_for_date(store, "2025-01-08")] == ["Ana Cruz"]
    assert get_online_appointments_for_date(store, "2025-01-09") == []
    with pytest.raises(ValidationError):
        get_online_appointments_for_date(store, "someday")


# ----- walk-ins --------------------------------------------------------------

def test_walkin_after_existing_entries_gets_next_number(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    assert check_in(store, CRITERIA, staff, now=NOW)["queue_number"] == "O-001"
    assert register_walkin(store, {"full_name": "Pedro Penduko"}, staff, now=NOW)["queue_number"] == "002"

    result = register_walkin(store, {"full_name": "Lola Basyang", "phone_number": "09181234567"}, staff, now=NOW)

    assert result["queue_number"] == "003"
    entry = store.read(f"queue/2025-01-06/{result['queue_entry_id']}")
    assert entry["appointment_type"] == "walkin"
    assert entry["priority_flag"] == "normal"
    assert entry["arrival_time"] == entry["checked_in_at"]
    assert store.read(f"patients/{result['patient_id']}")["full_name"] == "Lola Basyang"


def test_high_priority_walkin_gets_emergency_prefix(store, staff):
    result = register_walkin(store, {"full_name": "Urgent Case", "priority_flag": "high"}, staff, now=NOW)
    assert result["queue_number"] == "E-001"
    assert "Registered walk-in patient: Urgent Case" in audit_actions(store)


def test_walkin_validation(store, staff):
    with pytest.raises(ValidationError):
        register_walkin(store, {"full_name": " "}, staff, now=NOW)
    with pytest.raises(ValidationError):
        register_walkin(store, {"full_name": "Ana", "priority_flag": "urgent"}, staff, now=NOW)
    assert store.read("queue") is None


def test_walkin_reuses_existing_patient_record(store, staff):
    first = register_walkin(store, {"full_name": "Ana Cruz", "email": "ana@example.com"}, staff, now=NOW)
    second = register_walkin(store, {"full_name": "ana cruz", "email": "ANA@example.com"}, staff, now=NOW)
    assert first["patient_id"] == second["patient_id"]


# ----- queue status ----------------------------------------------------------

def test_advance_status_mirrors_onto_appointment(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    entry_id = check_in(store, CRITERIA, staff, now=NOW)["queue_entry_id"]

    advance_status(store, entry_id, "in-progress", staff=staff, now=NOW + timedelta(minutes=5))
    entry = store.read(f"queue/2025-01-06/{entry_id}")
    assert entry["status"] == "in-progress"
    assert entry["called_at"]
    assert store.read(f"appointments/{appointment_id}")["status"] == "in-progress"

    mark_completed(store, entry_id, staff=staff, now=NOW + timedelta(minutes=20))
    entry = store.read(f"queue/2025-01-06/{entry_id}")
    assert entry["status"] == "completed"
    assert entry["completed_at"]
    assert store.read(f"appointments/{appointment_id}")["status"] == "completed"


def test_advance_status_rules(store, staff):
    entry_id = register_walkin(store, {"full_name": "Ana"}, staff, now=NOW)["queue_entry_id"]

    assert advance_status(store, entry_id, "waiting", now=NOW)["changed"] is False
    assert advance_status(store, entry_id, "completed", now=NOW)["changed"] is True
    with pytest.raises(InvalidTransitionError):
        advance_status(store, entry_id, "in-progress", now=NOW)
    with pytest.raises(InvalidTransitionError):
        advance_status(store, entry_id, "waiting", now=NOW)
    with pytest.raises(ValidationError):
        advance_status(store, entry_id, "paused", now=NOW)
    with pytest.raises(NotFoundError):
        advance_status(store, "missing", "completed", now=NOW)


def test_advance_status_updates_patient_and_queues_sms(store, staff, redis_stub):
    result = register_walkin(store, {"full_name": "Ana", "phone_number": "09181234567"}, staff, now=NOW)
    advance_status(store, result["queue_entry_id"], "in-progress", staff=staff, now=NOW)

    assert store.read(f"patients/{result['patient_id']}")["status"] == "in-progress"
    [payload] = redis_stub.lists[SMS_QUEUE_KEY]
    assert '"type": "called"' in payload
    assert "001" in payload


def test_call_next_takes_first_in_live_order(store, staff, booking):
    register_walkin(store, {"full_name": "Early Walkin"}, staff, now=NOW - timedelta(hours=1))
    create_online_appointment(store, booking, now=NOW - timedelta(days=1))
    check_in(store, CRITERIA, staff, now=NOW)

    assert call_next(store, "2025-01-06", staff, now=NOW)["queue_number"] == "O-002"
    assert call_next(store, "2025-01-06", staff, now=NOW)["queue_number"] == "001"
    with pytest.raises(NotFoundError):
        call_next(store, "2025-01-06", staff, now=NOW)


def test_concurrent_call_next_never_calls_the_same_patient(store, staff, monkeypatch):
    for name in ("Ana", "Ben", "Carla", "Dino"):
        register_walkin(store, {"full_name": name}, staff, now=NOW - timedelta(minutes=30))
    real_get_queue = services.get_queue

    def slow_get_queue(*args, **kwargs):
        entries = real_get_queue(*args, **kwargs)
        time.sleep(0.01)
        return entries

    monkeypatch.setattr(services, "get_queue", slow_get_queue)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: call_next(store, "2025-01-06", staff, now=NOW), range(4)))

    assert all(r["changed"] for r in results)
    assert sorted(r["queue_number"] for r in results) == ["001", "002", "003", "004"]
    assert all(e.status.value == "in-progress" for e in get_queue(store, "2025-01-06"))


# ----- missed, reschedule, cancel -------------------------------------------

def test_staff_mark_missed(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    mark_missed(store, appointment_id, staff, now=NOW)

    doc = store.read(f"appointments/{appointment_id}")
    assert doc["status"] == "missed"
    assert doc["missed_by_system"] is False
    assert doc["missed_by"] == "staff/nurse1"
    assert "Marked appointment as missed: Juan Dela Cruz" in audit_actions(store)

    with pytest.raises(InvalidTransitionError):
        mark_missed(store, appointment_id, staff, now=NOW)
    with pytest.raises(NotFoundError):
        mark_missed(store, "missing", staff, now=NOW)


def test_checked_in_appointment_cannot_be_missed(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    check_in(store, CRITERIA, staff, now=NOW)
    with pytest.raises(InvalidTransitionError):
        mark_missed(store, appointment_id, staff, now=NOW)


def test_reschedule(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    store.update(f"appointments/{appointment_id}", {"reminder_sent": True})

    with pytest.raises(ValidationError):
        reschedule_appointment(store, appointment_id, "2025-01-01", staff, now=NOW)

    reschedule_appointment(store, appointment_id, "2025-01-10", staff, now=NOW)
    doc = store.read(f"appointments/{appointment_id}")
    assert doc["preferred_date"] == "2025-01-10"
    assert doc["previous_preferred_date"] == "2025-01-07"
    assert doc["reminder_sent"] is False

    check_in(store, CRITERIA, staff, now=NOW)
    with pytest.raises(InvalidTransitionError):
        reschedule_appointment(store, appointment_id, "2025-01-11", staff, now=NOW)


def test_cancel_closes_linked_queue_entry(store, staff, booking):
    appointment_id = create_online_appointment(store, booking, now=NOW)
    entry_id = check_in(store, CRITERIA, staff, now=NOW)["queue_entry_id"]

    cancel_appointment(store, appointment_id, staff, reason="Patient left", now=NOW)

    assert store.read(f"appointments/{appointment_id}")["status"] == "cancelled"
    entry = store.read(f"queue/2025-01-06/{entry_id}")
    assert entry["status"] == "completed"
    assert entry["completion_reason"] == "Appointment cancelled: Patient left"
    with pytest.raises(InvalidTransitionError):
        cancel_appointment(store, appointment_id, staff, now=NOW)


# ----- queue reads -----------------------------------------------------------

def test_admin_queue_and_stats(store, staff, booking):
    create_online_appointment(store, booking, now=NOW)
    check_in(store, CRITERIA, staff, now=NOW)
    register_walkin(store, {"full_name": "Walk In"}, staff, now=NOW)
    register_walkin(store, {"full_name": "Emergency", "priority_flag": "high"}, staff, now=NOW)

    assert [e.queue_number for e in get_admin_queue(store, "2025-01-06")] == ["E-003", "O-001", "002"]

    stats = get_queue_stats(store, "2025-01-06")
    assert stats["total"] == 3
    assert stats["waiting"] == 3
    assert stats["online"] == 1
    assert stats["walkin"] == 2
    assert stats["high_priority_waiting"] == 1
    assert stats["next_number"] == 4


def test_subscribe_to_queue_delivers_ordered_snapshots(store, staff, booking):
    snapshots = []
    unsubscribe = subscribe_to_queue(store, snapshots.append, date_key="2025-01-06")
    assert snapshots == [[]]

    register_walkin(store, {"full_name": "Walk In"}, staff, now=NOW)
    create_online_appointment(store, booking, now=NOW)
    check_in(store, CRITERIA, staff, now=NOW)

    assert [e.queue_number for e in snapshots[-1]] == ["O-002", "001"]
    unsubscribe()
    count = len(snapshots)
    register_walkin(store, {"full_name": "Another"}, staff, now=NOW)
    assert len(snapshots) == count
