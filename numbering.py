"""Queue number allocation and formatting.

Numbers are sequential per business date and shared by every series: an
online check-in (``O-004``), an emergency walk-in (``E-005``) and a regular
walk-in (``006``) all draw from the same counter for that day.
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Union

from models import AppointmentType, PriorityFlag
from store import DocumentStore

ONLINE_PREFIX = "O-"
EMERGENCY_PREFIX = "E-"

_SUFFIX_RE = re.compile(r"(\d+)$")


def parse_queue_suffix(queue_number: Optional[str]) -> int:
    """Extract the trailing number from ``O-003``, ``E-010`` or ``003``."""
    if not queue_number:
        return 0
    match = _SUFFIX_RE.search(str(queue_number))
    return int(match.group(1)) if match else 0


def format_queue_number(
    number: int,
    appointment_type: Union[AppointmentType, str],
    priority_flag: Union[PriorityFlag, str] = PriorityFlag.normal,
) -> str:
    if number < 1:
        raise ValueError("queue numbers start at 1")
    padded = f"{number:03d}"
    if AppointmentType(appointment_type) == AppointmentType.online:
        return ONLINE_PREFIX + padded
    if PriorityFlag(priority_flag) == PriorityFlag.high:
        return EMERGENCY_PREFIX + padded
    return padded


def max_assigned_number(entries: Iterable[Any]) -> int:
    """Highest suffix among queue entry documents or models."""
    highest = 0
    for entry in entries:
        value = entry.get("queue_number") if isinstance(entry, dict) else getattr(entry, "queue_number", None)
        highest = max(highest, parse_queue_suffix(value))
    return highest


def _counter_path(date_key: str) -> str:
    return f"queue_counters/{date_key}"


def peek_next_queue_number(store: DocumentStore, date_key: str) -> int:
    """The number the next allocation would return, without reserving it."""
    counter = store.read(_counter_path(date_key)) or {}
    partition = store.read(f"queue/{date_key}") or {}
    return max(int(counter.get("last_number", 0)), max_assigned_number(partition.values())) + 1


def next_queue_number(store: DocumentStore, date_key: str) -> int:
    """Reserve and return the next queue number for ``date_key``.

    The counter document and the partition are read and the counter written
    inside one store transaction, so two check-ins can never be handed the
    same number.  Entries already in the partition (for example ones written
    by an older client without the counter) still push the sequence forward.
    """
    with store.transaction():
        number = peek_next_queue_number(store, date_key)
        store.set(_counter_path(date_key), {"last_number": number, "date": date_key})
    return number
