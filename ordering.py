"""Queue orderings.

Two orderings exist and they are deliberately separate:

``type_then_time_order``
    The live per-date queue.  Every online booking that has checked in is
    served before every walk-in, whatever time the walk-in arrived.  Online
    patients are ordered by when they *booked*, walk-ins by when they
    arrived.  Staff should know that an early walk-in can be overtaken by an
    online patient who checks in later.

``priority_then_number_order``
    The admin "all queue" view.  Entries flagged ``high`` come first, then
    everything by ascending queue number.

Both sorts are stable, so identical keys keep the order they were stored in.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from models import AppointmentType, PriorityFlag, QueueEntry
from numbering import parse_queue_suffix

_LAST = datetime.max.replace(tzinfo=timezone.utc)


def _aware(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return _LAST
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _type_then_time_key(entry: QueueEntry) -> Tuple[int, datetime]:
    if entry.appointment_type == AppointmentType.online:
        return 0, _aware(entry.booked_at or entry.checked_in_at)
    return 1, _aware(entry.arrival_time or entry.checked_in_at)


def _priority_then_number_key(entry: QueueEntry) -> Tuple[int, float]:
    suffix = parse_queue_suffix(entry.queue_number)
    return (
        0 if entry.priority_flag == PriorityFlag.high else 1,
        suffix if suffix else float("inf"),
    )


def type_then_time_order(entries: Iterable[QueueEntry]) -> List[QueueEntry]:
    return sorted(entries, key=_type_then_time_key)


def priority_then_number_order(entries: Iterable[QueueEntry]) -> List[QueueEntry]:
    return sorted(entries, key=_priority_then_number_key)


ORDERINGS: Dict[str, Callable[[Iterable[QueueEntry]], List[QueueEntry]]] = {
    "type_then_time": type_then_time_order,
    "priority_then_number": priority_then_number_order,
}


def order_entries(entries: Iterable[QueueEntry], ordering: str = "type_then_time") -> List[QueueEntry]:
    try:
        sorter = ORDERINGS[ordering]
    except KeyError:
        raise ValueError(f"Unknown queue ordering: {ordering}") from None
    return sorter(entries)
