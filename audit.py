"""Audit trail for every state change made by staff or by the system."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from clock import isoformat, utc_now
from errors import NotFoundError
from models import AuditRecord
from store import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StaffContext:
    """Who is performing an action.  Passed explicitly into every operation."""

    staff_id: str
    full_name: str
    role: str = "staff"
    ip_address: str = "Unknown"

    @property
    def user_ref(self) -> str:
        return f"staff/{self.staff_id}"


SYSTEM_STAFF = StaffContext(
    staff_id="system",
    full_name="System Auto-Process",
    role="system",
    ip_address="System-Generated",
)


def emit_audit(
    store: DocumentStore,
    staff: Optional[StaffContext],
    action: str,
    now: Optional[datetime] = None,
    **extra: Any,
) -> str:
    """Append an audit record and return its ID."""
    staff = staff or SYSTEM_STAFF
    record = AuditRecord(
        user_ref=staff.user_ref,
        staff_full_name=staff.full_name,
        action=action,
        ip_address=staff.ip_address,
        timestamp=isoformat(now or utc_now()),
        **extra,
    )
    audit_id = store.create("audit_logs", record.model_dump(exclude_none=True))
    logger.info(f"Audit [{staff.user_ref}] {action}")
    return audit_id


def staff_from_store(store: DocumentStore, staff_id: str, ip_address: str = "Unknown") -> StaffContext:
    """Build a context from the ``staff/{id}`` record."""
    if not staff_id:
        raise NotFoundError("Staff identity is required")
    record = store.read(f"staff/{staff_id}")
    if not isinstance(record, dict):
        raise NotFoundError(f"Staff member {staff_id} not found")
    return StaffContext(
        staff_id=staff_id,
        full_name=record.get("full_name") or record.get("name") or staff_id,
        role=record.get("role", "staff"),
        ip_address=ip_address,
    )
