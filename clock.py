"""Business-date helpers.

Queue partitions and every appointment-date comparison use the same clinic
timezone, so an appointment never shifts by a day depending on which helper
looked at it.
"""

from __future__ import annotations

import os
from datetime import date, datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Manila")

_clinic_tz = ZoneInfo(CLINIC_TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Serialise an instant the way it is stored: aware, UTC, ISO 8601."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse a stored timestamp into an aware datetime, or ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def business_date(instant: Optional[datetime] = None) -> date:
    instant = instant or utc_now()
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(_clinic_tz).date()


def business_date_key(instant: Optional[datetime] = None) -> str:
    """Return the ``YYYY-MM-DD`` key of the queue partition for ``instant``."""
    return business_date(instant).isoformat()


def normalize_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    """Extract the calendar date of an appointment field.

    Plain ``YYYY-MM-DD`` strings are taken literally.  Full timestamps are
    converted into the clinic timezone before the date is read off.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return business_date(value)
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if len(text) == 10:
        try:
            return date.fromisoformat(text)
        except ValueError:
            return None
    moment = parse_timestamp(text)
    if moment is None:
        return None
    return business_date(moment)
