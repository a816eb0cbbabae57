import os

os.environ["AUTO_RECONCILE"] = "0"
os.environ["ADMIN_PASS"] = "demo"
os.environ.pop("REDIS_URL", None)

from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

import notifications
from audit import StaffContext
from store import open_store

# 10:00 in Manila on Monday 2025-01-06.
NOW = datetime(2025, 1, 6, 2, 0, tzinfo=timezone.utc)
YESTERDAY = NOW - timedelta(days=1)
TOMORROW = NOW + timedelta(days=1)


class RecordingRedis:
    """Just enough of a Redis client for the list and pub/sub calls we make."""

    def __init__(self):
        self.lists = defaultdict(list)
        self.published = []

    def ping(self):
        return True

    def lpush(self, key, value):
        self.lists[key].insert(0, value)
        return len(self.lists[key])

    def brpop(self, key, timeout=0):
        if not self.lists[key]:
            return None
        return key, self.lists[key].pop()

    def llen(self, key):
        return len(self.lists[key])

    def publish(self, channel, message):
        self.published.append((channel, message))
        return 1


@pytest.fixture
def store():
    s = open_store(":memory:")
    yield s
    s.close()


@pytest.fixture
def staff(store):
    store.set("staff/nurse1", {"full_name": "Maria Santos", "role": "nurse"})
    return StaffContext("nurse1", "Maria Santos", "nurse", "127.0.0.1")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def booking():
    return {
        "patient_full_name": "Juan Dela Cruz",
        "patient_birthdate": "1990-05-01",
        "patient_sex": "male",
        "contact_number": "0917 123 4567",
        "email_address": "juan@example.com",
        "service_ref": "services/general",
        "preferred_date": "2025-01-07",
        "reason_for_visit": "Check-up",
    }


@pytest.fixture
def redis_stub(monkeypatch):
    stub = RecordingRedis()
    monkeypatch.setattr(notifications, "REDIS_URL", "redis://test")
    monkeypatch.setattr(notifications, "_redis_client", stub)
    return stub
