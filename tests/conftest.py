"""Shared fixtures: a pinned clock, an in-memory resolver and a recording notifier."""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from callbooking.availability import AvailabilityResolver, InMemoryReservationLedger
from callbooking.debug_events import remove_broadcaster
from callbooking.models.lead import Lead
from callbooking.session import get_active_sessions

LONDON = ZoneInfo("Europe/London")

# Monday 19 October 2026, mid-morning
MONDAY = datetime(2026, 10, 19, 10, 30, tzinfo=LONDON)


class RecordingNotifier:
    """Stands in for BookingNotifier; keeps every record it is handed."""

    def __init__(self):
        self.records = []

    def notify(self, record):
        self.records.append(record)
        return None

    async def drain(self):
        return None


def _make_resolver(now: datetime = MONDAY, **kwargs) -> AvailabilityResolver:
    return AvailabilityResolver(InMemoryReservationLedger(), clock=lambda: now, **kwargs)


@pytest.fixture
def make_resolver():
    """Factory for resolvers pinned to a given instant (Monday by default)."""
    return _make_resolver


@pytest.fixture
def resolver():
    return _make_resolver()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def pat():
    return Lead(name="Pat", phone="+447700900123", address="1 Test Street", postcode="G1 1AA")


@pytest.fixture
def anon():
    return Lead(name="Sam", phone="+447700900456")


@pytest.fixture(autouse=True)
def _clear_registry():
    yield
    sessions = get_active_sessions()
    for call_sid in list(sessions):
        remove_broadcaster(call_sid)
    sessions.clear()
