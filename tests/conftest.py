"""
Pytest configuration and fixtures

Every test gets its own SQLite file database and a controllable clock.
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest

from app import create_app
from booking_service import BookingService
from database_manager import DatabaseManager
from recurrence import RecurrenceExpander
from settings import Settings
from slots import SlotGenerator

# 2026-10-19 is a Monday.
MONDAY = date(2026, 10, 19)
RESOURCE_ID = 1
REQUESTER = "alice"


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(at(MONDAY, 7))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'reservations.db'}",
        lock_timeout_seconds=2.0,
        run_sweeper=False,
    )


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings.database_url, settings.lock_timeout_seconds)
    manager.initialize_resource(RESOURCE_ID, name="Desk 1")
    yield manager
    manager.session_factory.remove()
    manager.engine.dispose()


@pytest.fixture
def bookings(db, settings, clock):
    return BookingService(db, settings, clock)


@pytest.fixture
def slot_generator(db, settings, clock):
    return SlotGenerator(db, settings, clock)


@pytest.fixture
def expander(bookings, db, settings, clock):
    return RecurrenceExpander(bookings, db, settings, clock)


@pytest.fixture
def app(settings, clock):
    application = create_app(settings, clock=clock, start_sweeper=False)
    application.config['TESTING'] = True
    yield application
    reservation_engine = application.extensions['reservation_engine']
    reservation_engine.db.session_factory.remove()
    reservation_engine.db.engine.dispose()


@pytest.fixture
def client(app):
    return app.test_client()
