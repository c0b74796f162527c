"""Pytest configuration and fixtures for the recurring scheduler tests."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from recurring_scheduler import models_recurring  # noqa: F401 - register tables
from recurring_scheduler.database import Base
from recurring_scheduler.domain.recurrence.compiler import compile_pattern
from recurring_scheduler.models import Booking, Offer, User
from recurring_scheduler.models_recurring import RecurringSchedule, ScheduleExceptionDate

# Fixed clock: Monday 2024-01-01 12:00 UTC (07:00 in New York)
NOW = datetime(2024, 1, 1, 12, 0)
TZ = "America/New_York"

# Every Tuesday at 09:00 New York time (14:00 UTC in winter), starting 2024-01-02
WEEKLY_TUESDAY = {
    "frequency": "weekly",
    "weekdays": ["TU"],
    "anchor": "2024-01-02T09:00:00",
    "timezone": TZ,
}


def tuesday(day: int, month: int = 1) -> datetime:
    """UTC start of the weekly Tuesday occurrence on 2024-<month>-<day>"""
    return datetime(2024, month, day, 14, 0)


class RecordingNotifier:
    """Notifier double that remembers every message"""

    def __init__(self):
        self.user_messages = []
        self.operator_messages = []

    def send_to_user(self, user_id, kind, payload):
        self.user_messages.append((user_id, kind, payload))

    def send_to_operators(self, kind, payload):
        self.operator_messages.append((kind, payload))

    def user_kinds(self):
        return [kind for _, kind, _ in self.user_messages]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="homeowner"):
        counter["n"] += 1
        n = counter["n"]
        user = User(email=f"user{n}@example.com", full_name=f"User {n}", role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_booking(db):
    def _make(requester, start, duration=timedelta(hours=2), status="scheduled", **fields):
        booking = Booking(
            requester_id=requester.id,
            scheduled_start=start,
            scheduled_end=start + duration if duration is not None else None,
            status=status,
            **fields,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _make


@pytest.fixture
def make_offer(db):
    def _make(booking, provider, price=120.0, status="accepted"):
        offer = Offer(
            booking_id=booking.id,
            provider_id=provider.id,
            price=price,
            estimated_hours=2.0,
            description="Standard clean",
            status=status,
        )
        db.add(offer)
        db.commit()
        db.refresh(offer)
        return offer

    return _make


@pytest.fixture
def homeowner(make_user):
    return make_user("homeowner")


@pytest.fixture
def parent(homeowner, make_booking):
    """Parent booking one week before the schedule's anchor, 09:00-11:00 New York"""
    return make_booking(
        homeowner,
        datetime(2023, 12, 26, 14, 0),
        property_id=7,
        service_id=3,
        description="Deep clean, 3 bedrooms",
    )


@pytest.fixture
def make_schedule(db):
    """Insert a schedule row directly, bypassing the service's first pass"""

    def _make(parent, pattern=None, exceptions=(), conflict_strategy=None, now=NOW):
        compiled = compile_pattern(pattern or WEEKLY_TUESDAY, now=now)
        schedule = RecurringSchedule(
            parent_booking_id=parent.id,
            rrule_pattern=compiled.rrule_string,
            timezone=compiled.rule.timezone,
            conflict_strategy=conflict_strategy,
            next_run=compiled.first_occurrence,
            status="active",
        )
        db.add(schedule)
        db.flush()
        for exception_date in exceptions:
            db.add(ScheduleExceptionDate(schedule_id=schedule.id, exception_date=exception_date))
        parent.is_recurring = True
        parent.recurrence_schedule_id = schedule.id
        db.commit()
        db.refresh(schedule)
        return schedule

    return _make


def occurrences_of(db, schedule_id, live_only=True):
    query = db.query(Booking).filter(
        Booking.recurrence_schedule_id == schedule_id,
        Booking.occurrence_date.isnot(None),
    )
    if live_only:
        query = query.filter(Booking.status != "cancelled")
    return query.order_by(Booking.occurrence_date.asc()).all()
