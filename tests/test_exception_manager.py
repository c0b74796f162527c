"""Tests for adding and removing exception dates"""

from datetime import date, datetime

import pytest

from recurring_scheduler.domain.exceptions import (
    ScheduleNotFoundError,
    ScheduleStateError,
    SchedulingConflictError,
)
from recurring_scheduler.domain.scheduling.exception_manager import ExceptionManager
from recurring_scheduler.domain.scheduling.materializer import ScheduleMaterializer
from recurring_scheduler.domain.scheduling.repository import BookingStore
from recurring_scheduler.models import Booking
from recurring_scheduler.services.notification_service import SERVICE_SCHEDULED

from conftest import NOW, WEEKLY_TUESDAY, occurrences_of, tuesday

JAN_9 = date(2024, 1, 9)


@pytest.fixture
def materializer(db, notifier):
    return ScheduleMaterializer(db, notifier, horizon_days=28, max_occurrences=10)


@pytest.fixture
def manager(db, materializer):
    return ExceptionManager(db, materializer)


@pytest.fixture
def materialized(db, materializer, parent, make_schedule):
    """Schedule with its first four Tuesdays already generated"""
    schedule = make_schedule(parent)
    materializer.materialize(schedule.id, NOW)
    return schedule


def test_add_exception_cancels_the_occurrence(db, manager, materialized):
    change = manager.add_exception(materialized.id, JAN_9, now=NOW)

    assert change.changed is True
    assert change.cancelled_occurrences == 1
    assert JAN_9 in BookingStore.get_exception_dates(db, materialized.id)
    live_dates = [o.occurrence_date for o in occurrences_of(db, materialized.id)]
    assert JAN_9 not in live_dates
    cancelled = db.query(Booking).filter(Booking.occurrence_date == JAN_9).one()
    assert cancelled.status == "cancelled"


def test_add_exception_is_idempotent(db, manager, materialized):
    manager.add_exception(materialized.id, JAN_9, now=NOW)
    change = manager.add_exception(materialized.id, JAN_9, now=NOW)

    assert change.changed is False
    assert change.cancelled_occurrences == 0
    assert BookingStore.get_exception_dates(db, materialized.id) == {JAN_9}


def test_excluded_date_is_not_regenerated(db, manager, materializer, materialized):
    manager.add_exception(materialized.id, JAN_9, now=NOW)

    db.refresh(materialized)
    materialized.cursor = None
    db.commit()
    result = materializer.materialize(materialized.id, NOW)

    assert result.created_count == 0
    assert JAN_9 not in [o.occurrence_date for o in occurrences_of(db, materialized.id)]


def test_adding_the_next_run_date_moves_next_run(db, manager, materialized):
    assert materialized.next_run == tuesday(30)

    manager.add_exception(materialized.id, date(2024, 1, 30), now=NOW)

    db.refresh(materialized)
    assert materialized.next_run == tuesday(6, month=2)


def test_remove_exception_rematerializes_the_date(db, manager, notifier, materialized):
    manager.add_exception(materialized.id, JAN_9, now=NOW)
    notifier.user_messages.clear()

    change = manager.remove_exception(materialized.id, JAN_9, now=NOW)

    assert change.changed is True
    assert change.occurrence_id is not None
    restored = db.get(Booking, change.occurrence_id)
    assert restored.status == "scheduled"
    assert restored.occurrence_date == JAN_9
    assert restored.scheduled_start == tuesday(9)
    assert notifier.user_kinds() == [SERVICE_SCHEDULED]
    assert BookingStore.get_exception_dates(db, materialized.id) == set()


def test_remove_exception_for_a_date_outside_the_rule(db, manager, materialized):
    manager.add_exception(materialized.id, date(2024, 1, 10), now=NOW)

    change = manager.remove_exception(materialized.id, date(2024, 1, 10), now=NOW)

    assert change.changed is True
    assert change.occurrence_id is None


def test_remove_exception_beyond_the_horizon_waits_for_the_sweep(
    db, manager, parent, make_schedule
):
    far = date(2024, 6, 4)
    schedule = make_schedule(parent, exceptions=[far])

    change = manager.remove_exception(schedule.id, far, now=NOW)

    assert change.changed is True
    assert change.occurrence_id is None
    assert occurrences_of(db, schedule.id) == []


def test_remove_absent_exception_is_a_no_op(manager, materialized):
    change = manager.remove_exception(materialized.id, date(2024, 1, 16), now=NOW)

    assert change.changed is False
    assert change.occurrence_id is None


def test_remove_exception_conflict_under_error_strategy(
    db, manager, parent, make_booking, make_schedule
):
    schedule = make_schedule(parent, exceptions=[JAN_9], conflict_strategy="error")
    make_booking(parent.requester, datetime(2024, 1, 9, 13, 0))

    with pytest.raises(SchedulingConflictError):
        manager.remove_exception(schedule.id, JAN_9, now=NOW)

    # The exception is gone but nothing was booked on that date
    assert BookingStore.get_exception_dates(db, schedule.id) == set()
    assert occurrences_of(db, schedule.id) == []


def test_cancelled_schedule_rejects_edits(db, manager, materialized):
    materialized.status = "cancelled"
    db.commit()

    with pytest.raises(ScheduleStateError):
        manager.add_exception(materialized.id, JAN_9, now=NOW)


def test_unknown_schedule(manager):
    with pytest.raises(ScheduleNotFoundError):
        manager.remove_exception(4242, JAN_9, now=NOW)


def test_add_exception_leaves_started_occurrences(db, manager, materialized):
    started = [o for o in occurrences_of(db, materialized.id) if o.occurrence_date == JAN_9][0]
    started.status = "in_progress"
    db.commit()

    change = manager.add_exception(materialized.id, JAN_9, now=NOW)

    db.refresh(started)
    assert change.changed is True
    assert change.cancelled_occurrences == 0
    assert started.status == "in_progress"


def test_remove_exception_on_exhausted_schedule_restores_the_date(
    db, manager, materializer, parent, make_schedule
):
    jan_16 = date(2024, 1, 16)
    bounded = {**WEEKLY_TUESDAY, "until": "2024-01-23T18:00:00"}
    schedule = make_schedule(parent, pattern=bounded, exceptions=[jan_16])
    materializer.materialize(schedule.id, NOW)
    db.refresh(schedule)
    assert schedule.status == "exhausted"

    change = manager.remove_exception(schedule.id, jan_16, now=NOW)

    db.refresh(schedule)
    db.refresh(parent)
    assert change.occurrence_id is not None
    assert [o.occurrence_date for o in occurrences_of(db, schedule.id)] == [
        date(2024, 1, 2),
        JAN_9,
        jan_16,
        date(2024, 1, 23),
    ]
    # Nothing is left after the cursor, so the schedule ends again
    assert schedule.status == "exhausted"
    assert schedule.next_run is None
    assert parent.is_recurring is False
