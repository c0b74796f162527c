"""Tests for the schedule materializer"""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from recurring_scheduler.domain.exceptions import MaterializationFailure, ScheduleNotFoundError
from recurring_scheduler.domain.scheduling.materializer import ScheduleMaterializer
from recurring_scheduler.domain.scheduling.retry_tracker import RetryTracker
from recurring_scheduler.models import Booking, Offer
from recurring_scheduler.services.notification_service import SERVICE_SCHEDULED

from conftest import NOW, WEEKLY_TUESDAY, occurrences_of, tuesday


@pytest.fixture
def materializer(db, notifier):
    return ScheduleMaterializer(
        db,
        notifier,
        horizon_days=28,
        max_occurrences=10,
        buffer_minutes=30,
        default_strategy="skip",
    )


def test_first_pass_creates_occurrences_inside_horizon(
    db, materializer, notifier, parent, make_schedule
):
    schedule = make_schedule(parent)

    result = materializer.materialize(schedule.id, NOW)

    occurrences = occurrences_of(db, schedule.id)
    assert [o.occurrence_date for o in occurrences] == [
        date(2024, 1, 2),
        date(2024, 1, 9),
        date(2024, 1, 16),
        date(2024, 1, 23),
    ]
    assert result.created_count == 4
    assert result.cursor == tuesday(23)
    assert result.next_run == tuesday(30)
    assert result.exhausted is False

    first = occurrences[0]
    assert first.scheduled_start == tuesday(2)
    assert first.scheduled_end == tuesday(2) + timedelta(hours=2)
    assert first.requester_id == parent.requester_id
    assert first.property_id == 7
    assert first.description == "Deep clean, 3 bedrooms"
    assert first.recurrence_parent_id == parent.id
    assert first.status == "scheduled"

    assert notifier.user_kinds() == [SERVICE_SCHEDULED] * 4
    assert notifier.user_messages[0][2]["date"] == "2024-01-02"


def test_second_pass_creates_nothing(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent)

    materializer.materialize(schedule.id, NOW)
    result = materializer.materialize(schedule.id, NOW)

    assert result.created_count == 0
    assert len(occurrences_of(db, schedule.id)) == 4


def test_existing_occurrences_are_not_duplicated(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent)
    materializer.materialize(schedule.id, NOW)

    # Rebuild from the rule: forget the watermark and expand again
    db.refresh(schedule)
    schedule.cursor = None
    db.commit()
    result = materializer.materialize(schedule.id, NOW)

    assert result.created_count == 0
    assert len(result.existing_dates) == 4
    assert len(occurrences_of(db, schedule.id)) == 4


def test_max_occurrences_caps_a_pass(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    materializer = ScheduleMaterializer(db, notifier, horizon_days=90, max_occurrences=3)

    first = materializer.materialize(schedule.id, NOW)
    second = materializer.materialize(schedule.id, NOW)

    assert first.created_dates == [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 16)]
    assert second.created_dates == [date(2024, 1, 23), date(2024, 1, 30), date(2024, 2, 6)]
    assert second.next_run == tuesday(13, month=2)


def test_exception_dates_are_skipped(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent, exceptions=[date(2024, 1, 16)])

    materializer.materialize(schedule.id, NOW)

    dates = [o.occurrence_date for o in occurrences_of(db, schedule.id)]
    assert date(2024, 1, 16) not in dates
    assert len(dates) == 3


def test_accepted_offer_is_copied(db, materializer, parent, make_schedule, make_user, make_offer):
    provider = make_user("provider")
    make_offer(parent, provider, price=150.0)
    make_offer(parent, make_user("provider"), price=90.0, status="declined")
    schedule = make_schedule(parent)

    materializer.materialize(schedule.id, NOW)

    for occurrence in occurrences_of(db, schedule.id):
        offers = db.query(Offer).filter(Offer.booking_id == occurrence.id).all()
        assert len(offers) == 1
        assert offers[0].provider_id == provider.id
        assert offers[0].price == 150.0
        assert offers[0].status == "accepted"


def test_skip_creates_one_fewer_than_reschedule(
    db, notifier, make_user, make_booking, make_schedule
):
    created = {}
    for strategy in ("skip", "reschedule"):
        requester = make_user()
        parent = make_booking(requester, datetime(2023, 12, 26, 14, 0))
        # Overlaps the 14:00-16:00 occurrence on 2024-01-09
        make_booking(requester, datetime(2024, 1, 9, 14, 30), duration=timedelta(minutes=30))
        schedule = make_schedule(parent, conflict_strategy=strategy)

        materializer = ScheduleMaterializer(db, notifier, horizon_days=28, buffer_minutes=30)
        result = materializer.materialize(schedule.id, NOW)
        created[strategy] = result

    assert created["skip"].created_count == created["reschedule"].created_count - 1
    assert created["skip"].skipped_dates == [date(2024, 1, 9)]
    assert created["reschedule"].rescheduled_dates == [date(2024, 1, 9)]

    moved = db.query(Booking).filter(Booking.id.in_(created["reschedule"].created_booking_ids))
    moved = [b for b in moved if b.occurrence_date == date(2024, 1, 9)][0]
    # Starts no earlier than the conflicting booking's end plus the buffer
    assert moved.scheduled_start == datetime(2024, 1, 9, 15, 30)
    assert moved.scheduled_end == datetime(2024, 1, 9, 17, 30)


def test_error_strategy_isolates_the_conflicting_date(
    db, materializer, parent, make_booking, make_schedule
):
    blocker = make_booking(parent.requester, datetime(2024, 1, 16, 13, 0))
    schedule = make_schedule(parent, conflict_strategy="error")

    result = materializer.materialize(schedule.id, NOW)

    assert result.created_dates == [date(2024, 1, 2), date(2024, 1, 9), date(2024, 1, 23)]
    assert len(result.conflicts) == 1
    assert result.conflicts[0].conflicting_booking_ids == [blocker.id]
    assert result.conflicts[0].schedule_id == schedule.id
    assert result.cursor == tuesday(23)


def test_failure_rolls_back_the_whole_pass(db, materializer, parent, make_schedule, monkeypatch):
    schedule = make_schedule(parent)
    real_create = materializer.repo.create_occurrence
    calls = {"n": 0}

    def flaky_create(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("disk full")
        return real_create(*args, **kwargs)

    monkeypatch.setattr(materializer.repo, "create_occurrence", flaky_create)

    with pytest.raises(MaterializationFailure, match="disk full"):
        materializer.materialize(schedule.id, NOW)

    db.refresh(schedule)
    assert occurrences_of(db, schedule.id, live_only=False) == []
    assert schedule.cursor is None
    assert schedule.next_run == tuesday(2)


def test_run_absorbs_failures(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    schedule.rrule_pattern = "not a rule"
    db.commit()
    materializer = ScheduleMaterializer(db, notifier)

    result = materializer.run(schedule.id, NOW)

    assert result.success is False
    assert "DTSTART" in result.error


def test_schedule_becomes_exhausted(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent, pattern={**WEEKLY_TUESDAY, "count": 2})

    result = materializer.materialize(schedule.id, NOW)

    db.refresh(schedule)
    db.refresh(parent)
    assert result.created_count == 2
    assert result.exhausted is True
    assert schedule.status == "exhausted"
    assert schedule.next_run is None
    assert parent.is_recurring is False


def test_cancelled_schedule_is_left_alone(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent)
    schedule.status = "cancelled"
    db.commit()

    result = materializer.materialize(schedule.id, NOW)

    assert result.inactive is True
    assert occurrences_of(db, schedule.id) == []


def test_unknown_schedule(materializer):
    with pytest.raises(ScheduleNotFoundError):
        materializer.materialize(9999, NOW)


def test_parent_without_end_keeps_open_ended_occurrences(
    db, materializer, homeowner, make_booking, make_schedule
):
    parent = make_booking(homeowner, datetime(2023, 12, 26, 14, 0), duration=None)
    schedule = make_schedule(parent)

    materializer.materialize(schedule.id, NOW)

    occurrences = occurrences_of(db, schedule.id)
    assert len(occurrences) == 4
    assert all(o.scheduled_end is None for o in occurrences)


def test_one_live_occurrence_per_date(db, materializer, parent, make_schedule):
    schedule = make_schedule(parent)
    materializer.materialize(schedule.id, NOW)
    existing = occurrences_of(db, schedule.id)[0]

    db.add(
        Booking(
            requester_id=parent.requester_id,
            scheduled_start=existing.scheduled_start,
            status="scheduled",
            recurrence_schedule_id=schedule.id,
            occurrence_date=existing.occurrence_date,
        )
    )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    # A cancelled occurrence does not count
    existing.status = "cancelled"
    db.commit()
    db.add(
        Booking(
            requester_id=parent.requester_id,
            scheduled_start=existing.scheduled_start,
            status="scheduled",
            recurrence_schedule_id=schedule.id,
            occurrence_date=existing.occurrence_date,
        )
    )
    db.commit()


def test_locked_schedule_reports_busy(db, notifier, parent, make_schedule, monkeypatch):
    schedule = make_schedule(parent)
    tracker = RetryTracker(notifier, threshold=3)
    tracker.record_failure(db, schedule.id, "boom", NOW)
    materializer = ScheduleMaterializer(db, notifier, retry_tracker=tracker, horizon_days=28)
    # Another worker holds the row lock
    monkeypatch.setattr(
        materializer.repo, "lock_schedule", lambda db, schedule_id, skip_locked=True: None
    )

    result = materializer.run(schedule.id, NOW)

    assert result.busy is True
    assert result.created_count == 0
    assert occurrences_of(db, schedule.id) == []
    # A skipped pass is neither a success nor a failure
    assert tracker.failure_count(db, schedule.id) == 1


def test_schedule_cancelled_during_a_pass_is_not_resurrected(
    db, materializer, notifier, parent, make_schedule, monkeypatch
):
    schedule = make_schedule(parent)
    monkeypatch.setattr(
        materializer.repo, "get_schedule_status", lambda db, schedule_id: "cancelled"
    )

    result = materializer.materialize(schedule.id, NOW)

    db.refresh(schedule)
    assert result.inactive is True
    assert result.created_count == 0
    assert occurrences_of(db, schedule.id, live_only=False) == []
    assert schedule.cursor is None
    assert schedule.next_run == tuesday(2)
    assert notifier.user_messages == []
