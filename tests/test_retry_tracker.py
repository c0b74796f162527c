"""Tests for failure counting, escalation and database notifications"""

from recurring_scheduler.domain.scheduling.materializer import ScheduleMaterializer
from recurring_scheduler.domain.scheduling.retry_tracker import RetryTracker
from recurring_scheduler.models import Notification
from recurring_scheduler.services.notification_service import (
    SCHEDULE_ALERT,
    SCHEDULE_FAILURE,
    SERVICE_SCHEDULED,
    DatabaseNotifier,
    render_notification,
)

from conftest import NOW


def test_escalates_once_after_threshold(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    tracker = RetryTracker(notifier, threshold=3)

    outcomes = [tracker.record_failure(db, schedule.id, "boom", NOW) for _ in range(3)]

    assert outcomes == [False, False, True]
    expected_payload = {"schedule_id": schedule.id, "parent_booking_id": parent.id}
    assert notifier.user_messages == [(parent.requester_id, SCHEDULE_FAILURE, expected_payload)]
    assert len(notifier.operator_messages) == 1
    kind, payload = notifier.operator_messages[0]
    assert kind == SCHEDULE_ALERT
    assert payload["failures"] == 3
    assert payload["error"] == "boom"
    # A fresh streak starts after escalation
    assert tracker.failure_count(db, schedule.id) == 0


def test_success_resets_the_streak(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    tracker = RetryTracker(notifier, threshold=3)

    tracker.record_failure(db, schedule.id, "boom", NOW)
    tracker.record_failure(db, schedule.id, "boom", NOW)
    tracker.record_success(db, schedule.id)
    escalated = tracker.record_failure(db, schedule.id, "boom", NOW)

    assert escalated is False
    assert tracker.failure_count(db, schedule.id) == 1
    assert notifier.operator_messages == []


def test_each_full_streak_escalates(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    tracker = RetryTracker(notifier, threshold=3)

    for _ in range(6):
        tracker.record_failure(db, schedule.id, "boom", NOW)

    assert len(notifier.operator_messages) == 2
    assert len(notifier.user_messages) == 2


def test_streak_survives_a_new_tracker(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    RetryTracker(notifier, threshold=3).record_failure(db, schedule.id, "boom", NOW)
    RetryTracker(notifier, threshold=3).record_failure(db, schedule.id, "boom", NOW)

    escalated = RetryTracker(notifier, threshold=3).record_failure(db, schedule.id, "boom", NOW)

    assert escalated is True


def test_missing_schedule_is_not_tracked(db, notifier):
    tracker = RetryTracker(notifier, threshold=1)

    assert tracker.record_failure(db, 777, "boom", NOW) is False
    assert notifier.operator_messages == []


def test_repeated_materialization_failures_escalate(db, notifier, parent, make_schedule):
    schedule = make_schedule(parent)
    schedule.rrule_pattern = "garbage"
    db.commit()
    tracker = RetryTracker(notifier, threshold=3)
    materializer = ScheduleMaterializer(db, notifier, retry_tracker=tracker)

    results = [materializer.run(schedule.id, NOW) for _ in range(3)]

    assert [r.success for r in results] == [False, False, False]
    assert [r.escalated for r in results] == [False, False, True]
    assert [kind for kind, _ in notifier.operator_messages] == [SCHEDULE_ALERT]


def test_render_fills_the_template():
    title, message = render_notification(SERVICE_SCHEDULED, {"date": "2024-01-02"})

    assert title == "New Scheduled Service"
    assert "2024-01-02" in message


def test_render_unknown_kind_falls_back_to_payload():
    title, message = render_notification("custom_event", {"a": 1})

    assert title == "Custom Event"
    assert message == "{'a': 1}"


class TestDatabaseNotifier:
    def test_user_notification_row(self, session_factory, db, homeowner):
        notifier = DatabaseNotifier(session_factory, operator_user_ids=[])

        notifier.send_to_user(homeowner.id, SERVICE_SCHEDULED, {"date": "2024-01-09"})

        row = db.query(Notification).one()
        assert row.user_id == homeowner.id
        assert row.audience == "user"
        assert row.kind == SERVICE_SCHEDULED
        assert row.payload == {"date": "2024-01-09"}
        assert "2024-01-09" in row.message

    def test_operator_alert_fans_out(self, session_factory, db, make_user):
        operators = [make_user("admin"), make_user("admin")]
        notifier = DatabaseNotifier(session_factory, operator_user_ids=[u.id for u in operators])
        payload = {"schedule_id": 1, "parent_booking_id": 2, "failures": 3, "error": "boom"}

        notifier.send_to_operators(SCHEDULE_ALERT, payload)

        rows = db.query(Notification).order_by(Notification.id).all()
        assert [row.user_id for row in rows] == [u.id for u in operators]
        assert all(row.audience == "operators" for row in rows)
        assert "failed 3 times" in rows[0].message

    def test_operator_alert_without_operators(self, session_factory, db):
        notifier = DatabaseNotifier(session_factory, operator_user_ids=[])

        notifier.send_to_operators(SCHEDULE_ALERT, {"schedule_id": 1})

        row = db.query(Notification).one()
        assert row.user_id is None
        assert row.audience == "operators"
