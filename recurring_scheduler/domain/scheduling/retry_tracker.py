"""
Retry / escalation tracking for materialization failures

Counts consecutive failed passes per schedule in schedule_retry_states.
Reaching the threshold alerts the requester and the operators once, then
starts a fresh streak.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...config import RETRY_ESCALATION_THRESHOLD
from ...models_recurring import ScheduleRetryState
from ...services.notification_service import SCHEDULE_ALERT, SCHEDULE_FAILURE, Notifier
from .repository import BookingStore

logger = logging.getLogger(__name__)


class RetryTracker:
    def __init__(self, notifier: Notifier, threshold: int = RETRY_ESCALATION_THRESHOLD):
        self.notifier = notifier
        self.threshold = threshold
        self.repo = BookingStore()

    def failure_count(self, db: Session, schedule_id: int) -> int:
        state = self.repo.get_retry_state(db, schedule_id)
        return state.consecutive_failures if state else 0

    def record_success(self, db: Session, schedule_id: int) -> None:
        state = self.repo.get_retry_state(db, schedule_id, lock=True)
        if state is None or state.consecutive_failures == 0:
            return
        state.consecutive_failures = 0
        state.last_error = None
        db.commit()
        logger.info(f"✅ Failure streak cleared for schedule {schedule_id}")

    def record_failure(
        self, db: Session, schedule_id: int, error: str, now: Optional[datetime] = None
    ) -> bool:
        """
        Count one failed pass. Returns True when this failure triggered an escalation.
        Expects `db` to hold no pending work from the failed pass (rolled back).
        """
        now = now or datetime.utcnow()
        schedule = self.repo.get_schedule(db, schedule_id)
        if schedule is None:
            logger.warning(f"⚠️ Cannot track failure for missing schedule {schedule_id}")
            return False

        state = self.repo.get_retry_state(db, schedule_id, lock=True)
        if state is None:
            state = ScheduleRetryState(schedule_id=schedule_id, consecutive_failures=0)
            db.add(state)

        state.consecutive_failures += 1
        state.last_error = error
        state.last_failure_at = now
        failures = state.consecutive_failures

        escalate = failures >= self.threshold
        if escalate:
            state.consecutive_failures = 0
            state.last_escalated_at = now

        parent = schedule.parent_booking
        requester_id = parent.requester_id if parent else None
        parent_booking_id = schedule.parent_booking_id
        db.commit()

        logger.warning(
            f"⚠️ Schedule {schedule_id} failed {failures} time(s) in a row: {error}"
        )
        if not escalate:
            return False

        logger.error(
            f"ALERT: Recurring schedule ID {schedule_id} has failed {failures} times. Error: {error}"
        )
        if requester_id is not None:
            self.notifier.send_to_user(
                requester_id,
                SCHEDULE_FAILURE,
                {"schedule_id": schedule_id, "parent_booking_id": parent_booking_id},
            )
        self.notifier.send_to_operators(
            SCHEDULE_ALERT,
            {
                "schedule_id": schedule_id,
                "parent_booking_id": parent_booking_id,
                "failures": failures,
                "error": error,
            },
        )
        return True
