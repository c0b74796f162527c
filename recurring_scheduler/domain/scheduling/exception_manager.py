"""
Exception Manager

Adds and removes single-date carve-outs. Adding cancels whatever occurrence
already sits on that date; removing re-materializes the date through the
materializer's single-occurrence path when the rule still selects it.
"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models_recurring import RecurringSchedule
from ..exceptions import ScheduleNotFoundError, ScheduleStateError, SchedulingConflictError
from ..recurrence.rule import RecurrenceRule
from .materializer import ScheduleMaterializer
from .repository import BookingStore, schedule_idempotency_key
from .schemas import ExceptionChange

logger = logging.getLogger(__name__)


class ExceptionManager:
    def __init__(self, db: Session, materializer: ScheduleMaterializer):
        self.db = db
        self.materializer = materializer
        self.repo = BookingStore()

    def _lock(self, schedule_id: int) -> RecurringSchedule:
        schedule = self.repo.lock_schedule(self.db, schedule_id, skip_locked=False)
        if not schedule:
            raise ScheduleNotFoundError(schedule_id)
        if schedule.status == "cancelled":
            self.db.rollback()
            raise ScheduleStateError(f"Recurring schedule {schedule_id} is cancelled")
        return schedule

    def _refresh(self, schedule: RecurringSchedule, rule: RecurrenceRule, now: datetime) -> None:
        """Keep next_run and the idempotency key in step with the new exception set"""
        exceptions = self.repo.get_exception_dates(self.db, schedule.id)
        if schedule.status == "active":
            parent = self.repo.get_booking(self.db, schedule.parent_booking_id)
            self.materializer.advance(schedule, rule, exceptions, parent, now)
        schedule.idempotency_key = schedule_idempotency_key(
            schedule.parent_booking_id, schedule.rrule_pattern, schedule.timezone, exceptions
        )

    def add_exception(
        self, schedule_id: int, exception_date: date, now: Optional[datetime] = None
    ) -> ExceptionChange:
        """
        Exclude a date and cancel its occurrence. Repeating the call changes nothing.

        Only occurrences that have not started (scheduled or pending) are cancelled;
        one already in progress or completed on that date is left as it is.
        """
        now = now or datetime.utcnow()
        schedule = self._lock(schedule_id)

        try:
            added = self.repo.add_exception_date(self.db, schedule_id, exception_date)
            cancelled = self.repo.cancel_occurrences_on(self.db, schedule_id, exception_date)
            if added:
                rule = RecurrenceRule.from_rrule_string(schedule.rrule_pattern)
                self._refresh(schedule, rule, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"🚫 Exception {exception_date.isoformat()} on schedule {schedule_id} "
            f"({'added' if added else 'already present'}, {cancelled} occurrence(s) cancelled)"
        )
        return ExceptionChange(
            schedule_id=schedule_id,
            exception_date=exception_date,
            changed=added,
            cancelled_occurrences=cancelled,
        )

    def remove_exception(
        self, schedule_id: int, exception_date: date, now: Optional[datetime] = None
    ) -> ExceptionChange:
        """
        Re-include a date. When the rule selects it and it lies in [now, now + horizon]
        the occurrence is created immediately (conflict-checked, offer copied, notified).

        Raises:
            SchedulingConflictError: under the error strategy; the exception is still
                removed but no occurrence is created
        """
        now = now or datetime.utcnow()
        schedule = self._lock(schedule_id)
        occurrence = None
        conflict: Optional[SchedulingConflictError] = None

        try:
            removed = self.repo.remove_exception_date(self.db, schedule_id, exception_date)

            if removed:
                rule = RecurrenceRule.from_rrule_string(schedule.rrule_pattern)
                parent = self.repo.get_booking(self.db, schedule.parent_booking_id)
                # An exhausted schedule may own the date again
                self.materializer.reactivate(schedule, parent)
                try:
                    occurrence = self.materializer.restore_date(
                        schedule, rule, parent, exception_date, now
                    )
                except SchedulingConflictError as e:
                    conflict = e
                self._refresh(schedule, rule, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"✅ Exception {exception_date.isoformat()} "
            f"{'removed from' if removed else 'not present on'} schedule {schedule_id}"
        )

        if conflict is not None:
            logger.warning(f"⚠️ Schedule {schedule_id}: {conflict}")
            raise conflict

        occurrence_id = None
        if occurrence is not None:
            occurrence_id = occurrence.id
            self.materializer.announce(occurrence)

        return ExceptionChange(
            schedule_id=schedule_id,
            exception_date=exception_date,
            changed=removed,
            occurrence_id=occurrence_id,
        )
