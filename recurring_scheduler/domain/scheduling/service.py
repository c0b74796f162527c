"""Recurring schedule service - Business logic for recurring schedule operations"""

import logging
from datetime import date, datetime, time
from typing import Optional, Union

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import (
    CONFLICT_BUFFER_MINUTES,
    CONFLICT_STRATEGY,
    DEFAULT_SERVICE_DURATION_MINUTES,
    DEFAULT_TIMEZONE,
    MAX_OCCURRENCES_PER_PASS,
    MAX_RESCHEDULE_ATTEMPTS,
    RETRY_ESCALATION_THRESHOLD,
    SCHEDULE_HORIZON_DAYS,
)
from ...models import Booking
from ...models_recurring import RecurringSchedule
from ...services.notification_service import DatabaseNotifier, Notifier
from ..exceptions import (
    InvalidPatternError,
    ParentBookingNotFoundError,
    ScheduleNotFoundError,
    ScheduleStateError,
    SchedulingConflictError,
)
from ..recurrence.compiler import compile_pattern
from ..recurrence.expander import expand, local_date, next_occurrence
from ..recurrence.rule import RecurrenceRule
from .exception_manager import ExceptionManager
from .materializer import MaterializationResult, ScheduleMaterializer
from .repository import BookingStore, schedule_idempotency_key
from .retry_tracker import RetryTracker
from .schemas import (
    BookingSummary,
    ExceptionChange,
    ScheduleCreate,
    ScheduleResponse,
    ScheduleUpdate,
    UpcomingOccurrence,
)

logger = logging.getLogger(__name__)


def _parse(model, data):
    """Accept a schema instance or a plain dict; pattern errors become InvalidPatternError"""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidPatternError(str(e)) from e


class RecurringScheduleService:
    """Service layer for recurring schedule business logic"""

    def __init__(
        self,
        db: Session,
        notifier: Optional[Notifier] = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        horizon_days: int = SCHEDULE_HORIZON_DAYS,
        max_occurrences: int = MAX_OCCURRENCES_PER_PASS,
        buffer_minutes: int = CONFLICT_BUFFER_MINUTES,
        default_strategy: str = CONFLICT_STRATEGY,
        max_reschedule_attempts: int = MAX_RESCHEDULE_ATTEMPTS,
        default_duration_minutes: int = DEFAULT_SERVICE_DURATION_MINUTES,
        escalation_threshold: int = RETRY_ESCALATION_THRESHOLD,
    ):
        self.db = db
        self.notifier = notifier or DatabaseNotifier()
        self.default_timezone = default_timezone
        self.repo = BookingStore()
        self.retry_tracker = RetryTracker(self.notifier, threshold=escalation_threshold)
        self.materializer = ScheduleMaterializer(
            db,
            self.notifier,
            retry_tracker=self.retry_tracker,
            horizon_days=horizon_days,
            max_occurrences=max_occurrences,
            buffer_minutes=buffer_minutes,
            default_strategy=default_strategy,
            default_duration_minutes=default_duration_minutes,
            max_reschedule_attempts=max_reschedule_attempts,
        )
        self.exception_manager = ExceptionManager(db, self.materializer)

    def _get(self, schedule_id: int) -> RecurringSchedule:
        schedule = self.repo.get_schedule(self.db, schedule_id)
        if not schedule:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    def _lock_for_edit(self, schedule_id: int) -> RecurringSchedule:
        schedule = self.repo.lock_schedule(self.db, schedule_id, skip_locked=False)
        if not schedule:
            raise ScheduleNotFoundError(schedule_id)
        if schedule.status == "cancelled":
            self.db.rollback()
            raise ScheduleStateError(f"Recurring schedule {schedule_id} is cancelled")
        return schedule

    # Inbound operations

    def create_schedule(
        self, data: Union[ScheduleCreate, dict], now: Optional[datetime] = None
    ) -> RecurringSchedule:
        """
        Attach a recurring schedule to a parent booking and generate its first batch.

        Replaying the same (parent, rule, timezone, exception dates) returns the
        existing schedule instead of creating a second one.

        Raises:
            InvalidPatternError: the pattern is malformed or has no future occurrence
            ParentBookingNotFoundError: unknown parent booking
            ScheduleStateError: the parent already carries a different active schedule
        """
        now = now or datetime.utcnow()
        data = _parse(ScheduleCreate, data)
        logger.info(f"📥 Creating recurring schedule for booking {data.parent_booking_id}")

        parent = self.repo.get_booking(self.db, data.parent_booking_id)
        if not parent:
            raise ParentBookingNotFoundError(data.parent_booking_id)
        if parent.recurrence_parent_id is not None:
            raise ScheduleStateError("A generated occurrence cannot be the parent of a schedule")

        compiled = compile_pattern(data.pattern, now, self.default_timezone)
        rule = compiled.rule
        exceptions = set(data.exception_dates)
        key = schedule_idempotency_key(parent.id, compiled.rrule_string, rule.timezone, exceptions)

        existing = self.repo.get_schedule_by_idempotency_key(self.db, key)
        if existing:
            logger.info(f"♻️ Returning existing schedule {existing.id} for replayed request")
            return existing

        active = self.repo.get_active_schedule_for_parent(self.db, parent.id)
        if active:
            raise ScheduleStateError(
                f"Booking {parent.id} already has active recurring schedule {active.id}"
            )

        first = next_occurrence(rule, exceptions, now, inclusive=True)
        if first is None:
            raise InvalidPatternError("Every future occurrence falls on an exception date")

        schedule = RecurringSchedule(
            parent_booking_id=parent.id,
            rrule_pattern=compiled.rrule_string,
            timezone=rule.timezone,
            conflict_strategy=data.conflict_strategy,
            cursor=None,
            next_run=first,
            status="active",
            idempotency_key=key,
        )

        try:
            self.db.add(schedule)
            self.db.flush()
            self.repo.replace_exception_dates(self.db, schedule.id, exceptions)
            parent.is_recurring = True
            parent.recurrence_schedule_id = schedule.id
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            # A concurrent replay won the insert
            existing = self.repo.get_schedule_by_idempotency_key(self.db, key)
            if existing:
                return existing
            raise

        self.db.refresh(schedule)
        logger.info(f"✅ Recurring schedule {schedule.id} created: {compiled.rrule_string!r}")

        self.materializer.run(schedule.id, now)
        self.db.refresh(schedule)
        return schedule

    def update_schedule(
        self,
        schedule_id: int,
        data: Union[ScheduleUpdate, dict],
        now: Optional[datetime] = None,
    ) -> RecurringSchedule:
        """
        Change the rule, the exception set or the conflict strategy.

        With apply_to_future, occurrences that have not started are cancelled and
        regenerated from now on. Without it, existing occurrences stay and only
        generation past the cursor follows the new rule; dates that became
        exceptions are cancelled either way, and dates dropped from the exception
        set are materialized through the same single-date path as remove_exception.

        Raises:
            SchedulingConflictError: a re-included date conflicts under the error
                strategy; the update itself is still committed
        """
        now = now or datetime.utcnow()
        data = _parse(ScheduleUpdate, data)
        schedule = self._lock_for_edit(schedule_id)
        restored: list[Booking] = []
        conflicts: list[SchedulingConflictError] = []

        try:
            parent = self.repo.get_booking(self.db, schedule.parent_booking_id)
            old_exceptions = self.repo.get_exception_dates(self.db, schedule_id)

            if data.pattern is not None:
                compiled = compile_pattern(data.pattern, now, self.default_timezone)
                rule = compiled.rule
                schedule.rrule_pattern = compiled.rrule_string
                schedule.timezone = rule.timezone
            else:
                rule = RecurrenceRule.from_rrule_string(schedule.rrule_pattern)

            if data.conflict_strategy is not None:
                schedule.conflict_strategy = data.conflict_strategy

            exceptions = old_exceptions
            if data.exception_dates is not None:
                exceptions = set(data.exception_dates)
                self.repo.replace_exception_dates(self.db, schedule_id, exceptions)

            # The edited rule or exception set may reach further than the old one
            self.materializer.reactivate(schedule, parent)

            cancelled = 0
            if data.apply_to_future:
                cancelled = self.repo.cancel_future_occurrences(self.db, schedule_id, now)
                schedule.cursor = None
            else:
                for added in sorted(exceptions - old_exceptions):
                    cancelled += self.repo.cancel_occurrences_on(self.db, schedule_id, added)
                # Re-included dates behind the cursor are never reached by a regular pass
                for day in sorted(old_exceptions - exceptions):
                    try:
                        occurrence = self.materializer.restore_date(
                            schedule, rule, parent, day, now
                        )
                    except SchedulingConflictError as e:
                        conflicts.append(e)
                        continue
                    if occurrence is not None:
                        restored.append(occurrence)

            schedule.idempotency_key = schedule_idempotency_key(
                schedule.parent_booking_id, schedule.rrule_pattern, schedule.timezone, exceptions
            )
            self.materializer.advance(schedule, rule, exceptions, parent, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"✅ Recurring schedule {schedule_id} updated ({cancelled} occurrence(s) cancelled)"
        )
        for occurrence in restored:
            self.materializer.announce(occurrence)

        if schedule.status == "active":
            self.materializer.run(schedule_id, now)
        self.db.refresh(schedule)

        if conflicts:
            for conflict in conflicts:
                logger.warning(f"⚠️ Schedule {schedule_id}: {conflict}")
            raise conflicts[0]
        return schedule

    def delete_schedule(
        self,
        schedule_id: int,
        cancel_future_occurrences: bool = True,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Soft-cancel a schedule and unlink its parent booking.
        Returns the number of future occurrences cancelled.
        """
        now = now or datetime.utcnow()
        schedule = self.repo.lock_schedule(self.db, schedule_id, skip_locked=False)
        if not schedule:
            raise ScheduleNotFoundError(schedule_id)
        if schedule.status == "cancelled":
            self.db.rollback()
            return 0

        try:
            cancelled = 0
            if cancel_future_occurrences:
                cancelled = self.repo.cancel_future_occurrences(self.db, schedule_id, now)

            schedule.status = "cancelled"
            schedule.cancelled_at = now
            schedule.next_run = None
            schedule.idempotency_key = None

            parent = self.repo.get_booking(self.db, schedule.parent_booking_id)
            if parent is not None and parent.recurrence_schedule_id == schedule_id:
                parent.is_recurring = False
                parent.recurrence_schedule_id = None

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"🗑️ Recurring schedule {schedule_id} cancelled ({cancelled} future occurrence(s) cancelled)"
        )
        return cancelled

    def add_exception(
        self, schedule_id: int, exception_date: date, now: Optional[datetime] = None
    ) -> ExceptionChange:
        return self.exception_manager.add_exception(schedule_id, exception_date, now)

    def remove_exception(
        self, schedule_id: int, exception_date: date, now: Optional[datetime] = None
    ) -> ExceptionChange:
        return self.exception_manager.remove_exception(schedule_id, exception_date, now)

    def get_upcoming_occurrences(
        self,
        schedule_id: int,
        from_date: Optional[date] = None,
        count: int = 10,
        now: Optional[datetime] = None,
    ) -> list[UpcomingOccurrence]:
        """
        Read-only projection of the next `count` candidates from `from_date`
        (a local date; without one the projection starts at now), each paired
        with its materialized occurrence when there is one. Creates nothing.
        """
        schedule = self._get(schedule_id)
        if schedule.status == "cancelled" or count <= 0:
            return []

        rule = RecurrenceRule.from_rrule_string(schedule.rrule_pattern)
        exceptions = self.repo.get_exception_dates(self.db, schedule_id)
        if from_date is None:
            # Today, minus whatever part of it has already passed
            now = now or datetime.utcnow()
            day_start = rule.to_utc(datetime.combine(local_date(rule, now), time.min))
            window_start = max(now, day_start)
        else:
            window_start = rule.to_utc(datetime.combine(from_date, time.min))
        instants = expand(rule, exceptions, window_start, datetime.max, count)
        if not instants:
            return []

        days = [local_date(rule, instant) for instant in instants]
        occurrences = {}
        for occurrence in self.repo.get_occurrences(self.db, schedule_id, days[0], days[-1]):
            current = occurrences.get(occurrence.occurrence_date)
            if current is None or current.status == "cancelled":
                occurrences[occurrence.occurrence_date] = occurrence

        upcoming = []
        for instant, day in zip(instants, days):
            occurrence = occurrences.get(day)
            upcoming.append(
                UpcomingOccurrence(
                    occurrence_date=day,
                    start=occurrence.scheduled_start if occurrence else instant,
                    occurrence_id=occurrence.id if occurrence else None,
                    status=occurrence.status if occurrence else None,
                )
            )
        return upcoming

    # Supplementary operations

    def get_schedule(self, schedule_id: int) -> ScheduleResponse:
        return self._to_response(self._get(schedule_id))

    def list_schedules_for_user(self, user_id: int, role: str) -> list[ScheduleResponse]:
        """Homeowners see schedules on their bookings; providers see those they hold the accepted offer for"""
        if role == "homeowner":
            schedules = self.repo.get_schedules_for_requester(self.db, user_id)
        elif role == "provider":
            schedules = self.repo.get_schedules_for_provider(self.db, user_id)
        else:
            raise ValueError(f"Unsupported role: {role}")
        return [self._to_response(schedule) for schedule in schedules]

    def check_scheduling_conflicts(
        self,
        requester_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[BookingSummary]:
        conflicts = self.materializer.resolver.find_conflicts(
            requester_id, start, end, exclude_booking_id
        )
        return [BookingSummary.model_validate(booking) for booking in conflicts]

    def generate_now(self, schedule_id: int, now: Optional[datetime] = None) -> MaterializationResult:
        """Run one materialization pass immediately"""
        schedule = self._get(schedule_id)
        if schedule.status == "cancelled":
            raise ScheduleStateError(f"Recurring schedule {schedule_id} is cancelled")
        logger.info(f"🔄 Generating occurrences for schedule {schedule_id} on demand")
        return self.materializer.run(schedule_id, now)

    def _to_response(self, schedule: RecurringSchedule) -> ScheduleResponse:
        parent: Optional[Booking] = schedule.parent_booking
        return ScheduleResponse(
            id=schedule.id,
            parent_booking_id=schedule.parent_booking_id,
            rrule_pattern=schedule.rrule_pattern,
            timezone=schedule.timezone,
            conflict_strategy=schedule.conflict_strategy,
            status=schedule.status,
            cursor=schedule.cursor,
            next_run=schedule.next_run,
            exception_dates=[entry.exception_date for entry in schedule.exception_dates],
            requester_id=parent.requester_id if parent else None,
            property_id=parent.property_id if parent else None,
            service_id=parent.service_id if parent else None,
            description=parent.description if parent else None,
            created_at=schedule.created_at,
            cancelled_at=schedule.cancelled_at,
        )
