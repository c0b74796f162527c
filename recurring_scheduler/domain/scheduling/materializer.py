"""
Schedule Materializer

The single path that turns a schedule's rule into committed occurrence
bookings. One pass:

1. lock the schedule row and load its exception dates
2. window = [max(now, cursor), now + horizon]
3. expand the rule inside the window (at most max_occurrences instants)
4. skip dates that already carry a live occurrence
5. resolve conflicts, create the occurrence, copy the accepted offer
6. advance cursor / next_run, or mark the schedule exhausted
7. commit everything at once, then send "upcoming service" notifications

Any unexpected error rolls the whole pass back and surfaces as
MaterializationFailure.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import (
    CONFLICT_BUFFER_MINUTES,
    CONFLICT_STRATEGY,
    DEFAULT_SERVICE_DURATION_MINUTES,
    MAX_OCCURRENCES_PER_PASS,
    MAX_RESCHEDULE_ATTEMPTS,
    SCHEDULE_HORIZON_DAYS,
)
from ...models import Booking, Offer
from ...models_recurring import RecurringSchedule
from ...services.notification_service import SERVICE_SCHEDULED, Notifier
from ..exceptions import (
    MaterializationFailure,
    ScheduleNotFoundError,
    SchedulingConflictError,
)
from ..recurrence.expander import expand, local_date, next_occurrence, occurs_on
from ..recurrence.rule import RecurrenceRule
from .conflicts import ConflictResolver, ConflictStrategy
from .repository import BookingStore
from .retry_tracker import RetryTracker

logger = logging.getLogger(__name__)


@dataclass
class MaterializationResult:
    schedule_id: int
    created_booking_ids: list[int] = field(default_factory=list)
    created_dates: list[date] = field(default_factory=list)
    existing_dates: list[date] = field(default_factory=list)
    skipped_dates: list[date] = field(default_factory=list)
    rescheduled_dates: list[date] = field(default_factory=list)
    conflicts: list[SchedulingConflictError] = field(default_factory=list)
    cursor: Optional[datetime] = None
    next_run: Optional[datetime] = None
    exhausted: bool = False
    busy: bool = False  # another pass holds the schedule lock
    inactive: bool = False  # schedule is cancelled or exhausted
    success: bool = True
    error: Optional[str] = None
    escalated: bool = False

    @property
    def created_count(self) -> int:
        return len(self.created_booking_ids)


class ScheduleMaterializer:
    """Generates occurrence bookings for one schedule per call"""

    def __init__(
        self,
        db: Session,
        notifier: Notifier,
        retry_tracker: Optional[RetryTracker] = None,
        horizon_days: int = SCHEDULE_HORIZON_DAYS,
        max_occurrences: int = MAX_OCCURRENCES_PER_PASS,
        buffer_minutes: int = CONFLICT_BUFFER_MINUTES,
        default_strategy: str = CONFLICT_STRATEGY,
        default_duration_minutes: int = DEFAULT_SERVICE_DURATION_MINUTES,
        max_reschedule_attempts: int = MAX_RESCHEDULE_ATTEMPTS,
    ):
        self.db = db
        self.notifier = notifier
        self.retry_tracker = retry_tracker
        self.horizon = timedelta(days=horizon_days)
        self.max_occurrences = max_occurrences
        self.default_strategy = ConflictStrategy(default_strategy)
        self.default_duration = timedelta(minutes=default_duration_minutes)
        self.resolver = ConflictResolver(
            db, buffer_minutes=buffer_minutes, max_reschedule_attempts=max_reschedule_attempts
        )
        self.repo = BookingStore()

    def run(self, schedule_id: int, now: Optional[datetime] = None) -> MaterializationResult:
        """
        Materialize and report the outcome to the retry tracker.
        Failures are absorbed into the returned result; only an unknown
        schedule id raises.
        """
        now = now or datetime.utcnow()
        try:
            result = self.materialize(schedule_id, now)
        except MaterializationFailure as e:
            escalated = False
            if self.retry_tracker is not None:
                escalated = self.retry_tracker.record_failure(self.db, schedule_id, e.message, now)
            return MaterializationResult(
                schedule_id=schedule_id, success=False, error=e.message, escalated=escalated
            )

        if self.retry_tracker is not None and not result.busy:
            self.retry_tracker.record_success(self.db, schedule_id)
        return result

    def materialize(self, schedule_id: int, now: Optional[datetime] = None) -> MaterializationResult:
        """
        One transactional pass for a schedule.

        Raises:
            ScheduleNotFoundError: unknown schedule id
            MaterializationFailure: anything else went wrong; nothing was written
        """
        now = now or datetime.utcnow()
        result = MaterializationResult(schedule_id=schedule_id)
        notifications: list[tuple[int, dict]] = []

        try:
            schedule = self.repo.lock_schedule(self.db, schedule_id)
            if schedule is None:
                if self.repo.get_schedule(self.db, schedule_id) is None:
                    raise ScheduleNotFoundError(schedule_id)
                self.db.rollback()
                logger.info(f"🔒 Schedule {schedule_id} is being processed elsewhere, skipping")
                result.busy = True
                return result

            if schedule.status != "active":
                self.db.rollback()
                result.inactive = True
                return result

            parent = self.repo.get_booking(self.db, schedule.parent_booking_id)
            if parent is None:
                raise RuntimeError(f"Parent booking {schedule.parent_booking_id} is missing")

            rule = RecurrenceRule.from_rrule_string(schedule.rrule_pattern)
            exceptions = self.repo.get_exception_dates(self.db, schedule_id)
            strategy = ConflictStrategy(schedule.conflict_strategy or self.default_strategy)
            offer = self.repo.get_accepted_offer(self.db, parent.id)

            cursor = schedule.cursor
            window_start = max(now, cursor) if cursor is not None else now
            window_end = now + self.horizon
            # One extra instant in case the first one is the cursor itself
            instants = [
                instant
                for instant in expand(
                    rule, exceptions, window_start, window_end, self.max_occurrences + 1
                )
                if cursor is None or instant > cursor
            ][: self.max_occurrences]

            days = [local_date(rule, instant) for instant in instants]
            live_dates = self.repo.get_live_occurrence_dates(self.db, schedule_id, days)

            for instant, day in zip(instants, days):
                if day in live_dates:
                    result.existing_dates.append(day)
                    continue

                try:
                    occurrence, rescheduled = self.place_occurrence(
                        schedule, parent, day, instant, strategy, offer
                    )
                except SchedulingConflictError as e:
                    e.schedule_id = schedule_id
                    result.conflicts.append(e)
                    logger.warning(f"⚠️ Schedule {schedule_id}: {e}")
                    continue

                if occurrence is None:
                    result.skipped_dates.append(day)
                    continue

                result.created_booking_ids.append(occurrence.id)
                result.created_dates.append(day)
                if rescheduled:
                    result.rescheduled_dates.append(day)
                notifications.append((parent.requester_id, self.scheduled_payload(occurrence)))

            if self.repo.get_schedule_status(self.db, schedule_id) != "active":
                # Cancelled while this pass was running; do not resurrect it
                self.db.rollback()
                return MaterializationResult(schedule_id=schedule_id, inactive=True)

            if instants:
                schedule.cursor = instants[-1]
            self.advance(schedule, rule, exceptions, parent, now)
            self.db.commit()
        except ScheduleNotFoundError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Materialization failed for schedule {schedule_id}: {e}")
            raise MaterializationFailure(schedule_id, str(e)) from e

        result.cursor = schedule.cursor
        result.next_run = schedule.next_run
        result.exhausted = schedule.status == "exhausted"

        logger.info(
            f"📅 Schedule {schedule_id}: created {result.created_count}, "
            f"existing {len(result.existing_dates)}, skipped {len(result.skipped_dates)}, "
            f"conflicts {len(result.conflicts)}"
        )

        for user_id, payload in notifications:
            self.notifier.send_to_user(user_id, SERVICE_SCHEDULED, payload)

        return result

    def place_occurrence(
        self,
        schedule: RecurringSchedule,
        parent: Booking,
        day: date,
        instant: datetime,
        strategy: ConflictStrategy,
        offer: Optional[Offer] = None,
    ) -> tuple[Optional[Booking], bool]:
        """
        Conflict-check and create one occurrence without committing.

        Returns (occurrence, rescheduled); occurrence is None when the date was skipped.
        Raises SchedulingConflictError under the error strategy.
        """
        duration = self.occurrence_duration(parent)
        resolution = self.resolver.resolve(
            instant,
            instant + duration,
            parent.requester_id,
            strategy,
            exclude_booking_id=parent.id,
        )
        if resolution.skipped:
            return None, False

        end = resolution.end if parent.scheduled_end is not None else None
        occurrence = self.repo.create_occurrence(
            self.db, parent, schedule.id, day, resolution.start, end
        )
        if offer is not None:
            self.repo.copy_offer(self.db, offer, occurrence.id)

        return occurrence, resolution.rescheduled

    def restore_date(
        self,
        schedule: RecurringSchedule,
        rule: RecurrenceRule,
        parent: Booking,
        day: date,
        now: datetime,
    ) -> Optional[Booking]:
        """
        Single-date path for a date that stopped being an exception. Creates the
        occurrence (without committing) when the rule selects the date, its instant
        lies in [now, now + horizon] and no live occurrence sits on it yet.
        Dates behind the cursor are covered too, which a regular pass never revisits.

        Raises SchedulingConflictError under the error strategy.
        """
        instant = occurs_on(rule, day)
        if instant is None or not now <= instant <= now + self.horizon:
            return None
        if self.repo.get_live_occurrence_dates(self.db, schedule.id, [day]):
            return None

        strategy = ConflictStrategy(schedule.conflict_strategy or self.default_strategy)
        offer = self.repo.get_accepted_offer(self.db, parent.id)
        try:
            occurrence, _ = self.place_occurrence(schedule, parent, day, instant, strategy, offer)
        except SchedulingConflictError as e:
            e.schedule_id = schedule.id
            raise
        return occurrence

    def reactivate(self, schedule: RecurringSchedule, parent: Optional[Booking]) -> None:
        """Bring an exhausted schedule back; advance() exhausts it again if nothing is left"""
        if schedule.status != "exhausted":
            return
        schedule.status = "active"
        if parent is not None:
            parent.is_recurring = True

    def announce(self, occurrence: Booking) -> None:
        self.notifier.send_to_user(
            occurrence.requester_id, SERVICE_SCHEDULED, self.scheduled_payload(occurrence)
        )

    def advance(
        self,
        schedule: RecurringSchedule,
        rule: RecurrenceRule,
        exceptions: set[date],
        parent: Optional[Booking],
        now: datetime,
    ) -> None:
        """Recompute next_run from the cursor; with nothing left the schedule is exhausted"""
        cursor = schedule.cursor
        if cursor is not None and cursor >= now:
            schedule.next_run = next_occurrence(rule, exceptions, cursor)
        else:
            schedule.next_run = next_occurrence(rule, exceptions, now, inclusive=True)

        if schedule.next_run is None and schedule.status == "active":
            schedule.status = "exhausted"
            if parent is not None:
                parent.is_recurring = False
            logger.info(f"🏁 Schedule {schedule.id} reached its end condition")

    def occurrence_duration(self, parent: Booking) -> timedelta:
        if parent.scheduled_end is not None and parent.scheduled_end > parent.scheduled_start:
            return parent.scheduled_end - parent.scheduled_start
        return self.default_duration

    @staticmethod
    def scheduled_payload(occurrence: Booking) -> dict:
        return {
            "schedule_id": occurrence.recurrence_schedule_id,
            "booking_id": occurrence.id,
            "parent_booking_id": occurrence.recurrence_parent_id,
            "date": occurrence.occurrence_date.isoformat(),
            "start": occurrence.scheduled_start.isoformat(),
        }
