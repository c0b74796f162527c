"""Scheduling repository - Database operations for schedules, bookings and offers"""

import hashlib
import json
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ...models import Booking, Offer
from ...models_recurring import RecurringSchedule, ScheduleExceptionDate, ScheduleRetryState

# Occurrence statuses that may still be cancelled by the engine
CANCELLABLE_STATUSES = ("scheduled", "pending")


def schedule_idempotency_key(
    parent_booking_id: int, rrule_string: str, timezone: str, exception_dates: Iterable[date]
) -> str:
    """Deterministic key over everything that defines a schedule"""
    exceptions = json.dumps(sorted(d.isoformat() for d in exception_dates))
    raw = f"{parent_booking_id}|{rrule_string}|{timezone}|{exceptions}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class BookingStore:
    """Repository for recurring schedule and booking database operations"""

    # Schedules
    @staticmethod
    def get_schedule(db: Session, schedule_id: int) -> Optional[RecurringSchedule]:
        return db.query(RecurringSchedule).filter(RecurringSchedule.id == schedule_id).first()

    @staticmethod
    def lock_schedule(
        db: Session, schedule_id: int, skip_locked: bool = True
    ) -> Optional[RecurringSchedule]:
        """
        Lock the schedule row for the rest of the transaction.
        With skip_locked, returns None when another pass holds the lock (or the row is gone);
        without it, waits for the lock.
        """
        return (
            db.query(RecurringSchedule)
            .filter(RecurringSchedule.id == schedule_id)
            .with_for_update(skip_locked=skip_locked)
            .first()
        )

    @staticmethod
    def get_schedule_status(db: Session, schedule_id: int) -> Optional[str]:
        """Status as stored in the database, bypassing the session's loaded object"""
        return (
            db.query(RecurringSchedule.status)
            .filter(RecurringSchedule.id == schedule_id)
            .scalar()
        )

    @staticmethod
    def get_schedule_by_idempotency_key(db: Session, key: str) -> Optional[RecurringSchedule]:
        return db.query(RecurringSchedule).filter(RecurringSchedule.idempotency_key == key).first()

    @staticmethod
    def get_active_schedule_for_parent(
        db: Session, parent_booking_id: int
    ) -> Optional[RecurringSchedule]:
        return (
            db.query(RecurringSchedule)
            .filter(
                RecurringSchedule.parent_booking_id == parent_booking_id,
                RecurringSchedule.status == "active",
            )
            .first()
        )

    @staticmethod
    def get_due_schedule_ids(db: Session, due_before: datetime, limit: int) -> list[int]:
        """Active schedules whose next candidate falls before `due_before`, soonest first"""
        rows = (
            db.query(RecurringSchedule.id)
            .filter(
                RecurringSchedule.status == "active",
                RecurringSchedule.next_run.isnot(None),
                RecurringSchedule.next_run <= due_before,
            )
            .order_by(RecurringSchedule.next_run.asc(), RecurringSchedule.id.asc())
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def get_schedules_for_requester(db: Session, user_id: int) -> list[RecurringSchedule]:
        return (
            db.query(RecurringSchedule)
            .join(Booking, RecurringSchedule.parent_booking_id == Booking.id)
            .filter(Booking.requester_id == user_id)
            .order_by(RecurringSchedule.next_run.asc())
            .all()
        )

    @staticmethod
    def get_schedules_for_provider(db: Session, user_id: int) -> list[RecurringSchedule]:
        return (
            db.query(RecurringSchedule)
            .join(Booking, RecurringSchedule.parent_booking_id == Booking.id)
            .join(Offer, Offer.booking_id == Booking.id)
            .filter(Offer.provider_id == user_id, Offer.status == "accepted")
            .order_by(RecurringSchedule.next_run.asc())
            .distinct()
            .all()
        )

    # Exception dates
    @staticmethod
    def get_exception_dates(db: Session, schedule_id: int) -> set[date]:
        rows = (
            db.query(ScheduleExceptionDate.exception_date)
            .filter(ScheduleExceptionDate.schedule_id == schedule_id)
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def add_exception_date(db: Session, schedule_id: int, exception_date: date) -> bool:
        """Insert the exception if absent. Returns True when a row was added."""
        existing = (
            db.query(ScheduleExceptionDate)
            .filter(
                ScheduleExceptionDate.schedule_id == schedule_id,
                ScheduleExceptionDate.exception_date == exception_date,
            )
            .first()
        )
        if existing:
            return False
        db.add(ScheduleExceptionDate(schedule_id=schedule_id, exception_date=exception_date))
        db.flush()
        return True

    @staticmethod
    def remove_exception_date(db: Session, schedule_id: int, exception_date: date) -> bool:
        deleted = (
            db.query(ScheduleExceptionDate)
            .filter(
                ScheduleExceptionDate.schedule_id == schedule_id,
                ScheduleExceptionDate.exception_date == exception_date,
            )
            .delete(synchronize_session=False)
        )
        return deleted > 0

    @staticmethod
    def replace_exception_dates(db: Session, schedule_id: int, dates: set[date]) -> None:
        db.query(ScheduleExceptionDate).filter(
            ScheduleExceptionDate.schedule_id == schedule_id
        ).delete(synchronize_session=False)
        for exception_date in sorted(dates):
            db.add(ScheduleExceptionDate(schedule_id=schedule_id, exception_date=exception_date))
        db.flush()

    # Bookings
    @staticmethod
    def get_booking(db: Session, booking_id: int) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def get_overlapping_bookings(
        db: Session,
        requester_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[Booking]:
        """
        Non-cancelled bookings of the requester overlapping (start, end).
        Bookings without an end are treated as instants; touching endpoints do not overlap.
        """
        query = db.query(Booking).filter(
            Booking.requester_id == requester_id,
            Booking.status != "cancelled",
            Booking.scheduled_start < end,
            func.coalesce(Booking.scheduled_end, Booking.scheduled_start) > start,
        )
        if exclude_booking_id is not None:
            query = query.filter(Booking.id != exclude_booking_id)
        return query.order_by(Booking.scheduled_start.asc()).all()

    @staticmethod
    def get_occurrences(
        db: Session,
        schedule_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[Booking]:
        query = db.query(Booking).filter(
            Booking.recurrence_schedule_id == schedule_id,
            Booking.occurrence_date.isnot(None),
        )
        if start_date is not None:
            query = query.filter(Booking.occurrence_date >= start_date)
        if end_date is not None:
            query = query.filter(Booking.occurrence_date <= end_date)
        return query.order_by(Booking.occurrence_date.asc(), Booking.id.asc()).all()

    @staticmethod
    def get_live_occurrence_dates(db: Session, schedule_id: int, dates: list[date]) -> set[date]:
        """Dates among `dates` that already carry a non-cancelled occurrence"""
        if not dates:
            return set()
        rows = (
            db.query(Booking.occurrence_date)
            .filter(
                Booking.recurrence_schedule_id == schedule_id,
                Booking.occurrence_date.in_(dates),
                Booking.status != "cancelled",
            )
            .all()
        )
        return {row[0] for row in rows}

    @staticmethod
    def create_occurrence(
        db: Session,
        parent: Booking,
        schedule_id: int,
        occurrence_date: date,
        start: datetime,
        end: Optional[datetime],
    ) -> Booking:
        occurrence = Booking(
            requester_id=parent.requester_id,
            property_id=parent.property_id,
            service_id=parent.service_id,
            description=parent.description,
            scheduled_start=start,
            scheduled_end=end,
            status="scheduled",
            is_recurring=True,
            recurrence_parent_id=parent.id,
            recurrence_schedule_id=schedule_id,
            occurrence_date=occurrence_date,
        )
        db.add(occurrence)
        db.flush()
        return occurrence

    @staticmethod
    def cancel_occurrences_on(db: Session, schedule_id: int, occurrence_date: date) -> int:
        return (
            db.query(Booking)
            .filter(
                Booking.recurrence_schedule_id == schedule_id,
                Booking.occurrence_date == occurrence_date,
                Booking.status.in_(CANCELLABLE_STATUSES),
            )
            .update({Booking.status: "cancelled"}, synchronize_session=False)
        )

    @staticmethod
    def cancel_future_occurrences(db: Session, schedule_id: int, after: datetime) -> int:
        """Cancel occurrences that have not started yet"""
        return (
            db.query(Booking)
            .filter(
                and_(
                    Booking.recurrence_schedule_id == schedule_id,
                    Booking.occurrence_date.isnot(None),
                    Booking.scheduled_start > after,
                    Booking.status.in_(CANCELLABLE_STATUSES),
                )
            )
            .update({Booking.status: "cancelled"}, synchronize_session=False)
        )

    # Offers
    @staticmethod
    def get_accepted_offer(db: Session, booking_id: int) -> Optional[Offer]:
        return (
            db.query(Offer)
            .filter(Offer.booking_id == booking_id, Offer.status == "accepted")
            .order_by(Offer.id.asc())
            .first()
        )

    @staticmethod
    def copy_offer(db: Session, offer: Offer, booking_id: int) -> Offer:
        copied = Offer(
            booking_id=booking_id,
            provider_id=offer.provider_id,
            price=offer.price,
            estimated_hours=offer.estimated_hours,
            description=offer.description,
            status="accepted",
        )
        db.add(copied)
        return copied

    # Retry state
    @staticmethod
    def get_retry_state(db: Session, schedule_id: int, lock: bool = False) -> Optional[ScheduleRetryState]:
        query = db.query(ScheduleRetryState).filter(ScheduleRetryState.schedule_id == schedule_id)
        if lock:
            query = query.with_for_update()
        return query.first()
