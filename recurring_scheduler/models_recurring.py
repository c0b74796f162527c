"""
Recurring Schedule Models
"""

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class RecurringSchedule(Base):
    """Repetition pattern attached to a parent booking"""

    __tablename__ = "recurring_schedules"

    id = Column(Integer, primary_key=True, index=True)
    parent_booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)

    # Canonical RFC 5545 text (DTSTART;TZID=...\nRRULE:...)
    rrule_pattern = Column(Text, nullable=False)
    timezone = Column(String(64), nullable=False)
    conflict_strategy = Column(String(20), nullable=True)  # Falls back to CONFLICT_STRATEGY

    # Generation watermark (naive UTC). Never moves backwards except on a full rebuild.
    cursor = Column(DateTime, nullable=True)
    # First candidate still to be generated; NULL once the rule is exhausted
    next_run = Column(DateTime, nullable=True, index=True)

    # active → exhausted (end condition reached) | cancelled (owner deleted it)
    status = Column(String(20), default="active", nullable=False, index=True)

    # sha256 of (parent booking, rule, timezone, exception dates); cleared on cancel
    idempotency_key = Column(String(64), unique=True, nullable=True, index=True)

    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    parent_booking = relationship("Booking", foreign_keys=[parent_booking_id])
    exception_dates = relationship(
        "ScheduleExceptionDate",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="ScheduleExceptionDate.exception_date",
    )
    retry_state = relationship(
        "ScheduleRetryState", back_populates="schedule", uselist=False, cascade="all, delete-orphan"
    )


class ScheduleExceptionDate(Base):
    """A calendar date carved out of a schedule, independent of the rule"""

    __tablename__ = "schedule_exception_dates"
    __table_args__ = (UniqueConstraint("schedule_id", "exception_date"),)

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(
        Integer, ForeignKey("recurring_schedules.id", ondelete="CASCADE"), nullable=False, index=True
    )
    exception_date = Column(Date, nullable=False)  # Local date in the schedule's timezone
    created_at = Column(DateTime, server_default=func.now())

    schedule = relationship("RecurringSchedule", back_populates="exception_dates")


class ScheduleRetryState(Base):
    """Consecutive materialization failures, persisted so escalation survives restarts"""

    __tablename__ = "schedule_retry_states"

    schedule_id = Column(
        Integer, ForeignKey("recurring_schedules.id", ondelete="CASCADE"), primary_key=True
    )
    consecutive_failures = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_escalated_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    schedule = relationship("RecurringSchedule", back_populates="retry_state")
