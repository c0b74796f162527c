"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ..recurrence.schemas import RecurrencePattern

_STRATEGIES = ("skip", "reschedule", "error")


def _check_strategy(v):
    if v is None:
        return v
    v = v.strip().lower()
    if v not in _STRATEGIES:
        raise ValueError(f"conflict_strategy must be one of {', '.join(_STRATEGIES)}")
    return v


class ScheduleCreate(BaseModel):
    """Schema for attaching a recurring schedule to a parent booking"""

    parent_booking_id: int
    pattern: RecurrencePattern
    exception_dates: list[date] = []
    conflict_strategy: Optional[str] = None

    @field_validator("conflict_strategy")
    @classmethod
    def validate_conflict_strategy(cls, v):
        return _check_strategy(v)


class ScheduleUpdate(BaseModel):
    """
    Schema for editing a schedule. Omitted fields are left unchanged.

    apply_to_future=True cancels occurrences that have not started yet and
    regenerates them from the (new) rule.
    """

    pattern: Optional[RecurrencePattern] = None
    exception_dates: Optional[list[date]] = None
    conflict_strategy: Optional[str] = None
    apply_to_future: bool = True

    @field_validator("conflict_strategy")
    @classmethod
    def validate_conflict_strategy(cls, v):
        return _check_strategy(v)


class ScheduleResponse(BaseModel):
    """Schedule joined with the parent booking fields callers display"""

    id: int
    parent_booking_id: int
    rrule_pattern: str
    timezone: str
    conflict_strategy: Optional[str] = None
    status: str
    cursor: Optional[datetime] = None
    next_run: Optional[datetime] = None
    exception_dates: list[date] = []
    requester_id: Optional[int] = None
    property_id: Optional[int] = None
    service_id: Optional[int] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class UpcomingOccurrence(BaseModel):
    """One projected candidate; occurrence_id is set when it is already materialized"""

    occurrence_date: date
    start: datetime
    occurrence_id: Optional[int] = None
    status: Optional[str] = None


class BookingSummary(BaseModel):
    id: int
    requester_id: int
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    status: str
    recurrence_schedule_id: Optional[int] = None

    class Config:
        from_attributes = True


class ExceptionChange(BaseModel):
    """Outcome of adding or removing one exception date"""

    schedule_id: int
    exception_date: date
    changed: bool  # False when the date was already present / already absent
    cancelled_occurrences: int = 0
    occurrence_id: Optional[int] = None  # re-materialized occurrence after a removal
