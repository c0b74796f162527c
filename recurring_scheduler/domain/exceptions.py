"""Errors raised by the recurring scheduling engine"""

from datetime import datetime
from typing import Optional


class RecurringScheduleError(Exception):
    """Base class for all scheduling engine errors"""


class InvalidPatternError(RecurringScheduleError):
    """The repetition pattern is malformed or can never produce a future occurrence"""


class ScheduleNotFoundError(RecurringScheduleError):
    def __init__(self, schedule_id: int):
        super().__init__(f"Recurring schedule with ID {schedule_id} not found")
        self.schedule_id = schedule_id


class ParentBookingNotFoundError(RecurringScheduleError):
    def __init__(self, booking_id: int):
        super().__init__(f"Booking with ID {booking_id} not found")
        self.booking_id = booking_id


class ScheduleStateError(RecurringScheduleError):
    """The schedule (or its parent booking) is not in a state that allows the operation"""


class SchedulingConflictError(RecurringScheduleError):
    """Raised under the 'error' conflict strategy when a candidate overlaps existing bookings"""

    def __init__(
        self,
        candidate_start: datetime,
        candidate_end: datetime,
        conflicting_booking_ids: list[int],
        schedule_id: Optional[int] = None,
    ):
        super().__init__(
            f"Candidate {candidate_start.isoformat()} - {candidate_end.isoformat()} conflicts "
            f"with bookings {conflicting_booking_ids}"
        )
        self.candidate_start = candidate_start
        self.candidate_end = candidate_end
        self.conflicting_booking_ids = conflicting_booking_ids
        self.schedule_id = schedule_id


class MaterializationFailure(RecurringScheduleError):
    """Unexpected failure during a materialization pass; the pass was rolled back"""

    def __init__(self, schedule_id: int, message: str):
        super().__init__(f"Materialization failed for schedule {schedule_id}: {message}")
        self.schedule_id = schedule_id
        self.message = message
