"""
Conflict resolution for generated occurrences

A candidate conflicts with any non-cancelled booking of the same requester
whose interval overlaps the candidate widened by the buffer on both sides.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from ...config import CONFLICT_BUFFER_MINUTES, MAX_RESCHEDULE_ATTEMPTS
from ...models import Booking
from ..exceptions import SchedulingConflictError
from .repository import BookingStore

logger = logging.getLogger(__name__)


class ConflictStrategy(str, Enum):
    SKIP = "skip"
    RESCHEDULE = "reschedule"
    ERROR = "error"


@dataclass(frozen=True)
class Resolution:
    """Outcome for one candidate: an accepted interval, or skipped"""

    start: Optional[datetime]
    end: Optional[datetime]
    rescheduled: bool = False

    @property
    def skipped(self) -> bool:
        return self.start is None


SKIPPED = Resolution(start=None, end=None)


class ConflictResolver:
    """Read-only: decides where (or whether) a candidate occurrence may go"""

    def __init__(
        self,
        db: Session,
        buffer_minutes: int = CONFLICT_BUFFER_MINUTES,
        max_reschedule_attempts: int = MAX_RESCHEDULE_ATTEMPTS,
    ):
        self.db = db
        self.buffer = timedelta(minutes=buffer_minutes)
        self.max_reschedule_attempts = max_reschedule_attempts
        self.repo = BookingStore()

    def find_conflicts(
        self,
        requester_id: int,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[int] = None,
    ) -> list[Booking]:
        return self.repo.get_overlapping_bookings(
            self.db,
            requester_id,
            start - self.buffer,
            end + self.buffer,
            exclude_booking_id=exclude_booking_id,
        )

    def resolve(
        self,
        candidate_start: datetime,
        candidate_end: datetime,
        requester_id: int,
        strategy: ConflictStrategy,
        exclude_booking_id: Optional[int] = None,
    ) -> Resolution:
        """
        Args:
            candidate_start: naive UTC start of the proposed occurrence
            candidate_end: naive UTC end (equal to start for zero-length bookings)
            requester_id: owner whose bookings may conflict
            strategy: skip, reschedule or error
            exclude_booking_id: booking ignored by the check (the parent booking)

        Raises:
            SchedulingConflictError: under the error strategy when a conflict exists
        """
        strategy = ConflictStrategy(strategy)
        conflicts = self.find_conflicts(
            requester_id, candidate_start, candidate_end, exclude_booking_id
        )
        if not conflicts:
            return Resolution(start=candidate_start, end=candidate_end)

        conflict_ids = [booking.id for booking in conflicts]

        if strategy == ConflictStrategy.ERROR:
            raise SchedulingConflictError(candidate_start, candidate_end, conflict_ids)

        if strategy == ConflictStrategy.SKIP:
            logger.info(
                f"⏭️ Skipping candidate {candidate_start.isoformat()} (conflicts: {conflict_ids})"
            )
            return SKIPPED

        duration = candidate_end - candidate_start
        for _ in range(self.max_reschedule_attempts):
            latest_end = max(_booking_end(booking) for booking in conflicts)
            start = latest_end + self.buffer
            end = start + duration
            conflicts = self.find_conflicts(requester_id, start, end, exclude_booking_id)
            if not conflicts:
                logger.info(
                    f"🔀 Rescheduled candidate {candidate_start.isoformat()} → {start.isoformat()}"
                )
                return Resolution(start=start, end=end, rescheduled=True)

        logger.warning(
            f"⚠️ No free slot for candidate {candidate_start.isoformat()} after "
            f"{self.max_reschedule_attempts} attempts, skipping"
        )
        return SKIPPED


def _booking_end(booking: Booking) -> datetime:
    return booking.scheduled_end or booking.scheduled_start
