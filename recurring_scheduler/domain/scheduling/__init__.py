"""
Scheduling Domain

Turns recurring schedules into concrete occurrence bookings.

Structure:
```
domain/scheduling/
├── schemas.py            # Create/update inputs, projections, results
├── repository.py         # BookingStore - all database access
├── conflicts.py          # ConflictResolver (skip / reschedule / error)
├── materializer.py       # ScheduleMaterializer - the only writer of occurrences
├── exception_manager.py  # Add/remove single-date carve-outs
├── retry_tracker.py      # Consecutive failure counting and escalation
├── sweeper.py            # DueScheduleSweeper - periodic batch driver
└── service.py            # RecurringScheduleService - inbound operations
```

Flow: sweeper → materializer → {expander, conflict resolver} → storage → notifier.
Create, update and exception edits go through the same materializer.
"""

from .materializer import MaterializationResult, ScheduleMaterializer
from .service import RecurringScheduleService
from .sweeper import DueScheduleSweeper, SweepSummary

__all__ = [
    "DueScheduleSweeper",
    "MaterializationResult",
    "RecurringScheduleService",
    "ScheduleMaterializer",
    "SweepSummary",
]
