"""
Due-Schedule Sweeper

Periodic batch driver: Idle → Scanning → Dispatching → Idle.

Each tick picks at most `batch_size` active schedules whose next candidate is
inside the horizon (soonest first) and runs one materialization pass per
schedule, each in its own session. A failing schedule is counted and left to
the retry tracker; it never stops the rest of the batch.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import (
    RETRY_ESCALATION_THRESHOLD,
    SCHEDULE_HORIZON_DAYS,
    SWEEP_BATCH_SIZE,
    SWEEP_INTERVAL_SECONDS,
    SWEEP_MAX_WORKERS,
)
from ...database import SessionLocal
from ...services.notification_service import DatabaseNotifier, Notifier
from ..exceptions import ScheduleNotFoundError
from .materializer import MaterializationResult, ScheduleMaterializer
from .repository import BookingStore
from .retry_tracker import RetryTracker

logger = logging.getLogger(__name__)


class SweeperState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DISPATCHING = "dispatching"


@dataclass
class SweepSummary:
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    busy: int = 0
    missing: int = 0
    escalated: int = 0
    created_occurrences: int = 0
    failed_schedule_ids: list[int] = field(default_factory=list)


class DueScheduleSweeper:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        notifier: Optional[Notifier] = None,
        batch_size: int = SWEEP_BATCH_SIZE,
        max_workers: int = SWEEP_MAX_WORKERS,
        horizon_days: int = SCHEDULE_HORIZON_DAYS,
        escalation_threshold: int = RETRY_ESCALATION_THRESHOLD,
        **materializer_options,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or DatabaseNotifier(session_factory)
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.horizon_days = horizon_days
        self.materializer_options = materializer_options
        self.retry_tracker = RetryTracker(self.notifier, threshold=escalation_threshold)
        self.state = SweeperState.IDLE
        self.repo = BookingStore()

    def scan(self, now: datetime) -> list[int]:
        db = self.session_factory()
        try:
            due_before = now + timedelta(days=self.horizon_days)
            return self.repo.get_due_schedule_ids(db, due_before, self.batch_size)
        finally:
            db.close()

    def process(self, schedule_id: int, now: datetime) -> Optional[MaterializationResult]:
        """One isolated pass. Returns None when the schedule disappeared."""
        db = self.session_factory()
        try:
            materializer = ScheduleMaterializer(
                db,
                self.notifier,
                retry_tracker=self.retry_tracker,
                horizon_days=self.horizon_days,
                **self.materializer_options,
            )
            return materializer.run(schedule_id, now)
        except ScheduleNotFoundError:
            logger.warning(f"⚠️ Schedule {schedule_id} vanished before it could be processed")
            return None
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Unexpected error sweeping schedule {schedule_id}: {e}")
            return MaterializationResult(schedule_id=schedule_id, success=False, error=str(e))
        finally:
            db.close()

    def tick(self, now: Optional[datetime] = None) -> SweepSummary:
        now = now or datetime.utcnow()
        summary = SweepSummary(started_at=now)

        self.state = SweeperState.SCANNING
        try:
            schedule_ids = self.scan(now)
        except Exception as e:
            logger.error(f"❌ Failed to query due schedules: {e}")
            self.state = SweeperState.IDLE
            summary.finished_at = datetime.utcnow()
            return summary

        summary.scanned = len(schedule_ids)
        if not schedule_ids:
            logger.info("✅ No recurring schedules due")
            self.state = SweeperState.IDLE
            summary.finished_at = datetime.utcnow()
            return summary

        logger.info(f"🔄 Processing {len(schedule_ids)} due recurring schedule(s)")
        self.state = SweeperState.DISPATCHING

        if self.max_workers <= 1:
            results = [self.process(schedule_id, now) for schedule_id in schedule_ids]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                results = list(
                    pool.map(lambda schedule_id: self.process(schedule_id, now), schedule_ids)
                )

        for result in results:
            if result is None:
                summary.missing += 1
            elif result.busy:
                summary.busy += 1
            elif result.success:
                summary.succeeded += 1
                summary.created_occurrences += result.created_count
            else:
                summary.failed += 1
                summary.failed_schedule_ids.append(result.schedule_id)
                if result.escalated:
                    summary.escalated += 1

        self.state = SweeperState.IDLE
        summary.finished_at = datetime.utcnow()
        logger.info(
            f"✅ Sweep finished: {summary.succeeded} ok, {summary.failed} failed, "
            f"{summary.busy} busy, {summary.created_occurrences} occurrence(s) created"
        )
        return summary


async def run_recurring_sweeper(
    sweeper: Optional[DueScheduleSweeper] = None,
    interval_seconds: int = SWEEP_INTERVAL_SECONDS,
    iterations: Optional[int] = None,
):
    """
    Main sweep loop - one tick every `interval_seconds`.
    `iterations` bounds the loop (None runs forever).
    """
    sweeper = sweeper or DueScheduleSweeper()
    logger.info(f"🚀 Starting recurring schedule sweeper (every {interval_seconds}s)...")

    completed = 0
    while iterations is None or completed < iterations:
        try:
            await asyncio.to_thread(sweeper.tick)
        except Exception as e:
            logger.error(f"❌ Error in recurring sweeper loop: {e}")

        completed += 1
        if iterations is None or completed < iterations:
            await asyncio.sleep(interval_seconds)
