"""
Notification Service
Delivers recurring-schedule events to requesters and operators.
Delivery is fire-and-forget: failures are logged and never raised to the engine.
"""

import logging
from typing import Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ..config import OPERATOR_USER_IDS
from ..database import SessionLocal
from ..models import Notification

logger = logging.getLogger(__name__)

# Notification kinds emitted by the engine
SERVICE_SCHEDULED = "recurring_service_scheduled"
SCHEDULE_FAILURE = "recurring_schedule_failure"
SCHEDULE_ALERT = "recurring_schedule_alert"

_TEMPLATES = {
    SERVICE_SCHEDULED: (
        "New Scheduled Service",
        "A new service has been scheduled for {date} based on your recurring schedule.",
    ),
    SCHEDULE_FAILURE: (
        "Recurring Schedule Error",
        "There was a problem processing your recurring schedule. "
        "Please check your schedule settings.",
    ),
    SCHEDULE_ALERT: (
        "Recurring Schedule System Alert",
        "Recurring schedule ID {schedule_id} for booking ID {parent_booking_id} has failed "
        "{failures} times in a row. Error: {error}",
    ),
}


class Notifier(Protocol):
    def send_to_user(self, user_id: int, kind: str, payload: dict) -> None: ...

    def send_to_operators(self, kind: str, payload: dict) -> None: ...


def render_notification(kind: str, payload: dict) -> tuple[str, str]:
    """Title and message for a notification kind, filled from the payload"""
    title, template = _TEMPLATES.get(kind, (kind.replace("_", " ").title(), "{payload}"))
    try:
        return title, template.format(payload=payload, **payload)
    except (KeyError, IndexError):
        return title, str(payload)


class DatabaseNotifier:
    """
    Writes notifications as rows in the notifications table.

    Operator alerts go to every id in operator_user_ids; with none configured a
    single unaddressed row with audience "operators" is written instead.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        operator_user_ids: Optional[list[int]] = None,
    ):
        self.session_factory = session_factory
        self.operator_user_ids = (
            list(operator_user_ids) if operator_user_ids is not None else list(OPERATOR_USER_IDS)
        )

    def send_to_user(self, user_id: int, kind: str, payload: dict) -> None:
        self._write([(user_id, "user")], kind, payload)

    def send_to_operators(self, kind: str, payload: dict) -> None:
        recipients = [(operator_id, "operators") for operator_id in self.operator_user_ids]
        if not recipients:
            logger.warning(f"⚠️ No operators configured, storing unaddressed {kind} alert")
            recipients = [(None, "operators")]
        self._write(recipients, kind, payload)

    def _write(self, recipients: list[tuple], kind: str, payload: dict) -> None:
        title, message = render_notification(kind, payload)
        db = self.session_factory()
        try:
            for user_id, audience in recipients:
                db.add(
                    Notification(
                        user_id=user_id,
                        audience=audience,
                        kind=kind,
                        title=title,
                        message=message,
                        payload=payload,
                    )
                )
            db.commit()
            logger.info(f"✅ {kind} notification stored for {len(recipients)} recipient(s)")
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Failed to store {kind} notification: {e}")
        finally:
            db.close()
