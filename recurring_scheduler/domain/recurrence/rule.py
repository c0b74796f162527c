"""
Canonical recurrence rule value and its RFC 5545 text form

The stored representation is two lines:

    DTSTART;TZID=America/New_York:20240102T090000
    RRULE:FREQ=WEEKLY;INTERVAL=1;BYDAY=TU;UNTIL=20240401T130000Z

DTSTART is local wall-clock time in TZID. UNTIL is always UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..exceptions import InvalidPatternError

WEEKDAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

_LOCAL_FORMAT = "%Y%m%dT%H%M%S"
_UTC_FORMAT = "%Y%m%dT%H%M%SZ"


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


def load_zone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, raising InvalidPatternError for unknown zones"""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidPatternError(f"Unknown timezone: {name}") from e


@dataclass(frozen=True)
class RecurrenceRule:
    """
    A bounded RFC 5545 recurrence.

    dtstart is naive local wall-clock time in `timezone`; until is naive UTC.
    Weekdays use Python numbering (Monday=0).
    """

    frequency: Frequency
    dtstart: datetime
    timezone: str
    interval: int = 1
    by_weekday: tuple[int, ...] = ()
    by_month_day: tuple[int, ...] = ()
    by_month: tuple[int, ...] = ()
    until: Optional[datetime] = None
    count: Optional[int] = None

    @property
    def zone(self) -> ZoneInfo:
        return load_zone(self.timezone)

    def to_utc(self, local: datetime) -> datetime:
        """Convert a local wall-clock time in this rule's zone to naive UTC"""
        aware = local.replace(tzinfo=self.zone)
        return aware.astimezone(timezone.utc).replace(tzinfo=None)

    def to_local(self, instant: datetime) -> datetime:
        """Convert a naive UTC instant to naive local wall-clock time in this rule's zone"""
        aware = instant.replace(tzinfo=timezone.utc)
        return aware.astimezone(self.zone).replace(tzinfo=None)

    def to_rrule_string(self) -> str:
        parts = [f"FREQ={self.frequency.value}", f"INTERVAL={self.interval}"]
        if self.by_month:
            parts.append("BYMONTH=" + ",".join(str(m) for m in self.by_month))
        if self.by_month_day:
            parts.append("BYMONTHDAY=" + ",".join(str(d) for d in self.by_month_day))
        if self.by_weekday:
            parts.append("BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in self.by_weekday))
        if self.until is not None:
            parts.append(f"UNTIL={self.until.strftime(_UTC_FORMAT)}")
        if self.count is not None:
            parts.append(f"COUNT={self.count}")

        return (
            f"DTSTART;TZID={self.timezone}:{self.dtstart.strftime(_LOCAL_FORMAT)}\n"
            f"RRULE:{';'.join(parts)}"
        )

    @classmethod
    def from_rrule_string(cls, text: str) -> "RecurrenceRule":
        """Parse the stored two-line form back into a rule"""
        dtstart = None
        zone_name = None
        fields: dict[str, str] = {}

        for raw_line in text.strip().splitlines():
            line = raw_line.strip()
            if line.startswith("DTSTART"):
                head, _, value = line.partition(":")
                for param in head.split(";")[1:]:
                    key, _, param_value = param.partition("=")
                    if key.upper() == "TZID":
                        zone_name = param_value
                try:
                    dtstart = datetime.strptime(value, _LOCAL_FORMAT)
                except ValueError as e:
                    raise InvalidPatternError(f"Invalid DTSTART value: {value}") from e
            elif line.startswith("RRULE:"):
                for part in line[len("RRULE:"):].split(";"):
                    key, _, value = part.partition("=")
                    if key:
                        fields[key.upper()] = value

        if dtstart is None or zone_name is None:
            raise InvalidPatternError("Rule must contain DTSTART with a TZID")
        if "FREQ" not in fields:
            raise InvalidPatternError("Rule must contain a FREQ component")

        try:
            frequency = Frequency(fields["FREQ"].upper())
            interval = int(fields.get("INTERVAL", "1"))
            by_month = _int_list(fields.get("BYMONTH"))
            by_month_day = _int_list(fields.get("BYMONTHDAY"))
            by_weekday = tuple(
                WEEKDAY_CODES.index(code.strip().upper())
                for code in fields.get("BYDAY", "").split(",")
                if code.strip()
            )
            until = datetime.strptime(fields["UNTIL"], _UTC_FORMAT) if "UNTIL" in fields else None
            count = int(fields["COUNT"]) if "COUNT" in fields else None
        except ValueError as e:
            raise InvalidPatternError(f"Malformed recurrence rule: {e}") from e

        load_zone(zone_name)

        return cls(
            frequency=frequency,
            dtstart=dtstart,
            timezone=zone_name,
            interval=interval,
            by_weekday=by_weekday,
            by_month_day=by_month_day,
            by_month=by_month,
            until=until,
            count=count,
        )


def _int_list(value: Optional[str]) -> tuple[int, ...]:
    if not value:
        return ()
    return tuple(int(item) for item in value.split(",") if item.strip())
