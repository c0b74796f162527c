"""
Pattern compilation

Validates a user-supplied repetition description and turns it into the
canonical RecurrenceRule plus the first instant the schedule will generate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import ValidationError

from ...config import DEFAULT_TIMEZONE
from ..exceptions import InvalidPatternError
from .expander import next_occurrence
from .rule import Frequency, RecurrenceRule, load_zone
from .schemas import RecurrencePattern

logger = logging.getLogger(__name__)

# Which optional sets each frequency accepts
_ALLOWED_SETS = {
    Frequency.DAILY: set(),
    Frequency.WEEKLY: {"weekdays"},
    Frequency.MONTHLY: {"month_days"},
    Frequency.YEARLY: {"months", "month_days"},
}


@dataclass(frozen=True)
class CompiledPattern:
    rule: RecurrenceRule
    rrule_string: str
    first_occurrence: datetime  # naive UTC, at or after "now"


def _to_local(value: datetime, rule_zone: str) -> datetime:
    """Naive wall-clock time in rule_zone; aware datetimes are converted first"""
    if value.tzinfo is None:
        return value.replace(microsecond=0)
    return value.astimezone(load_zone(rule_zone)).replace(tzinfo=None, microsecond=0)


def _to_utc(value: datetime, rule_zone: str) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=load_zone(rule_zone))
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def build_rule(pattern: RecurrencePattern, default_timezone: str = DEFAULT_TIMEZONE) -> RecurrenceRule:
    """Canonicalize a validated pattern into a rule without checking for future occurrences"""
    zone_name = pattern.timezone or default_timezone
    load_zone(zone_name)

    allowed = _ALLOWED_SETS[pattern.frequency]
    for field_name in ("weekdays", "month_days", "months"):
        if getattr(pattern, field_name) and field_name not in allowed:
            raise InvalidPatternError(
                f"{field_name} is not supported for {pattern.frequency.value.lower()} patterns"
            )

    dtstart = _to_local(pattern.anchor, zone_name)
    until = _to_utc(pattern.until, zone_name) if pattern.until is not None else None

    rule = RecurrenceRule(
        frequency=pattern.frequency,
        dtstart=dtstart,
        timezone=zone_name,
        interval=pattern.interval,
        by_weekday=tuple(sorted(set(pattern.weekdays or ()))),
        by_month_day=tuple(sorted(set(pattern.month_days or ()))),
        by_month=tuple(sorted(set(pattern.months or ()))),
        until=until,
        count=pattern.count,
    )

    if until is not None and until < rule.to_utc(dtstart):
        raise InvalidPatternError("Recurrence end date is before the anchor")

    return rule


def parse_pattern(data: Union[RecurrencePattern, dict]) -> RecurrencePattern:
    if isinstance(data, RecurrencePattern):
        return data
    try:
        return RecurrencePattern.model_validate(data)
    except ValidationError as e:
        raise InvalidPatternError(str(e)) from e


def compile_pattern(
    data: Union[RecurrencePattern, dict],
    now: Optional[datetime] = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> CompiledPattern:
    """
    Validate and canonicalize a repetition pattern.

    Args:
        data: RecurrencePattern or a dict of its fields
        now: naive UTC reference time (defaults to the current time)
        default_timezone: zone used when the pattern names none

    Returns:
        CompiledPattern with the rule, its stored text and the first future instant

    Raises:
        InvalidPatternError: malformed values or no occurrence at or after now
    """
    pattern = parse_pattern(data)
    rule = build_rule(pattern, default_timezone)

    now = now or datetime.utcnow()
    first = next_occurrence(rule, (), now, inclusive=True)
    if first is None:
        raise InvalidPatternError("Invalid recurrence pattern: no future occurrences found")

    rrule_string = rule.to_rrule_string()
    logger.debug(f"📅 Compiled pattern {rrule_string!r}, first occurrence {first.isoformat()}")

    return CompiledPattern(rule=rule, rrule_string=rrule_string, first_occurrence=first)
