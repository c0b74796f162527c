"""
Occurrence expansion

Pure functions over a RecurrenceRule: no clock reads, no storage access.
All instants going in and out are naive UTC; exception dates are local
calendar dates in the rule's timezone.
"""

import calendar
from datetime import date, datetime, time, timedelta
from typing import Iterable, Iterator, Optional

from .rule import Frequency, RecurrenceRule

# Consecutive periods without a single candidate before expansion gives up.
# Only reachable for rules that can never match (e.g. 30 February).
MAX_EMPTY_PERIODS = 1000


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _first_period(rule: RecurrenceRule, from_day: Optional[date]) -> int:
    """Index of the earliest period that can contain `from_day`"""
    if from_day is None or rule.count is not None:
        # COUNT is defined from DTSTART, so counting must start at period zero
        return 0

    anchor = rule.dtstart.date()
    if from_day <= anchor:
        return 0

    if rule.frequency == Frequency.DAILY:
        elapsed = (from_day - anchor).days
    elif rule.frequency == Frequency.WEEKLY:
        elapsed = (_week_start(from_day) - _week_start(anchor)).days // 7
    elif rule.frequency == Frequency.MONTHLY:
        elapsed = (from_day.year - anchor.year) * 12 + from_day.month - anchor.month
    else:
        elapsed = from_day.year - anchor.year

    return max(0, elapsed // rule.interval)


def _period_dates(rule: RecurrenceRule, period: int) -> list[date]:
    """Candidate calendar dates in one period, ascending"""
    anchor = rule.dtstart.date()
    step = period * rule.interval

    if rule.frequency == Frequency.DAILY:
        return [anchor + timedelta(days=step)]

    if rule.frequency == Frequency.WEEKLY:
        monday = _week_start(anchor) + timedelta(weeks=step)
        weekdays = rule.by_weekday or (anchor.weekday(),)
        return [monday + timedelta(days=weekday) for weekday in sorted(weekdays)]

    if rule.frequency == Frequency.MONTHLY:
        year, month = _add_months(anchor.year, anchor.month, step)
        months = [(year, month)]
    else:
        year = anchor.year + step
        months = [(year, m) for m in sorted(rule.by_month or (anchor.month,))]

    days = sorted(rule.by_month_day or (anchor.day,))
    dates = []
    for year, month in months:
        last_day = calendar.monthrange(year, month)[1]
        # Days that do not exist in this month are skipped, never rounded
        dates.extend(date(year, month, day) for day in days if day <= last_day)
    return dates


def iter_local_occurrences(
    rule: RecurrenceRule, from_day: Optional[date] = None
) -> Iterator[datetime]:
    """
    Yield local wall-clock occurrences in ascending order, honouring COUNT and UNTIL.

    `from_day` lets expansion skip whole periods that end before that local date
    when the rule has no COUNT.
    """
    period = _first_period(rule, from_day)
    emitted = 0
    empty_periods = 0
    time_of_day: time = rule.dtstart.time()

    while empty_periods < MAX_EMPTY_PERIODS:
        try:
            dates = _period_dates(rule, period)
        except (ValueError, OverflowError):
            # Ran past the last representable year
            return

        produced = False
        for day in dates:
            local = datetime.combine(day, time_of_day)
            if local < rule.dtstart:
                continue
            if rule.until is not None and rule.to_utc(local) > rule.until:
                return
            produced = True
            yield local
            emitted += 1
            if rule.count is not None and emitted >= rule.count:
                return

        empty_periods = 0 if produced else empty_periods + 1
        period += 1


def expand(
    rule: RecurrenceRule,
    exceptions: Iterable[date],
    window_start: datetime,
    window_end: datetime,
    max_count: Optional[int] = None,
) -> list[datetime]:
    """
    Occurrences of `rule` within [window_start, window_end], skipping exception dates.

    Returns naive UTC instants, strictly increasing, truncated at max_count.
    Calling it twice with the same arguments returns the same list.
    """
    if max_count is not None and max_count <= 0:
        return []
    if window_end < window_start:
        return []

    excluded = set(exceptions)
    from_day = rule.to_local(window_start).date() - timedelta(days=1)
    instants: list[datetime] = []

    for local in iter_local_occurrences(rule, from_day):
        instant = rule.to_utc(local)
        if instant > window_end:
            break
        if instant < window_start or local.date() in excluded:
            continue
        if instants and instant <= instants[-1]:
            # Repeated wall-clock time across a DST fold maps to the same instant
            continue
        instants.append(instant)
        if max_count is not None and len(instants) >= max_count:
            break

    return instants


def next_occurrence(
    rule: RecurrenceRule,
    exceptions: Iterable[date],
    after: datetime,
    inclusive: bool = False,
) -> Optional[datetime]:
    """First occurrence after `after` (or at it, when inclusive) that is not an exception"""
    excluded = set(exceptions)
    from_day = rule.to_local(after).date() - timedelta(days=1)

    for local in iter_local_occurrences(rule, from_day):
        instant = rule.to_utc(local)
        if instant < after or (instant == after and not inclusive):
            continue
        if local.date() in excluded:
            continue
        return instant
    return None


def occurs_on(rule: RecurrenceRule, day: date) -> Optional[datetime]:
    """The rule's instant on a local calendar date, ignoring exceptions, or None"""
    day_start = rule.to_utc(datetime.combine(day, time.min))
    day_end = rule.to_utc(datetime.combine(day + timedelta(days=1), time.min))
    matches = expand(rule, (), day_start, day_end - timedelta(microseconds=1), max_count=1)
    return matches[0] if matches else None


def local_date(rule: RecurrenceRule, instant: datetime) -> date:
    """Local calendar date of a naive UTC instant in the rule's timezone"""
    return rule.to_local(instant).date()
