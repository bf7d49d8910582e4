"""
Recurrence expander

Turns a class group's schedule pattern into concrete session start instants.
Expansion walks local calendar dates one day at a time, so results are sorted,
free of duplicates and identical on every call for the same input.
"""
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import List, Optional

from .billing_period import get_zone, month_dates
from .schedule_pattern import SchedulePattern, decode_schedule_pattern


def _months_between(start: date, day: date) -> int:
    return (day.year - start.year) * 12 + (day.month - start.month)


def _is_last_weekday_of_month(day: date) -> bool:
    return (day + timedelta(days=7)).month != day.month


def matches(pattern: SchedulePattern, day: date, starts_on: date) -> bool:
    """Whether the pattern has an occurrence on a local date (ignoring end rules)."""
    recurrence = pattern.recurrence
    interval = recurrence.interval

    if recurrence.frequency == 'DAILY':
        return (day - starts_on).days % interval == 0

    if recurrence.frequency == 'WEEKLY':
        if day.weekday() not in recurrence.days_of_week:
            return False
        week_start = starts_on - timedelta(days=starts_on.weekday())
        return ((day - week_start).days // 7) % interval == 0

    if recurrence.frequency == 'MONTHLY':
        rule = recurrence.monthly
        if rule is None or _months_between(starts_on, day) % interval != 0:
            return False
        if rule.mode == 'DAY_OF_MONTH':
            return day.day == rule.day
        if day.weekday() != rule.weekday:
            return False
        if rule.week == -1:
            return _is_last_weekday_of_month(day)
        return (day.day - 1) // 7 + 1 == rule.week

    if recurrence.frequency == 'YEARLY':
        rule = recurrence.yearly
        if rule is None or (day.month, day.day) != (rule.month, rule.day):
            return False
        return (day.year - starts_on.year) % interval == 0

    return False


def _to_instant(day: date, pattern: SchedulePattern, zone) -> datetime:
    # fold=0: a skipped local time lands after the DST jump, a repeated one on its first pass
    local = datetime.combine(day, pattern.time, tzinfo=zone)
    return local.astimezone(dt_timezone.utc)


def expand_pattern(raw_pattern, window_start: date, window_end: date, tz) -> List[datetime]:
    """
    Start instants (UTC) of every occurrence whose local date falls within
    [window_start, window_end]. An AFTER end rule counts occurrences from the
    pattern's start date, including those before the window; without a start
    date it yields nothing.
    """
    pattern: Optional[SchedulePattern] = decode_schedule_pattern(raw_pattern)
    if pattern is None or window_end < window_start:
        return []

    counting = pattern.ends.type == 'AFTER'
    if counting and pattern.starts_on is None:
        # an occurrence count has no origin to count from
        return []

    zone = get_zone(tz)
    starts_on = pattern.starts_on or window_start
    last_day = window_end
    if pattern.ends.type == 'ON_DATE' and pattern.ends.date:
        last_day = min(last_day, pattern.ends.date)

    day = starts_on if counting else max(starts_on, window_start)
    occurrences = 0
    results = []

    while day <= last_day:
        if matches(pattern, day, starts_on):
            occurrences += 1
            if counting and occurrences > pattern.ends.count:
                break
            if day >= window_start:
                results.append(_to_instant(day, pattern, zone))
        day += timedelta(days=1)

    return results


def generate_scheduled_session_starts_for_month(raw_pattern, month: str, tz) -> List[datetime]:
    """Session starts of one billing month ("YYYY-MM") in the given timezone."""
    first, last = month_dates(month)
    return expand_pattern(raw_pattern, first, last, tz)


def generate_scheduled_session_starts_for_range(raw_pattern, start_date: date, end_date: date, tz) -> List[datetime]:
    """Session starts between two local dates, both inclusive."""
    return expand_pattern(raw_pattern, start_date, end_date, tz)
