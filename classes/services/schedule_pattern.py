"""
Schedule Pattern

Typed view of the schedule_pattern JSON stored on a class group.

Stored shape:
    {
        "version": 1,
        "recurrence": {
            "frequency": "WEEKLY",            # DAILY | WEEKLY | MONTHLY | YEARLY
            "interval": 1,
            "daysOfWeek": ["MO", "WE"],       # WEEKLY
            "monthly": {"mode": "WEEKDAY_OF_MONTH", "week": -1, "weekday": "FR"},
            "yearly": {"month": 3, "day": 15},
        },
        "startsOn": "2024-01-01",
        "time": "18:00",
        "ends": {"type": "AFTER", "count": 10},
    }

The legacy shape {"weekday": [...], "time": ..., "startsOn": ...} is read as a
weekly pattern with interval 1.
"""
import re
from dataclasses import dataclass, field
from datetime import date, time
from typing import List, Optional, Tuple

from core.exceptions import ValidationFailedError, issue

FREQUENCIES = ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY')
MONTHLY_MODES = ('DAY_OF_MONTH', 'WEEKDAY_OF_MONTH')
ENDS_TYPES = ('NEVER', 'ON_DATE', 'AFTER')

# Index matches date.weekday()
WEEKDAY_CODES = ('MO', 'TU', 'WE', 'TH', 'FR', 'SA', 'SU')

_WEEKDAY_NAMES = {
    'mon': 0, 'monday': 0,
    'tue': 1, 'tuesday': 1,
    'wed': 2, 'wednesday': 2,
    'thu': 3, 'thursday': 3,
    'fri': 4, 'friday': 4,
    'sat': 5, 'saturday': 5,
    'sun': 6, 'sunday': 6,
}

# Integer weekdays in stored patterns count from Sunday = 0
_SUNDAY_FIRST = (6, 0, 1, 2, 3, 4, 5)

_TIME_RE = re.compile(r'^(\d{1,2}):(\d{2})$')
_DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}')


@dataclass(frozen=True)
class MonthlyRule:
    mode: str
    day: Optional[int] = None
    week: Optional[int] = None
    weekday: Optional[int] = None


@dataclass(frozen=True)
class YearlyRule:
    month: int
    day: int


@dataclass(frozen=True)
class EndsRule:
    type: str = 'NEVER'
    date: Optional[date] = None
    count: Optional[int] = None


@dataclass(frozen=True)
class Recurrence:
    frequency: str
    interval: int = 1
    days_of_week: Tuple[int, ...] = ()
    monthly: Optional[MonthlyRule] = None
    yearly: Optional[YearlyRule] = None


@dataclass(frozen=True)
class SchedulePattern:
    recurrence: Recurrence
    time: time
    starts_on: Optional[date] = None
    ends: EndsRule = field(default_factory=EndsRule)

    def to_dict(self) -> dict:
        """Canonical JSON form stored on the class group."""
        recurrence = {
            'frequency': self.recurrence.frequency,
            'interval': self.recurrence.interval,
        }
        if self.recurrence.frequency == 'WEEKLY':
            recurrence['daysOfWeek'] = [WEEKDAY_CODES[d] for d in self.recurrence.days_of_week]
        if self.recurrence.monthly:
            monthly = self.recurrence.monthly
            if monthly.mode == 'DAY_OF_MONTH':
                recurrence['monthly'] = {'mode': monthly.mode, 'day': monthly.day}
            else:
                recurrence['monthly'] = {
                    'mode': monthly.mode,
                    'week': monthly.week,
                    'weekday': WEEKDAY_CODES[monthly.weekday],
                }
        if self.recurrence.yearly:
            recurrence['yearly'] = {
                'month': self.recurrence.yearly.month,
                'day': self.recurrence.yearly.day,
            }

        data = {
            'version': 1,
            'recurrence': recurrence,
            'time': self.time.strftime('%H:%M'),
        }
        if self.starts_on:
            data['startsOn'] = self.starts_on.isoformat()
        if self.ends.type == 'ON_DATE':
            data['ends'] = {'type': 'ON_DATE', 'date': self.ends.date.isoformat()}
        elif self.ends.type == 'AFTER':
            data['ends'] = {'type': 'AFTER', 'count': self.ends.count}
        return data


# =====================================================
# SCALAR PARSERS
# =====================================================

def parse_weekday(value) -> Optional[int]:
    """Weekday code, name or Sunday-first integer -> date.weekday() index."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        if 0 <= value <= 6:
            return _SUNDAY_FIRST[value]
        if value == 7:
            return 6
        return None
    if isinstance(value, str):
        key = value.strip()
        if key.upper() in WEEKDAY_CODES:
            return WEEKDAY_CODES.index(key.upper())
        return _WEEKDAY_NAMES.get(key.lower())
    return None


def parse_time(value) -> Optional[time]:
    if not isinstance(value, str):
        return None
    match = _TIME_RE.match(value.strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def parse_date(value) -> Optional[date]:
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not _DATE_RE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# =====================================================
# STRUCTURE PARSERS
# =====================================================

def _parse_weekdays(raw, member: str, issues: List[dict]) -> Tuple[int, ...]:
    if not isinstance(raw, list) or not raw:
        issues.append(issue('At least one weekday is required', member))
        return ()
    days = []
    for entry in raw:
        weekday = parse_weekday(entry)
        if weekday is None:
            issues.append(issue(f"Unknown weekday {entry!r}", member))
        elif weekday not in days:
            days.append(weekday)
    return tuple(sorted(days))


def _parse_monthly(raw, issues: List[dict]) -> Optional[MonthlyRule]:
    if not isinstance(raw, dict) or raw.get('mode') not in MONTHLY_MODES:
        issues.append(issue('Monthly recurrence needs mode DAY_OF_MONTH or WEEKDAY_OF_MONTH', 'recurrence.monthly.mode'))
        return None

    if raw['mode'] == 'DAY_OF_MONTH':
        day = raw.get('day')
        if not _is_int(day) or not 1 <= day <= 31:
            issues.append(issue('Day of month must be between 1 and 31', 'recurrence.monthly.day'))
            return None
        return MonthlyRule(mode='DAY_OF_MONTH', day=day)

    week = raw.get('week')
    weekday = parse_weekday(raw.get('weekday'))
    if not _is_int(week) or week not in (1, 2, 3, 4, 5, -1):
        issues.append(issue('Week must be 1-5 or -1 (last)', 'recurrence.monthly.week'))
        return None
    if weekday is None:
        issues.append(issue(f"Unknown weekday {raw.get('weekday')!r}", 'recurrence.monthly.weekday'))
        return None
    return MonthlyRule(mode='WEEKDAY_OF_MONTH', week=week, weekday=weekday)


def _parse_yearly(raw, issues: List[dict]) -> Optional[YearlyRule]:
    if not isinstance(raw, dict):
        issues.append(issue('Yearly recurrence needs month and day', 'recurrence.yearly'))
        return None
    month, day = raw.get('month'), raw.get('day')
    if not _is_int(month) or not 1 <= month <= 12:
        issues.append(issue('Month must be between 1 and 12', 'recurrence.yearly.month'))
        return None
    if not _is_int(day) or not 1 <= day <= 31:
        issues.append(issue('Day must be between 1 and 31', 'recurrence.yearly.day'))
        return None
    return YearlyRule(month=month, day=day)


def _parse_recurrence(raw: dict, issues: List[dict]) -> Optional[Recurrence]:
    frequency = raw.get('frequency')
    if frequency not in FREQUENCIES:
        issues.append(issue(f"Unknown frequency {frequency!r}", 'recurrence.frequency'))
        return None

    interval = raw.get('interval', 1)
    if interval is None:
        interval = 1
    if not _is_int(interval) or interval < 1:
        issues.append(issue('Interval must be a positive integer', 'recurrence.interval'))
        return None

    days_of_week = ()
    monthly = yearly = None
    if frequency == 'WEEKLY':
        days_of_week = _parse_weekdays(raw.get('daysOfWeek'), 'recurrence.daysOfWeek', issues)
    elif frequency == 'MONTHLY':
        monthly = _parse_monthly(raw.get('monthly'), issues)
    elif frequency == 'YEARLY':
        yearly = _parse_yearly(raw.get('yearly'), issues)

    return Recurrence(
        frequency=frequency,
        interval=interval,
        days_of_week=days_of_week,
        monthly=monthly,
        yearly=yearly,
    )


def _parse_ends(raw, issues: List[dict]) -> EndsRule:
    if raw is None:
        return EndsRule()
    if not isinstance(raw, dict) or raw.get('type', 'NEVER') not in ENDS_TYPES:
        issues.append(issue('Ends type must be NEVER, ON_DATE or AFTER', 'ends.type'))
        return EndsRule()

    ends_type = raw.get('type', 'NEVER')
    if ends_type == 'ON_DATE':
        end_date = parse_date(raw.get('date'))
        if end_date is None:
            issues.append(issue('End date must be YYYY-MM-DD', 'ends.date'))
            return EndsRule()
        return EndsRule(type='ON_DATE', date=end_date)
    if ends_type == 'AFTER':
        count = raw.get('count')
        if not _is_int(count) or count < 1:
            issues.append(issue('Occurrence count must be a positive integer', 'ends.count'))
            return EndsRule()
        return EndsRule(type='AFTER', count=count)
    return EndsRule()


def _parse_pattern(raw: dict, time_of_day: time, issues: List[dict]) -> Optional[SchedulePattern]:
    starts_on = None
    if raw.get('startsOn'):
        starts_on = parse_date(raw['startsOn'])
        if starts_on is None:
            issues.append(issue('Start date must be YYYY-MM-DD', 'startsOn'))

    if isinstance(raw.get('weekday'), list):
        days = _parse_weekdays(raw['weekday'], 'weekday', issues)
        recurrence = Recurrence(frequency='WEEKLY', interval=1, days_of_week=days)
    else:
        recurrence = _parse_recurrence(raw['recurrence'], issues)

    ends = _parse_ends(raw.get('ends'), issues)
    if issues or recurrence is None:
        return None
    return SchedulePattern(recurrence=recurrence, time=time_of_day, starts_on=starts_on, ends=ends)


def _has_recurrence(raw: dict) -> bool:
    return isinstance(raw.get('recurrence'), dict) or isinstance(raw.get('weekday'), list)


def _counts_from_start(pattern: SchedulePattern) -> bool:
    """Cadence or end count that is only well defined from a fixed start date."""
    return pattern.ends.type == 'AFTER' or pattern.recurrence.interval > 1


# =====================================================
# BOUNDARIES
# =====================================================

def decode_schedule_pattern(raw) -> Optional[SchedulePattern]:
    """
    Read a stored pattern. Returns None when there is nothing to schedule
    (no pattern, no recurrence, missing or malformed time); raises
    ValidationFailedError for a recurrence that is structurally invalid.
    """
    if isinstance(raw, SchedulePattern):
        return raw
    if not isinstance(raw, dict) or not _has_recurrence(raw):
        return None
    time_of_day = parse_time(raw.get('time'))
    if time_of_day is None:
        return None

    issues = []
    pattern = _parse_pattern(raw, time_of_day, issues)
    if pattern is None:
        raise ValidationFailedError(
            'Invalid schedule pattern',
            issues=issues,
            code='Classes:InvalidSchedulePattern',
        )
    return pattern


def validate_schedule_pattern(raw) -> Optional[dict]:
    """
    Strict check used before a pattern is saved. Returns the canonical form
    (None clears the pattern) or raises ValidationFailedError listing every issue.
    """
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationFailedError(
            'Schedule pattern must be an object',
            issues=[issue('Schedule pattern must be an object', 'schedulePattern')],
            code='Classes:InvalidSchedulePattern',
        )

    issues = []
    time_of_day = parse_time(raw.get('time'))
    if time_of_day is None:
        issues.append(issue('Time must be HH:MM', 'time'))
    if not _has_recurrence(raw):
        issues.append(issue('Recurrence is required', 'recurrence'))

    pattern = None
    if _has_recurrence(raw):
        pattern = _parse_pattern(raw, time_of_day or time(0, 0), issues)
        if pattern is not None and pattern.starts_on is None and _counts_from_start(pattern):
            issues.append(issue('Start date is required for an interval or an occurrence count', 'startsOn'))

    if issues or pattern is None:
        raise ValidationFailedError(
            'Invalid schedule pattern',
            issues=issues,
            code='Classes:InvalidSchedulePattern',
        )
    return pattern.to_dict()


def weekly_pattern(weekdays, time_of_day: time, starts_on: date = None) -> SchedulePattern:
    """Build a weekly pattern from weekday codes/indexes without storing it."""
    issues = []
    days = _parse_weekdays(list(weekdays), 'weekdays', issues)
    if issues:
        raise ValidationFailedError('Invalid weekdays', issues=issues, code='Classes:InvalidSchedulePattern')
    return SchedulePattern(
        recurrence=Recurrence(frequency='WEEKLY', interval=1, days_of_week=days),
        time=time_of_day,
        starts_on=starts_on,
    )
