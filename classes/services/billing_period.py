"""
Billing period helpers

Billing months are "YYYY-MM" keys interpreted in the workspace's billing
timezone (CLASSES_BILLING_TIMEZONE unless the workspace sets its own).
"""
import re
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from django.conf import settings

from core.exceptions import ValidationFailedError, issue

from .billing_settings import ARREARS_PREVIOUS_MONTH

MONTH_KEY_RE = re.compile(r'^\d{4}-\d{2}$')


def get_zone(tz) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError, TypeError):
        raise ValidationFailedError(
            f"Unknown timezone {tz!r}",
            issues=[issue(f"Unknown timezone {tz!r}", 'timezone')],
            code='Classes:InvalidTimezone',
        )


def resolve_billing_timezone(workspace=None) -> str:
    if workspace is not None:
        return workspace.billing_timezone
    return settings.CLASSES_BILLING_TIMEZONE


def normalize_billing_month(value) -> str:
    """Validate a month key; raises ValidationFailedError unless it is YYYY-MM."""
    month = value.strip() if isinstance(value, str) else value
    if not isinstance(month, str) or not MONTH_KEY_RE.match(month) or not 1 <= int(month[5:]) <= 12:
        raise ValidationFailedError(
            f"Invalid billing month {value!r}",
            issues=[issue('Month must be in YYYY-MM format', 'month')],
            code='Classes:InvalidMonth',
        )
    return month


def month_first_day(month: str) -> date:
    month = normalize_billing_month(month)
    return date(int(month[:4]), int(month[5:]), 1)


def month_dates(month: str) -> Tuple[date, date]:
    """First and last local calendar date of a month."""
    first = month_first_day(month)
    return first, first + relativedelta(months=1) - timedelta(days=1)


def month_key(instant: datetime, tz) -> str:
    return instant.astimezone(get_zone(tz)).strftime('%Y-%m')


def month_range(month: str, tz) -> Tuple[datetime, datetime]:
    """
    UTC bounds of a month: local midnight of the 1st through one millisecond
    before local midnight of the next month's 1st. Both ends are inclusive.
    """
    zone = get_zone(tz)
    first = month_first_day(month)
    start = datetime.combine(first, datetime.min.time(), tzinfo=zone)
    next_start = datetime.combine(first + relativedelta(months=1), datetime.min.time(), tzinfo=zone)
    return (
        start.astimezone(dt_timezone.utc),
        (next_start - timedelta(milliseconds=1)).astimezone(dt_timezone.utc),
    )


def add_months(month: str, count: int) -> str:
    return (month_first_day(month) + relativedelta(months=count)).strftime('%Y-%m')


def default_billing_month(strategy: str, now: datetime, tz) -> str:
    """Month a billing run is normally made for: current when prepaid, previous in arrears."""
    current = month_key(now, tz)
    if strategy == ARREARS_PREVIOUS_MONTH:
        return add_months(current, -1)
    return current
