from datetime import date, datetime, timezone as dt_timezone
from zoneinfo import ZoneInfo

from classes.services.recurrence import (
    generate_scheduled_session_starts_for_month,
    generate_scheduled_session_starts_for_range,
)

from .conftest import WEEKLY_MO_WE_FR

BERLIN = ZoneInfo('Europe/Berlin')


def _local(starts):
    return [start.astimezone(BERLIN) for start in starts]


def test_weekly_pattern_produces_mon_wed_fri_of_january():
    starts = generate_scheduled_session_starts_for_month(WEEKLY_MO_WE_FR, '2024-01', 'Europe/Berlin')

    local = _local(starts)
    assert [start.day for start in local] == [1, 3, 5, 8, 10, 12, 15, 17, 19, 22, 24, 26, 29, 31]
    assert all(start.weekday() in (0, 2, 4) for start in local)
    assert all((start.hour, start.minute) == (18, 0) for start in local)
    assert all(start.month == 1 for start in local)
    assert starts[0] == datetime(2024, 1, 1, 17, 0, tzinfo=dt_timezone.utc)


def test_expansion_is_sorted_and_deterministic():
    first = generate_scheduled_session_starts_for_month(WEEKLY_MO_WE_FR, '2024-03', 'Europe/Berlin')
    second = generate_scheduled_session_starts_for_month(WEEKLY_MO_WE_FR, '2024-03', 'Europe/Berlin')

    assert first == second
    assert first == sorted(set(first))


def test_monthly_last_friday_of_february():
    pattern = {
        'recurrence': {
            'frequency': 'MONTHLY',
            'interval': 1,
            'monthly': {'mode': 'WEEKDAY_OF_MONTH', 'week': -1, 'weekday': 'FR'},
        },
        'time': '18:00',
    }

    starts = generate_scheduled_session_starts_for_month(pattern, '2024-02', 'Europe/Berlin')

    assert _local(starts) == [datetime(2024, 2, 23, 18, 0, tzinfo=BERLIN)]


def test_monthly_day_of_month_skips_short_months():
    pattern = {
        'recurrence': {'frequency': 'MONTHLY', 'monthly': {'mode': 'DAY_OF_MONTH', 'day': 31}},
        'startsOn': '2024-01-01',
        'time': '12:00',
    }

    assert generate_scheduled_session_starts_for_month(pattern, '2024-02', 'Europe/Berlin') == []
    assert len(generate_scheduled_session_starts_for_month(pattern, '2024-03', 'Europe/Berlin')) == 1


def test_after_count_stops_before_target_month():
    pattern = {
        'recurrence': {'frequency': 'DAILY', 'interval': 1},
        'startsOn': '2024-01-01',
        'time': '09:00',
        'ends': {'type': 'AFTER', 'count': 3},
    }

    assert generate_scheduled_session_starts_for_month(pattern, '2024-02', 'Europe/Berlin') == []
    january = generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin')
    assert [start.astimezone(BERLIN).day for start in january] == [1, 2, 3]


def test_on_date_end_rule_is_inclusive():
    pattern = {
        'recurrence': {'frequency': 'DAILY'},
        'startsOn': '2024-01-01',
        'time': '09:00',
        'ends': {'type': 'ON_DATE', 'date': '2024-01-03'},
    }

    starts = generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin')

    assert len(starts) == 3


def test_biweekly_counts_weeks_from_start_week():
    pattern = {
        'recurrence': {'frequency': 'WEEKLY', 'interval': 2, 'daysOfWeek': ['WE']},
        'startsOn': '2024-01-03',
        'time': '18:00',
    }

    starts = generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin')

    assert [start.astimezone(BERLIN).day for start in starts] == [3, 17, 31]


def test_yearly_pattern():
    pattern = {
        'recurrence': {'frequency': 'YEARLY', 'yearly': {'month': 3, 'day': 15}},
        'startsOn': '2023-03-15',
        'time': '10:00',
    }

    assert len(generate_scheduled_session_starts_for_month(pattern, '2024-03', 'Europe/Berlin')) == 1
    assert generate_scheduled_session_starts_for_month(pattern, '2024-04', 'Europe/Berlin') == []


def test_missing_starts_on_begins_with_the_month():
    pattern = {'recurrence': {'frequency': 'DAILY', 'interval': 10}, 'time': '09:00'}

    starts = generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin')

    assert [start.astimezone(BERLIN).day for start in starts] == [1, 11, 21, 31]


def test_occurrence_count_without_start_date_yields_nothing():
    pattern = {'recurrence': {'frequency': 'DAILY'}, 'time': '09:00', 'ends': {'type': 'AFTER', 'count': 3}}

    assert generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin') == []
    assert generate_scheduled_session_starts_for_month(pattern, '2024-02', 'Europe/Berlin') == []


def test_pattern_without_time_yields_nothing():
    pattern = {'recurrence': {'frequency': 'DAILY'}}

    assert generate_scheduled_session_starts_for_month(pattern, '2024-01', 'Europe/Berlin') == []


def test_summer_time_offset_applies():
    starts = generate_scheduled_session_starts_for_month(WEEKLY_MO_WE_FR, '2024-07', 'Europe/Berlin')

    assert starts[0] == datetime(2024, 7, 1, 16, 0, tzinfo=dt_timezone.utc)


def test_dst_gap_resolves_after_the_jump():
    pattern = {'recurrence': {'frequency': 'DAILY'}, 'startsOn': '2024-03-30', 'time': '02:30'}

    starts = generate_scheduled_session_starts_for_range(pattern, date(2024, 3, 31), date(2024, 3, 31), 'Europe/Berlin')

    assert starts == [datetime(2024, 3, 31, 1, 30, tzinfo=dt_timezone.utc)]
    assert starts[0].astimezone(BERLIN).hour == 3


def test_dst_overlap_uses_first_occurrence():
    pattern = {'recurrence': {'frequency': 'DAILY'}, 'startsOn': '2024-10-01', 'time': '02:30'}

    starts = generate_scheduled_session_starts_for_range(pattern, date(2024, 10, 27), date(2024, 10, 27), 'Europe/Berlin')

    assert starts == [datetime(2024, 10, 27, 0, 30, tzinfo=dt_timezone.utc)]


def test_range_expansion_is_inclusive():
    starts = generate_scheduled_session_starts_for_range(
        WEEKLY_MO_WE_FR, date(2024, 1, 8), date(2024, 1, 12), 'Europe/Berlin'
    )

    assert [start.astimezone(BERLIN).day for start in starts] == [8, 10, 12]
