from datetime import datetime, timezone as dt_timezone
from types import SimpleNamespace

import pytest

from classes.services.billing_settings import ATTENDED_SESSIONS, SCHEDULED_SESSIONS
from classes.services.month_lock import (
    MonthLockedError,
    MonthLockPolicy,
    SessionState,
    affected_months,
    explain_month_lock,
    is_billing_impacting_change,
)

TZ = 'Europe/Berlin'
JAN_10 = datetime(2024, 1, 10, 17, 0, tzinfo=dt_timezone.utc)
JAN_12 = datetime(2024, 1, 12, 17, 0, tzinfo=dt_timezone.utc)
FEB_02 = datetime(2024, 2, 2, 17, 0, tzinfo=dt_timezone.utc)


class LockedMonths:
    """Repository stand-in: {month: basis} of runs that lock their month."""

    def __init__(self, runs):
        self.runs = runs

    def get_locking_run(self, month):
        basis = self.runs.get(month)
        if basis is None:
            return None
        strategy = 'ARREARS_PREVIOUS_MONTH' if basis == ATTENDED_SESSIONS else 'PREPAID_CURRENT_MONTH'
        return SimpleNamespace(month=month, billing_basis=basis, billing_month_strategy=strategy)


@pytest.mark.parametrize('before, after, basis, impacting', [
    (('PLANNED', JAN_10), ('DONE', JAN_10), ATTENDED_SESSIONS, True),
    (('DONE', JAN_10), ('PLANNED', JAN_10), ATTENDED_SESSIONS, True),
    (('PLANNED', JAN_10), ('DONE', JAN_10), SCHEDULED_SESSIONS, False),
    (('PLANNED', JAN_10), ('CANCELLED', JAN_10), SCHEDULED_SESSIONS, True),
    (('PLANNED', JAN_10), ('CANCELLED', JAN_10), ATTENDED_SESSIONS, False),
    (('PLANNED', JAN_10), ('PLANNED', JAN_12), SCHEDULED_SESSIONS, False),
    (('PLANNED', JAN_10), ('PLANNED', FEB_02), SCHEDULED_SESSIONS, True),
    (('PLANNED', JAN_10), ('PLANNED', FEB_02), ATTENDED_SESSIONS, True),
])
def test_billing_impact(before, after, basis, impacting):
    before_state = SessionState(starts_at=before[1], status=before[0])
    after_state = SessionState(starts_at=after[1], status=after[0])

    assert is_billing_impacting_change(before_state, after_state, basis, TZ) is impacting


def test_affected_months_lists_both_sides_of_a_move():
    before = SessionState(starts_at=JAN_10, status='PLANNED')

    assert affected_months(before, SessionState(starts_at=FEB_02, status='PLANNED'), TZ) == ['2024-01', '2024-02']
    assert affected_months(before, SessionState(starts_at=JAN_12, status='PLANNED'), TZ) == ['2024-01']


def test_scheduled_lock_blocks_new_sessions_but_not_attendance():
    policy = MonthLockPolicy(LockedMonths({'2024-01': SCHEDULED_SESSIONS}), TZ)

    with pytest.raises(MonthLockedError) as excinfo:
        policy.assert_session_create_allowed(JAN_10)

    assert excinfo.value.code == 'Classes:MonthLocked'
    assert excinfo.value.details['month'] == '2024-01'
    policy.assert_attendance_allowed(JAN_10)
    policy.assert_session_create_allowed(FEB_02)


def test_attended_lock_blocks_attendance_and_done_sessions():
    policy = MonthLockPolicy(LockedMonths({'2024-01': ATTENDED_SESSIONS}), TZ)

    with pytest.raises(MonthLockedError):
        policy.assert_attendance_allowed(JAN_10)
    with pytest.raises(MonthLockedError):
        policy.assert_session_create_allowed(JAN_10, 'DONE')
    policy.assert_session_create_allowed(JAN_10, 'PLANNED')


def test_moving_out_of_a_locked_month_is_refused():
    policy = MonthLockPolicy(LockedMonths({'2024-01': SCHEDULED_SESSIONS}), TZ)

    with pytest.raises(MonthLockedError):
        policy.assert_session_update_allowed(
            SessionState(starts_at=JAN_10, status='PLANNED'),
            SessionState(starts_at=FEB_02, status='PLANNED'),
        )


def test_moving_into_a_locked_month_is_refused():
    policy = MonthLockPolicy(LockedMonths({'2024-02': ATTENDED_SESSIONS}), TZ)

    with pytest.raises(MonthLockedError) as excinfo:
        policy.assert_session_update_allowed(
            SessionState(starts_at=JAN_10, status='DONE'),
            SessionState(starts_at=FEB_02, status='DONE'),
        )

    assert excinfo.value.month == '2024-02'


def test_public_message_explains_the_lock():
    assert 'attended sessions' in explain_month_lock('ARREARS_PREVIOUS_MONTH', '2024-01')
    assert 'from the schedule' in explain_month_lock('PREPAID_CURRENT_MONTH', '2024-01')

    error = MonthLockedError('2024-01', 'PREPAID_CURRENT_MONTH')
    assert error.public_message == explain_month_lock('PREPAID_CURRENT_MONTH', '2024-01')
