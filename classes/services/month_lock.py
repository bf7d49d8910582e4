"""
Month lock policy

Once a billing run for a month has created invoices, edits that would change
what gets invoiced for that month are refused. The decision uses the basis the
run was created with, not the workspace's current settings.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List

from core.exceptions import ForbiddenError

from .billing_period import month_key
from .billing_settings import ARREARS_PREVIOUS_MONTH, ATTENDED_SESSIONS, SCHEDULED_SESSIONS

logger = logging.getLogger(__name__)

LOCKING_STATUSES = ('INVOICES_CREATED', 'LOCKED')
SCHEDULED_STATUSES = ('PLANNED', 'DONE')


def explain_month_lock(strategy: str, month: str) -> str:
    if strategy == ARREARS_PREVIOUS_MONTH:
        return (
            f"Invoices for {month} have already been created from attended sessions. "
            f"Attendance and other billing-relevant changes for this month are frozen."
        )
    return (
        f"Invoices for {month} have already been created from the schedule. "
        f"Adding, moving or cancelling sessions in this month is frozen; "
        f"attendance and marking sessions as done remain open."
    )


class MonthLockedError(ForbiddenError):
    """Raised when an edit would change an already invoiced month."""

    def __init__(self, month: str, strategy: str):
        super().__init__(
            f"Billing month {month} is locked",
            code='Classes:MonthLocked',
            public_message=explain_month_lock(strategy, month),
            details={'month': month, 'billingMonthStrategy': strategy},
        )
        self.month = month
        self.strategy = strategy


@dataclass(frozen=True)
class SessionState:
    """The billing-relevant part of a session."""
    starts_at: datetime
    status: str


def is_billing_impacting_change(before: SessionState, after: SessionState, basis: str, tz) -> bool:
    """
    A change impacts billing when it moves the session to another month, or
    flips whether the session counts: scheduled-ness under SCHEDULED_SESSIONS,
    done-ness under ATTENDED_SESSIONS.
    """
    if month_key(before.starts_at, tz) != month_key(after.starts_at, tz):
        return True
    if basis == SCHEDULED_SESSIONS:
        return (before.status in SCHEDULED_STATUSES) != (after.status in SCHEDULED_STATUSES)
    return (before.status == 'DONE') != (after.status == 'DONE')


def affected_months(before: SessionState, after: SessionState, tz) -> List[str]:
    months = [month_key(before.starts_at, tz)]
    after_month = month_key(after.starts_at, tz)
    if after_month not in months:
        months.append(after_month)
    return months


class MonthLockPolicy:
    """
    Checks session and attendance edits against the workspace's billing runs.

    Usage:
        policy = MonthLockPolicy(repository, tz)
        policy.assert_session_update_allowed(before, after)
    """

    def __init__(self, repository, tz):
        self.repository = repository
        self.tz = tz

    def assert_session_create_allowed(self, starts_at: datetime, status: str = 'PLANNED'):
        month = month_key(starts_at, self.tz)
        run = self.repository.get_locking_run(month)
        if run is None:
            return
        blocked = run.billing_basis == SCHEDULED_SESSIONS or (
            run.billing_basis == ATTENDED_SESSIONS and status == 'DONE'
        )
        if blocked:
            logger.info(f"Refused session creation in locked month {month}")
            raise MonthLockedError(month, run.billing_month_strategy)

    def assert_session_update_allowed(self, before: SessionState, after: SessionState):
        for month in affected_months(before, after, self.tz):
            run = self.repository.get_locking_run(month)
            if run is None:
                continue
            if is_billing_impacting_change(before, after, run.billing_basis, self.tz):
                logger.info(f"Refused billing-impacting session change in locked month {month}")
                raise MonthLockedError(month, run.billing_month_strategy)

    def assert_attendance_allowed(self, session_starts_at: datetime):
        month = month_key(session_starts_at, self.tz)
        run = self.repository.get_locking_run(month)
        if run is not None and run.billing_basis == ATTENDED_SESSIONS:
            logger.info(f"Refused attendance change in locked month {month}")
            raise MonthLockedError(month, run.billing_month_strategy)

