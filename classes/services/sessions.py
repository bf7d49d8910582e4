"""
Class Session Service

Creating, editing and generating class sessions, and recording attendance.
Every billing-relevant write is checked against the month lock policy.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.exceptions import ConflictError, ValidationFailedError, issue
from core.services.audit import AuditService
from classes.models import ClassAttendance, ClassSession

from .billing_period import get_zone, month_key, resolve_billing_timezone
from .billing_settings import AUTO_FULL, ClassesSettingsRepository
from .month_lock import MonthLockedError, MonthLockPolicy, SessionState
from .recurrence import generate_scheduled_session_starts_for_range
from .repository import ClassesRepository
from .schedule_pattern import weekly_pattern

logger = logging.getLogger(__name__)

SESSION_STATUSES = [choice[0] for choice in ClassSession.STATUS_CHOICES]
EDITABLE_FIELDS = ('starts_at', 'ends_at', 'status', 'topic', 'notes')


@dataclass
class AttendanceInput:
    enrollment_id: str
    status: str
    billable: Optional[bool] = None
    note: str = ''


@dataclass
class SessionGenerationResult:
    created: List[ClassSession] = field(default_factory=list)
    existing: int = 0
    skipped_locked_months: List[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)


def default_billable(status: str) -> bool:
    return ClassAttendance.BILLABLE_BY_STATUS.get(status, False)


class ClassSessionService:
    """
    Session and attendance use-cases for one workspace.

    Usage:
        service = ClassSessionService(workspace, user=request.user)
        session = service.create_session(group, starts_at)
        service.update_session(session, status='DONE')
    """

    def __init__(self, workspace, user=None, repository=None, settings_repository=None,
                 audit=None):
        self.workspace = workspace
        self.user = user
        self.repository = repository or ClassesRepository(workspace)
        self.settings_repository = settings_repository or ClassesSettingsRepository()
        self.audit = audit or AuditService()
        self.tz = resolve_billing_timezone(workspace)
        self.lock_policy = MonthLockPolicy(self.repository, self.tz)

    # ===== SINGLE SESSIONS =====

    def create_session(self, class_group, starts_at: datetime, ends_at: datetime = None,
                       status: str = 'PLANNED', topic: str = '', notes: str = '') -> ClassSession:
        self._validate_times(starts_at, ends_at)
        self._validate_status(status)
        self.lock_policy.assert_session_create_allowed(starts_at, status)

        if ends_at is None:
            ends_at = starts_at + timedelta(minutes=class_group.default_session_duration_minutes)

        try:
            with transaction.atomic():
                session = ClassSession.objects.create(
                    tenant_id=self.workspace.tenant_id,
                    workspace=self.workspace,
                    class_group=class_group,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    status=status,
                    topic=topic,
                    notes=notes,
                    created_by=self.user,
                )
        except IntegrityError:
            raise ConflictError(
                f"{class_group.name} already has a session at {starts_at.isoformat()}",
                code='Classes:SessionExists',
            )

        if status == 'DONE':
            self._auto_fill_attendance(session)

        self.audit.log(
            'classes.session.created', 'ClassSession', session.pk,
            tenant=self.workspace.tenant, user=self.user,
            changes={'startsAt': starts_at.isoformat(), 'status': status},
        )
        return session

    def update_session(self, session: ClassSession, **changes) -> ClassSession:
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationFailedError(
                'Unknown session fields',
                issues=[issue(f"Field {name!r} cannot be changed", name) for name in sorted(unknown)],
            )

        starts_at = changes.get('starts_at', session.starts_at)
        ends_at = changes.get('ends_at', session.ends_at)
        status = changes.get('status', session.status)
        self._validate_times(starts_at, ends_at)
        self._validate_status(status)

        before = SessionState(starts_at=session.starts_at, status=session.status)
        after = SessionState(starts_at=starts_at, status=status)
        self.lock_policy.assert_session_update_allowed(before, after)

        for name, value in changes.items():
            setattr(session, name, value)
        session.updated_by = self.user
        try:
            with transaction.atomic():
                session.save()
        except IntegrityError:
            raise ConflictError(
                f"{session.class_group.name} already has a session at {starts_at.isoformat()}",
                code='Classes:SessionExists',
            )

        if before.status != 'DONE' and status == 'DONE':
            self._auto_fill_attendance(session)

        self.audit.log(
            'classes.session.updated', 'ClassSession', session.pk,
            tenant=self.workspace.tenant, user=self.user,
            changes={name: str(value) for name, value in changes.items()},
        )
        return session

    def delete_session(self, session: ClassSession):
        """Soft delete. Treated like cancelling the session for lock purposes."""
        self.lock_policy.assert_session_update_allowed(
            SessionState(starts_at=session.starts_at, status=session.status),
            SessionState(starts_at=session.starts_at, status='CANCELLED'),
        )
        session.soft_delete(self.user)
        self.audit.log(
            'classes.session.deleted', 'ClassSession', session.pk,
            tenant=self.workspace.tenant, user=self.user,
        )

    # ===== GENERATION =====

    def generate_sessions_from_pattern(self, class_group, start_date: date, end_date: date) -> SessionGenerationResult:
        """Create the group's pattern occurrences between two local dates (inclusive)."""
        if not class_group.schedule_pattern:
            raise ValidationFailedError(
                f"{class_group.name} has no schedule pattern",
                issues=[issue('Schedule pattern is required', 'schedulePattern')],
                code='Classes:NoSchedulePattern',
            )
        starts = generate_scheduled_session_starts_for_range(
            class_group.schedule_pattern, start_date, end_date, self.tz
        )
        return self._create_occurrences(class_group, starts, class_group.default_session_duration_minutes)

    def create_recurring_sessions(self, class_group, start_date: date, end_date: date,
                                  weekdays: Iterable, start_time: time,
                                  duration_minutes: int = None) -> SessionGenerationResult:
        """Weekly sessions on the given weekday codes ("MO".."SU") without a stored pattern."""
        if end_date < start_date:
            raise ValidationFailedError(
                'End date is before start date',
                issues=[issue('End date must not be before start date', 'startDate', 'endDate')],
            )
        pattern = weekly_pattern(weekdays, start_time, starts_on=start_date)
        starts = generate_scheduled_session_starts_for_range(pattern, start_date, end_date, self.tz)
        duration = duration_minutes or class_group.default_session_duration_minutes
        return self._create_occurrences(class_group, starts, duration)

    def _create_occurrences(self, class_group, starts: List[datetime], duration_minutes: int) -> SessionGenerationResult:
        result = SessionGenerationResult()
        locked: Dict[str, bool] = {}

        for starts_at in starts:
            month = month_key(starts_at, self.tz)
            if month not in locked:
                try:
                    self.lock_policy.assert_session_create_allowed(starts_at, 'PLANNED')
                    locked[month] = False
                except MonthLockedError:
                    locked[month] = True
                    result.skipped_locked_months.append(month)
            if locked[month]:
                continue

            session, created = self.repository.upsert_session(
                class_group,
                starts_at,
                ends_at=starts_at + timedelta(minutes=duration_minutes),
                user=self.user,
            )
            if created:
                result.created.append(session)
            else:
                result.existing += 1

        logger.info(
            f"Generated {result.created_count} sessions for {class_group.name} "
            f"({result.existing} existing, locked months skipped: {result.skipped_locked_months or 'none'})"
        )
        return result

    # ===== ATTENDANCE =====

    def bulk_upsert_attendance(self, session: ClassSession,
                               items: Iterable[AttendanceInput]) -> Tuple[List[ClassAttendance], bool]:
        """
        Create or update attendance for a session. Returns the records and
        whether the session's month has a billing run with invoices.
        """
        self.lock_policy.assert_attendance_allowed(session.starts_at)

        items = list(items)
        statuses = [choice[0] for choice in ClassAttendance.STATUS_CHOICES]
        issues = []
        enrollments = {}
        for index, item in enumerate(items):
            if item.status not in statuses:
                issues.append(issue(f"Unknown attendance status {item.status!r}", f"items.{index}.status"))
            enrollment = self.repository.find_enrollment(item.enrollment_id)
            if enrollment is None or enrollment.class_group_id != session.class_group_id:
                issues.append(issue(
                    f"Enrollment {item.enrollment_id} is not part of this class",
                    f"items.{index}.enrollmentId",
                ))
            else:
                enrollments[item.enrollment_id] = enrollment
        if issues:
            raise ValidationFailedError('Invalid attendance', issues=issues)

        records = []
        with transaction.atomic():
            for item in items:
                billable = item.billable if item.billable is not None else default_billable(item.status)
                record, _ = ClassAttendance.objects.update_or_create(
                    session=session,
                    enrollment=enrollments[item.enrollment_id],
                    defaults={
                        'tenant_id': self.workspace.tenant_id,
                        'workspace': self.workspace,
                        'status': item.status,
                        'billable': billable,
                        'note': item.note,
                        'updated_by': self.user,
                    },
                )
                records.append(record)

        self.audit.log(
            'classes.attendance.upserted', 'ClassSession', session.pk,
            tenant=self.workspace.tenant, user=self.user,
            changes={'count': len(records)},
        )
        month_locked = self.repository.is_month_locked(month_key(session.starts_at, self.tz))
        return records, month_locked

    def _auto_fill_attendance(self, session: ClassSession) -> int:
        """Under AUTO_FULL attendance, a done session counts everyone enrolled as present."""
        if self.settings_repository.get(self.workspace).attendance_mode != AUTO_FULL:
            return 0

        local_day = timezone.localtime(session.starts_at, get_zone(self.tz)).date()
        created = 0
        for enrollment in self.repository.list_active_enrollments(session.class_group):
            if not enrollment.covers(local_day):
                continue
            _, was_created = ClassAttendance.objects.get_or_create(
                session=session,
                enrollment=enrollment,
                defaults={
                    'tenant_id': self.workspace.tenant_id,
                    'workspace': self.workspace,
                    'status': 'PRESENT',
                    'billable': True,
                    'created_by': self.user,
                },
            )
            created += int(was_created)

        if created:
            logger.info(f"Auto-filled {created} attendance records for session {session.pk}")
        return created

    # ===== VALIDATION =====

    @staticmethod
    def _validate_status(status: str):
        if status not in SESSION_STATUSES:
            raise ValidationFailedError(
                f"Unknown session status {status!r}",
                issues=[issue(f"Status must be one of {', '.join(SESSION_STATUSES)}", 'status')],
            )

    @staticmethod
    def _validate_times(starts_at: datetime, ends_at: Optional[datetime]):
        if not isinstance(starts_at, datetime) or timezone.is_naive(starts_at):
            raise ValidationFailedError(
                'Session start must be a timezone-aware datetime',
                issues=[issue('Start must include a timezone', 'startsAt')],
            )
        if ends_at is not None and ends_at <= starts_at:
            raise ValidationFailedError(
                'Session must end after it starts',
                issues=[issue('End must be after start', 'startsAt', 'endsAt')],
            )
