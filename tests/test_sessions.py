from datetime import date, datetime, time, timedelta, timezone as dt_timezone

import pytest

from core.exceptions import ConflictError, ValidationFailedError
from classes.models import ClassAttendance, ClassSession
from classes.services.billing_settings import ARREARS_PREVIOUS_MONTH, AUTO_FULL
from classes.services.month_lock import MonthLockedError
from classes.services.sessions import AttendanceInput

pytestmark = pytest.mark.django_db

JAN_10 = datetime(2024, 1, 10, 17, 0, tzinfo=dt_timezone.utc)


@pytest.fixture
def arrears_lock(billing_settings, make_run):
    billing_settings(billing_month_strategy=ARREARS_PREVIOUS_MONTH)

    def _lock(month='2024-01'):
        return make_run(month, strategy='ARREARS_PREVIOUS_MONTH', basis='ATTENDED_SESSIONS')
    return _lock


class TestCreateAndUpdate:

    def test_create_session_defaults_end_from_group_duration(self, session_service, math_group):
        session = session_service.create_session(math_group, JAN_10, topic='Fractions')

        assert session.ends_at == JAN_10 + timedelta(minutes=60)
        assert session.status == 'PLANNED'
        assert session.tenant_id == math_group.tenant_id

    def test_duplicate_start_is_a_conflict(self, session_service, math_group):
        session_service.create_session(math_group, JAN_10)

        with pytest.raises(ConflictError) as excinfo:
            session_service.create_session(math_group, JAN_10)

        assert excinfo.value.code == 'Classes:SessionExists'

    def test_naive_start_is_rejected(self, session_service, math_group):
        with pytest.raises(ValidationFailedError):
            session_service.create_session(math_group, datetime(2024, 1, 10, 18, 0))

    def test_end_before_start_is_rejected(self, session_service, math_group):
        with pytest.raises(ValidationFailedError):
            session_service.create_session(math_group, JAN_10, ends_at=JAN_10 - timedelta(hours=1))

    def test_unknown_field_is_rejected(self, session_service, math_group):
        session = session_service.create_session(math_group, JAN_10)

        with pytest.raises(ValidationFailedError):
            session_service.update_session(session, class_group=None)

    def test_marking_done_is_refused_in_attended_locked_month(self, session_service, math_group, arrears_lock):
        session = session_service.create_session(math_group, JAN_10)
        arrears_lock()

        with pytest.raises(MonthLockedError):
            session_service.update_session(session, status='DONE')

        session.refresh_from_db()
        assert session.status == 'PLANNED'

    def test_notes_stay_editable_in_locked_month(self, session_service, math_group, arrears_lock):
        session = session_service.create_session(math_group, JAN_10)
        arrears_lock()

        session_service.update_session(session, notes='Bring calculators')

        session.refresh_from_db()
        assert session.notes == 'Bring calculators'

    def test_scheduled_lock_blocks_creation_and_cancellation(self, session_service, math_group, make_run):
        session = session_service.create_session(math_group, JAN_10)
        make_run('2024-01')

        with pytest.raises(MonthLockedError):
            session_service.create_session(math_group, JAN_10 + timedelta(days=1))
        with pytest.raises(MonthLockedError):
            session_service.update_session(session, status='CANCELLED')
        with pytest.raises(MonthLockedError):
            session_service.delete_session(session)

        session_service.update_session(session, status='DONE')

    def test_moving_into_a_locked_month_is_refused(self, session_service, math_group, make_run):
        session = session_service.create_session(math_group, JAN_10)
        make_run('2024-02')

        with pytest.raises(MonthLockedError) as excinfo:
            session_service.update_session(session, starts_at=JAN_10 + timedelta(days=30), ends_at=None)

        assert excinfo.value.month == '2024-02'

    def test_draft_run_does_not_lock(self, session_service, math_group, make_run):
        make_run('2024-01', status='DRAFT')

        session_service.create_session(math_group, JAN_10)

    def test_delete_is_soft(self, session_service, math_group):
        session = session_service.create_session(math_group, JAN_10)

        session_service.delete_session(session)

        session.refresh_from_db()
        assert session.is_deleted
        assert ClassSession.objects.filter(pk=session.pk).exists()


class TestGeneration:

    def test_generation_is_idempotent(self, session_service, math_group):
        first = session_service.generate_sessions_from_pattern(math_group, date(2024, 1, 1), date(2024, 1, 31))
        second = session_service.generate_sessions_from_pattern(math_group, date(2024, 1, 1), date(2024, 1, 31))

        assert first.created_count == 14
        assert second.created_count == 0
        assert second.existing == 14
        assert ClassSession.objects.filter(class_group=math_group).count() == 14

    def test_generation_skips_locked_months(self, session_service, math_group, make_run):
        make_run('2024-01')

        result = session_service.generate_sessions_from_pattern(math_group, date(2024, 1, 1), date(2024, 2, 29))

        assert result.skipped_locked_months == ['2024-01']
        assert result.created_count == 12
        assert all(session.starts_at.month == 2 for session in result.created)

    def test_deleted_occurrences_are_not_recreated(self, session_service, math_group):
        result = session_service.generate_sessions_from_pattern(math_group, date(2024, 1, 1), date(2024, 1, 7))
        session_service.delete_session(result.created[0])

        again = session_service.generate_sessions_from_pattern(math_group, date(2024, 1, 1), date(2024, 1, 7))

        assert again.created_count == 0

    def test_group_without_pattern(self, session_service, make_group):
        group = make_group('Drop-in', pattern=None)

        with pytest.raises(ValidationFailedError) as excinfo:
            session_service.generate_sessions_from_pattern(group, date(2024, 1, 1), date(2024, 1, 31))

        assert excinfo.value.code == 'Classes:NoSchedulePattern'

    def test_recurring_sessions_without_stored_pattern(self, session_service, make_group):
        group = make_group('Workshop', pattern=None)

        result = session_service.create_recurring_sessions(
            group, date(2024, 1, 1), date(2024, 1, 14), ['TU', 'TH'], time(10, 0), duration_minutes=90
        )

        assert result.created_count == 4
        session = result.created[0]
        assert session.starts_at == datetime(2024, 1, 2, 9, 0, tzinfo=dt_timezone.utc)
        assert session.ends_at - session.starts_at == timedelta(minutes=90)


class TestAttendance:

    def test_billable_defaults_follow_status(self, session_service, math_group, payer_a, payer_b,
                                             make_enrollment, make_client):
        session = session_service.create_session(math_group, JAN_10)
        present = make_enrollment(math_group, payer_a)
        absent = make_enrollment(math_group, payer_b, student=make_client('Ben'))
        excused = make_enrollment(math_group, payer_b, student=make_client('Ida'))

        records, locked = session_service.bulk_upsert_attendance(session, [
            AttendanceInput(enrollment_id=present.pk, status='PRESENT'),
            AttendanceInput(enrollment_id=absent.pk, status='ABSENT'),
            AttendanceInput(enrollment_id=excused.pk, status='EXCUSED', billable=True),
        ])

        assert [record.billable for record in records] == [True, False, True]
        assert locked is False

    def test_upsert_updates_existing_record(self, session_service, math_group, payer_a, make_enrollment):
        session = session_service.create_session(math_group, JAN_10)
        enrollment = make_enrollment(math_group, payer_a)

        session_service.bulk_upsert_attendance(session, [AttendanceInput(enrollment.pk, 'PRESENT')])
        session_service.bulk_upsert_attendance(session, [AttendanceInput(enrollment.pk, 'MAKEUP', note='Moved')])

        record = ClassAttendance.objects.get(session=session, enrollment=enrollment)
        assert (record.status, record.billable, record.note) == ('MAKEUP', True, 'Moved')

    def test_enrollment_of_another_group_is_rejected(self, session_service, math_group, physics_group,
                                                     payer_a, make_enrollment):
        session = session_service.create_session(math_group, JAN_10)
        other = make_enrollment(physics_group, payer_a)

        with pytest.raises(ValidationFailedError):
            session_service.bulk_upsert_attendance(session, [AttendanceInput(other.pk, 'PRESENT')])

    def test_attendance_refused_when_attended_month_locked(self, session_service, math_group, payer_a,
                                                           make_enrollment, arrears_lock):
        session = session_service.create_session(math_group, JAN_10)
        enrollment = make_enrollment(math_group, payer_a)
        arrears_lock()

        with pytest.raises(MonthLockedError):
            session_service.bulk_upsert_attendance(session, [AttendanceInput(enrollment.pk, 'PRESENT')])

    def test_attendance_open_but_flagged_when_scheduled_month_locked(self, session_service, math_group,
                                                                    payer_a, make_enrollment, make_run):
        session = session_service.create_session(math_group, JAN_10)
        enrollment = make_enrollment(math_group, payer_a)
        make_run('2024-01')

        records, locked = session_service.bulk_upsert_attendance(session, [AttendanceInput(enrollment.pk, 'PRESENT')])

        assert len(records) == 1
        assert locked is True

    def test_auto_full_marks_enrolled_students_present(self, session_service, math_group, payer_a, payer_b,
                                                       make_enrollment, make_client, billing_settings):
        billing_settings(attendance_mode=AUTO_FULL)
        active = make_enrollment(math_group, payer_a)
        make_enrollment(math_group, payer_b, student=make_client('Late'), start_date=date(2024, 2, 1))
        make_enrollment(math_group, payer_b, student=make_client('Gone'), is_active=False)
        session = session_service.create_session(math_group, JAN_10)

        session_service.update_session(session, status='DONE')

        records = ClassAttendance.objects.filter(session=session)
        assert [(record.enrollment_id, record.status, record.billable) for record in records] == [
            (active.pk, 'PRESENT', True),
        ]

    def test_manual_mode_does_not_fill_attendance(self, session_service, math_group, payer_a, make_enrollment):
        make_enrollment(math_group, payer_a)
        session = session_service.create_session(math_group, JAN_10)

        session_service.update_session(session, status='DONE')

        assert not ClassAttendance.objects.filter(session=session).exists()
