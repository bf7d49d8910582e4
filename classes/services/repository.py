"""
Classes Repository

Workspace-scoped queries and writes over the classes models. Services receive
a repository so the billing engine never builds querysets itself.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import IntegrityError, transaction

from core.exceptions import NotFoundError
from classes.models import (
    ClassAttendance,
    ClassBillingInvoiceLink,
    ClassEnrollment,
    ClassGroup,
    ClassMonthlyBillingRun,
    ClassSession,
)

from .billing_aggregator import BillableRow
from .billing_period import get_zone
from .month_lock import LOCKING_STATUSES, SCHEDULED_STATUSES

logger = logging.getLogger(__name__)


class ClassesRepository:

    def __init__(self, workspace):
        self.workspace = workspace
        self.tenant = workspace.tenant

    def _scoped(self, model):
        return model.objects.filter(
            tenant_id=self.workspace.tenant_id,
            workspace=self.workspace,
            is_deleted=False,
        )

    # ===== LOOKUPS =====

    def get_class_group(self, class_group_id) -> ClassGroup:
        group = self._scoped(ClassGroup).filter(pk=class_group_id).first()
        if group is None:
            raise NotFoundError(f"Class group {class_group_id} not found", code='Classes:ClassGroupNotFound')
        return group

    def get_session(self, session_id) -> ClassSession:
        session = self._scoped(ClassSession).select_related('class_group').filter(pk=session_id).first()
        if session is None:
            raise NotFoundError(f"Session {session_id} not found", code='Classes:SessionNotFound')
        return session

    def find_enrollment(self, enrollment_id) -> Optional[ClassEnrollment]:
        return self._scoped(ClassEnrollment).select_related('class_group', 'payer').filter(pk=enrollment_id).first()

    def get_enrollment(self, enrollment_id) -> ClassEnrollment:
        enrollment = self.find_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found", code='Classes:EnrollmentNotFound')
        return enrollment

    def list_class_groups_with_schedule_pattern(self) -> List[ClassGroup]:
        return list(
            self._scoped(ClassGroup)
            .filter(status='ACTIVE', schedule_pattern__isnull=False)
            .order_by('name', 'id')
        )

    def list_active_enrollments(self, class_group) -> List[ClassEnrollment]:
        return list(
            self._scoped(ClassEnrollment)
            .filter(class_group=class_group, is_active=True, status='ENROLLED')
            .select_related('class_group')
        )

    # ===== SESSIONS =====

    def upsert_session(self, class_group, starts_at: datetime, ends_at: datetime = None,
                       status: str = 'PLANNED', user=None) -> Tuple[ClassSession, bool]:
        """
        Insert a session unless one already starts at the same instant.
        Soft-deleted sessions count as existing so deleted occurrences are not recreated.
        """
        existing = ClassSession.objects.filter(
            tenant_id=self.workspace.tenant_id,
            class_group=class_group,
            starts_at=starts_at,
        ).first()
        if existing:
            return existing, False

        try:
            with transaction.atomic():
                session = ClassSession.objects.create(
                    tenant_id=self.workspace.tenant_id,
                    workspace=self.workspace,
                    class_group=class_group,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    status=status,
                    created_by=user,
                )
        except IntegrityError:
            session = ClassSession.objects.get(
                tenant_id=self.workspace.tenant_id,
                class_group=class_group,
                starts_at=starts_at,
            )
            return session, False
        return session, True

    # ===== BILLABLE ROWS =====

    def list_billable_scheduled_for_month(self, start: datetime, end: datetime,
                                          class_group_id=None, payer_client_id=None) -> List[BillableRow]:
        """One row per (scheduled session, enrollment billable on that session's local date)."""
        sessions = (
            self._scoped(ClassSession)
            .filter(
                starts_at__gte=start,
                starts_at__lte=end,
                status__in=SCHEDULED_STATUSES,
                class_group__is_deleted=False,
            )
            .select_related('class_group')
            .order_by('starts_at', 'id')
        )
        if class_group_id:
            sessions = sessions.filter(class_group_id=class_group_id)

        enrollments = self._scoped(ClassEnrollment).filter(is_active=True, status='ENROLLED')
        if payer_client_id:
            enrollments = enrollments.filter(payer_id=payer_client_id)

        by_group: Dict[str, List[ClassEnrollment]] = {}
        for enrollment in enrollments.order_by('id'):
            by_group.setdefault(enrollment.class_group_id, []).append(enrollment)

        zone = get_zone(self.workspace.billing_timezone)
        rows = []
        for session in sessions:
            local_day = session.starts_at.astimezone(zone).date()
            group = session.class_group
            for enrollment in by_group.get(group.pk, []):
                if not enrollment.covers(local_day):
                    continue
                rows.append(self._row(enrollment, group))
        return rows

    def list_billable_attendance_for_month(self, start: datetime, end: datetime,
                                           class_group_id=None, payer_client_id=None) -> List[BillableRow]:
        """One row per billable attendance record at a session in the range."""
        records = (
            self._scoped(ClassAttendance)
            .filter(
                billable=True,
                session__starts_at__gte=start,
                session__starts_at__lte=end,
                session__is_deleted=False,
                enrollment__is_deleted=False,
            )
            .exclude(session__status='CANCELLED')
            .select_related('enrollment', 'enrollment__class_group')
            .order_by('session__starts_at', 'id')
        )
        if class_group_id:
            records = records.filter(session__class_group_id=class_group_id)
        if payer_client_id:
            records = records.filter(enrollment__payer_id=payer_client_id)

        return [self._row(record.enrollment, record.enrollment.class_group) for record in records]

    @staticmethod
    def _row(enrollment, group) -> BillableRow:
        return BillableRow(
            payer_client_id=str(enrollment.payer_id),
            class_group_id=str(group.pk),
            class_group_name=group.name,
            price_cents=enrollment.price_per_session,
            currency=group.currency,
        )

    # ===== BILLING RUNS =====

    def get_billing_run(self, run_id) -> ClassMonthlyBillingRun:
        run = self._scoped(ClassMonthlyBillingRun).filter(pk=run_id).first()
        if run is None:
            raise NotFoundError(f"Billing run {run_id} not found", code='Classes:BillingRunNotFound')
        return run

    def find_billing_run_by_month(self, month: str) -> Optional[ClassMonthlyBillingRun]:
        return self._scoped(ClassMonthlyBillingRun).filter(month=month).first()

    def get_or_create_billing_run(self, month: str, strategy: str, basis: str,
                                  user=None) -> Tuple[ClassMonthlyBillingRun, bool]:
        run = self.find_billing_run_by_month(month)
        if run:
            return run, False
        try:
            with transaction.atomic():
                run = ClassMonthlyBillingRun.objects.create(
                    tenant_id=self.workspace.tenant_id,
                    workspace=self.workspace,
                    month=month,
                    status='DRAFT',
                    billing_month_strategy=strategy,
                    billing_basis=basis,
                    created_by=user,
                )
        except IntegrityError:
            return self.find_billing_run_by_month(month), False
        return run, True

    def update_billing_run(self, run: ClassMonthlyBillingRun, **fields) -> ClassMonthlyBillingRun:
        for name, value in fields.items():
            setattr(run, name, value)
        run.save(update_fields=list(fields) + ['updated_at'])
        return run

    def list_billing_runs_by_months(self, months: Iterable[str]) -> List[ClassMonthlyBillingRun]:
        return list(self._scoped(ClassMonthlyBillingRun).filter(month__in=list(months)))

    def get_locking_run(self, month: str) -> Optional[ClassMonthlyBillingRun]:
        """Run that freezes the month for billing-impacting edits, if any."""
        return self._scoped(ClassMonthlyBillingRun).filter(
            month=month,
            status__in=LOCKING_STATUSES,
        ).first()

    def is_month_locked(self, month: str) -> bool:
        return self.get_locking_run(month) is not None

    # ===== INVOICE LINKS =====

    def find_invoice_link(self, idempotency_key: str) -> Optional[ClassBillingInvoiceLink]:
        return ClassBillingInvoiceLink.objects.filter(
            tenant_id=self.workspace.tenant_id,
            idempotency_key=idempotency_key,
        ).first()

    def list_invoice_links(self, run) -> List[ClassBillingInvoiceLink]:
        return list(ClassBillingInvoiceLink.objects.filter(billing_run=run).order_by('created_at', 'id'))

    def count_invoice_links(self, run) -> int:
        return ClassBillingInvoiceLink.objects.filter(billing_run=run).count()

    def create_invoice_link(self, idempotency_key: str, payer_id, invoice_id, purpose: str,
                            billing_run=None, enrollment=None, class_group=None,
                            user=None) -> Tuple[ClassBillingInvoiceLink, bool]:
        """
        Unique insert on idempotency_key. A concurrent writer that got there
        first wins; its link is returned with created=False.
        """
        try:
            with transaction.atomic():
                link = ClassBillingInvoiceLink.objects.create(
                    tenant_id=self.workspace.tenant_id,
                    workspace=self.workspace,
                    billing_run=billing_run,
                    enrollment=enrollment,
                    payer_id=payer_id,
                    class_group=class_group,
                    invoice_id=invoice_id,
                    purpose=purpose,
                    idempotency_key=idempotency_key,
                    created_by=user,
                )
        except IntegrityError:
            link = ClassBillingInvoiceLink.objects.get(
                tenant_id=self.workspace.tenant_id,
                idempotency_key=idempotency_key,
            )
            logger.info(f"Invoice link {idempotency_key} already exists (invoice {link.invoice_id})")
            return link, False
        return link, True

    def delete_invoice_links(self, run) -> int:
        deleted, _ = ClassBillingInvoiceLink.objects.filter(billing_run=run).delete()
        return deleted
