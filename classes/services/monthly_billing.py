"""
Monthly Billing Run Service

Creates one invoice per payer per billing month from class sessions.

A run per (workspace, month) moves DRAFT -> INVOICES_CREATED -> LOCKED; any
invoice-side failure marks it FAILED and the call can simply be repeated.
Repeats are safe because every payer invoice is recorded in a
ClassBillingInvoiceLink whose idempotency key is unique.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from core.exceptions import ConflictError, ValidationFailedError, issue
from core.services.audit import AuditService
from core.services.clock import SystemClock
from core.services.idempotency import IdempotencyStore
from core.services.outbox import OutboxService
from finance.services.invoices import InvoiceDraftInput, InvoiceLineInput, InvoiceWriteService

from .billing_aggregator import PayerPreview, aggregate_billing_preview
from .billing_period import month_range, normalize_billing_month, resolve_billing_timezone
from .billing_settings import SCHEDULED_SESSIONS, ClassesSettingsRepository
from .recurrence import generate_scheduled_session_starts_for_month
from .repository import ClassesRepository

logger = logging.getLogger(__name__)

# Default keys are workspace scoped: runs use "{tenant}:{workspace}:{month}",
# payer invoices append ":{payer}".
ACTION_KEY = 'classes.billing.run.create'
INVOICE_READY_TO_SEND_EVENT = 'classes.invoice.ready-to-send'
MONTHLY_INVOICES_GENERATED_EVENT = 'classes.monthly-invoices.generated'


class BillingLockedError(ConflictError):
    """Raised when a locked billing month is asked to change."""

    def __init__(self, month: str):
        super().__init__(
            f"Billing month {month} is locked",
            code='Classes:BillingLocked',
            details={'month': month},
        )


@dataclass
class BillingRunResult:
    billing_run: dict
    invoice_ids: List[str] = field(default_factory=list)
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {'billingRun': self.billing_run, 'invoiceIds': self.invoice_ids}


@dataclass
class BillingPreview:
    month: str
    billing_month_strategy: str
    billing_basis: str
    items: List[PayerPreview]
    status: str
    billing_run: Optional[dict] = None

    @property
    def total_amount_cents(self) -> int:
        return sum(item.total_amount_cents for item in self.items)


def serialize_billing_run(run) -> dict:
    return {
        'id': str(run.pk),
        'tenantId': str(run.tenant_id),
        'workspaceId': str(run.workspace_id),
        'month': run.month,
        'status': run.status,
        'billingMonthStrategy': run.billing_month_strategy,
        'billingBasis': run.billing_basis,
        'billingSnapshot': run.billing_snapshot,
        'generatedAt': run.generated_at.isoformat() if run.generated_at else None,
        'createdAt': run.created_at.isoformat() if run.created_at else None,
        'updatedAt': run.updated_at.isoformat() if run.updated_at else None,
    }


def _unique(values: Iterable[str]) -> List[str]:
    seen = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen


class MonthlyBillingRunService:
    """
    Orchestrates monthly billing for one workspace.

    Usage:
        service = MonthlyBillingRunService(workspace, user=user)
        result = service.create_or_advance_run('2024-01', create_invoices=True)
        print(result.invoice_ids)
    """

    def __init__(self, workspace, user=None, repository=None, settings_repository=None,
                 invoices=None, idempotency=None, outbox=None, audit=None, clock=None):
        self.workspace = workspace
        self.tenant = workspace.tenant
        self.user = user
        self.clock = clock or SystemClock()
        self.repository = repository or ClassesRepository(workspace)
        self.settings_repository = settings_repository or ClassesSettingsRepository()
        self.invoices = invoices or InvoiceWriteService(workspace, clock=self.clock)
        self.idempotency = idempotency or IdempotencyStore()
        self.outbox = outbox or OutboxService()
        self.audit = audit or AuditService()
        self.tz = resolve_billing_timezone(workspace)

    # ===== RUN =====

    def create_or_advance_run(self, month: str, create_invoices: bool = False, send_invoices: bool = False,
                              force: bool = False, idempotency_key: str = None) -> BillingRunResult:
        month = normalize_billing_month(month)
        key = idempotency_key or f"{self.tenant.pk}:{self.workspace.pk}:{month}"

        if not force:
            cached = self._cached_result(key)
            if cached is not None:
                logger.info(f"Billing run {month}: returning cached result for key {key}")
                return cached

        settings = self.settings_repository.get(self.workspace)
        run, created = self.repository.get_or_create_billing_run(
            month,
            settings.billing_month_strategy,
            settings.billing_basis,
            user=self.user,
        )
        if created:
            logger.info(
                f"Created billing run {run.pk} for {month} "
                f"({run.billing_month_strategy}/{run.billing_basis})"
            )
        else:
            run = self._resync_empty_run(run, settings)

        if force and run.status != 'LOCKED':
            run = self._regenerate(run)

        if run.status == 'LOCKED':
            raise BillingLockedError(month)

        basis = run.billing_basis
        if basis == SCHEDULED_SESSIONS and run.status in ['DRAFT', 'FAILED']:
            self._ensure_scheduled_sessions(month)

        items = self._preview_items(month, basis)

        invoice_ids: List[str] = []
        if create_invoices:
            for item in items:
                invoice_ids.append(self._invoice_for_payer(run, month, item))

            run = self.repository.update_billing_run(
                run,
                status='INVOICES_CREATED',
                generated_at=self.clock.now(),
                billing_snapshot={
                    'billMonth': month,
                    'strategy': run.billing_month_strategy,
                    'basis': basis,
                    'items': [item.to_dict() for item in items],
                },
            )
            logger.info(f"Billing run {month}: {len(invoice_ids)} invoices ready")

        if send_invoices:
            invoice_ids = self._queue_sending(run, invoice_ids)

        self.audit.log(
            'classes.billing.run.created', 'ClassMonthlyBillingRun', run.pk,
            tenant=self.tenant, user=self.user,
            changes={
                'month': month,
                'invoiceCount': len(invoice_ids),
                'billingMonthStrategy': run.billing_month_strategy,
                'billingBasis': basis,
            },
        )

        if create_invoices:
            self.outbox.enqueue(
                MONTHLY_INVOICES_GENERATED_EVENT,
                {
                    'tenantId': str(self.tenant.pk),
                    'month': month,
                    'billingRunId': str(run.pk),
                    'invoiceIds': invoice_ids,
                },
                tenant=self.tenant,
            )
            self.audit.log(
                'classes.billing.invoices.created', 'ClassMonthlyBillingRun', run.pk,
                tenant=self.tenant, user=self.user,
                changes={'invoiceCount': len(invoice_ids), 'billingBasis': basis},
            )

        result = BillingRunResult(billing_run=serialize_billing_run(run), invoice_ids=invoice_ids)
        self.idempotency.store(ACTION_KEY, self.tenant, key, result.to_dict())
        return result

    def _cached_result(self, key: str) -> Optional[BillingRunResult]:
        """
        A cached result is reused only when it produced invoices or its run was
        locked; an empty result is recomputed so settings fixes take effect.
        """
        cached = self.idempotency.get(ACTION_KEY, self.tenant, key)
        if not cached:
            return None
        billing_run = cached.get('billingRun') or {}
        if billing_run.get('workspaceId') != str(self.workspace.pk):
            return None
        invoice_ids = cached.get('invoiceIds') or []
        if not invoice_ids and billing_run.get('status') != 'LOCKED':
            return None
        return BillingRunResult(billing_run=billing_run, invoice_ids=invoice_ids, from_cache=True)

    def _resync_empty_run(self, run, settings):
        """
        Runs without invoice links follow the workspace's current settings.
        Kept for runs created before their workspace's settings were corrected.
        """
        if run.status == 'LOCKED' or self.repository.count_invoice_links(run) > 0:
            return run

        changes = {}
        if run.billing_month_strategy != settings.billing_month_strategy:
            changes['billing_month_strategy'] = settings.billing_month_strategy
        if run.billing_basis != settings.billing_basis:
            changes['billing_basis'] = settings.billing_basis
        if run.status in ['INVOICES_CREATED', 'FAILED']:
            changes['status'] = 'DRAFT'
        if not changes:
            return run

        logger.warning(f"Billing run {run.month} has no invoices, resyncing: {changes}")
        return self.repository.update_billing_run(run, **changes)

    def _regenerate(self, run):
        """Cancel every linked invoice and reset the run to an empty DRAFT."""
        links = self.repository.list_invoice_links(run)
        logger.warning(f"Regenerating billing run {run.month}: cancelling {len(links)} invoices")

        for link in links:
            result = self.invoices.cancel(link.invoice_id, f"Billing run {run.month} regenerated")
            if not result.success:
                self._fail(run, result.error)

        self.repository.delete_invoice_links(run)
        run = self.repository.update_billing_run(
            run,
            status='DRAFT',
            billing_snapshot=None,
            generated_at=None,
        )
        self.audit.log(
            'classes.billing.run.regenerated', 'ClassMonthlyBillingRun', run.pk,
            tenant=self.tenant, user=self.user,
            changes={'month': run.month, 'cancelledInvoiceIds': [str(link.invoice_id) for link in links]},
        )
        return run

    def _ensure_scheduled_sessions(self, month: str) -> int:
        """Create missing pattern sessions for the month so the preview sees them."""
        created = 0
        for group in self.repository.list_class_groups_with_schedule_pattern():
            try:
                starts = generate_scheduled_session_starts_for_month(group.schedule_pattern, month, self.tz)
            except ValidationFailedError as e:
                logger.warning(f"Skipping class group {group.name}: {e.message} {e.issues}")
                continue

            for starts_at in starts:
                _, was_created = self.repository.upsert_session(
                    group,
                    starts_at,
                    ends_at=starts_at + timedelta(minutes=group.default_session_duration_minutes),
                    user=self.user,
                )
                created += int(was_created)

        if created:
            logger.info(f"Billing run {month}: generated {created} scheduled sessions")
        return created

    def _preview_items(self, month: str, basis: str, class_group_id=None,
                       payer_client_id=None) -> List[PayerPreview]:
        start, end = month_range(month, self.tz)
        if basis == SCHEDULED_SESSIONS:
            rows = self.repository.list_billable_scheduled_for_month(
                start, end, class_group_id=class_group_id, payer_client_id=payer_client_id
            )
        else:
            rows = self.repository.list_billable_attendance_for_month(
                start, end, class_group_id=class_group_id, payer_client_id=payer_client_id
            )
        return [item for item in aggregate_billing_preview(rows) if item.total_amount_cents > 0]

    def _invoice_for_payer(self, run, month: str, item: PayerPreview) -> str:
        """Invoice id for one payer, created and finalized unless already linked."""
        invoice_key = f"{self.tenant.pk}:{self.workspace.pk}:{month}:{item.payer_client_id}"
        link = self.repository.find_invoice_link(invoice_key)
        if link:
            logger.info(f"Reusing invoice {link.invoice_id} for {invoice_key}")
            return str(link.invoice_id)

        session_word = 'scheduled' if run.billing_basis == SCHEDULED_SESSIONS else 'attended'
        draft = InvoiceDraftInput(
            customer_id=item.payer_client_id,
            currency=item.currency,
            line_items=[
                InvoiceLineInput(
                    description=f"{line.class_group_name} ({line.sessions} {session_word} sessions)",
                    quantity=line.sessions,
                    unit_price_cents=line.price_cents,
                )
                for line in item.lines
            ],
            source_type='CLASSES_BILLING_RUN',
            source_id=str(run.pk),
            idempotency_key=invoice_key,
        )

        created = self.invoices.create_draft(draft)
        if not created.success:
            self._fail(run, created.error)
        finalized = self.invoices.finalize(created.invoice_id)
        if not finalized.success:
            self._fail(run, finalized.error)

        link, _ = self.repository.create_invoice_link(
            invoice_key,
            payer_id=item.payer_client_id,
            invoice_id=created.invoice_id,
            purpose='MONTHLY_RUN',
            billing_run=run,
            user=self.user,
        )
        return str(link.invoice_id)

    def _queue_sending(self, run, invoice_ids: List[str]) -> List[str]:
        """Queue every invoice of the run for sending; all recipients must have an email."""
        send_ids = _unique(
            list(invoice_ids) + [str(link.invoice_id) for link in self.repository.list_invoice_links(run)]
        )
        emails = self.invoices.get_recipient_emails(send_ids)
        missing = [invoice_id for invoice_id in send_ids if not emails.get(invoice_id)]
        if missing:
            error = ValidationFailedError(
                'Some invoices have no recipient email',
                issues=[issue(f"Invoice {invoice_id} has no recipient email", 'invoiceIds') for invoice_id in missing],
                code='Classes:MissingRecipientEmail',
            )
            error.details['missingInvoiceIds'] = missing
            raise error

        for invoice_id in send_ids:
            self.outbox.enqueue(
                INVOICE_READY_TO_SEND_EVENT,
                {'tenantId': str(self.tenant.pk), 'invoiceId': invoice_id},
                tenant=self.tenant,
            )

        snapshot = dict(run.billing_snapshot or {})
        snapshot['send'] = {
            'requestedAt': self.clock.now().isoformat(),
            'expectedInvoiceCount': len(send_ids),
            'invoiceIds': send_ids,
        }
        self.repository.update_billing_run(run, billing_snapshot=snapshot)
        logger.info(f"Billing run {run.month}: queued {len(send_ids)} invoices for sending")
        return send_ids

    def _fail(self, run, error):
        logger.error(f"Billing run {run.month} failed: {error.code} {error.message}")
        self.repository.update_billing_run(run, status='FAILED')
        raise error

    # ===== QUERIES & LOCKING =====

    def get_preview(self, month: str, class_group_id=None, payer_client_id=None) -> BillingPreview:
        """What a run would invoice for the month. Creates nothing."""
        month = normalize_billing_month(month)
        run = self.repository.find_billing_run_by_month(month)
        if run:
            strategy, basis = run.billing_month_strategy, run.billing_basis
        else:
            settings = self.settings_repository.get(self.workspace)
            strategy, basis = settings.billing_month_strategy, settings.billing_basis

        return BillingPreview(
            month=month,
            billing_month_strategy=strategy,
            billing_basis=basis,
            items=self._preview_items(month, basis, class_group_id, payer_client_id),
            status=run.status if run else 'OPEN',
            billing_run=serialize_billing_run(run) if run else None,
        )

    def lock_run(self, run_id) -> dict:
        run = self.repository.get_billing_run(run_id)
        if run.status == 'LOCKED':
            return serialize_billing_run(run)
        if run.status != 'INVOICES_CREATED':
            raise ConflictError(
                f"Billing run {run.month} is {run.status}; only runs with invoices can be locked",
                code='Classes:BillingRunNotLockable',
            )

        run = self.repository.update_billing_run(run, status='LOCKED')
        logger.info(f"Locked billing month {run.month}")
        self.audit.log(
            'classes.billing.run.locked', 'ClassMonthlyBillingRun', run.pk,
            tenant=self.tenant, user=self.user,
            changes={'month': run.month},
        )
        return serialize_billing_run(run)

    def get_month_statuses(self, months: Iterable[str]) -> Dict[str, str]:
        """Run status per month; OPEN where no run exists."""
        months = [normalize_billing_month(month) for month in months]
        runs = {run.month: run.status for run in self.repository.list_billing_runs_by_months(months)}
        return {month: runs.get(month, 'OPEN') for month in months}
