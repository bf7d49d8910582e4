"""
Billing Plan Service

Enrollment-level payment plans (upfront, installments, invoice on net terms)
and idempotent invoice generation from them. Unlike monthly billing runs this
path is not tied to a billing month.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from django.db import transaction

from core.exceptions import ConflictError, NotFoundError, ValidationFailedError, issue
from core.services.audit import AuditService
from core.services.clock import SystemClock
from core.services.idempotency import IdempotencyStore
from core.services.outbox import OutboxService
from finance.services.invoices import InvoiceDraftInput, InvoiceLineInput, InvoiceWriteService
from classes.models import ClassEnrollmentBillingPlan

from .monthly_billing import INVOICE_READY_TO_SEND_EVENT
from .repository import ClassesRepository
from .schedule_pattern import parse_date

logger = logging.getLogger(__name__)

ACTION_KEY = 'classes.enrollment.billing-plan.generate-invoices'
INVOICE_GENERATED_EVENT = 'classes.invoice.generated'

PLAN_TYPES = [choice[0] for choice in ClassEnrollmentBillingPlan.PLAN_TYPES]
GENERATABLE_PLAN_TYPES = ('UPFRONT', 'INSTALLMENTS', 'INVOICE_NET')

PURPOSE_BY_PLAN_TYPE = {
    'UPFRONT': 'FINAL',
    'INSTALLMENTS': 'INSTALLMENT',
    'INVOICE_NET': 'ADHOC',
}

_CURRENCY_RE = re.compile(r'^[A-Z]{3}$')


@dataclass
class InvoiceTarget:
    amount_cents: int
    currency: str
    due_date: Optional[str] = None
    label: Optional[str] = None


@dataclass
class BillingPlanInvoicesResult:
    invoice_ids: List[str] = field(default_factory=list)
    links: List[dict] = field(default_factory=list)
    from_cache: bool = False

    def to_dict(self) -> dict:
        return {'invoiceIds': self.invoice_ids, 'links': self.links}


def serialize_link(link) -> dict:
    return {
        'id': str(link.pk),
        'invoiceId': str(link.invoice_id),
        'idempotencyKey': link.idempotency_key,
        'purpose': link.purpose,
        'enrollmentId': str(link.enrollment_id) if link.enrollment_id else None,
        'payerClientId': str(link.payer_id),
        'classGroupId': str(link.class_group_id) if link.class_group_id else None,
        'createdAt': link.created_at.isoformat() if link.created_at else None,
    }


def _plan_data(schedule: dict) -> dict:
    """Plans may wrap their fields in a "data" object."""
    if isinstance(schedule, dict) and isinstance(schedule.get('data'), dict):
        return schedule['data']
    return schedule if isinstance(schedule, dict) else {}


def _is_amount(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def resolve_invoice_targets(plan_type: str, schedule: dict) -> Tuple[List[InvoiceTarget], str]:
    """Invoices a plan produces, in order, with the link purpose they carry."""
    data = _plan_data(schedule)

    if plan_type == 'UPFRONT':
        return [InvoiceTarget(
            amount_cents=int(data.get('amountCents', 0)),
            currency=str(data.get('currency', 'EUR')),
            due_date=data.get('dueDate'),
            label=data.get('label'),
        )], PURPOSE_BY_PLAN_TYPE[plan_type]

    if plan_type == 'INSTALLMENTS':
        currency = str(data.get('currency', 'EUR'))
        return [
            InvoiceTarget(
                amount_cents=int(item.get('amountCents', 0)),
                currency=currency,
                due_date=item.get('dueDate'),
                label=item.get('label'),
            )
            for item in data.get('installments') or []
        ], PURPOSE_BY_PLAN_TYPE[plan_type]

    if plan_type == 'INVOICE_NET':
        return [InvoiceTarget(
            amount_cents=int(data.get('amountCents', 0)),
            currency=str(data.get('currency', 'EUR')),
            label=data.get('purchaseOrderNumber'),
        )], PURPOSE_BY_PLAN_TYPE[plan_type]

    raise ValidationFailedError(
        f"Unsupported billing plan type for invoice generation: {plan_type}",
        issues=[issue('Only UPFRONT, INSTALLMENTS, INVOICE_NET are supported', 'type')],
        code='Classes:UnsupportedBillingPlan',
    )


def validate_plan_schedule(plan_type: str, schedule: dict, default_currency: str) -> dict:
    """Check a plan before saving; returns the stored form {"data": {...}}."""
    if plan_type not in PLAN_TYPES:
        raise ValidationFailedError(
            f"Unknown billing plan type {plan_type!r}",
            issues=[issue(f"Type must be one of {', '.join(PLAN_TYPES)}", 'type')],
        )

    data = dict(_plan_data(schedule or {}))
    data.setdefault('currency', default_currency)
    issues = []

    if not isinstance(data['currency'], str) or not _CURRENCY_RE.match(data['currency']):
        issues.append(issue('Currency must be a 3-letter code', 'currency'))

    if plan_type in ('UPFRONT', 'INVOICE_NET'):
        if not _is_amount(data.get('amountCents')):
            issues.append(issue('Amount must be a non-negative integer (cents)', 'amountCents'))
        if data.get('dueDate') is not None and parse_date(data['dueDate']) is None:
            issues.append(issue('Due date must be YYYY-MM-DD', 'dueDate'))

    if plan_type == 'INVOICE_NET':
        net_days = data.get('netDays')
        if net_days is not None and not _is_amount(net_days):
            issues.append(issue('Net days must be a non-negative integer', 'netDays'))

    if plan_type == 'INSTALLMENTS':
        installments = data.get('installments')
        if not isinstance(installments, list) or not installments:
            issues.append(issue('At least one installment is required', 'installments'))
            installments = []

        previous_due = None
        for index, item in enumerate(installments):
            member = f"installments.{index}"
            if not isinstance(item, dict):
                issues.append(issue('Installment must be an object', member))
                continue
            if not _is_amount(item.get('amountCents')):
                issues.append(issue('Amount must be a non-negative integer (cents)', f"{member}.amountCents"))
            due = parse_date(item.get('dueDate'))
            if due is None:
                issues.append(issue('Due date must be YYYY-MM-DD', f"{member}.dueDate"))
                continue
            if previous_due and due < previous_due:
                issues.append(issue('Installment due dates must not decrease', f"{member}.dueDate"))
            previous_due = due

    if issues:
        raise ValidationFailedError('Invalid billing plan', issues=issues, code='Classes:InvalidBillingPlan')
    return {'data': data}


class BillingPlanService:
    """
    Usage:
        service = BillingPlanService(workspace, user=user)
        service.upsert_plan(enrollment, 'INSTALLMENTS', {'installments': [...]})
        result = service.generate_invoices(enrollment.id, idempotency_key='enr-42-v1')
    """

    def __init__(self, workspace, user=None, repository=None, invoices=None,
                 idempotency=None, outbox=None, audit=None, clock=None):
        self.workspace = workspace
        self.tenant = workspace.tenant
        self.user = user
        self.clock = clock or SystemClock()
        self.repository = repository or ClassesRepository(workspace)
        self.invoices = invoices or InvoiceWriteService(workspace, clock=self.clock)
        self.idempotency = idempotency or IdempotencyStore()
        self.outbox = outbox or OutboxService()
        self.audit = audit or AuditService()

    def upsert_plan(self, enrollment, plan_type: str, schedule: dict) -> ClassEnrollmentBillingPlan:
        stored = validate_plan_schedule(plan_type, schedule, self.workspace.default_currency)

        with transaction.atomic():
            plan, created = ClassEnrollmentBillingPlan.objects.update_or_create(
                enrollment=enrollment,
                defaults={
                    'tenant_id': self.workspace.tenant_id,
                    'workspace': self.workspace,
                    'plan_type': plan_type,
                    'schedule_json': stored,
                    'updated_by': self.user,
                },
            )

        self.audit.log(
            'classes.enrollment.billing-plan.saved', 'ClassEnrollment', enrollment.pk,
            tenant=self.tenant, user=self.user,
            changes={'planType': plan_type, 'created': created},
        )
        return plan

    def generate_invoices(self, enrollment_id, idempotency_key: str,
                          send_invoices: bool = False) -> BillingPlanInvoicesResult:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationFailedError(
                'Idempotency key is required',
                issues=[issue('Provide an idempotency key for invoice generation', 'idempotencyKey')],
                code='Classes:IdempotencyKeyRequired',
            )

        cached = self.idempotency.get(ACTION_KEY, self.tenant, idempotency_key)
        if cached:
            return BillingPlanInvoicesResult(
                invoice_ids=cached.get('invoiceIds') or [],
                links=cached.get('links') or [],
                from_cache=True,
            )

        enrollment = self.repository.get_enrollment(enrollment_id)
        if enrollment.status != 'ENROLLED':
            raise ConflictError(
                'Invoices can only be generated for ENROLLED enrollments',
                code='Classes:EnrollmentNotEnrolled',
            )

        plan = ClassEnrollmentBillingPlan.objects.filter(enrollment=enrollment, is_deleted=False).first()
        if plan is None:
            raise NotFoundError('Enrollment billing plan not found', code='Classes:BillingPlanNotFound')

        targets, purpose = resolve_invoice_targets(plan.plan_type, plan.schedule_json)

        result = BillingPlanInvoicesResult()
        for index, target in enumerate(targets):
            line_key = f"{idempotency_key}:{index + 1}"
            link = self.repository.find_invoice_link(line_key)
            if link is None:
                link = self._create_invoice(enrollment, plan, target, purpose, line_key, send_invoices)
            result.invoice_ids.append(str(link.invoice_id))
            result.links.append(serialize_link(link))

        logger.info(
            f"Billing plan {plan.plan_type} for enrollment {enrollment.pk}: "
            f"{len(result.invoice_ids)} invoices"
        )
        self.audit.log(
            'classes.enrollment.billing-plan.invoices.generated', 'ClassEnrollment', enrollment.pk,
            tenant=self.tenant, user=self.user,
            changes={'planType': plan.plan_type, 'invoiceCount': len(result.invoice_ids), 'purpose': purpose},
        )
        self.idempotency.store(ACTION_KEY, self.tenant, idempotency_key, result.to_dict())
        return result

    def _create_invoice(self, enrollment, plan, target: InvoiceTarget, purpose: str,
                        line_key: str, send_invoice: bool):
        draft = InvoiceDraftInput(
            customer_id=str(enrollment.payer_id),
            currency=target.currency,
            line_items=[InvoiceLineInput(
                description=target.label or f"Enrollment plan ({plan.plan_type})",
                quantity=1,
                unit_price_cents=target.amount_cents,
            )],
            source_type='CLASSES_BILLING_PLAN',
            source_id=str(plan.pk),
            idempotency_key=line_key,
            due_date=parse_date(target.due_date) if target.due_date else None,
        )

        created = self.invoices.create_draft(draft)
        if not created.success:
            logger.error(f"Billing plan invoice {line_key} failed: {created.error.code}")
            raise created.error
        finalized = self.invoices.finalize(created.invoice_id)
        if not finalized.success:
            logger.error(f"Billing plan invoice {line_key} could not be finalized: {finalized.error.code}")
            raise finalized.error

        link, was_created = self.repository.create_invoice_link(
            line_key,
            payer_id=enrollment.payer_id,
            invoice_id=created.invoice_id,
            purpose=purpose,
            enrollment=enrollment,
            class_group=enrollment.class_group,
            user=self.user,
        )
        if not was_created:
            return link

        self.outbox.enqueue(
            INVOICE_GENERATED_EVENT,
            {
                'tenantId': str(self.tenant.pk),
                'workspaceId': str(self.workspace.pk),
                'classGroupId': str(enrollment.class_group_id),
                'enrollmentId': str(enrollment.pk),
                'invoiceId': str(link.invoice_id),
                'purpose': purpose,
                'at': self.clock.now().isoformat(),
            },
            tenant=self.tenant,
        )
        if send_invoice:
            self.outbox.enqueue(
                INVOICE_READY_TO_SEND_EVENT,
                {'tenantId': str(self.tenant.pk), 'invoiceId': str(link.invoice_id)},
                tenant=self.tenant,
            )
        return link
