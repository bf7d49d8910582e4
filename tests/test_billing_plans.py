from datetime import date

import pytest

from core.exceptions import ConflictError, NotFoundError, ValidationFailedError
from core.models import IdempotencyRecord, OutboxEvent
from classes.models import ClassBillingInvoiceLink
from classes.services.billing_plans import (
    INVOICE_GENERATED_EVENT,
    BillingPlanService,
    resolve_invoice_targets,
    validate_plan_schedule,
)
from classes.services.monthly_billing import INVOICE_READY_TO_SEND_EVENT
from finance.models import Invoice

pytestmark = pytest.mark.django_db

INSTALLMENTS = {
    'currency': 'EUR',
    'installments': [
        {'amountCents': 30000, 'dueDate': '2024-02-01', 'label': 'Spring term 1/2'},
        {'amountCents': 30000, 'dueDate': '2024-03-01', 'label': 'Spring term 2/2'},
    ],
}


@pytest.fixture
def enrollment(math_group, payer_a, make_enrollment):
    return make_enrollment(math_group, payer_a)


@pytest.fixture
def plan_service(workspace, invoices, clock):
    return BillingPlanService(workspace, invoices=invoices, clock=clock)


class TestPlanValidation:

    def test_installment_dates_must_not_decrease(self):
        schedule = {'installments': [
            {'amountCents': 100, 'dueDate': '2024-03-01'},
            {'amountCents': 100, 'dueDate': '2024-02-01'},
        ]}

        with pytest.raises(ValidationFailedError) as excinfo:
            validate_plan_schedule('INSTALLMENTS', schedule, 'EUR')

        assert excinfo.value.code == 'Classes:InvalidBillingPlan'

    @pytest.mark.parametrize('plan_type, schedule', [
        ('UPFRONT', {'amountCents': -1}),
        ('UPFRONT', {'amountCents': 100, 'currency': 'euro'}),
        ('INSTALLMENTS', {'installments': []}),
        ('INSTALLMENTS', {'installments': [{'amountCents': 100}]}),
        ('INVOICE_NET', {'amountCents': 100, 'netDays': -30}),
    ])
    def test_invalid_schedules(self, plan_type, schedule):
        with pytest.raises(ValidationFailedError):
            validate_plan_schedule(plan_type, schedule, 'EUR')

    def test_unknown_plan_type(self):
        with pytest.raises(ValidationFailedError):
            validate_plan_schedule('LIFETIME', {}, 'EUR')

    def test_stored_form_wraps_data_and_defaults_currency(self):
        stored = validate_plan_schedule('UPFRONT', {'amountCents': 50000}, 'CHF')

        assert stored == {'data': {'amountCents': 50000, 'currency': 'CHF'}}

    def test_targets_read_wrapped_and_bare_schedules(self):
        wrapped, purpose = resolve_invoice_targets('INSTALLMENTS', {'data': INSTALLMENTS})
        bare, _ = resolve_invoice_targets('INSTALLMENTS', INSTALLMENTS)

        assert purpose == 'INSTALLMENT'
        assert wrapped == bare
        assert [target.due_date for target in wrapped] == ['2024-02-01', '2024-03-01']

    def test_subscription_has_no_invoice_targets(self):
        with pytest.raises(ValidationFailedError) as excinfo:
            resolve_invoice_targets('SUBSCRIPTION', {})

        assert excinfo.value.code == 'Classes:UnsupportedBillingPlan'


class TestGenerateInvoices:

    def test_installments_create_one_invoice_each(self, plan_service, invoices, enrollment):
        plan_service.upsert_plan(enrollment, 'INSTALLMENTS', INSTALLMENTS)

        result = plan_service.generate_invoices(enrollment.pk, 'enrollment-1-v1')

        assert len(result.invoice_ids) == 2
        assert invoices.count('create_draft') == 2
        assert [link['idempotencyKey'] for link in result.links] == ['enrollment-1-v1:1', 'enrollment-1-v1:2']
        assert {link['purpose'] for link in result.links} == {'INSTALLMENT'}
        due_dates = [Invoice.objects.get(pk=invoice_id).due_date for invoice_id in result.invoice_ids]
        assert due_dates == [date(2024, 2, 1), date(2024, 3, 1)]
        assert OutboxEvent.objects.filter(event_type=INVOICE_GENERATED_EVENT).count() == 2
        assert not OutboxEvent.objects.filter(event_type=INVOICE_READY_TO_SEND_EVENT).exists()

    def test_repeated_key_returns_cached_result(self, plan_service, invoices, enrollment):
        plan_service.upsert_plan(enrollment, 'UPFRONT', {'amountCents': 90000, 'label': 'Full course'})

        first = plan_service.generate_invoices(enrollment.pk, 'upfront-1')
        second = plan_service.generate_invoices(enrollment.pk, 'upfront-1')

        assert second.from_cache
        assert second.invoice_ids == first.invoice_ids
        assert invoices.count('create_draft') == 1

    def test_links_survive_a_lost_idempotency_record(self, plan_service, invoices, enrollment):
        plan_service.upsert_plan(enrollment, 'INSTALLMENTS', INSTALLMENTS)
        first = plan_service.generate_invoices(enrollment.pk, 'enrollment-1-v1')
        IdempotencyRecord.objects.all().delete()

        second = plan_service.generate_invoices(enrollment.pk, 'enrollment-1-v1')

        assert not second.from_cache
        assert second.invoice_ids == first.invoice_ids
        assert invoices.count('create_draft') == 2
        assert ClassBillingInvoiceLink.objects.count() == 2

    def test_upfront_invoice_uses_plan_label(self, plan_service, enrollment):
        plan_service.upsert_plan(enrollment, 'UPFRONT', {'amountCents': 90000, 'label': 'Full course'})

        result = plan_service.generate_invoices(enrollment.pk, 'upfront-1')

        invoice = Invoice.objects.get(pk=result.invoice_ids[0])
        assert invoice.status == 'ISSUED'
        assert invoice.total_cents == 90000
        assert invoice.source_type == 'CLASSES_BILLING_PLAN'
        assert list(invoice.line_items.values_list('description', flat=True)) == ['Full course']
        assert result.links[0]['purpose'] == 'FINAL'

    def test_send_queues_new_invoices(self, plan_service, enrollment):
        plan_service.upsert_plan(enrollment, 'INVOICE_NET', {'amountCents': 12000, 'netDays': 30,
                                                             'purchaseOrderNumber': 'PO-77'})

        result = plan_service.generate_invoices(enrollment.pk, 'net-1', send_invoices=True)

        queued = OutboxEvent.objects.get(event_type=INVOICE_READY_TO_SEND_EVENT)
        assert queued.payload['invoiceId'] == result.invoice_ids[0]
        assert result.links[0]['purpose'] == 'ADHOC'

    def test_idempotency_key_is_required(self, plan_service, enrollment):
        with pytest.raises(ValidationFailedError) as excinfo:
            plan_service.generate_invoices(enrollment.pk, '  ')

        assert excinfo.value.code == 'Classes:IdempotencyKeyRequired'

    def test_enrollment_must_exist(self, plan_service, workspace):
        with pytest.raises(NotFoundError) as excinfo:
            plan_service.generate_invoices('00000000-0000-0000-0000-000000000000', 'key-1')

        assert excinfo.value.code == 'Classes:EnrollmentNotFound'

    def test_enrollment_must_be_enrolled(self, plan_service, enrollment):
        enrollment.status = 'DROPPED'
        enrollment.save()

        with pytest.raises(ConflictError) as excinfo:
            plan_service.generate_invoices(enrollment.pk, 'key-1')

        assert excinfo.value.code == 'Classes:EnrollmentNotEnrolled'

    def test_plan_must_exist(self, plan_service, enrollment):
        with pytest.raises(NotFoundError) as excinfo:
            plan_service.generate_invoices(enrollment.pk, 'key-1')

        assert excinfo.value.code == 'Classes:BillingPlanNotFound'

    def test_subscription_plans_are_rejected(self, plan_service, invoices, enrollment):
        plan_service.upsert_plan(enrollment, 'SUBSCRIPTION', {})

        with pytest.raises(ValidationFailedError):
            plan_service.generate_invoices(enrollment.pk, 'key-1')

        assert invoices.count('create_draft') == 0

    def test_upsert_replaces_existing_plan(self, plan_service, enrollment):
        plan_service.upsert_plan(enrollment, 'UPFRONT', {'amountCents': 100})
        plan = plan_service.upsert_plan(enrollment, 'INSTALLMENTS', INSTALLMENTS)

        enrollment.refresh_from_db()
        assert enrollment.billing_plan.pk == plan.pk
        assert plan.plan_type == 'INSTALLMENTS'
