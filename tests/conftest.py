"""
Shared fixtures for the classes billing tests.

Database fixtures build one tenant with a Berlin workspace. Services are given
a FixedClock and a RecordingInvoices port so tests can count invoice calls.
"""
from datetime import datetime, timezone as dt_timezone

import pytest


WEEKLY_MO_WE_FR = {
    'version': 1,
    'recurrence': {'frequency': 'WEEKLY', 'interval': 1, 'daysOfWeek': ['MO', 'WE', 'FR']},
    'startsOn': '2024-01-01',
    'time': '18:00',
}

WEEKLY_TU = {
    'version': 1,
    'recurrence': {'frequency': 'WEEKLY', 'interval': 1, 'daysOfWeek': ['TU']},
    'startsOn': '2024-01-01',
    'time': '10:00',
}


class RecordingInvoices:
    """
    Invoices port that records every call and delegates to the real
    InvoiceWriteService. Set `failures[method]` to an InvoiceResult to make
    that method fail instead.
    """

    def __init__(self, workspace, clock):
        from finance.services.invoices import InvoiceWriteService

        self.inner = InvoiceWriteService(workspace, clock=clock)
        self.calls = []
        self.failures = {}

    def _call(self, name, *args):
        self.calls.append((name, args))
        if name in self.failures:
            return self.failures[name]
        return getattr(self.inner, name)(*args)

    def create_draft(self, draft):
        return self._call('create_draft', draft)

    def finalize(self, invoice_id):
        return self._call('finalize', invoice_id)

    def cancel(self, invoice_id, reason):
        return self._call('cancel', invoice_id, reason)

    def get_recipient_emails(self, invoice_ids):
        return self._call('get_recipient_emails', invoice_ids)

    def count(self, name):
        return sum(1 for call_name, _ in self.calls if call_name == name)


@pytest.fixture
def clock():
    from core.services.clock import FixedClock
    return FixedClock(datetime(2024, 1, 15, 9, 0, tzinfo=dt_timezone.utc))


@pytest.fixture
def tenant(db):
    from tenants.models import Tenant
    return Tenant.objects.create(code='ACME', name='Acme Academy', email='office@acme.test')


@pytest.fixture
def workspace(tenant):
    from tenants.models import Workspace
    return Workspace.objects.create(
        tenant=tenant,
        code='BERLIN',
        name='Berlin',
        timezone='Europe/Berlin',
        currency='EUR',
    )


@pytest.fixture
def make_client(workspace):
    from clients.models import Client

    def _make(display_name, email=''):
        return Client.objects.create(workspace=workspace, display_name=display_name, email=email)
    return _make


@pytest.fixture
def payer_a(make_client):
    return make_client('Anna Becker', 'anna@example.test')


@pytest.fixture
def payer_b(make_client):
    return make_client('Bernd Fischer', 'bernd@example.test')


@pytest.fixture
def student(make_client):
    return make_client('Clara Becker')


@pytest.fixture
def make_group(workspace):
    from classes.models import ClassGroup

    def _make(name, price=2000, pattern=None, **extra):
        return ClassGroup.objects.create(
            workspace=workspace,
            name=name,
            default_price_per_session=price,
            currency='EUR',
            schedule_pattern=pattern,
            **extra
        )
    return _make


@pytest.fixture
def make_enrollment(workspace, student):
    from classes.models import ClassEnrollment

    default_student = student

    def _make(group, payer, student=None, **extra):
        return ClassEnrollment.objects.create(
            workspace=workspace,
            class_group=group,
            student=student or default_student,
            payer=payer,
            **extra
        )
    return _make


@pytest.fixture
def math_group(make_group):
    return make_group('Math', price=2000, pattern=WEEKLY_MO_WE_FR)


@pytest.fixture
def physics_group(make_group):
    return make_group('Physics', price=2500, pattern=WEEKLY_TU)


@pytest.fixture
def invoices(workspace, clock):
    return RecordingInvoices(workspace, clock)


@pytest.fixture
def billing_settings(workspace):
    """Switch the workspace's billing settings: billing_settings(billing_month_strategy=..., attendance_mode=...)."""
    from classes.services.billing_settings import ClassesSettingsRepository

    def _update(**changes):
        return ClassesSettingsRepository().update(workspace, **changes)
    return _update


@pytest.fixture
def billing_service(workspace, invoices, clock):
    from classes.services.monthly_billing import MonthlyBillingRunService
    return MonthlyBillingRunService(workspace, invoices=invoices, clock=clock)


@pytest.fixture
def session_service(workspace):
    from classes.services.sessions import ClassSessionService
    return ClassSessionService(workspace)


@pytest.fixture
def make_run(workspace):
    """Billing run in a given state, bypassing the orchestrator."""
    from classes.models import ClassMonthlyBillingRun

    def _make(month, status='INVOICES_CREATED', strategy='PREPAID_CURRENT_MONTH',
              basis='SCHEDULED_SESSIONS'):
        return ClassMonthlyBillingRun.objects.create(
            workspace=workspace,
            month=month,
            status=status,
            billing_month_strategy=strategy,
            billing_basis=basis,
        )
    return _make
