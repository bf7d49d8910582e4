"""
Management command to lock a billing month after invoices were created

Usage:
    python manage.py lock_billing_month --tenant ACME --month 2024-01
"""
from django.core.management.base import BaseCommand, CommandError

from core.exceptions import DomainError
from classes.services.billing_period import normalize_billing_month
from classes.services.monthly_billing import MonthlyBillingRunService
from classes.services.repository import ClassesRepository

from ._workspaces import add_workspace_arguments, resolve_workspaces


class Command(BaseCommand):
    help = 'Lock the billing run of a month so it can no longer change'

    def add_arguments(self, parser):
        add_workspace_arguments(parser)
        parser.add_argument('--month', required=True, help='Billing month YYYY-MM')

    def handle(self, *args, **options):
        try:
            month = normalize_billing_month(options['month'])
        except DomainError as e:
            raise CommandError(f'{e.code}: {e.message}')

        for workspace in resolve_workspaces(options):
            repository = ClassesRepository(workspace)
            service = MonthlyBillingRunService(workspace, repository=repository)
            try:
                run = repository.find_billing_run_by_month(month)
                if run is None:
                    self.stdout.write(self.style.WARNING(f'{workspace}: no billing run for {month}'))
                    continue
                locked = service.lock_run(run.pk)
            except DomainError as e:
                raise CommandError(f'{e.code}: {e.message}')
            self.stdout.write(self.style.SUCCESS(f"{workspace}: {locked['month']} is {locked['status']}"))
