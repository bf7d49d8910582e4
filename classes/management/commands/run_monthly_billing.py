"""
Management command to run monthly class billing
Creates (and optionally sends) one invoice per payer for a billing month

Usage:
    python manage.py run_monthly_billing --tenant ACME --preview
    python manage.py run_monthly_billing --tenant ACME --month 2024-01 --create-invoices
    python manage.py run_monthly_billing --tenant ACME --workspace BERLIN --create-invoices --send
    python manage.py run_monthly_billing --tenant ACME --month 2024-01 --create-invoices --force

A run that already created invoices answers later calls with the same key from
its cached result, so sending it afterwards needs a fresh key:
    python manage.py run_monthly_billing --tenant ACME --month 2024-01 --send --idempotency-key acme-2024-01-send
"""
from django.core.management.base import BaseCommand, CommandError

from core.exceptions import DomainError
from core.services.clock import SystemClock
from classes.services.billing_period import default_billing_month, resolve_billing_timezone
from classes.services.billing_settings import ClassesSettingsRepository
from classes.services.monthly_billing import MonthlyBillingRunService

from ._workspaces import add_workspace_arguments, resolve_workspaces


class Command(BaseCommand):
    help = 'Run monthly class billing for a tenant'

    def add_arguments(self, parser):
        add_workspace_arguments(parser)
        parser.add_argument(
            '--month',
            help='Billing month YYYY-MM (default: current month when prepaid, previous month in arrears)',
        )
        parser.add_argument('--preview', action='store_true', help='Only show what would be invoiced')
        parser.add_argument('--create-invoices', action='store_true', help='Create and finalize invoices')
        parser.add_argument('--send', action='store_true', help='Queue invoices for sending')
        parser.add_argument('--force', action='store_true', help='Cancel existing invoices and regenerate')
        parser.add_argument('--idempotency-key', help='Override the default idempotency key')

    def handle(self, *args, **options):
        clock = SystemClock()
        for workspace in resolve_workspaces(options):
            month = options['month']
            if not month:
                settings = ClassesSettingsRepository().get(workspace)
                month = default_billing_month(
                    settings.billing_month_strategy, clock.now(), resolve_billing_timezone(workspace)
                )

            service = MonthlyBillingRunService(workspace, clock=clock)
            self.stdout.write(self.style.NOTICE(f'{workspace} - billing month {month}'))

            try:
                if options['preview']:
                    self._print_preview(service.get_preview(month))
                    continue

                result = service.create_or_advance_run(
                    month,
                    create_invoices=options['create_invoices'],
                    send_invoices=options['send'],
                    force=options['force'],
                    idempotency_key=options['idempotency_key'],
                )
            except DomainError as e:
                raise CommandError(f'{e.code}: {e.message}')

            run = result.billing_run
            cached = ' (cached)' if result.from_cache else ''
            self.stdout.write(self.style.SUCCESS(
                f"  Run {run['id']} is {run['status']}{cached}: {len(result.invoice_ids)} invoices"
            ))
            for invoice_id in result.invoice_ids:
                self.stdout.write(f'    {invoice_id}')
            if options['send'] and result.from_cache:
                self.stdout.write(self.style.WARNING(
                    '  Cached result, nothing queued for sending; pass a new --idempotency-key to send'
                ))

    def _print_preview(self, preview):
        self.stdout.write(
            f'  {preview.billing_month_strategy} / {preview.billing_basis} - status {preview.status}'
        )
        if not preview.items:
            self.stdout.write(self.style.WARNING('  Nothing to invoice'))
            return
        for item in preview.items:
            self.stdout.write(
                f'  Payer {item.payer_client_id}: {item.total_sessions} sessions, '
                f'{item.total_amount_cents / 100:.2f} {item.currency}'
            )
            for line in item.lines:
                self.stdout.write(f'    {line.class_group_name}: {line.sessions} x {line.price_cents / 100:.2f}')
