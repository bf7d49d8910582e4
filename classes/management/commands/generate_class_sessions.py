"""
Management command to generate class sessions from schedule patterns

Usage:
    python manage.py generate_class_sessions --tenant ACME --from 2024-01-01 --to 2024-03-31
    python manage.py generate_class_sessions --tenant ACME --workspace BERLIN --from 2024-01-01 --to 2024-01-31
"""
from django.core.management.base import BaseCommand, CommandError

from core.exceptions import DomainError
from classes.services.repository import ClassesRepository
from classes.services.schedule_pattern import parse_date
from classes.services.sessions import ClassSessionService

from ._workspaces import add_workspace_arguments, resolve_workspaces


class Command(BaseCommand):
    help = 'Create missing sessions for every class group with a schedule pattern'

    def add_arguments(self, parser):
        add_workspace_arguments(parser)
        parser.add_argument('--from', dest='start', required=True, help='First local date (YYYY-MM-DD)')
        parser.add_argument('--to', dest='end', required=True, help='Last local date (YYYY-MM-DD)')

    def handle(self, *args, **options):
        start, end = parse_date(options['start']), parse_date(options['end'])
        if start is None or end is None or end < start:
            raise CommandError('--from and --to must be dates (YYYY-MM-DD) with --from <= --to')

        total = 0
        for workspace in resolve_workspaces(options):
            repository = ClassesRepository(workspace)
            service = ClassSessionService(workspace, repository=repository)
            self.stdout.write(self.style.NOTICE(f'{workspace}: {start} - {end}'))

            for group in repository.list_class_groups_with_schedule_pattern():
                try:
                    result = service.generate_sessions_from_pattern(group, start, end)
                except DomainError as e:
                    self.stdout.write(self.style.ERROR(f'  {group.name}: {e.code} {e.message}'))
                    continue

                total += result.created_count
                self.stdout.write(
                    f'  {group.name}: {result.created_count} created, {result.existing} existing'
                )
                if result.skipped_locked_months:
                    self.stdout.write(self.style.WARNING(
                        f"    Skipped locked months: {', '.join(result.skipped_locked_months)}"
                    ))

        self.stdout.write(self.style.SUCCESS(f'Created {total} sessions'))
