"""Workspace selection shared by the classes management commands."""
from django.core.management.base import CommandError

from tenants.models import Workspace


def add_workspace_arguments(parser):
    parser.add_argument('--tenant', required=True, help='Tenant code')
    parser.add_argument('--workspace', help='Workspace code (default: every active workspace of the tenant)')


def resolve_workspaces(options):
    workspaces = Workspace.objects.select_related('tenant').filter(
        tenant__code=options['tenant'],
        is_active=True,
    )
    if options.get('workspace'):
        workspaces = workspaces.filter(code=options['workspace'])
    workspaces = list(workspaces.order_by('code'))
    if not workspaces:
        raise CommandError(f"No active workspace found for tenant {options['tenant']}")
    return workspaces
