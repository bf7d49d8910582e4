"""
Billing settings

A workspace bills classes either prepaid on scheduled sessions or in arrears
on attended sessions. Stored settings are normalized on read and validated on
write.
"""
import logging
from dataclasses import asdict, dataclass
from typing import Optional

from django.db import transaction

from core.exceptions import ValidationFailedError, issue
from core.services.audit import AuditService

logger = logging.getLogger(__name__)

PREPAID_CURRENT_MONTH = 'PREPAID_CURRENT_MONTH'
ARREARS_PREVIOUS_MONTH = 'ARREARS_PREVIOUS_MONTH'
SCHEDULED_SESSIONS = 'SCHEDULED_SESSIONS'
ATTENDED_SESSIONS = 'ATTENDED_SESSIONS'
MANUAL = 'MANUAL'
AUTO_FULL = 'AUTO_FULL'

MONTH_STRATEGIES = (PREPAID_CURRENT_MONTH, ARREARS_PREVIOUS_MONTH)
BILLING_BASES = (SCHEDULED_SESSIONS, ATTENDED_SESSIONS)
ATTENDANCE_MODES = (MANUAL, AUTO_FULL)

DEFAULT_BASIS = {
    PREPAID_CURRENT_MONTH: SCHEDULED_SESSIONS,
    ARREARS_PREVIOUS_MONTH: ATTENDED_SESSIONS,
}

SETTINGS_FIELDS = ('billing_month_strategy', 'billing_basis', 'attendance_mode')


@dataclass(frozen=True)
class BillingSettings:
    billing_month_strategy: str = PREPAID_CURRENT_MONTH
    billing_basis: str = SCHEDULED_SESSIONS
    attendance_mode: str = MANUAL

    def to_dict(self) -> dict:
        return asdict(self)


def _read(raw, name: str) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        value = raw.get(name)
    else:
        value = getattr(raw, name, None)
    return value or None


def normalize_billing_settings(raw=None) -> BillingSettings:
    """
    Fill gaps with defaults and repair an invalid strategy/basis pair by
    falling back to the strategy's default basis. Never raises.
    """
    strategy = _read(raw, 'billing_month_strategy')
    if strategy not in MONTH_STRATEGIES:
        strategy = PREPAID_CURRENT_MONTH

    basis = _read(raw, 'billing_basis')
    if basis != DEFAULT_BASIS[strategy]:
        basis = DEFAULT_BASIS[strategy]

    mode = _read(raw, 'attendance_mode')
    if mode not in ATTENDANCE_MODES:
        mode = MANUAL

    return BillingSettings(
        billing_month_strategy=strategy,
        billing_basis=basis,
        attendance_mode=mode,
    )


def validate_billing_settings(raw) -> BillingSettings:
    """Strict counterpart of normalize_billing_settings used on updates."""
    issues = []
    strategy = _read(raw, 'billing_month_strategy') or PREPAID_CURRENT_MONTH
    if strategy not in MONTH_STRATEGIES:
        issues.append(issue(f"Unknown billing month strategy {strategy!r}", 'billingMonthStrategy'))

    basis = _read(raw, 'billing_basis') or DEFAULT_BASIS.get(strategy, SCHEDULED_SESSIONS)
    if basis not in BILLING_BASES:
        issues.append(issue(f"Unknown billing basis {basis!r}", 'billingBasis'))

    mode = _read(raw, 'attendance_mode') or MANUAL
    if mode not in ATTENDANCE_MODES:
        issues.append(issue(f"Unknown attendance mode {mode!r}", 'attendanceMode'))

    if not issues and DEFAULT_BASIS[strategy] != basis:
        issues.append(issue(
            f"{strategy} billing requires {DEFAULT_BASIS[strategy]}",
            'billingMonthStrategy', 'billingBasis',
        ))

    if issues:
        raise ValidationFailedError(
            'Invalid classes billing settings',
            issues=issues,
            code='Classes:InvalidBillingSettings',
        )
    return BillingSettings(billing_month_strategy=strategy, billing_basis=basis, attendance_mode=mode)


class ClassesSettingsRepository:
    """
    Loads and saves ClassesBillingSettings for a workspace.

    Usage:
        settings = ClassesSettingsRepository().get(workspace)
        if settings.billing_basis == ATTENDED_SESSIONS: ...
    """

    def __init__(self, audit: AuditService = None):
        self.audit = audit or AuditService()

    def get(self, workspace) -> BillingSettings:
        from classes.models import ClassesBillingSettings

        row = ClassesBillingSettings.objects.filter(
            tenant_id=workspace.tenant_id,
            workspace=workspace,
        ).first()
        return normalize_billing_settings(row)

    def update(self, workspace, user=None, **changes) -> BillingSettings:
        from classes.models import ClassesBillingSettings

        unknown = set(changes) - set(SETTINGS_FIELDS)
        if unknown:
            raise ValidationFailedError(
                'Unknown billing settings',
                issues=[issue(f"Unknown setting {name!r}", name) for name in sorted(unknown)],
                code='Classes:InvalidBillingSettings',
            )

        current = self.get(workspace).to_dict()
        merged = {**current, **changes}
        if 'billing_month_strategy' in changes and 'billing_basis' not in changes:
            merged['billing_basis'] = DEFAULT_BASIS.get(changes['billing_month_strategy'], merged['billing_basis'])

        validated = validate_billing_settings(merged)

        with transaction.atomic():
            row, created = ClassesBillingSettings.objects.update_or_create(
                tenant_id=workspace.tenant_id,
                workspace=workspace,
                defaults={**validated.to_dict(), 'updated_by': user},
            )
            if created and user is not None:
                row.created_by = user
                row.save(update_fields=['created_by'])

        logger.info(
            f"Classes billing settings for {workspace}: "
            f"{validated.billing_month_strategy}/{validated.billing_basis}/{validated.attendance_mode}"
        )
        self.audit.log(
            'classes.billing.settings.updated',
            'ClassesBillingSettings',
            row.pk,
            tenant=workspace.tenant,
            user=user,
            changes={'before': current, 'after': validated.to_dict()},
        )
        return validated
