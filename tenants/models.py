"""
Tenants app models - Multi-tenancy support
Tenant and Workspace models; all business data is scoped to a workspace
"""
from django.conf import settings
from django.db import models
from core.models import AuditedModel


class Tenant(models.Model):
    """
    Tenant represents a customer organisation (the billing account holder)
    """
    code = models.CharField(max_length=20, unique=True)
    name = models.CharField(max_length=100)
    legal_name = models.CharField(max_length=200, blank=True)

    # Contact
    email = models.EmailField(blank=True)

    # Status
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['name']

    def __str__(self):
        return self.name

    def get_active_workspaces(self):
        return self.workspaces.filter(is_active=True)


class Workspace(models.Model):
    """
    Workspace is an isolated business unit within a tenant
    (e.g. one school location). Billing runs are per workspace.
    """
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name='workspaces'
    )
    code = models.CharField(max_length=20)
    name = models.CharField(max_length=100)

    # Locale
    timezone = models.CharField(
        max_length=64,
        blank=True,
        help_text="IANA zone for billing months (blank = CLASSES_BILLING_TIMEZONE)"
    )
    currency = models.CharField(max_length=3, blank=True)

    # Status
    is_active = models.BooleanField(default=True)

    class Meta:
        ordering = ['tenant', 'name']
        unique_together = ['tenant', 'code']

    def __str__(self):
        return f"{self.tenant.code} - {self.name}"

    @property
    def billing_timezone(self):
        return self.timezone or settings.CLASSES_BILLING_TIMEZONE

    @property
    def default_currency(self):
        return self.currency or settings.CLASSES_DEFAULT_CURRENCY


class TenantAwareModel(AuditedModel):
    """
    Abstract base class for all tenant-scoped models
    Tenant is denormalised from the workspace for key derivation and filtering
    """
    tenant = models.ForeignKey(
        Tenant,
        on_delete=models.PROTECT,
        related_name='%(class)s_items'
    )
    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.PROTECT,
        related_name='%(class)s_items'
    )

    class Meta:
        abstract = True

    def save(self, *args, **kwargs):
        if self.workspace_id and not self.tenant_id:
            self.tenant_id = self.workspace.tenant_id
        super().save(*args, **kwargs)
