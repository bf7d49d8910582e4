"""
Finance app models
Invoices issued to clients; amounts are integer minor-currency units (cents)
"""
import uuid
from django.db import models
from django.utils import timezone
from tenants.models import TenantAwareModel


class Invoice(TenantAwareModel):
    """
    Invoice for a client (payer)
    """
    STATUS_CHOICES = [
        ('DRAFT', 'Draft'),
        ('ISSUED', 'Issued'),
        ('SENT', 'Sent'),
        ('CANCELLED', 'Cancelled'),
    ]

    SOURCE_TYPES = [
        ('MANUAL', 'Manual'),
        ('CLASSES_BILLING_RUN', 'Classes Monthly Billing Run'),
        ('CLASSES_BILLING_PLAN', 'Classes Enrollment Billing Plan'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=50)

    customer = models.ForeignKey(
        'clients.Client',
        on_delete=models.PROTECT,
        related_name='invoices'
    )

    # Dates
    invoice_date = models.DateField()
    due_date = models.DateField()

    # Status
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='DRAFT')
    issued_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True)

    # Billing info (snapshot of the customer at creation time)
    billing_name = models.CharField(max_length=200)
    billing_email = models.EmailField(blank=True)
    billing_address = models.TextField(blank=True)

    # Totals
    currency = models.CharField(max_length=3)
    subtotal_cents = models.BigIntegerField(default=0)
    total_cents = models.BigIntegerField(default=0)

    # Origin
    source_type = models.CharField(max_length=30, choices=SOURCE_TYPES, default='MANUAL')
    source_id = models.CharField(max_length=64, blank=True)
    idempotency_key = models.CharField(max_length=255, blank=True, db_index=True)

    notes = models.TextField(blank=True)

    class Meta:
        ordering = ['-invoice_date', '-invoice_number']
        constraints = [
            models.UniqueConstraint(
                fields=['tenant', 'invoice_number'],
                name='unique_tenant_invoice_number'
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'due_date']),
            models.Index(fields=['source_type', 'source_id']),
        ]

    def __str__(self):
        return self.invoice_number

    @property
    def is_overdue(self):
        return self.status in ['ISSUED', 'SENT'] and self.due_date < timezone.now().date()

    def recalculate_totals(self):
        self.subtotal_cents = sum(item.line_total_cents for item in self.line_items.all())
        self.total_cents = self.subtotal_cents


class InvoiceLineItem(models.Model):
    """
    Invoice line items
    """
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.CASCADE,
        related_name='line_items'
    )

    description = models.CharField(max_length=200)
    quantity = models.PositiveIntegerField(default=1)
    unit_price_cents = models.BigIntegerField()
    position = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['position', 'id']
        verbose_name = 'Invoice Line Item'
        verbose_name_plural = 'Invoice Line Items'

    def __str__(self):
        return f"{self.invoice.invoice_number} - {self.description}"

    @property
    def line_total_cents(self):
        return self.quantity * self.unit_price_cents
