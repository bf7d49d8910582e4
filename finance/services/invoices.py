"""
Invoice Write Service

Creates, finalizes and cancels invoices on behalf of other modules.
Operations return an InvoiceResult instead of raising so callers decide how an
invoicing failure affects their own state.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.exceptions import UpstreamError
from core.services.clock import SystemClock
from finance.models import Invoice, InvoiceLineItem

logger = logging.getLogger(__name__)


class InvoiceError(UpstreamError):
    """Failure reported by the invoicing module."""


@dataclass
class InvoiceLineInput:
    description: str
    quantity: int
    unit_price_cents: int


@dataclass
class InvoiceDraftInput:
    customer_id: str
    currency: str
    line_items: List[InvoiceLineInput]
    source_type: str = 'MANUAL'
    source_id: str = ''
    idempotency_key: str = ''
    notes: str = ''
    due_date: Optional[date] = None


@dataclass
class InvoiceResult:
    """Standard result from an invoice operation."""
    success: bool
    invoice: Optional[Invoice] = None
    error: Optional[InvoiceError] = None

    @property
    def invoice_id(self) -> Optional[str]:
        return str(self.invoice.pk) if self.invoice else None

    @classmethod
    def success_result(cls, invoice: Invoice):
        return cls(success=True, invoice=invoice)

    @classmethod
    def failure_result(cls, code: str, message: str, details: dict = None):
        return cls(success=False, error=InvoiceError(message, code=code, details=details))


class InvoiceWriteService:
    """
    Invoice operations scoped to one workspace.

    Usage:
        service = InvoiceWriteService(workspace)
        result = service.create_draft(InvoiceDraftInput(...))
        if result.success:
            service.finalize(result.invoice_id)
    """

    NUMBER_PREFIX = 'INV'
    NUMBER_ATTEMPTS = 3

    def __init__(self, workspace, clock=None):
        self.workspace = workspace
        self.tenant = workspace.tenant
        self.clock = clock or SystemClock()

    # ===== WRITE OPERATIONS =====

    def create_draft(self, draft: InvoiceDraftInput) -> InvoiceResult:
        """
        Create a DRAFT invoice. A live (non-cancelled) invoice with the same
        idempotency key is returned instead of creating a second one.
        """
        from clients.models import Client

        if draft.idempotency_key:
            existing = self._invoices().filter(
                idempotency_key=draft.idempotency_key,
            ).exclude(status='CANCELLED').first()
            if existing:
                logger.info(f"Reusing invoice {existing.invoice_number} for key {draft.idempotency_key}")
                return InvoiceResult.success_result(existing)

        customer = Client.objects.filter(
            workspace=self.workspace,
            pk=draft.customer_id,
            is_deleted=False,
        ).first()
        if customer is None:
            return InvoiceResult.failure_result(
                'Invoices:CustomerNotFound',
                f"Customer {draft.customer_id} not found",
            )

        if not draft.line_items:
            return InvoiceResult.failure_result('Invoices:EmptyInvoice', 'Invoice has no line items')

        for line in draft.line_items:
            if line.quantity < 1 or line.unit_price_cents < 0:
                return InvoiceResult.failure_result(
                    'Invoices:InvalidLineItem',
                    f"Invalid line item '{line.description}'",
                    {'quantity': line.quantity, 'unitPriceCents': line.unit_price_cents},
                )

        now = self.clock.now()
        invoice_date = timezone.localtime(now, self._zone()).date()
        due_date = draft.due_date or invoice_date + timedelta(days=settings.CLASSES_INVOICE_PAYMENT_TERMS_DAYS)

        for attempt in range(self.NUMBER_ATTEMPTS):
            try:
                with transaction.atomic():
                    invoice = Invoice.objects.create(
                        tenant=self.tenant,
                        workspace=self.workspace,
                        invoice_number=self._next_invoice_number(invoice_date),
                        customer=customer,
                        invoice_date=invoice_date,
                        due_date=due_date,
                        status='DRAFT',
                        billing_name=customer.display_name,
                        billing_email=customer.email,
                        billing_address=customer.billing_address,
                        currency=draft.currency,
                        source_type=draft.source_type,
                        source_id=draft.source_id,
                        idempotency_key=draft.idempotency_key,
                        notes=draft.notes,
                    )
                    for position, line in enumerate(draft.line_items):
                        InvoiceLineItem.objects.create(
                            invoice=invoice,
                            description=line.description[:200],
                            quantity=line.quantity,
                            unit_price_cents=line.unit_price_cents,
                            position=position,
                        )
                    invoice.recalculate_totals()
                    invoice.save(update_fields=['subtotal_cents', 'total_cents'])
            except IntegrityError:
                # Invoice number taken by a concurrent writer
                logger.warning(f"Invoice number collision (attempt {attempt + 1}), retrying")
                continue

            logger.info(
                f"Created draft invoice {invoice.invoice_number} for {customer.display_name} "
                f"({invoice.total_cents} {invoice.currency})"
            )
            return InvoiceResult.success_result(invoice)

        return InvoiceResult.failure_result(
            'Invoices:NumberAllocationFailed',
            'Could not allocate an invoice number',
        )

    def finalize(self, invoice_id) -> InvoiceResult:
        """Issue a DRAFT invoice. Issued or sent invoices are returned unchanged."""
        invoice = self._get(invoice_id)
        if invoice is None:
            return InvoiceResult.failure_result('Invoices:NotFound', f"Invoice {invoice_id} not found")

        if invoice.status in ['ISSUED', 'SENT']:
            return InvoiceResult.success_result(invoice)
        if invoice.status != 'DRAFT':
            return InvoiceResult.failure_result(
                'Invoices:InvalidTransition',
                f"Cannot finalize invoice {invoice.invoice_number} in status {invoice.status}",
            )
        invoice.status = 'ISSUED'
        invoice.issued_at = self.clock.now()
        invoice.save(update_fields=['status', 'issued_at', 'updated_at'])
        return InvoiceResult.success_result(invoice)

    def cancel(self, invoice_id, reason: str) -> InvoiceResult:
        """Cancel an invoice. Cancelling twice is a no-op."""
        invoice = self._get(invoice_id)
        if invoice is None:
            return InvoiceResult.failure_result('Invoices:NotFound', f"Invoice {invoice_id} not found")

        if invoice.status == 'CANCELLED':
            return InvoiceResult.success_result(invoice)

        invoice.status = 'CANCELLED'
        invoice.cancelled_at = self.clock.now()
        invoice.cancellation_reason = reason
        invoice.save(update_fields=['status', 'cancelled_at', 'cancellation_reason', 'updated_at'])
        logger.info(f"Cancelled invoice {invoice.invoice_number}: {reason}")
        return InvoiceResult.success_result(invoice)

    def mark_sent(self, invoice_id) -> InvoiceResult:
        invoice = self._get(invoice_id)
        if invoice is None:
            return InvoiceResult.failure_result('Invoices:NotFound', f"Invoice {invoice_id} not found")
        if invoice.status not in ['ISSUED', 'SENT']:
            return InvoiceResult.failure_result(
                'Invoices:InvalidTransition',
                f"Cannot send invoice {invoice.invoice_number} in status {invoice.status}",
            )

        invoice.status = 'SENT'
        invoice.sent_at = self.clock.now()
        invoice.save(update_fields=['status', 'sent_at', 'updated_at'])
        return InvoiceResult.success_result(invoice)

    # ===== QUERIES =====

    def get_recipient_emails(self, invoice_ids: Iterable) -> Dict[str, Optional[str]]:
        """
        Map each invoice id to the address it would be sent to.
        Falls back to the customer's current email; None when neither is set.
        """
        ids = [str(invoice_id) for invoice_id in invoice_ids]
        invoices = self._invoices().filter(pk__in=ids).select_related('customer')
        found = {
            str(invoice.pk): (invoice.billing_email or invoice.customer.email or None)
            for invoice in invoices
        }
        return {invoice_id: found.get(invoice_id) for invoice_id in ids}

    # ===== HELPERS =====

    def _invoices(self):
        return Invoice.objects.filter(workspace=self.workspace, is_deleted=False)

    def _get(self, invoice_id) -> Optional[Invoice]:
        return self._invoices().filter(pk=invoice_id).first()

    def _zone(self):
        from zoneinfo import ZoneInfo
        return ZoneInfo(self.workspace.billing_timezone)

    def _next_invoice_number(self, invoice_date) -> str:
        """Generate the next sequential number: INV-YYYYMM-NNNN per tenant."""
        date_part = invoice_date.strftime('%Y%m')
        prefix = f"{self.NUMBER_PREFIX}-{date_part}-"
        last_invoice = Invoice.objects.filter(
            tenant=self.tenant,
            invoice_number__startswith=prefix,
        ).order_by('-invoice_number').first()

        if last_invoice:
            try:
                last_num = int(last_invoice.invoice_number.split('-')[-1])
                return f"{prefix}{last_num + 1:04d}"
            except (ValueError, IndexError):
                return f"{prefix}0001"
        return f"{prefix}0001"
