"""
Outbox handlers owned by the finance app
"""
import logging

from django.conf import settings
from django.core.mail import send_mail

from core.exceptions import NotFoundError
from core.services.outbox import register_handler
from finance.models import Invoice
from finance.services.invoices import InvoiceWriteService

logger = logging.getLogger(__name__)


def _format_amount(cents: int, currency: str) -> str:
    return f"{cents / 100:.2f} {currency}"


@register_handler('classes.invoice.ready-to-send')
def send_invoice_email(event):
    """
    Email an issued invoice to its recipient and mark it SENT.
    Raising leaves the event for the dispatcher to retry.
    """
    invoice_id = event.payload.get('invoiceId')
    invoice = Invoice.objects.select_related('workspace', 'customer').filter(
        pk=invoice_id,
        is_deleted=False,
    ).first()
    if invoice is None:
        raise NotFoundError(f"Invoice {invoice_id} not found", code='Invoices:NotFound')

    if invoice.status == 'SENT':
        logger.info(f"Invoice {invoice.invoice_number} already sent, skipping")
        return

    recipient = invoice.billing_email or invoice.customer.email
    if not recipient:
        raise ValueError(f"Invoice {invoice.invoice_number} has no recipient email")

    lines = [
        f"Dear {invoice.billing_name},",
        "",
        f"Please find below invoice {invoice.invoice_number} dated {invoice.invoice_date:%d.%m.%Y}.",
        "",
    ]
    for item in invoice.line_items.all():
        lines.append(f"  {item.description}: {item.quantity} x {_format_amount(item.unit_price_cents, invoice.currency)}")
    lines += [
        "",
        f"Total: {_format_amount(invoice.total_cents, invoice.currency)}",
        f"Due date: {invoice.due_date:%d.%m.%Y}",
    ]

    send_mail(
        subject=f"Invoice {invoice.invoice_number}",
        message="\n".join(lines),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[recipient],
        fail_silently=False,
    )

    result = InvoiceWriteService(invoice.workspace).mark_sent(invoice.pk)
    if not result.success:
        raise result.error
    logger.info(f"Sent invoice {invoice.invoice_number} to {recipient}")
