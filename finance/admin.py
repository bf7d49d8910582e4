"""Finance app admin configuration"""
from django.contrib import admin
from .models import Invoice, InvoiceLineItem


class InvoiceLineItemInline(admin.TabularInline):
    model = InvoiceLineItem
    extra = 0
    fields = ['position', 'description', 'quantity', 'unit_price_cents']


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'customer', 'invoice_date', 'due_date', 'status', 'total_cents', 'currency']
    list_filter = ['status', 'source_type', 'currency']
    search_fields = ['invoice_number', 'billing_name', 'billing_email', 'idempotency_key']
    date_hierarchy = 'invoice_date'
    readonly_fields = ['id', 'subtotal_cents', 'total_cents', 'issued_at', 'sent_at', 'cancelled_at']
    inlines = [InvoiceLineItemInline]

    fieldsets = (
        (None, {
            'fields': ('id', 'invoice_number', 'tenant', 'workspace', 'customer', 'status')
        }),
        ('Dates', {
            'fields': ('invoice_date', 'due_date', 'issued_at', 'sent_at', 'cancelled_at', 'cancellation_reason')
        }),
        ('Billing', {
            'fields': ('billing_name', 'billing_email', 'billing_address', 'currency', 'subtotal_cents', 'total_cents')
        }),
        ('Origin', {
            'fields': ('source_type', 'source_id', 'idempotency_key', 'notes')
        }),
    )
