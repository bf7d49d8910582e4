"""Classes app admin configuration"""
from django.contrib import admin
from simple_history.admin import SimpleHistoryAdmin
from .models import (
    ClassProgram, ClassProgramSessionTemplate, ClassGroup, ClassSession,
    ClassEnrollment, ClassAttendance, ClassesBillingSettings,
    ClassMonthlyBillingRun, ClassBillingInvoiceLink, ClassEnrollmentBillingPlan,
)


class ClassProgramSessionTemplateInline(admin.TabularInline):
    model = ClassProgramSessionTemplate
    extra = 0
    fields = ['index', 'title', 'session_type', 'default_duration_minutes']


@admin.register(ClassProgram)
class ClassProgramAdmin(admin.ModelAdmin):
    list_display = ['title', 'level_tag', 'expected_sessions_count', 'workspace']
    search_fields = ['title']
    inlines = [ClassProgramSessionTemplateInline]


@admin.register(ClassGroup)
class ClassGroupAdmin(admin.ModelAdmin):
    list_display = ['name', 'kind', 'status', 'default_price_per_session', 'currency', 'workspace']
    list_filter = ['status', 'kind', 'workspace']
    search_fields = ['name', 'subject']


@admin.register(ClassSession)
class ClassSessionAdmin(admin.ModelAdmin):
    list_display = ['class_group', 'starts_at', 'ends_at', 'status', 'topic']
    list_filter = ['status', 'class_group']
    date_hierarchy = 'starts_at'


@admin.register(ClassEnrollment)
class ClassEnrollmentAdmin(admin.ModelAdmin):
    list_display = ['student', 'payer', 'class_group', 'status', 'is_active', 'start_date', 'end_date']
    list_filter = ['status', 'is_active', 'class_group']
    search_fields = ['student__display_name', 'payer__display_name']


@admin.register(ClassAttendance)
class ClassAttendanceAdmin(admin.ModelAdmin):
    list_display = ['session', 'enrollment', 'status', 'billable']
    list_filter = ['status', 'billable']


@admin.register(ClassesBillingSettings)
class ClassesBillingSettingsAdmin(SimpleHistoryAdmin):
    list_display = ['workspace', 'billing_month_strategy', 'billing_basis', 'attendance_mode']


class ClassBillingInvoiceLinkInline(admin.TabularInline):
    model = ClassBillingInvoiceLink
    extra = 0
    fields = ['payer', 'class_group', 'invoice', 'purpose', 'idempotency_key']
    readonly_fields = fields


@admin.register(ClassMonthlyBillingRun)
class ClassMonthlyBillingRunAdmin(SimpleHistoryAdmin):
    list_display = ['month', 'workspace', 'status', 'billing_month_strategy', 'billing_basis', 'generated_at']
    list_filter = ['status', 'workspace']
    readonly_fields = ['billing_snapshot', 'generated_at']
    inlines = [ClassBillingInvoiceLinkInline]


@admin.register(ClassBillingInvoiceLink)
class ClassBillingInvoiceLinkAdmin(admin.ModelAdmin):
    list_display = ['idempotency_key', 'purpose', 'payer', 'invoice', 'created_at']
    list_filter = ['purpose']
    search_fields = ['idempotency_key']


@admin.register(ClassEnrollmentBillingPlan)
class ClassEnrollmentBillingPlanAdmin(admin.ModelAdmin):
    list_display = ['enrollment', 'plan_type', 'updated_at']
    list_filter = ['plan_type']
