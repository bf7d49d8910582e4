"""Core app admin configuration"""
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, AuditLog, IdempotencyRecord, OutboxEvent


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    ordering = ['email']
    list_display = ['email', 'first_name', 'last_name', 'is_staff']
    search_fields = ['email', 'first_name', 'last_name']
    fieldsets = (
        (None, {'fields': ('email', 'password')}),
        ('Personal Info', {'fields': ('first_name', 'last_name')}),
        ('Permissions', {'fields': ('is_active', 'is_staff', 'is_superuser', 'groups', 'user_permissions')}),
    )
    add_fieldsets = (
        (None, {'classes': ('wide',), 'fields': ('email', 'password1', 'password2')}),
    )


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ['timestamp', 'action', 'model_name', 'object_id', 'user']
    list_filter = ['action', 'model_name']
    search_fields = ['object_id']
    readonly_fields = ['tenant', 'user', 'action', 'model_name', 'object_id', 'changes', 'timestamp']


@admin.register(OutboxEvent)
class OutboxEventAdmin(admin.ModelAdmin):
    list_display = ['event_type', 'status', 'attempts', 'created_at', 'dispatched_at']
    list_filter = ['status', 'event_type']
    readonly_fields = ['id', 'created_at', 'dispatched_at']


admin.site.register(IdempotencyRecord)
