"""Tenants app admin configuration"""
from django.contrib import admin
from .models import Tenant, Workspace


class WorkspaceInline(admin.TabularInline):
    model = Workspace
    extra = 0
    fields = ['code', 'name', 'timezone', 'currency', 'is_active']


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'is_active']
    search_fields = ['code', 'name']
    inlines = [WorkspaceInline]


@admin.register(Workspace)
class WorkspaceAdmin(admin.ModelAdmin):
    list_display = ['code', 'name', 'tenant', 'timezone', 'is_active']
    list_filter = ['tenant', 'is_active']
    search_fields = ['code', 'name']
