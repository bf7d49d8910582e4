"""Clients app admin configuration"""
from django.contrib import admin
from .models import Client


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ['display_name', 'kind', 'email', 'workspace', 'is_active']
    list_filter = ['kind', 'is_active', 'workspace']
    search_fields = ['display_name', 'email']
