from django.contrib import admin
from .models import Vendor, Contact


@admin.register(Vendor)
class VendorAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'sku_abbreviation', 'phone', 'email', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'code', 'email']
    ordering = ['name']


@admin.register(Contact)
class ContactAdmin(admin.ModelAdmin):
    list_display = ['name', 'company', 'contact_type', 'sku_abbreviation', 'is_active', 'created_at']
    list_filter = ['contact_type', 'is_active', 'created_at']
    search_fields = ['name', 'company', 'email']
    ordering = ['name']
