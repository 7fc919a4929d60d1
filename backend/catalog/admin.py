from django.contrib import admin
from .models import Category, Brand, Product


@admin.register(Category)
class CategoryAdmin(admin.ModelAdmin):
    list_display = ['name', 'abbreviation', 'parent', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'abbreviation']
    ordering = ['name']


@admin.register(Brand)
class BrandAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'code']
    ordering = ['name']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['name', 'sku', 'product_type', 'format', 'category', 'brand', 'is_active', 'created_at']
    list_filter = ['is_active', 'product_type', 'format', 'category', 'brand', 'created_at']
    search_fields = ['name', 'sku', 'brand_name', 'description']
    ordering = ['name']
    readonly_fields = ['created_at', 'updated_at']
