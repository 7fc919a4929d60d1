from django.contrib import admin
from .models import SKUTemplate, EntitySKU, SequenceCounter


@admin.register(SKUTemplate)
class SKUTemplateAdmin(admin.ModelAdmin):
    list_display = ['name', 'entity_type', 'template', 'is_active', 'is_default', 'usage_count', 'last_used_at']
    list_filter = ['entity_type', 'is_active', 'is_default']
    search_fields = ['name', 'description', 'template']
    ordering = ['entity_type', 'name']
    readonly_fields = ['usage_count', 'last_used_at', 'created_at', 'updated_at']


@admin.register(EntitySKU)
class EntitySKUAdmin(admin.ModelAdmin):
    list_display = ['sku_value', 'entity_type', 'entity_id', 'version', 'is_active', 'template', 'generated_at']
    list_filter = ['entity_type', 'is_active', 'generated_at']
    search_fields = ['sku_value', 'entity_id']
    ordering = ['-generated_at']
    readonly_fields = ['components', 'version', 'generated_at', 'generated_by']


@admin.register(SequenceCounter)
class SequenceCounterAdmin(admin.ModelAdmin):
    list_display = ['scope_kind', 'scope_key', 'last_value', 'updated_at']
    list_filter = ['scope_kind']
    search_fields = ['scope_key']
    ordering = ['scope_kind', 'scope_key']
