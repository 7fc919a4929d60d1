from django.contrib import admin
from .models import RelationshipType, EntityRelationship


@admin.register(RelationshipType)
class RelationshipTypeAdmin(admin.ModelAdmin):
    list_display = ['name', 'display_name', 'is_bidirectional', 'reverse_type_name', 'default_strength', 'is_system']
    list_filter = ['is_bidirectional', 'is_system']
    search_fields = ['name', 'display_name', 'description']
    ordering = ['name']
    readonly_fields = ['created_at', 'updated_at']


@admin.register(EntityRelationship)
class EntityRelationshipAdmin(admin.ModelAdmin):
    list_display = ['relationship_type', 'source_type', 'source_id', 'target_type', 'target_id',
                    'strength', 'interaction_count', 'is_active', 'is_deleted', 'created_at']
    list_filter = ['relationship_type', 'source_type', 'target_type', 'is_active', 'is_deleted', 'created_at']
    search_fields = ['source_id', 'target_id', 'relationship_type']
    ordering = ['-created_at']
    readonly_fields = ['interaction_count', 'last_interaction_at', 'deleted_at', 'deleted_by', 'created_at', 'updated_at']
