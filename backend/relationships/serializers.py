from rest_framework import serializers
from .models import RelationshipType, EntityRelationship
from .types import NewEdgeRequest


class RelationshipTypeSerializer(serializers.ModelSerializer):
    class Meta:
        model = RelationshipType
        fields = [
            'id', 'name', 'display_name', 'description', 'source_types', 'target_types',
            'is_bidirectional', 'reverse_type_name', 'default_strength', 'is_system',
            'color', 'icon', 'created_at', 'updated_at'
        ]


class EntityRelationshipSerializer(serializers.ModelSerializer):
    deleted_by_username = serializers.CharField(source='deleted_by.username', read_only=True)

    class Meta:
        model = EntityRelationship
        fields = [
            'id', 'relationship_type', 'source_type', 'source_id', 'target_type', 'target_id',
            'strength', 'metadata', 'tags', 'priority', 'valid_from', 'valid_until',
            'last_interaction_at', 'interaction_count', 'is_active', 'is_deleted',
            'deleted_at', 'deleted_by', 'deleted_by_username', 'tenant_id', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class EntityRelationshipUpsertSerializer(serializers.Serializer):
    """Input for creating or merging one relationship"""
    relationship_type = serializers.CharField(max_length=50)
    source_type = serializers.CharField(max_length=50)
    source_id = serializers.CharField(max_length=100)
    target_type = serializers.CharField(max_length=50)
    target_id = serializers.CharField(max_length=100)
    strength = serializers.IntegerField(min_value=1, max_value=5, required=False, allow_null=True)
    metadata = serializers.DictField(required=False, default=dict)
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False, default=list)
    priority = serializers.IntegerField(required=False, allow_null=True)
    valid_from = serializers.DateTimeField(required=False, allow_null=True)
    valid_until = serializers.DateTimeField(required=False, allow_null=True)
    tenant_id = serializers.CharField(max_length=100, required=False, allow_null=True, allow_blank=True)

    def validate(self, attrs):
        valid_from = attrs.get('valid_from')
        valid_until = attrs.get('valid_until')
        if valid_from and valid_until and valid_until <= valid_from:
            raise serializers.ValidationError({'valid_until': 'Must be after valid_from'})
        return attrs

    def to_request(self):
        data = dict(self.validated_data)
        data['tenant_id'] = data.get('tenant_id') or None
        return NewEdgeRequest(**data)


class MentionSerializer(serializers.Serializer):
    """Input for recording an @mention of one entity inside another"""
    mentioned_type = serializers.CharField(max_length=50)
    mentioned_id = serializers.CharField(max_length=100)
    context_entity_type = serializers.CharField(max_length=50)
    context_entity_id = serializers.CharField(max_length=100)
    context_type = serializers.CharField(max_length=50, required=False, allow_blank=True)
    context_data = serializers.DictField(required=False, allow_null=True)
    tenant_id = serializers.CharField(max_length=100, required=False, allow_null=True, allow_blank=True)
