from rest_framework import serializers
from .models import SKUTemplate, EntitySKU


class SKUTemplateSerializer(serializers.ModelSerializer):
    class Meta:
        model = SKUTemplate
        fields = [
            'id', 'name', 'description', 'entity_type', 'template', 'components', 'validation_rules',
            'example_output', 'is_active', 'is_default', 'usage_count', 'last_used_at', 'tenant_id',
            'created_at', 'updated_at'
        ]
        read_only_fields = ['usage_count', 'last_used_at', 'created_at', 'updated_at']


class EntitySKUSerializer(serializers.ModelSerializer):
    template_name = serializers.CharField(source='template.name', read_only=True)
    generated_by_username = serializers.CharField(source='generated_by.username', read_only=True)

    class Meta:
        model = EntitySKU
        fields = [
            'id', 'entity_type', 'entity_id', 'sku_value', 'template', 'template_name', 'components',
            'version', 'is_active', 'generated_at', 'expires_at', 'tenant_id',
            'generated_by', 'generated_by_username'
        ]
        read_only_fields = fields


class GenerateSKUSerializer(serializers.Serializer):
    entity_type = serializers.CharField(max_length=50)
    entity_id = serializers.CharField(max_length=100)
    template_id = serializers.IntegerField(required=False, allow_null=True)
    custom_components = serializers.DictField(child=serializers.CharField(allow_blank=True), required=False)
    tenant_id = serializers.CharField(max_length=100, required=False, allow_null=True, allow_blank=True)


class ValidateSKUSerializer(serializers.Serializer):
    sku = serializers.CharField(allow_blank=True)
