from django.db import models
from django.utils import timezone
from backend.core.models import User


class SKUTemplate(models.Model):
    """
    Identifier scheme for one entity kind.

    ``template`` holds ``{name}`` placeholders, each described by an entry of
    ``components``; ``validation_rules`` may carry ``pattern``,
    ``min_length`` and ``max_length`` checked against the rendered value.
    """
    name = models.CharField(max_length=100, unique=True)
    description = models.TextField(blank=True)
    entity_type = models.CharField(max_length=50, db_index=True, help_text="Entity kind (e.g., Product)")
    template = models.CharField(max_length=255, help_text="e.g., {category}-{supplier}-{format}-{sequence}")
    components = models.JSONField(default=dict)
    validation_rules = models.JSONField(default=dict, blank=True)
    example_output = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    is_default = models.BooleanField(default=False)
    usage_count = models.PositiveIntegerField(default=0)
    last_used_at = models.DateTimeField(null=True, blank=True)
    tenant_id = models.CharField(max_length=100, blank=True, null=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.entity_type})"

    class Meta:
        db_table = 'sku_templates'
        ordering = ['entity_type', 'name']


class EntitySKU(models.Model):
    """One rendered identifier; re-generation adds a new version and deactivates the old one"""
    entity_type = models.CharField(max_length=50)
    entity_id = models.CharField(max_length=100)
    sku_value = models.CharField(max_length=255)
    template = models.ForeignKey(
        SKUTemplate, on_delete=models.SET_NULL, null=True, blank=True, related_name='entity_skus'
    )
    components = models.JSONField(default=dict, blank=True)
    version = models.PositiveIntegerField(default=1)
    is_active = models.BooleanField(default=True)
    generated_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(null=True, blank=True)
    tenant_id = models.CharField(max_length=100, blank=True, null=True, db_index=True)
    generated_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='generated_skus'
    )

    def __str__(self):
        return f"{self.entity_type}#{self.entity_id}: {self.sku_value} (v{self.version})"

    class Meta:
        db_table = 'entity_skus'
        ordering = ['-generated_at']
        constraints = [
            models.UniqueConstraint(fields=['entity_type', 'entity_id', 'version'], name='uniq_entity_sku_version'),
        ]
        indexes = [
            models.Index(fields=['entity_type', 'entity_id', 'is_active'], name='idx_entity_sku_active'),
            models.Index(fields=['sku_value'], name='idx_entity_sku_value'),
        ]


class SequenceCounter(models.Model):
    """Last value issued for one (scope kind, scope key) pair"""
    scope_kind = models.CharField(max_length=30)
    scope_key = models.CharField(max_length=200)
    last_value = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.scope_kind}/{self.scope_key} = {self.last_value}"

    class Meta:
        db_table = 'sku_sequences'
        constraints = [
            models.UniqueConstraint(fields=['scope_kind', 'scope_key'], name='uniq_sequence_scope'),
        ]
