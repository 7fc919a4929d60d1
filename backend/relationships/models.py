from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from backend.core.models import User
from .types import RelationshipTypeDef


class RelationshipType(models.Model):
    """Catalog entry describing one kind of edge between entities"""
    name = models.CharField(max_length=50, unique=True, help_text="Machine name (e.g., supplier)")
    display_name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    source_types = models.JSONField(default=list, help_text='Allowed source entity kinds; "*" matches any')
    target_types = models.JSONField(default=list, help_text='Allowed target entity kinds; "*" matches any')
    is_bidirectional = models.BooleanField(default=False)
    reverse_type_name = models.CharField(max_length=50, blank=True, null=True)
    default_strength = models.PositiveSmallIntegerField(
        default=1, validators=[MinValueValidator(1), MaxValueValidator(5)]
    )
    is_system = models.BooleanField(default=False, help_text="System types cannot be deleted")
    color = models.CharField(max_length=20, blank=True)
    icon = models.CharField(max_length=50, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.display_name or self.name

    def to_definition(self):
        return RelationshipTypeDef(
            name=self.name,
            display_name=self.display_name,
            description=self.description,
            source_types=frozenset(self.source_types or []),
            target_types=frozenset(self.target_types or []),
            is_bidirectional=self.is_bidirectional,
            reverse_type_name=self.reverse_type_name or None,
            default_strength=self.default_strength,
            is_system=self.is_system,
            color=self.color,
            icon=self.icon,
        )

    class Meta:
        db_table = 'relationship_types'
        ordering = ['display_name']


class EntityRelationship(models.Model):
    """
    Typed, directed edge between two entities of any kind.

    Endpoints are (kind, id) pairs rather than foreign keys. Rows are never
    hard-deleted; the natural key is unique among non-deleted rows only.
    """
    relationship_type = models.CharField(max_length=50, db_index=True)
    source_type = models.CharField(max_length=50)
    source_id = models.CharField(max_length=100)
    target_type = models.CharField(max_length=50)
    target_id = models.CharField(max_length=100)
    strength = models.PositiveSmallIntegerField(
        default=1, validators=[MinValueValidator(1), MaxValueValidator(5)]
    )
    metadata = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    tags = models.JSONField(default=list, blank=True)
    priority = models.IntegerField(default=0)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    last_interaction_at = models.DateTimeField(null=True, blank=True)
    interaction_count = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    deleted_by = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, blank=True, related_name='deleted_relationships'
    )
    tenant_id = models.CharField(max_length=100, blank=True, null=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return (f"{self.source_type}#{self.source_id} -[{self.relationship_type}]-> "
                f"{self.target_type}#{self.target_id}")

    @property
    def natural_key(self):
        return (self.source_type, self.source_id, self.target_type, self.target_id, self.relationship_type)

    @property
    def natural_key_display(self):
        return '|'.join(self.natural_key)

    class Meta:
        db_table = 'entity_relationships'
        ordering = ['-priority', 'created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['source_type', 'source_id', 'target_type', 'target_id', 'relationship_type'],
                condition=models.Q(is_deleted=False),
                name='uniq_live_entity_relationship',
            ),
        ]
        indexes = [
            models.Index(fields=['source_type', 'source_id'], name='idx_rel_source'),
            models.Index(fields=['target_type', 'target_id'], name='idx_rel_target'),
            models.Index(fields=['relationship_type', 'is_deleted', 'is_active'], name='idx_rel_type_state'),
        ]
