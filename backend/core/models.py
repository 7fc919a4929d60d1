from django.contrib.auth.models import AbstractUser
from django.core.serializers.json import DjangoJSONEncoder
from django.db import models


class Role(models.Model):
    """Job roles / departments users belong to"""
    name = models.CharField(max_length=100, unique=True)
    code = models.CharField(max_length=20, blank=True, help_text="Short department code (e.g., ADM)")
    description = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'roles'


class User(AbstractUser):
    """Extended user model with additional fields"""
    phone = models.CharField(max_length=20, blank=True, null=True)
    role = models.ForeignKey(Role, on_delete=models.SET_NULL, null=True, blank=True, related_name='users')
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'users'


class AuditLog(models.Model):
    """Audit log for critical operations"""
    ACTION_CHOICES = [
        ('create', 'Create'),
        ('update', 'Update'),
        ('delete', 'Delete'),
        ('relationship_upsert', 'Relationship Upserted'),
        ('relationship_delete', 'Relationship Deleted'),
        ('mirror_write_failed', 'Mirror Write Failed'),
        ('mirror_repaired', 'Mirror Repaired'),
        ('sku_generate', 'SKU Generated'),
        ('backfill_run', 'Backfill Run'),
        ('sku_template_default', 'SKU Template Default Changed'),
    ]

    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, related_name='audit_logs')
    action = models.CharField(max_length=50, choices=ACTION_CHOICES)
    model_name = models.CharField(max_length=100)
    object_id = models.CharField(max_length=100)
    object_name = models.CharField(max_length=255, blank=True, null=True, help_text="Human-readable name of the object (e.g., relationship type, SKU)")
    object_reference = models.CharField(max_length=255, blank=True, null=True, help_text="Reference identifier (e.g., natural key of an edge)")
    changes = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['-created_at'], name='audit_logs_created_5b1c2e_idx'),
            models.Index(fields=['action'], name='audit_logs_action_8f3d1a_idx'),
            models.Index(fields=['model_name'], name='audit_logs_model_n_4c9e7b_idx'),
            models.Index(fields=['object_reference'], name='audit_logs_object__2a6f0d_idx'),
        ]
