from django.conf import settings
import django.core.serializers.json
import django.core.validators
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="RelationshipType",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(help_text="Machine name (e.g., supplier)", max_length=50, unique=True)),
                ("display_name", models.CharField(max_length=100)),
                ("description", models.TextField(blank=True)),
                (
                    "source_types",
                    models.JSONField(default=list, help_text='Allowed source entity kinds; "*" matches any'),
                ),
                (
                    "target_types",
                    models.JSONField(default=list, help_text='Allowed target entity kinds; "*" matches any'),
                ),
                ("is_bidirectional", models.BooleanField(default=False)),
                ("reverse_type_name", models.CharField(blank=True, max_length=50, null=True)),
                (
                    "default_strength",
                    models.PositiveSmallIntegerField(
                        default=1,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(5),
                        ],
                    ),
                ),
                ("is_system", models.BooleanField(default=False, help_text="System types cannot be deleted")),
                ("color", models.CharField(blank=True, max_length=20)),
                ("icon", models.CharField(blank=True, max_length=50)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "relationship_types",
                "ordering": ["display_name"],
            },
        ),
        migrations.CreateModel(
            name="EntityRelationship",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("relationship_type", models.CharField(db_index=True, max_length=50)),
                ("source_type", models.CharField(max_length=50)),
                ("source_id", models.CharField(max_length=100)),
                ("target_type", models.CharField(max_length=50)),
                ("target_id", models.CharField(max_length=100)),
                (
                    "strength",
                    models.PositiveSmallIntegerField(
                        default=1,
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(5),
                        ],
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(blank=True, default=dict, encoder=django.core.serializers.json.DjangoJSONEncoder),
                ),
                ("tags", models.JSONField(blank=True, default=list)),
                ("priority", models.IntegerField(default=0)),
                ("valid_from", models.DateTimeField(blank=True, null=True)),
                ("valid_until", models.DateTimeField(blank=True, null=True)),
                ("last_interaction_at", models.DateTimeField(blank=True, null=True)),
                ("interaction_count", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                ("is_deleted", models.BooleanField(default=False)),
                ("deleted_at", models.DateTimeField(blank=True, null=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "deleted_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="deleted_relationships",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "entity_relationships",
                "ordering": ["-priority", "created_at"],
                "indexes": [
                    models.Index(fields=["source_type", "source_id"], name="idx_rel_source"),
                    models.Index(fields=["target_type", "target_id"], name="idx_rel_target"),
                    models.Index(fields=["relationship_type", "is_deleted", "is_active"], name="idx_rel_type_state"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_deleted", False)),
                        fields=("source_type", "source_id", "target_type", "target_id", "relationship_type"),
                        name="uniq_live_entity_relationship",
                    ),
                ],
            },
        ),
    ]
