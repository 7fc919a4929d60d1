from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="SKUTemplate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, unique=True)),
                ("description", models.TextField(blank=True)),
                (
                    "entity_type",
                    models.CharField(db_index=True, help_text="Entity kind (e.g., Product)", max_length=50),
                ),
                (
                    "template",
                    models.CharField(help_text="e.g., {category}-{supplier}-{format}-{sequence}", max_length=255),
                ),
                ("components", models.JSONField(default=dict)),
                ("validation_rules", models.JSONField(blank=True, default=dict)),
                ("example_output", models.CharField(blank=True, max_length=100)),
                ("is_active", models.BooleanField(default=True)),
                ("is_default", models.BooleanField(default=False)),
                ("usage_count", models.PositiveIntegerField(default=0)),
                ("last_used_at", models.DateTimeField(blank=True, null=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "sku_templates",
                "ordering": ["entity_type", "name"],
            },
        ),
        migrations.CreateModel(
            name="SequenceCounter",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("scope_kind", models.CharField(max_length=30)),
                ("scope_key", models.CharField(max_length=200)),
                ("last_value", models.PositiveBigIntegerField(default=0)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "sku_sequences",
                "constraints": [
                    models.UniqueConstraint(fields=("scope_kind", "scope_key"), name="uniq_sequence_scope"),
                ],
            },
        ),
        migrations.CreateModel(
            name="EntitySKU",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("entity_type", models.CharField(max_length=50)),
                ("entity_id", models.CharField(max_length=100)),
                ("sku_value", models.CharField(max_length=255)),
                ("components", models.JSONField(blank=True, default=dict)),
                ("version", models.PositiveIntegerField(default=1)),
                ("is_active", models.BooleanField(default=True)),
                ("generated_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("expires_at", models.DateTimeField(blank=True, null=True)),
                ("tenant_id", models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                (
                    "generated_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="generated_skus",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "template",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="entity_skus",
                        to="sku.skutemplate",
                    ),
                ),
            ],
            options={
                "db_table": "entity_skus",
                "ordering": ["-generated_at"],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("entity_type", "entity_id", "version"), name="uniq_entity_sku_version"
                    ),
                ],
                "indexes": [
                    models.Index(fields=["entity_type", "entity_id", "is_active"], name="idx_entity_sku_active"),
                    models.Index(fields=["sku_value"], name="idx_entity_sku_value"),
                ],
            },
        ),
    ]
