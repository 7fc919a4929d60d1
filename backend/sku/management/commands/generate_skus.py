"""
Management command to generate SKUs in bulk.

Usage:
    python manage.py generate_skus --entity-type Product --missing-only
"""
from django.core.management.base import BaseCommand, CommandError
from backend.core.entities import get_entity_lookup
from backend.core.exceptions import ConfigError, NoTemplateConfigured
from backend.sku.engine import SKUEngine


class Command(BaseCommand):
    help = "Generates SKUs for every entity of a kind"

    def add_arguments(self, parser):
        parser.add_argument('--entity-type', required=True, help='Entity kind (e.g., Product)')
        parser.add_argument(
            '--missing-only',
            action='store_true',
            help='Skip entities that already have an active SKU',
        )
        parser.add_argument('--limit', type=int, default=None, help='Maximum number of entities')
        parser.add_argument('--tenant', dest='tenant_id', default=None)

    def handle(self, *args, **options):
        entity_type = options['entity_type']
        lookup = get_entity_lookup()
        model = lookup.model_for(entity_type)
        if model is None:
            raise CommandError(f"Unknown entity type '{entity_type}'. Known: {', '.join(lookup.kinds())}")

        entity_ids = model.objects.order_by('pk').values_list('pk', flat=True)
        if options['limit']:
            entity_ids = entity_ids[:options['limit']]

        engine = SKUEngine()
        try:
            generated, failures = engine.generate_missing(
                entity_type, list(entity_ids), tenant_id=options['tenant_id'],
                missing_only=options['missing_only'],
            )
        except (NoTemplateConfigured, ConfigError) as e:
            raise CommandError(e.message)

        for entity_sku in generated:
            self.stdout.write(f"  {entity_type}#{entity_sku.entity_id}: {entity_sku.sku_value}")
        for entity_id, message in failures:
            self.stdout.write(self.style.ERROR(f"  {entity_type}#{entity_id}: {message}"))

        self.stdout.write(self.style.SUCCESS(f"Generated {len(generated)} SKU(s), {len(failures)} failed."))
