"""
Management command to seed the built-in SKU templates
"""
from django.core.management.base import BaseCommand, CommandError
from backend.core.exceptions import ConfigError
from backend.sku.catalog import SKU_TEMPLATES, seed_sku_templates


class Command(BaseCommand):
    help = "Creates or updates the built-in SKU templates"

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Delete all existing SKU templates before seeding',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(self.style.SUCCESS("SEEDING SKU TEMPLATES"))
        self.stdout.write(self.style.SUCCESS("=" * 80))

        if options['clear']:
            self.stdout.write(self.style.WARNING("Clearing all existing SKU templates..."))

        try:
            created_count, updated_count = seed_sku_templates(clear=options['clear'])
        except ConfigError as e:
            raise CommandError(f"Built-in SKU template catalog is invalid: {e.message}")

        self.stdout.write(f"Catalog size: {len(SKU_TEMPLATES)}")
        self.stdout.write(self.style.SUCCESS(f"Created: {created_count}"))
        self.stdout.write(self.style.SUCCESS(f"Updated: {updated_count}"))
