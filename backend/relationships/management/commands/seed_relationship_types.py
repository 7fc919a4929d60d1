"""
Management command to seed the built-in relationship types
"""
from django.core.management.base import BaseCommand, CommandError
from backend.core.exceptions import ConfigError
from backend.relationships.catalog import RELATIONSHIP_TYPES, build_catalog_registry, seed_relationship_types


class Command(BaseCommand):
    help = "Creates or updates the built-in relationship types"

    def add_arguments(self, parser):
        parser.add_argument(
            '--clear',
            action='store_true',
            help='Delete all existing relationship types before seeding',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(self.style.SUCCESS("SEEDING RELATIONSHIP TYPES"))
        self.stdout.write(self.style.SUCCESS("=" * 80))

        try:
            build_catalog_registry()
        except ConfigError as e:
            raise CommandError(f"Built-in relationship catalog is invalid: {e.message}")

        created_count, updated_count = seed_relationship_types(clear=options['clear'])

        self.stdout.write(f"Catalog size: {len(RELATIONSHIP_TYPES)}")
        self.stdout.write(self.style.SUCCESS(f"Created: {created_count}"))
        self.stdout.write(self.style.SUCCESS(f"Updated: {updated_count}"))
