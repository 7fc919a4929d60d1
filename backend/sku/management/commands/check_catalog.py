"""
Management command validating the relationship type and SKU template catalogs.

Exits non-zero when either catalog is malformed, so it can gate deploys:
    python manage.py check_catalog
"""
from django.core.management.base import BaseCommand, CommandError
from backend.core.exceptions import ConfigError
from backend.relationships.catalog import build_catalog_registry
from backend.relationships.registry import load_registry
from backend.sku.catalog import validate_catalog
from backend.sku.engine import SKUEngine


class Command(BaseCommand):
    help = "Loads and validates the relationship type and SKU template catalogs"

    def handle(self, *args, **options):
        problems = []

        try:
            build_catalog_registry()
            self.stdout.write(self.style.SUCCESS("Built-in relationship types: OK"))
        except ConfigError as e:
            problems.append(f"Built-in relationship types: {e.message}")

        registry = None
        try:
            registry = load_registry(use_cache=False)
            self.stdout.write(self.style.SUCCESS(f"Stored relationship types: OK ({len(registry)})"))
        except ConfigError as e:
            problems.append(f"Stored relationship types: {e.message}")

        try:
            validate_catalog(registry)
            self.stdout.write(self.style.SUCCESS("Built-in SKU templates: OK"))
        except ConfigError as e:
            problems.append(f"Built-in SKU templates: {e.message}")

        template_problems = SKUEngine().check_templates(registry)
        if template_problems:
            problems.extend(f"Stored SKU templates: {problem}" for problem in template_problems)
        else:
            self.stdout.write(self.style.SUCCESS("Stored SKU templates: OK"))

        if problems:
            for problem in problems:
                self.stdout.write(self.style.ERROR(f"  - {problem}"))
            raise CommandError(f"{len(problems)} catalog problem(s) found")
        self.stdout.write(self.style.SUCCESS("Catalogs are valid."))
