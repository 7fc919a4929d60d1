"""
Management command comparing legacy foreign keys with the relationship graph
"""
import json

from django.core.management.base import BaseCommand
from backend.relationships.backfill import audit_legacy_relationships


class Command(BaseCommand):
    help = "Reports legacy relationship fields that are not yet represented as edges"

    def add_arguments(self, parser):
        parser.add_argument('--json', action='store_true', help='Print the report as JSON')

    def handle(self, *args, **options):
        report = audit_legacy_relationships()

        if options['json']:
            self.stdout.write(json.dumps(report, indent=2, default=str))
            return

        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(self.style.SUCCESS("RELATIONSHIP AUDIT"))
        self.stdout.write(self.style.SUCCESS("=" * 80))

        self.stdout.write("\nLegacy fields in use:")
        for row in report['legacy_fields']:
            self.stdout.write(f"  {row['model']}.{row['field']}: {row['count']}")

        self.stdout.write("\nMissing in graph:")
        for name, count in report['missing_in_graph'].items():
            style = self.style.WARNING if count else self.style.SUCCESS
            self.stdout.write(style(f"  {name}: {count}"))

        self.stdout.write(
            f"\nRelationships: {report['total_relationships']} "
            f"({report['migrated_relationships']} migrated)"
        )
        for row in report['by_type']:
            self.stdout.write(f"  {row['relationship_type']}: {row['count']}")

        if report['recommendations']:
            self.stdout.write("\nRecommendations:")
            for recommendation in report['recommendations']:
                self.stdout.write(self.style.WARNING(f"  - {recommendation}"))
