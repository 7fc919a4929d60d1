"""
Management command to find (and optionally write) missing mirror edges
of bidirectional relationship types.
"""
from django.core.management.base import BaseCommand
from backend.relationships.store import EntityRelationshipStore


class Command(BaseCommand):
    help = "Reports bidirectional relationships whose reverse edge is missing"

    def add_arguments(self, parser):
        parser.add_argument('--type', dest='relationship_type', default=None, help='Only this relationship type')
        parser.add_argument('--tenant', dest='tenant_id', default=None, help='Only this tenant')
        parser.add_argument(
            '--repair',
            action='store_true',
            help='Write the missing mirror edges',
        )

    def handle(self, *args, **options):
        store = EntityRelationshipStore()
        orphans = store.find_orphaned_mirrors(options['relationship_type'], options['tenant_id'])

        if not orphans:
            self.stdout.write(self.style.SUCCESS("All bidirectional relationships have their mirror edge."))
            return

        self.stdout.write(self.style.WARNING(f"{len(orphans)} relationship(s) without a mirror edge:"))
        for edge, expected in orphans:
            self.stdout.write(f"  #{edge.pk} {edge.natural_key_display} -> missing {expected}")

        if options['repair']:
            repaired = store.repair_mirrors(options['relationship_type'], options['tenant_id'])
            self.stdout.write(self.style.SUCCESS(f"Repaired {len(repaired)} of {len(orphans)} mirror edge(s)."))
        else:
            self.stdout.write("Run with --repair to write them.")
