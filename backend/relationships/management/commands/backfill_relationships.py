"""
Management command to derive relationship edges from legacy fields.

Usage:
    python manage.py backfill_relationships
    python manage.py backfill_relationships --source task_assignee_field --dry-run
"""
import signal

from django.core.management.base import BaseCommand, CommandError
from backend.relationships.backfill import BackfillProcessor


class Command(BaseCommand):
    help = "Backfills relationship edges from legacy foreign keys and text fields"

    def add_arguments(self, parser):
        parser.add_argument(
            '--source',
            action='append',
            dest='sources',
            help='Backfill source to run (repeatable); all sources when omitted',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Derive and check edges without writing them',
        )
        parser.add_argument('--limit', type=int, default=None, help='Records per source')
        parser.add_argument('--timeout', type=float, default=None, help='Seconds allowed per record')

    def handle(self, *args, **options):
        processor = BackfillProcessor(record_timeout=options['timeout'], dry_run=options['dry_run'])
        sources = options['sources'] or list(processor.sources)
        unknown = [source for source in sources if source not in processor.sources]
        if unknown:
            raise CommandError(
                f"Unknown source(s): {', '.join(unknown)}. Choose from: {', '.join(processor.sources)}"
            )

        # Ctrl+C finishes the current record, then stops
        previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: processor.cancel())

        self.stdout.write(self.style.SUCCESS("=" * 80))
        self.stdout.write(self.style.SUCCESS(f"BACKFILLING RELATIONSHIPS{' (DRY RUN)' if options['dry_run'] else ''}"))
        self.stdout.write(self.style.SUCCESS("=" * 80))

        try:
            results = processor.run_all(sources, limit=options['limit'])
        finally:
            signal.signal(signal.SIGINT, previous_handler)

        total_errors = 0
        for result in results:
            style = self.style.SUCCESS if not result.errors else self.style.WARNING
            self.stdout.write(style(
                f"{result.source}: {result.processed} processed, {result.succeeded} succeeded, "
                f"{result.edges} edges, {result.skipped} skipped, {result.failed} failed"
            ))
            for error in result.errors[:20]:
                self.stdout.write(self.style.ERROR(f"  record {error.record_id}: {error.message}"))
            if len(result.errors) > 20:
                self.stdout.write(self.style.ERROR(f"  ... and {len(result.errors) - 20} more"))
            total_errors += result.failed

        if processor.cancel_event.is_set():
            self.stdout.write(self.style.WARNING("Backfill cancelled"))
        self.stdout.write(self.style.SUCCESS(f"Done. {total_errors} record(s) failed."))
