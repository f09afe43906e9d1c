from __future__ import annotations

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from credentials.print_batches import cleanup_old_batches, old_batches_for_cleanup


class Command(BaseCommand):
    help = "Delete PDFs of old ready print batches and archive the batches."

    def add_arguments(self, parser):
        parser.add_argument(
            "--days",
            type=int,
            default=getattr(settings, "PRINT_BATCH_CLEANUP_DAYS", 90),
            help="Archive ready batches created more than N days ago.",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report candidates without deleting files.",
        )

    def handle(self, *args, **options):
        days = int(options["days"])
        dry_run = bool(options["dry_run"])
        if days < 1:
            raise CommandError("--days must be >= 1.")

        if dry_run:
            candidates = old_batches_for_cleanup(days)
            total_count = 0
            for batch in candidates.iterator():
                total_count += 1
                self.stdout.write(
                    f"[dry-run] batch={batch.uuid} id={batch.id} pdf={batch.pdf_path} "
                    f"created_at={batch.created_at.isoformat()}"
                )
            self.stdout.write(self.style.WARNING(f"Dry run complete: {total_count} candidate(s)."))
            return

        summary = cleanup_old_batches(days)
        self.stdout.write(
            self.style.SUCCESS(
                f"Archived {summary['archived']} batch(es), deleted {summary['deleted_files']} file(s)."
            )
        )
