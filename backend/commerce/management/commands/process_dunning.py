"""Run the dunning pipeline for failed subscription payments."""
import logging

from django.core.management.base import BaseCommand, CommandError

from commerce.services.dunning import STAGES, build_dunning_service

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Retry failed payments and move delinquent subscriptions through pause, suspend, cancel and expire"

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what each stage would select without changing anything',
        )
        parser.add_argument(
            '--stage',
            choices=STAGES,
            help='Run a single stage instead of the full pipeline',
        )

    def handle(self, *args, **options):
        dry_run = options.get('dry_run', False)
        stage = options.get('stage')

        service = build_dunning_service()
        if not service.config.enabled:
            self.stdout.write(self.style.WARNING("Dunning is disabled (COMMERCE_DUNNING['enabled'] is False)"))
            return

        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))

        report = service.run(stages=[stage] if stage else None, dry_run=dry_run)

        self.stdout.write(f"{'Stage':<10}{'Selected':>10}{'Succeeded':>11}{'Failed':>8}{'Skipped':>9}")
        for stage_report in report.stages:
            self.stdout.write(
                f"{stage_report.stage:<10}{stage_report.selected:>10}{stage_report.succeeded:>11}"
                f"{stage_report.failed:>8}{stage_report.skipped:>9}"
            )
            if dry_run and stage_report.item_ids:
                self.stdout.write(f"  would process: {', '.join(str(pk) for pk in stage_report.item_ids)}")
            for error in stage_report.errors:
                self.stdout.write(self.style.ERROR(f"  ✗ {error}"))

        totals = report.totals()
        self.stdout.write("=" * 48)
        if report.has_failures:
            raise CommandError(f"Dunning finished with {totals['failed']} failed item(s)")
        self.stdout.write(self.style.SUCCESS(
            f"Dunning complete: {totals['selected']} selected, {totals['succeeded']} succeeded, "
            f"{totals['skipped']} skipped"
        ))
