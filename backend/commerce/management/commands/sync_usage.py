"""Report unsynced metered usage to Stripe."""
import logging

from django.core.management.base import BaseCommand, CommandError

from commerce.services import usage

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Push unsynced usage records to Stripe metered subscription items"

    def add_arguments(self, parser):
        parser.add_argument(
            '--subscription',
            type=int,
            help='Only sync this subscription ID',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Count records that would be synced without calling Stripe',
        )

    def handle(self, *args, **options):
        if not usage.usage_billing_enabled():
            self.stdout.write(self.style.WARNING("Usage billing is disabled; nothing to sync"))
            return

        dry_run = options.get('dry_run', False)
        if dry_run:
            self.stdout.write(self.style.WARNING("DRY RUN MODE - No changes will be made"))

        stats = usage.sync_all(subscription_id=options.get('subscription'), dry_run=dry_run)
        self.stdout.write(
            f"Subscriptions: {stats['subscriptions']}  records synced: {stats['synced']}  "
            f"errors: {stats['errors']}"
        )
        if stats['errors']:
            raise CommandError(f"Usage sync failed for {stats['errors']} subscription(s)")
        self.stdout.write(self.style.SUCCESS("Usage sync complete"))
