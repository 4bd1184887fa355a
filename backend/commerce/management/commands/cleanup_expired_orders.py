"""Cancel checkout orders that were never paid."""
from django.core.management.base import BaseCommand, CommandError

from commerce.services.orders import cancel_expired_orders


class Command(BaseCommand):
    help = "Cancel pending orders older than the checkout session TTL"

    def add_arguments(self, parser):
        parser.add_argument(
            '--ttl',
            type=int,
            help='Age in minutes after which a pending order expires (defaults to the configured TTL)',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Count expired orders without cancelling them',
        )

    def handle(self, *args, **options):
        dry_run = options.get('dry_run', False)
        stats = cancel_expired_orders(ttl_minutes=options.get('ttl'), dry_run=dry_run)
        if dry_run:
            self.stdout.write(self.style.WARNING(f"DRY RUN: {stats['selected']} order(s) would be cancelled"))
            return
        if stats['failed']:
            raise CommandError(f"Failed to cancel {stats['failed']} of {stats['selected']} expired order(s)")
        self.stdout.write(self.style.SUCCESS(f"Cancelled {stats['cancelled']} expired order(s)"))
