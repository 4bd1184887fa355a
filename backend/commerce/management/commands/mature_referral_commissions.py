"""Mature referral commissions whose holding period has passed."""
from django.core.management.base import BaseCommand

from commerce.services.referrals import mature_ready_commissions


class Command(BaseCommand):
    help = "Move pending referral commissions past their maturation date to matured"

    def add_arguments(self, parser):
        parser.add_argument('--dry-run', action='store_true', help='Only count ready commissions')

    def handle(self, *args, **options):
        dry_run = options.get('dry_run', False)
        count = mature_ready_commissions(dry_run=dry_run)
        if dry_run:
            self.stdout.write(self.style.WARNING(f"DRY RUN: {count} commission(s) ready to mature"))
            return
        self.stdout.write(self.style.SUCCESS(f"Matured {count} commission(s)"))
