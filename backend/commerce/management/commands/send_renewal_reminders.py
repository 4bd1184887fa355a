"""Remind workspace owners about subscriptions that renew soon."""
from django.core.management.base import BaseCommand, CommandError

from commerce.conf import renewal_reminder_settings
from commerce.services.collaborators import build_subscription_service


class Command(BaseCommand):
    help = "Send renewal reminders for subscriptions renewing within the reminder window"

    def add_arguments(self, parser):
        parser.add_argument(
            '--days',
            type=int,
            help='Days before renewal to send the reminder (defaults to the configured window)',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List due reminders without sending them',
        )

    def handle(self, *args, **options):
        config = renewal_reminder_settings()
        if not config["enabled"]:
            self.stdout.write("Renewal reminders are disabled.")
            return

        days = options.get('days') or int(config["days_before"])
        if days < 1:
            raise CommandError("--days must be at least 1")
        dry_run = options.get('dry_run', False)
        stats = build_subscription_service().send_renewal_reminders(days=days, dry_run=dry_run)

        if dry_run:
            self.stdout.write(self.style.WARNING(
                f"DRY RUN: {stats['selected'] - stats['skipped']} reminder(s) would be sent"
            ))
            return
        if stats['failed']:
            raise CommandError(f"Failed to send {stats['failed']} of {stats['selected']} renewal reminder(s)")
        self.stdout.write(self.style.SUCCESS(f"Sent {stats['sent']} renewal reminder(s)"))
