"""Refresh stored exchange rates from the configured provider."""
from django.core.management.base import BaseCommand, CommandError

from commerce.services import currency


class Command(BaseCommand):
    help = "Fetch exchange rates from the configured provider and store them"

    def add_arguments(self, parser):
        parser.add_argument(
            '--force',
            action='store_true',
            help='Refresh even if the stored rates are still fresh',
        )

    def handle(self, *args, **options):
        if not options.get('force') and not currency.needs_refresh():
            self.stdout.write("Exchange rates are fresh; use --force to refresh anyway")
            return

        rates = currency.refresh_exchange_rates()
        if not rates:
            raise CommandError("No exchange rates were stored; check the provider logs")
        for code, rate in sorted(rates.items()):
            self.stdout.write(f"  {code}: {rate}")
        self.stdout.write(self.style.SUCCESS(f"Stored {len(rates)} exchange rates"))
