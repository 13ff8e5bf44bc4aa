# core/management/commands/reconcile_payouts.py

from django.core.management.base import BaseCommand

from core.services.status import reconcile_open_payouts
from core.utils.payment_provider import active_provider


class Command(BaseCommand):
    help = "Poll open payouts at the active payment provider and apply their final status."

    def add_arguments(self, parser):
        parser.add_argument(
            '--limit',
            type=int,
            default=200,
            help='Maximum number of open payouts to check (default: 200)',
        )

    def handle(self, *args, **options):
        stats = reconcile_open_payouts(limit=options['limit'])

        if stats['errors']:
            self.stderr.write(f"{stats['errors']} payout lookup(s) failed, see logs.")

        self.stdout.write(self.style.SUCCESS(
            f"Payout reconciliation complete. "
            f"provider={active_provider()} "
            f"checked={stats['checked']} "
            f"updated={stats['updated']} "
            f"errors={stats['errors']}"
        ))
