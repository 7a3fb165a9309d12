# Notify Expiring Listings Management Command
from django.core.management.base import BaseCommand

from marketplace.scheduler import dispatch_pending_notifications, notify_expiring_listings


class Command(BaseCommand):
    help = 'Queues one reminder per owner for listings expiring within the notice window.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report how many owners would be notified without queueing anything.',
        )
        parser.add_argument(
            '--dispatch',
            action='store_true',
            help='Deliver pending notifications after queueing.',
        )

    def handle(self, *args, **options):
        if options['dry_run']:
            owners = notify_expiring_listings(dry_run=True)
            self.stdout.write(f'[DRY-RUN] {owners} owners have listings expiring soon.')
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
            return

        queued = notify_expiring_listings()
        self.stdout.write(f'Queued {queued} expiry notifications.')

        if options['dispatch']:
            results = dispatch_pending_notifications()
            self.stdout.write(
                f"Sent {results['sent']}, retrying {results['retrying']}, failed {results['failed']}."
            )

        self.stdout.write(self.style.SUCCESS('Expiry scan completed successfully.'))
