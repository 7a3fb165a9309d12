# Cleanup Sold Listings Management Command
from django.core.management.base import BaseCommand

from marketplace.scheduler import cleanup_expired_listings, cleanup_sold_listings


class Command(BaseCommand):
    help = 'Deletes listings sold longer than the grace period ago, and optionally expired listings.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='List the listings that would be deleted without deleting them.',
        )
        parser.add_argument(
            '--include-expired',
            action='store_true',
            help='Also delete listings whose expiry date has passed.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']

        sold = cleanup_sold_listings(dry_run=dry_run)
        prefix = '[DRY-RUN] Would delete' if dry_run else 'Deleted'
        self.stdout.write(f'{prefix} {len(sold)} sold listings: {sold}')

        if options['include_expired']:
            expired = cleanup_expired_listings(dry_run=dry_run)
            self.stdout.write(f'{prefix} {len(expired)} expired listings: {expired}')

        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Cleanup completed successfully.'))
