# Recalculate Ratings Management Command
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db.models import Avg, Count

from marketplace.models import Machinery

TWO_PLACES = Decimal('0.01')


class Command(BaseCommand):
    help = 'Rebuilds machinery rating_average and review_count from the review table.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report drifted machinery without saving.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=500,
            help='Rows per bulk_update.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        batch_size = options['batch_size']

        machinery = (
            Machinery.objects
            .annotate(actual_avg=Avg('reviews__rating'), actual_count=Count('reviews'))
            .order_by('pk')
        )

        drifted = []
        checked = 0
        for item in machinery.iterator(chunk_size=batch_size):
            checked += 1
            average = Decimal('0.00')
            if item.actual_avg is not None:
                average = Decimal(str(item.actual_avg)).quantize(TWO_PLACES)

            if item.rating_average == average and item.review_count == item.actual_count:
                continue

            self.stdout.write(
                f'{"[DRY-RUN] " if dry_run else ""}Machinery {item.pk} ({item.title}): '
                f'{item.rating_average}/{item.review_count} -> {average}/{item.actual_count}'
            )
            item.rating_average = average
            item.review_count = item.actual_count
            drifted.append(item)

            if not dry_run and len(drifted) >= batch_size:
                Machinery.objects.bulk_update(drifted, ['rating_average', 'review_count'])
                drifted = []

        if drifted and not dry_run:
            Machinery.objects.bulk_update(drifted, ['rating_average', 'review_count'])

        self.stdout.write(f'Checked {checked} machinery.')
        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Recalculation completed successfully.'))
