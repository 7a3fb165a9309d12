# Run Scheduler Management Command
import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.core.management.base import BaseCommand
from django.db import close_old_connections

from marketplace import scheduler as sweeps

logger = logging.getLogger(__name__)


def _job(sweep):
    """Wrap a sweep so each run uses a fresh DB connection and never raises."""
    def run():
        close_old_connections()
        try:
            sweep()
        except Exception as e:
            logger.error(f"Scheduled sweep {sweep.__name__} failed: {e}", exc_info=True)
        finally:
            close_old_connections()
    run.__name__ = sweep.__name__
    return run


class Command(BaseCommand):
    help = 'Runs the listing cleanup, expiry notice and notification dispatch sweeps on a timer.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run every sweep once and exit instead of starting the scheduler.',
        )

    def handle(self, *args, **options):
        if options['once']:
            results = sweeps.run_tick()
            for name, result in results.items():
                self.stdout.write(f'{name}: {result}')
            self.stdout.write(self.style.SUCCESS('Tick completed.'))
            return

        config = settings.MARKETPLACE
        scheduler = BlockingScheduler(timezone=settings.TIME_ZONE)

        jobs = [
            (sweeps.cleanup_sold_listings, 'Sold listing cleanup', config['CLEANUP_INTERVAL_MINUTES']),
            (sweeps.cleanup_expired_listings, 'Expired listing cleanup', config['CLEANUP_INTERVAL_MINUTES']),
            (sweeps.notify_expiring_listings, 'Expiring listing notices', config['EXPIRY_SCAN_INTERVAL_MINUTES']),
            (sweeps.dispatch_pending_notifications, 'Notification dispatch', config['DISPATCH_INTERVAL_MINUTES']),
        ]

        for sweep, name, minutes in jobs:
            scheduler.add_job(
                _job(sweep),
                trigger=IntervalTrigger(minutes=minutes),
                id=sweep.__name__,
                name=name,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            self.stdout.write(f'Scheduled {name} every {minutes} minutes')

        self.stdout.write(self.style.SUCCESS('Scheduler started. Press Ctrl+C to exit.'))
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown(wait=False)
            self.stdout.write('Scheduler stopped.')
