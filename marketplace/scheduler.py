"""
Expiry and cleanup sweeps.

Each sweep is idempotent and takes an explicit ``now`` so it can be driven by
the APScheduler loop in ``manage.py run_scheduler``, by the one-shot
management commands, or directly from tests.

Deletes are compare-and-delete: the row is removed only if the column that
made it eligible still holds the value the sweep read. A listing whose sale
was reverted, or whose expiry date was pushed back, between the read and the
delete survives.
"""

import logging
from collections import OrderedDict
from datetime import timedelta

from django.conf import settings
from django.utils import timezone

from . import notifications
from .models import Listing, Notification, NotificationKind, NotificationStatus

logger = logging.getLogger(__name__)


def _setting(name):
    return settings.MARKETPLACE[name]


def _local_date(now):
    return timezone.localdate(now) if timezone.is_aware(now) else now.date()


def sold_listing_candidates(cutoff):
    """(pk, sold_at) pairs of listings sold at or before ``cutoff``."""
    return list(
        Listing.objects.filter(sold_at__isnull=False, sold_at__lte=cutoff)
        .values_list('pk', 'sold_at')
    )


def expired_listing_candidates(today):
    return list(
        Listing.objects.filter(expiry_date__lt=today).values_list('pk', 'expiry_date')
    )


def cleanup_sold_listings(now=None, dry_run=False):
    """
    Delete listings sold at least one grace period before ``now``.

    Returns:
        list: IDs of the deleted (or, with ``dry_run``, eligible) listings
    """
    now = now or timezone.now()
    cutoff = now - _setting('SOLD_GRACE_PERIOD')

    candidates = sold_listing_candidates(cutoff)

    if dry_run:
        return [pk for pk, _ in candidates]

    deleted = []
    for pk, sold_at in candidates:
        try:
            count, _ = Listing.objects.filter(pk=pk, sold_at=sold_at).delete()
        except Exception as e:
            logger.error(f"Failed to delete sold listing {pk}: {e}", exc_info=True)
            continue
        if count:
            deleted.append(pk)
        else:
            logger.info(f"Listing {pk} changed since it was read; skipping cleanup")

    if deleted:
        logger.info(f"Removed {len(deleted)} sold listings past the grace period: {deleted}")
    return deleted


def cleanup_expired_listings(now=None, dry_run=False):
    """Delete listings whose expiry date is before today."""
    today = _local_date(now or timezone.now())

    candidates = expired_listing_candidates(today)

    if dry_run:
        return [pk for pk, _ in candidates]

    deleted = []
    for pk, expiry_date in candidates:
        try:
            count, _ = Listing.objects.filter(pk=pk, expiry_date=expiry_date).delete()
        except Exception as e:
            logger.error(f"Failed to delete expired listing {pk}: {e}", exc_info=True)
            continue
        if count:
            deleted.append(pk)

    if deleted:
        logger.info(f"Removed {len(deleted)} expired listings: {deleted}")
    return deleted


def expiring_listings_by_owner(now=None):
    """
    Group active, unsold listings expiring within the notice window by owner.

    Returns:
        OrderedDict: owner_id -> list of Listing, owners in ascending ID order
    """
    today = _local_date(now or timezone.now())
    horizon = today + timedelta(days=_setting('EXPIRY_NOTICE_DAYS'))

    listings = (
        Listing.objects.filter(
            is_active=True,
            sold_at__isnull=True,
            expiry_date__gte=today,
            expiry_date__lte=horizon,
        )
        .order_by('owner_id', 'expiry_date', 'pk')
    )

    grouped = OrderedDict()
    for listing in listings:
        grouped.setdefault(listing.owner_id, []).append(listing)
    return grouped


def notify_expiring_listings(now=None, dry_run=False):
    """
    Queue one expiry reminder per owner.

    The dedupe key includes the date, so repeated scans on the same day queue
    nothing new.

    Returns:
        int: Number of notifications queued (or, with ``dry_run``, owners found)
    """
    now = now or timezone.now()
    today = _local_date(now)
    grouped = expiring_listings_by_owner(now)

    if dry_run:
        return len(grouped)

    queued = 0
    for owner_id, listings in grouped.items():
        payload = {
            'date': today.isoformat(),
            'listings': [
                {
                    'id': listing.pk,
                    'title': listing.title,
                    'expiry_date': listing.expiry_date.isoformat(),
                }
                for listing in listings
            ],
        }
        try:
            _, created = notifications.enqueue(
                owner_id,
                NotificationKind.LISTING_EXPIRING,
                payload,
                dedupe_key=f'listing_expiring:{owner_id}:{today.isoformat()}',
            )
        except Exception as e:
            logger.error(f"Failed to queue expiry notice for owner {owner_id}: {e}", exc_info=True)
            continue
        if created:
            queued += 1

    if queued:
        logger.info(f"Queued {queued} expiry notifications")
    return queued


def dispatch_pending_notifications(now=None, dispatcher=None):
    """
    Deliver pending outbox rows, each in isolation.

    A row is claimed by bumping ``attempts`` with a compare-and-write so two
    dispatchers never send the same attempt. A failed row stays pending until
    it reaches ``MAX_NOTIFICATION_ATTEMPTS``, then it is marked failed.

    Returns:
        dict: Counts of sent, retrying and failed notifications
    """
    dispatcher = dispatcher or notifications.NotificationDispatcher()
    max_attempts = _setting('MAX_NOTIFICATION_ATTEMPTS')
    batch_size = _setting('NOTIFICATION_BATCH_SIZE')

    results = {'sent': 0, 'retrying': 0, 'failed': 0}

    pending = (
        Notification.objects.filter(status=NotificationStatus.PENDING)
        .select_related('recipient')
        .order_by('created_at', 'id')[:batch_size]
    )

    for notification in pending:
        attempt = notification.attempts + 1
        claimed = Notification.objects.filter(
            pk=notification.pk,
            status=NotificationStatus.PENDING,
            attempts=notification.attempts,
        ).update(attempts=attempt)
        if not claimed:
            continue
        notification.attempts = attempt

        try:
            dispatcher.deliver(notification)
        except Exception as e:
            status = NotificationStatus.FAILED if attempt >= max_attempts else NotificationStatus.PENDING
            Notification.objects.filter(pk=notification.pk).update(
                status=status,
                last_error=str(e)[:1000],
            )
            if status == NotificationStatus.FAILED:
                results['failed'] += 1
                logger.error(
                    f"Giving up on notification {notification.pk} after {attempt} attempts: {e}"
                )
            else:
                results['retrying'] += 1
                logger.warning(
                    f"Delivery of notification {notification.pk} failed "
                    f"(attempt {attempt}/{max_attempts}): {e}"
                )
            continue

        Notification.objects.filter(pk=notification.pk).update(
            status=NotificationStatus.SENT,
            sent_at=now or timezone.now(),
            last_error='',
        )
        results['sent'] += 1

    if any(results.values()):
        logger.info(
            f"Notification dispatch: {results['sent']} sent, "
            f"{results['retrying']} retrying, {results['failed']} failed"
        )
    return results


def run_tick(now=None):
    """
    Run every sweep once. A failing sweep is logged and the rest still run.

    Returns:
        dict: sweep name -> its result, or the exception it raised
    """
    now = now or timezone.now()
    sweeps = (
        ('cleanup_sold_listings', cleanup_sold_listings),
        ('cleanup_expired_listings', cleanup_expired_listings),
        ('notify_expiring_listings', notify_expiring_listings),
        ('dispatch_pending_notifications', dispatch_pending_notifications),
    )
    results = {}
    for name, sweep in sweeps:
        try:
            results[name] = sweep(now=now)
        except Exception as e:
            logger.error(f"Sweep {name} failed: {e}", exc_info=True)
            results[name] = e
    return results
