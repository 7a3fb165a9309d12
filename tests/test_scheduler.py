"""
Tests for the expiry and cleanup sweeps.

Test Coverage:
- Sold listing cleanup after the grace period
- Compare-and-delete when a listing changes between read and delete
- Expired listing cleanup
- Expiry reminders grouped by owner, deduplicated per day
- Notification dispatch isolation and retries
- run_tick failure isolation
- Management commands
"""

from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from marketplace import listings, notifications, scheduler
from marketplace.models import (
    Listing,
    Notification,
    NotificationKind,
    NotificationStatus,
)

User = get_user_model()


def create_test_user(email, **kwargs):
    """Create a test user with given parameters."""
    return User.objects.create_user(email=email, password='testpass123', **kwargs)


def create_test_listing(owner, days_to_expiry=10, **kwargs):
    attrs = {
        'title': 'Sukuma Wiki',
        'category': 'vegetables',
        'price_per_unit': Decimal('30.00'),
        'quantity_available': 50,
        'location': 'Kiambu',
        'expiry_date': timezone.localdate() + timedelta(days=days_to_expiry),
    }
    attrs.update(kwargs)
    return listings.create_listing(owner, attrs)


def marketplace_settings(**overrides):
    config = dict(settings.MARKETPLACE)
    config.update(overrides)
    return config


class FlakyChannel(notifications.BaseChannel):
    """Channel that fails for a fixed set of recipients and records the rest."""

    name = 'flaky'

    def __init__(self, failing_emails=()):
        self.failing_emails = set(failing_emails)
        self.sent = []

    def send(self, notification, subject, body):
        if notification.recipient.email in self.failing_emails:
            raise notifications.DeliveryError('mailbox unavailable')
        self.sent.append(notification.pk)


class CleanupSoldListingsTestCase(TestCase):
    """Test suite for the sold listing sweep."""

    def setUp(self):
        self.seller = create_test_user('seller@example.com')
        self.listing = create_test_listing(self.seller)
        self.sold_at = timezone.now() - timedelta(hours=3)
        listings.mark_sold(self.listing.pk, self.seller.id, now=self.sold_at)

    def test_listing_kept_within_grace_period(self):
        deleted = scheduler.cleanup_sold_listings(
            now=self.sold_at + timedelta(hours=1, minutes=59)
        )

        self.assertEqual(deleted, [])
        self.assertTrue(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_listing_deleted_after_grace_period(self):
        deleted = scheduler.cleanup_sold_listings(
            now=self.sold_at + timedelta(hours=2, minutes=1)
        )

        self.assertEqual(deleted, [self.listing.pk])
        self.assertFalse(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_unsold_listing_never_deleted(self):
        unsold = create_test_listing(self.seller, title='Spinach')

        scheduler.cleanup_sold_listings(now=timezone.now() + timedelta(days=1))

        self.assertTrue(Listing.objects.filter(pk=unsold.pk).exists())

    def test_reverted_sale_survives(self):
        listings.revert_sale(self.listing.pk, self.seller.id)

        deleted = scheduler.cleanup_sold_listings()

        self.assertEqual(deleted, [])
        self.assertTrue(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_listing_resold_between_read_and_delete_survives(self):
        # The sweep read the old sale, then the owner reverted and sold again
        stale_candidates = [(self.listing.pk, self.sold_at)]
        listings.revert_sale(self.listing.pk, self.seller.id)
        listings.mark_sold(self.listing.pk, self.seller.id)

        with patch('marketplace.scheduler.sold_listing_candidates', return_value=stale_candidates):
            deleted = scheduler.cleanup_sold_listings()

        self.assertEqual(deleted, [])
        self.assertTrue(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_dry_run_deletes_nothing(self):
        eligible = scheduler.cleanup_sold_listings(dry_run=True)

        self.assertEqual(eligible, [self.listing.pk])
        self.assertTrue(Listing.objects.filter(pk=self.listing.pk).exists())

    @override_settings(MARKETPLACE=marketplace_settings(SOLD_GRACE_PERIOD=timedelta(hours=6)))
    def test_grace_period_is_configurable(self):
        self.assertEqual(scheduler.cleanup_sold_listings(), [])


class CleanupExpiredListingsTestCase(TestCase):
    """Test suite for the expired listing sweep."""

    def setUp(self):
        self.seller = create_test_user('seller@example.com')
        self.listing = create_test_listing(self.seller, days_to_expiry=2)

    def test_listing_kept_on_expiry_day(self):
        deleted = scheduler.cleanup_expired_listings(now=timezone.now() + timedelta(days=2))

        self.assertEqual(deleted, [])

    def test_listing_deleted_after_expiry_day(self):
        deleted = scheduler.cleanup_expired_listings(now=timezone.now() + timedelta(days=3))

        self.assertEqual(deleted, [self.listing.pk])
        self.assertFalse(Listing.objects.filter(pk=self.listing.pk).exists())

    def test_extended_listing_survives(self):
        stale_candidates = [(self.listing.pk, self.listing.expiry_date)]
        listings.update_listing(
            self.listing.pk,
            self.seller.id,
            {'expiry_date': timezone.localdate() + timedelta(days=30)},
        )

        with patch('marketplace.scheduler.expired_listing_candidates', return_value=stale_candidates):
            deleted = scheduler.cleanup_expired_listings(now=timezone.now() + timedelta(days=3))

        self.assertEqual(deleted, [])
        self.assertTrue(Listing.objects.filter(pk=self.listing.pk).exists())


class ExpiryNoticeTestCase(TestCase):
    """Test suite for the expiry reminder sweep."""

    def setUp(self):
        self.alice = create_test_user('alice@example.com')
        self.bob = create_test_user('bob@example.com')

        self.alice_tomorrow = create_test_listing(self.alice, days_to_expiry=1, title='Kale')
        self.alice_three = create_test_listing(self.alice, days_to_expiry=3, title='Cabbage')
        create_test_listing(self.alice, days_to_expiry=5, title='Onions')
        self.bob_two = create_test_listing(self.bob, days_to_expiry=2, title='Eggs')

        sold = create_test_listing(self.bob, days_to_expiry=1, title='Sold Milk')
        listings.mark_sold(sold.pk, self.bob.id)
        hidden = create_test_listing(self.bob, days_to_expiry=1, title='Hidden Honey')
        listings.set_active(hidden.pk, False, self.bob.id)

    def test_listings_grouped_by_owner(self):
        grouped = scheduler.expiring_listings_by_owner()

        self.assertEqual(list(grouped), [self.alice.id, self.bob.id])
        self.assertEqual(grouped[self.alice.id], [self.alice_tomorrow, self.alice_three])
        self.assertEqual(grouped[self.bob.id], [self.bob_two])

    def test_one_notification_per_owner(self):
        queued = scheduler.notify_expiring_listings()

        self.assertEqual(queued, 2)
        alice_notice = Notification.objects.get(recipient=self.alice)
        self.assertEqual(alice_notice.kind, NotificationKind.LISTING_EXPIRING)
        self.assertEqual(
            [item['id'] for item in alice_notice.payload['listings']],
            [self.alice_tomorrow.pk, self.alice_three.pk],
        )

    def test_repeated_scan_same_day_queues_nothing(self):
        now = timezone.now()
        scheduler.notify_expiring_listings(now=now)

        self.assertEqual(scheduler.notify_expiring_listings(now=now), 0)
        self.assertEqual(Notification.objects.count(), 2)

    def test_dry_run_queues_nothing(self):
        self.assertEqual(scheduler.notify_expiring_listings(dry_run=True), 2)
        self.assertEqual(Notification.objects.count(), 0)


class DispatchNotificationsTestCase(TestCase):
    """Test suite for outbox dispatch."""

    def setUp(self):
        self.alice = create_test_user('alice@example.com')
        self.bob = create_test_user('bob@example.com')
        self.carol = create_test_user('carol@example.com')

        for user in (self.alice, self.bob, self.carol):
            notifications.enqueue(
                user,
                NotificationKind.LISTING_SOLD,
                {'listing_id': 1, 'title': 'Avocados'},
            )

    def test_one_failure_does_not_block_others(self):
        channel = FlakyChannel(failing_emails={'bob@example.com'})
        dispatcher = notifications.NotificationDispatcher(channels=[channel])

        with self.assertLogs('marketplace.scheduler', level='WARNING'):
            results = scheduler.dispatch_pending_notifications(dispatcher=dispatcher)

        self.assertEqual(results, {'sent': 2, 'retrying': 1, 'failed': 0})
        self.assertEqual(len(channel.sent), 2)

        bob_notice = Notification.objects.get(recipient=self.bob)
        self.assertEqual(bob_notice.status, NotificationStatus.PENDING)
        self.assertEqual(bob_notice.attempts, 1)
        self.assertIn('mailbox unavailable', bob_notice.last_error)

        sent = Notification.objects.filter(status=NotificationStatus.SENT)
        self.assertEqual(sent.count(), 2)
        self.assertTrue(all(n.sent_at for n in sent))

    def test_sent_notifications_are_not_resent(self):
        channel = FlakyChannel()
        dispatcher = notifications.NotificationDispatcher(channels=[channel])

        scheduler.dispatch_pending_notifications(dispatcher=dispatcher)
        results = scheduler.dispatch_pending_notifications(dispatcher=dispatcher)

        self.assertEqual(results, {'sent': 0, 'retrying': 0, 'failed': 0})
        self.assertEqual(len(channel.sent), 3)

    @override_settings(MARKETPLACE=marketplace_settings(MAX_NOTIFICATION_ATTEMPTS=2))
    def test_gives_up_after_max_attempts(self):
        channel = FlakyChannel(failing_emails={'bob@example.com'})
        dispatcher = notifications.NotificationDispatcher(channels=[channel])

        with self.assertLogs('marketplace.scheduler', level='WARNING'):
            scheduler.dispatch_pending_notifications(dispatcher=dispatcher)
        with self.assertLogs('marketplace.scheduler', level='ERROR'):
            results = scheduler.dispatch_pending_notifications(dispatcher=dispatcher)

        self.assertEqual(results['failed'], 1)
        bob_notice = Notification.objects.get(recipient=self.bob)
        self.assertEqual(bob_notice.status, NotificationStatus.FAILED)
        self.assertEqual(bob_notice.attempts, 2)

    def test_email_channel_sends_mail(self):
        results = scheduler.dispatch_pending_notifications()

        self.assertEqual(results['sent'], 3)
        self.assertEqual(len(mail.outbox), 3)
        self.assertEqual(mail.outbox[0].subject, 'Listing sold: Avocados')
        self.assertEqual(
            sorted(message.to[0] for message in mail.outbox),
            ['alice@example.com', 'bob@example.com', 'carol@example.com'],
        )


class RunTickTestCase(TestCase):
    """Test suite for run_tick."""

    def setUp(self):
        self.seller = create_test_user('seller@example.com')
        self.expiring = create_test_listing(self.seller, days_to_expiry=1)

    def test_failing_sweep_does_not_stop_others(self):
        with patch('marketplace.scheduler.cleanup_sold_listings', side_effect=RuntimeError('db down')):
            with self.assertLogs('marketplace.scheduler', level='ERROR'):
                results = scheduler.run_tick()

        self.assertIsInstance(results['cleanup_sold_listings'], RuntimeError)
        self.assertEqual(results['notify_expiring_listings'], 1)
        self.assertEqual(results['dispatch_pending_notifications']['sent'], 1)
        self.assertEqual(len(mail.outbox), 1)


class SchedulerCommandsTestCase(TestCase):
    """Test suite for the sweep management commands."""

    def setUp(self):
        self.seller = create_test_user('seller@example.com')
        self.sold = create_test_listing(self.seller, title='Sold Beans')
        listings.mark_sold(self.sold.pk, self.seller.id, now=timezone.now() - timedelta(hours=3))
        self.expiring = create_test_listing(self.seller, days_to_expiry=2, title='Peas')

    def test_cleanup_command_dry_run(self):
        out = StringIO()
        call_command('cleanup_sold_listings', '--dry-run', stdout=out)

        self.assertIn('[DRY-RUN] Would delete 1 sold listings', out.getvalue())
        self.assertTrue(Listing.objects.filter(pk=self.sold.pk).exists())

    def test_cleanup_command_deletes(self):
        out = StringIO()
        call_command('cleanup_sold_listings', '--include-expired', stdout=out)

        self.assertIn('Cleanup completed successfully', out.getvalue())
        self.assertFalse(Listing.objects.filter(pk=self.sold.pk).exists())
        self.assertTrue(Listing.objects.filter(pk=self.expiring.pk).exists())

    def test_notify_command_with_dispatch(self):
        out = StringIO()
        call_command('notify_expiring_listings', '--dispatch', stdout=out)

        self.assertIn('Queued 1 expiry notifications', out.getvalue())
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn('Peas', mail.outbox[0].body)

    def test_run_scheduler_once(self):
        out = StringIO()
        call_command('run_scheduler', '--once', stdout=out)

        self.assertIn('Tick completed', out.getvalue())
        self.assertFalse(Listing.objects.filter(pk=self.sold.pk).exists())
