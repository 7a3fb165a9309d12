"""
Tests for booking reviews and machinery rating aggregation.

Test Coverage:
- Review submission error ordering
- One review per booking
- rating_average / review_count maintained by signals
- recalculate_ratings management command
"""

from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from marketplace import bookings
from marketplace.exceptions import (
    ConflictError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from marketplace.models import Machinery, Review

User = get_user_model()


def create_test_user(email, **kwargs):
    """Create a test user with given parameters."""
    return User.objects.create_user(email=email, password='testpass123', **kwargs)


def create_test_machinery(owner, **kwargs):
    defaults = {
        'title': 'John Deere 5055E',
        'category': 'tractor',
        'rental_rate': Decimal('6500.00'),
        'rental_period': 'daily',
        'county': 'Uasin Gishu',
    }
    defaults.update(kwargs)
    return Machinery.objects.create(owner=owner, **defaults)


def create_completed_booking(farmer, machinery):
    """Create a booking and drive it to completed."""
    today = timezone.localdate()
    booking = bookings.create_booking(
        farmer.id, machinery.id, today + timedelta(days=1), today + timedelta(days=2)
    )
    bookings.approve(booking.pk, machinery.owner_id)
    bookings.start_progress(booking.pk, machinery.owner_id)
    bookings.complete(booking.pk, machinery.owner_id)
    booking.refresh_from_db()
    return booking


class SubmitReviewTestCase(TestCase):
    """Test suite for submit_review."""

    def setUp(self):
        self.owner = create_test_user('owner@example.com', is_equipment_owner=True)
        self.farmer = create_test_user('farmer@example.com')
        self.machinery = create_test_machinery(self.owner)
        self.booking = create_completed_booking(self.farmer, self.machinery)

    def test_farmer_can_review_completed_booking(self):
        review = bookings.submit_review(self.booking.pk, self.farmer.id, 4, 'Reliable tractor')

        self.assertEqual(review.rating, 4)
        self.assertEqual(review.machinery_id, self.machinery.id)
        self.assertEqual(review.reviewer_id, self.farmer.id)

    def test_rating_accepts_numeric_string(self):
        review = bookings.submit_review(self.booking.pk, self.farmer.id, '5')
        self.assertEqual(review.rating, 5)

    def test_missing_booking_raises_not_found(self):
        with self.assertRaises(NotFound):
            bookings.submit_review(999999, self.farmer.id, 5)

    def test_owner_cannot_review(self):
        with self.assertRaises(PermissionDenied) as ctx:
            bookings.submit_review(self.booking.pk, self.owner.id, 5)
        self.assertEqual(ctx.exception.action, 'review')

    def test_permission_checked_before_rating(self):
        with self.assertRaises(PermissionDenied):
            bookings.submit_review(self.booking.pk, self.owner.id, 9)

    def test_uncompleted_booking_cannot_be_reviewed(self):
        today = timezone.localdate()
        pending = bookings.create_booking(
            self.farmer.id, self.machinery.id, today + timedelta(days=5), today + timedelta(days=6)
        )

        with self.assertRaises(InvalidTransition) as ctx:
            bookings.submit_review(pending.pk, self.farmer.id, 5)
        self.assertEqual(ctx.exception.current_state, 'pending')

    def test_state_checked_before_rating(self):
        today = timezone.localdate()
        pending = bookings.create_booking(
            self.farmer.id, self.machinery.id, today + timedelta(days=5), today + timedelta(days=6)
        )

        with self.assertRaises(InvalidTransition):
            bookings.submit_review(pending.pk, self.farmer.id, 0)

    def test_rating_out_of_range_rejected(self):
        for rating in (0, 6, -1, 'great', None):
            with self.assertRaises(ValidationError) as ctx:
                bookings.submit_review(self.booking.pk, self.farmer.id, rating)
            self.assertEqual(ctx.exception.field, 'rating')

        self.assertEqual(Review.objects.count(), 0)

    def test_second_review_conflicts(self):
        bookings.submit_review(self.booking.pk, self.farmer.id, 4)

        with self.assertRaises(ConflictError):
            bookings.submit_review(self.booking.pk, self.farmer.id, 2)

        self.assertEqual(Review.objects.filter(booking=self.booking).count(), 1)


class MachineryRatingTestCase(TestCase):
    """Test suite for rating aggregation."""

    def setUp(self):
        self.owner = create_test_user('owner@example.com', is_equipment_owner=True)
        self.farmer = create_test_user('farmer@example.com')
        self.farmer2 = create_test_user('farmer2@example.com')
        self.machinery = create_test_machinery(self.owner)

    def test_rating_updated_after_reviews(self):
        first = create_completed_booking(self.farmer, self.machinery)
        second = create_completed_booking(self.farmer2, self.machinery)

        bookings.submit_review(first.pk, self.farmer.id, 5)
        bookings.submit_review(second.pk, self.farmer2.id, 4)

        self.machinery.refresh_from_db()
        self.assertEqual(self.machinery.review_count, 2)
        self.assertEqual(self.machinery.rating_average, Decimal('4.50'))

    def test_rating_reset_after_review_deleted(self):
        booking = create_completed_booking(self.farmer, self.machinery)
        review = bookings.submit_review(booking.pk, self.farmer.id, 3)

        review.delete()

        self.machinery.refresh_from_db()
        self.assertEqual(self.machinery.review_count, 0)
        self.assertEqual(self.machinery.rating_average, Decimal('0.00'))


class RecalculateRatingsCommandTestCase(TestCase):
    """Test suite for the recalculate_ratings management command."""

    def setUp(self):
        self.owner = create_test_user('owner@example.com', is_equipment_owner=True)
        self.farmer = create_test_user('farmer@example.com')
        self.machinery = create_test_machinery(self.owner)
        booking = create_completed_booking(self.farmer, self.machinery)
        bookings.submit_review(booking.pk, self.farmer.id, 4)

        # Corrupt the aggregates behind the signals' back
        Machinery.objects.filter(pk=self.machinery.pk).update(
            rating_average=Decimal('1.00'),
            review_count=7,
        )

    def test_command_fixes_aggregates(self):
        out = StringIO()
        call_command('recalculate_ratings', stdout=out)

        self.machinery.refresh_from_db()
        self.assertEqual(self.machinery.rating_average, Decimal('4.00'))
        self.assertEqual(self.machinery.review_count, 1)
        self.assertIn('Recalculation completed successfully', out.getvalue())

    def test_dry_run_saves_nothing(self):
        out = StringIO()
        call_command('recalculate_ratings', '--dry-run', stdout=out)

        self.machinery.refresh_from_db()
        self.assertEqual(self.machinery.review_count, 7)
        self.assertIn('[DRY-RUN]', out.getvalue())
