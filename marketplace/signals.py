"""
Domain events and their receivers.

The stores announce state changes through the custom signals below. Events are
sent only after the surrounding transaction commits and with
``send_robust()``, so a failing receiver is logged and can never roll back or
fail the mutation that triggered it. Receivers turn events into rows in the
notification outbox; delivery happens later in the scheduler.

Review rating recalculation is different: it runs inside the review's own
transaction so that machinery ratings and reviews are always in sync.
"""

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Avg, Count
from django.db.models.signals import post_delete, post_save
from django.dispatch import Signal, receiver

from .models import BookingStatus, Machinery, NotificationKind, Review
from . import notifications

logger = logging.getLogger(__name__)


# Sent with listing=<Listing>
listing_sold = Signal()

# Sent with booking=<Booking>
booking_requested = Signal()

# Sent with booking=<Booking>, old_status=<str>, new_status=<str>, actor_id=<int>
booking_status_changed = Signal()

# Sent with review=<Review>
review_submitted = Signal()

# Sent with message=<Message>
message_posted = Signal()


def emit(signal, sender, **kwargs):
    """
    Send ``signal`` once the current transaction commits.

    Outside of an atomic block the signal is sent immediately. Receiver
    exceptions are collected by ``send_robust()`` and logged here.
    """
    def _send():
        responses = signal.send_robust(sender=sender, **kwargs)
        for handler, response in responses:
            if isinstance(response, Exception):
                logger.error(
                    f"Receiver {getattr(handler, '__name__', handler)} failed "
                    f"for {sender.__name__} event: {response}",
                    exc_info=response
                )

    transaction.on_commit(_send)


# ============================================================================
# Notification receivers
# ============================================================================

@receiver(listing_sold)
def notify_listing_sold(sender, listing, **kwargs):
    notifications.enqueue(
        listing.owner_id,
        NotificationKind.LISTING_SOLD,
        {
            'listing_id': listing.pk,
            'title': listing.title,
            'sold_at': listing.sold_at.isoformat(),
        },
        dedupe_key=f'listing_sold:{listing.pk}:{listing.sold_at.isoformat()}',
    )


@receiver(booking_requested)
def notify_booking_requested(sender, booking, **kwargs):
    notifications.enqueue(
        booking.owner_id,
        NotificationKind.BOOKING_REQUESTED,
        {
            'booking_id': booking.pk,
            'machinery_id': booking.machinery_id,
            'machinery_title': booking.machinery.title,
            'farmer_id': booking.farmer_id,
            'start_date': booking.start_date.isoformat(),
            'end_date': booking.end_date.isoformat(),
            'total_amount': str(booking.total_amount),
        },
        dedupe_key=f'booking_requested:{booking.pk}',
    )


@receiver(booking_status_changed)
def notify_booking_status_changed(sender, booking, old_status, new_status, actor_id, **kwargs):
    # Tell the participant who did not make the change
    recipient_id = booking.farmer_id if actor_id == booking.owner_id else booking.owner_id
    notifications.enqueue(
        recipient_id,
        NotificationKind.BOOKING_STATUS_CHANGED,
        {
            'booking_id': booking.pk,
            'machinery_title': booking.machinery.title,
            'old_status': str(old_status),
            'new_status': str(new_status),
            'notes': booking.owner_notes if new_status in (BookingStatus.APPROVED, BookingStatus.REJECTED) else '',
        },
        dedupe_key=f'booking_status:{booking.pk}:{new_status}',
    )


@receiver(review_submitted)
def notify_review_received(sender, review, **kwargs):
    notifications.enqueue(
        review.booking.owner_id,
        NotificationKind.REVIEW_RECEIVED,
        {
            'review_id': review.pk,
            'booking_id': review.booking_id,
            'machinery_title': review.machinery.title,
            'rating': review.rating,
        },
        dedupe_key=f'review_received:{review.pk}',
    )


@receiver(message_posted)
def notify_new_message(sender, message, **kwargs):
    conversation = message.conversation
    notifications.enqueue(
        conversation.other_participant_id(message.sender_id),
        NotificationKind.NEW_MESSAGE,
        {
            'conversation_id': conversation.pk,
            'message_id': message.pk,
            'sender_id': message.sender_id,
            'preview': message.content[:100],
        },
        dedupe_key=f'new_message:{message.pk}',
    )


# ============================================================================
# Machinery rating recalculation
# ============================================================================

def recalculate_machinery_rating(machinery_id):
    """
    Recompute ``rating_average`` and ``review_count`` for one machinery.

    Locks the machinery row so concurrent reviews cannot interleave their
    aggregate writes.

    Returns:
        Machinery: The updated machinery instance
    """
    with transaction.atomic():
        machinery = Machinery.objects.select_for_update().get(pk=machinery_id)

        stats = Review.objects.filter(machinery_id=machinery_id).aggregate(
            avg=Avg('rating'),
            count=Count('id'),
        )

        if stats['avg'] is not None:
            machinery.rating_average = Decimal(str(stats['avg'])).quantize(Decimal('0.01'))
        else:
            machinery.rating_average = Decimal('0.00')
        machinery.review_count = stats['count']
        machinery.save(update_fields=['rating_average', 'review_count'])

    return machinery


@receiver(post_save, sender=Review)
def update_rating_on_review_save(sender, instance, created, **kwargs):
    """
    Update the reviewed machinery's rating when a review is created or edited.

    Runs in the same transaction as ``Review.save()``; if it fails the review
    write is rolled back too.
    """
    try:
        machinery = recalculate_machinery_rating(instance.machinery_id)
        action = "created" if created else "updated"
        logger.info(
            f"Updated rating for machinery {machinery.pk} after review {instance.pk} ({action}): "
            f"average={machinery.rating_average}, count={machinery.review_count}"
        )
    except Exception as e:
        logger.error(
            f"Error updating rating for review {instance.pk}: {e}",
            exc_info=True
        )
        raise


@receiver(post_delete, sender=Review)
def update_rating_on_review_delete(sender, instance, **kwargs):
    try:
        machinery = recalculate_machinery_rating(instance.machinery_id)
    except Machinery.DoesNotExist:
        # Cascade delete of the machinery itself
        return
    logger.info(
        f"Updated rating for machinery {machinery.pk} after deleting review {instance.pk}: "
        f"average={machinery.rating_average}, count={machinery.review_count}"
    )
