"""
Notification outbox and delivery channels.

``enqueue()`` records a notification for later delivery; it is idempotent on
``dedupe_key``. ``NotificationDispatcher`` renders a subject and body for a
notification and hands them to every configured channel. Channels are listed
as dotted paths in ``settings.MARKETPLACE['NOTIFICATION_CHANNELS']``.
"""

import logging

from django.conf import settings
from django.core.mail import send_mail
from django.utils.module_loading import import_string

from .models import Notification, NotificationKind

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Raised by a channel that could not deliver a notification."""


def enqueue(recipient, kind, payload=None, dedupe_key=None):
    """
    Add a notification to the outbox.

    Args:
        recipient: User instance or user ID
        kind: NotificationKind value
        payload: JSON-serializable template data
        dedupe_key: Optional key; a second enqueue with the same key is a no-op

    Returns:
        tuple: (Notification, created)
    """
    recipient_id = getattr(recipient, 'pk', recipient)
    payload = payload or {}

    if dedupe_key:
        notification, created = Notification.objects.get_or_create(
            dedupe_key=dedupe_key,
            defaults={
                'recipient_id': recipient_id,
                'kind': kind,
                'payload': payload,
            }
        )
    else:
        notification = Notification.objects.create(
            recipient_id=recipient_id,
            kind=kind,
            payload=payload,
        )
        created = True

    if created:
        logger.info(f"Queued {kind} notification {notification.pk} for user {recipient_id}")
    else:
        logger.debug(f"Notification {dedupe_key} already queued; skipping")

    return notification, created


# ============================================================================
# Rendering
# ============================================================================

def _render_listing_expiring(payload):
    listings = payload.get('listings', [])
    lines = [
        f"- {item['title']} (expires {item['expiry_date']})"
        for item in listings
    ]
    subject = f"{len(listings)} of your listings expire soon"
    body = "The following listings are about to expire:\n" + "\n".join(lines)
    return subject, body


def _render_listing_sold(payload):
    return (
        f"Listing sold: {payload.get('title', '')}",
        f"Your listing \"{payload.get('title', '')}\" was marked sold. "
        f"It will be removed from the marketplace after the grace period.",
    )


def _render_booking_requested(payload):
    return (
        f"New booking request for {payload.get('machinery_title', 'your machinery')}",
        f"A farmer requested {payload.get('machinery_title', 'your machinery')} "
        f"from {payload.get('start_date')} to {payload.get('end_date')} "
        f"for KES {payload.get('total_amount')}.",
    )


def _render_booking_status_changed(payload):
    new_status = str(payload.get('new_status', '')).replace('_', ' ')
    body = f"Booking #{payload.get('booking_id')} is now {new_status}."
    if payload.get('notes'):
        body += f"\n\nNotes: {payload['notes']}"
    return f"Booking {new_status}: {payload.get('machinery_title', '')}", body


def _render_review_received(payload):
    return (
        f"New review for {payload.get('machinery_title', 'your machinery')}",
        f"You received a {payload.get('rating')}-star review.",
    )


def _render_new_message(payload):
    return (
        "You have a new message",
        payload.get('preview', ''),
    )


RENDERERS = {
    NotificationKind.LISTING_EXPIRING: _render_listing_expiring,
    NotificationKind.LISTING_SOLD: _render_listing_sold,
    NotificationKind.BOOKING_REQUESTED: _render_booking_requested,
    NotificationKind.BOOKING_STATUS_CHANGED: _render_booking_status_changed,
    NotificationKind.REVIEW_RECEIVED: _render_review_received,
    NotificationKind.NEW_MESSAGE: _render_new_message,
}


# ============================================================================
# Channels
# ============================================================================

class BaseChannel:
    """A delivery channel. Subclasses implement ``send()``."""

    name = 'base'

    def send(self, notification, subject, body):
        raise NotImplementedError


class EmailChannel(BaseChannel):
    """Deliver notifications by email through Django's mail framework."""

    name = 'email'

    def send(self, notification, subject, body):
        email = notification.recipient.email
        if not email:
            raise DeliveryError(f"User {notification.recipient_id} has no email address")
        send_mail(
            subject,
            body,
            settings.DEFAULT_FROM_EMAIL,
            [email],
            fail_silently=False,
        )


def load_channels():
    paths = settings.MARKETPLACE.get('NOTIFICATION_CHANNELS', [])
    return [import_string(path)() for path in paths]


class NotificationDispatcher:
    """
    Render notifications and send them through the configured channels.

    Usage:
        dispatcher = NotificationDispatcher()
        dispatcher.deliver(notification)
    """

    def __init__(self, channels=None):
        self.channels = channels if channels is not None else load_channels()

    def render(self, notification):
        renderer = RENDERERS.get(notification.kind)
        if renderer is None:
            raise DeliveryError(f"No template for notification kind {notification.kind!r}")
        return renderer(notification.payload or {})

    def deliver(self, notification):
        """
        Send ``notification`` through every channel.

        Raises whatever the first failing channel raises; the caller decides
        whether to retry.
        """
        subject, body = self.render(notification)
        for channel in self.channels:
            channel.send(notification, subject, body)
            logger.debug(
                f"Delivered notification {notification.pk} via {channel.name}"
            )
