"""
Conversations between buyers and sellers.

Messages are append-only and ordered by (created_at, id). Posting a message
takes a row lock on its conversation, so ids within one conversation commit in
creation order.

Real-time delivery goes through Redis Pub/Sub. Once the transaction that
created a message commits, ``ConversationHub.publish`` sends a notice on the
conversation's channel. Each subscription treats a notice as a wake-up: it
reads every message after the last one it delivered from the database and
hands them to its callback in order. Notices may arrive late, twice or out of
order across workers without breaking delivery order.
"""

import json
import logging
import threading

import redis
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import connection, transaction
from django.db.models import Q
from django.utils import timezone

from .exceptions import NotFound, PermissionDenied, ValidationError
from .models import Conversation, Listing, Message, User
from .signals import emit, message_posted

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = 'marketplace:conversation:'


def channel_name(conversation_id):
    return f'{CHANNEL_PREFIX}{conversation_id}'


class Subscription:
    """
    A callback listening to one conversation.

    ``last_id`` is the id of the last message handed to the callback; delivery
    resumes after it.
    """

    def __init__(self, hub, conversation_id, callback, after_id=None):
        self.hub = hub
        self.conversation_id = conversation_id
        self.callback = callback
        self.last_id = after_id or 0
        self.active = True
        self.pubsub = None
        self.thread = None
        self._lock = threading.RLock()

    def pending_messages(self):
        return (
            Message.objects
            .filter(conversation_id=self.conversation_id, id__gt=self.last_id)
            .select_related('sender')
            .order_by('created_at', 'id')
        )

    def deliver_pending(self):
        """
        Hand every message after ``last_id`` to the callback.

        Returns:
            int: Number of messages delivered
        """
        delivered = 0
        with self._lock:
            if not self.active:
                return 0
            for message in self.pending_messages():
                try:
                    self.callback(message)
                except Exception as e:
                    logger.error(
                        f"Subscriber failed for message {message.pk} "
                        f"in conversation {self.conversation_id}: {e}",
                        exc_info=True
                    )
                self.last_id = message.pk
                delivered += 1
        return delivered

    def _on_notice(self, notice):
        # Runs on the pubsub worker thread, which owns its own DB connection
        try:
            self.deliver_pending()
        finally:
            connection.close()

    def unsubscribe(self):
        with self._lock:
            self.active = False
        self.hub._remove(self)


class ConversationHub:
    """
    Publish/subscribe for conversation messages over Redis Pub/Sub.

    Every subscription gets its own pubsub connection and worker thread, so a
    subscriber that raises is logged and the others still receive the message.
    """

    def __init__(self, redis_url=None, client=None):
        self._redis_url = redis_url
        self._client = client
        self._lock = threading.Lock()
        self._subscriptions = set()

    @property
    def redis_url(self):
        if self._redis_url is None:
            self._redis_url = settings.MARKETPLACE.get('CONVERSATION_REDIS_URL')
        return self._redis_url

    def get_client(self):
        if self._client is None:
            if not self.redis_url:
                raise ImproperlyConfigured(
                    "MARKETPLACE['CONVERSATION_REDIS_URL'] is required for conversation delivery."
                )
            self._client = redis.Redis.from_url(self.redis_url)
        return self._client

    def subscribe(self, conversation_id, callback, after_id=None):
        """
        Deliver messages of ``conversation_id`` posted after ``after_id``.

        Messages already stored after ``after_id`` are delivered immediately,
        then the subscription waits for notices on the conversation channel.
        """
        subscription = Subscription(self, conversation_id, callback, after_id)
        pubsub = self.get_client().pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(**{channel_name(conversation_id): subscription._on_notice})
        subscription.pubsub = pubsub
        subscription.thread = pubsub.run_in_thread(sleep_time=1.0, daemon=True)

        with self._lock:
            self._subscriptions.add(subscription)

        subscription.deliver_pending()
        logger.debug(f"Subscribed to conversation {conversation_id} after message {after_id}")
        return subscription

    def _remove(self, subscription):
        with self._lock:
            self._subscriptions.discard(subscription)
        if subscription.thread is not None:
            subscription.thread.stop()
        if subscription.pubsub is not None:
            subscription.pubsub.close()

    def subscriber_count(self, conversation_id):
        with self._lock:
            return sum(1 for s in self._subscriptions if s.conversation_id == conversation_id)

    def publish(self, message):
        """
        Announce a committed message on its conversation channel.

        Failures are logged; the message is stored either way and subscribers
        pick it up with the next notice.
        """
        if not self.redis_url and self._client is None:
            logger.debug(f"No conversation transport configured, message {message.pk} not announced")
            return False

        notice = json.dumps({'conversation_id': message.conversation_id, 'message_id': message.pk})
        try:
            self.get_client().publish(channel_name(message.conversation_id), notice)
        except redis.RedisError as e:
            logger.error(
                f"Failed to publish message {message.pk} "
                f"in conversation {message.conversation_id}: {e}"
            )
            return False
        return True


hub = ConversationHub()


def _get_conversation(conversation_id):
    try:
        return Conversation.objects.get(pk=conversation_id)
    except Conversation.DoesNotExist:
        raise NotFound('Conversation', conversation_id)


def _get_participant_conversation(conversation_id, user_id, action):
    conversation = _get_conversation(conversation_id)
    if not conversation.has_participant(user_id):
        logger.warning(f"User {user_id} denied {action} on conversation {conversation.pk}")
        raise PermissionDenied(action, 'Only the conversation participants can access it.')
    return conversation


def start_conversation(buyer_id, seller_id, listing_id=None):
    """
    Get or create the conversation between a buyer and a seller.

    When ``listing_id`` is given the seller must own that listing. Without a
    listing, an existing thread between the two users in either direction is
    reused.

    Returns:
        tuple: (Conversation, created)
    """
    if buyer_id == seller_id:
        raise ValidationError('seller', 'You cannot start a conversation with yourself.')

    if not User.objects.filter(pk=seller_id).exists():
        raise NotFound('User', seller_id)

    if listing_id is not None:
        try:
            listing = Listing.objects.get(pk=listing_id)
        except Listing.DoesNotExist:
            raise NotFound('Listing', listing_id)
        if listing.owner_id != seller_id:
            raise ValidationError('listing', 'The seller does not own this listing.')
        conversation, created = Conversation.objects.get_or_create(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
        )
    else:
        conversation = Conversation.objects.filter(
            Q(buyer_id=buyer_id, seller_id=seller_id) | Q(buyer_id=seller_id, seller_id=buyer_id),
            listing__isnull=True,
        ).first()
        created = conversation is None
        if created:
            conversation = Conversation.objects.create(buyer_id=buyer_id, seller_id=seller_id)

    if created:
        logger.info(
            f"Conversation {conversation.pk} started: buyer={buyer_id}, seller={seller_id}, "
            f"listing={listing_id}"
        )
    return conversation, created


def post_message(conversation_id, sender_id, content, message_type='text'):
    """
    Append a message and publish it to subscribers after commit.

    Raises:
        NotFound: Conversation does not exist
        PermissionDenied: Sender is not a participant
        ValidationError: Empty content or unknown message type
    """
    conversation = _get_participant_conversation(conversation_id, sender_id, 'post')

    if not content or not str(content).strip():
        raise ValidationError('content', 'Message cannot be empty.')

    valid_types = [choice for choice, _ in Message.MESSAGE_TYPE_CHOICES]
    if message_type not in valid_types:
        raise ValidationError('message_type', f'Must be one of: {", ".join(valid_types)}.')

    with transaction.atomic():
        # The row lock taken by this update serializes posts to one
        # conversation until commit, so message ids commit in creation order
        Conversation.objects.filter(pk=conversation.pk).update(updated_at=timezone.now())
        message = Message.objects.create(
            conversation=conversation,
            sender_id=sender_id,
            content=content,
            message_type=message_type,
        )
        transaction.on_commit(lambda: hub.publish(message))
        emit(message_posted, sender=Message, message=message)

    logger.debug(f"Message {message.pk} posted to conversation {conversation.pk} by user {sender_id}")
    return message


def list_messages(conversation_id, user_id, after_id=None):
    """Messages of a conversation in creation order, optionally after ``after_id``."""
    conversation = _get_participant_conversation(conversation_id, user_id, 'view')
    queryset = conversation.messages.select_related('sender').order_by('created_at', 'id')
    if after_id is not None:
        queryset = queryset.filter(id__gt=after_id)
    return queryset


def mark_read(conversation_id, user_id):
    """
    Mark the other participant's messages as read.

    Returns:
        int: Number of messages marked
    """
    conversation = _get_participant_conversation(conversation_id, user_id, 'read')
    count = (
        Message.objects.filter(conversation=conversation, read=False)
        .exclude(sender_id=user_id)
        .update(read=True)
    )
    if count:
        logger.debug(f"User {user_id} read {count} messages in conversation {conversation.pk}")
    return count


def unread_count(user_id):
    return (
        Message.objects.filter(
            Q(conversation__buyer_id=user_id) | Q(conversation__seller_id=user_id),
            read=False,
        )
        .exclude(sender_id=user_id)
        .count()
    )


def conversations_for_user(user_id):
    return (
        Conversation.objects.filter(Q(buyer_id=user_id) | Q(seller_id=user_id))
        .select_related('buyer', 'seller', 'listing')
        .order_by('-updated_at', '-id')
    )
