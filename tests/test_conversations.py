"""
Tests for buyer/seller conversations and the message hub.

Test Coverage:
- ConversationHub delivery order, resume point, unsubscribe and isolation
- Redis notices published on commit
- start_conversation reuse and validation
- post_message, list_messages, mark_read, unread_count
- Participant-only access
"""

import json
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import redis
from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone

from marketplace import conversations, listings
from marketplace.conversations import ConversationHub, channel_name
from marketplace.exceptions import NotFound, PermissionDenied, ValidationError
from marketplace.models import Message

User = get_user_model()


def create_test_user(email, **kwargs):
    """Create a test user with given parameters."""
    return User.objects.create_user(email=email, password='testpass123', **kwargs)


class ConversationHubTestCase(TestCase):
    """Test suite for ConversationHub."""

    def setUp(self):
        self.buyer = create_test_user('buyer@example.com')
        self.seller = create_test_user('seller@example.com')
        self.conversation, _ = conversations.start_conversation(self.buyer.id, self.seller.id)
        self.other, _ = conversations.start_conversation(
            self.buyer.id, create_test_user('other@example.com').id
        )
        self.redis_client = MagicMock()
        self.hub = ConversationHub(client=self.redis_client)

    def add_message(self, content, conversation=None):
        conversation = conversation or self.conversation
        return Message.objects.create(
            conversation=conversation, sender=self.buyer, content=content
        )

    def test_subscribe_listens_on_conversation_channel(self):
        subscription = self.hub.subscribe(self.conversation.pk, lambda message: None)

        pubsub = self.redis_client.pubsub.return_value
        pubsub.subscribe.assert_called_once_with(
            **{channel_name(self.conversation.pk): subscription._on_notice}
        )
        pubsub.run_in_thread.assert_called_once()
        self.assertEqual(self.hub.subscriber_count(self.conversation.pk), 1)

    def test_delivery_follows_creation_order(self):
        received = []
        subscription = self.hub.subscribe(self.conversation.pk, lambda message: received.append(message.content))
        first = self.add_message('one')
        second = self.add_message('two')

        # Notice for the second message arrives first
        subscription.deliver_pending()
        subscription.deliver_pending()

        self.assertEqual(received, ['one', 'two'])
        self.assertEqual(subscription.last_id, second.pk)
        self.assertLess(first.pk, second.pk)

    def test_subscribe_resumes_after_given_message(self):
        first = self.add_message('one')
        self.add_message('two')
        received = []

        self.hub.subscribe(
            self.conversation.pk, lambda message: received.append(message.content), after_id=first.pk
        )

        self.assertEqual(received, ['two'])

    def test_messages_only_reach_their_conversation(self):
        received = []
        subscription = self.hub.subscribe(self.conversation.pk, lambda message: received.append(message.pk))

        self.add_message('elsewhere', conversation=self.other)
        subscription.deliver_pending()

        self.assertEqual(received, [])

    def test_unsubscribe_stops_delivery(self):
        received = []
        subscription = self.hub.subscribe(self.conversation.pk, lambda message: received.append(message.content))

        self.add_message('one')
        subscription.deliver_pending()
        subscription.unsubscribe()
        self.add_message('two')
        subscription.deliver_pending()

        self.assertEqual(received, ['one'])
        self.assertEqual(self.hub.subscriber_count(self.conversation.pk), 0)
        pubsub = self.redis_client.pubsub.return_value
        pubsub.run_in_thread.return_value.stop.assert_called_once()
        pubsub.close.assert_called_once()

    def test_failing_subscriber_does_not_affect_others(self):
        received = []

        def broken(message):
            raise RuntimeError('socket closed')

        failing = self.hub.subscribe(self.conversation.pk, broken)
        healthy = self.hub.subscribe(self.conversation.pk, lambda message: received.append(message.content))
        message = self.add_message('hello')

        with self.assertLogs('marketplace.conversations', level='ERROR'):
            failing.deliver_pending()
        healthy.deliver_pending()

        self.assertEqual(received, ['hello'])
        self.assertEqual(failing.last_id, message.pk)

    def test_publish_sends_notice_on_channel(self):
        message = self.add_message('hello')

        self.assertTrue(self.hub.publish(message))

        self.redis_client.publish.assert_called_once_with(
            channel_name(self.conversation.pk),
            json.dumps({'conversation_id': self.conversation.pk, 'message_id': message.pk}),
        )

    def test_publish_failure_is_logged(self):
        self.redis_client.publish.side_effect = redis.ConnectionError('connection refused')
        message = self.add_message('hello')

        with self.assertLogs('marketplace.conversations', level='ERROR'):
            self.assertFalse(self.hub.publish(message))

    def test_publish_without_transport_is_skipped(self):
        hub = ConversationHub()
        self.assertFalse(hub.publish(self.add_message('hello')))


class StartConversationTestCase(TestCase):
    """Test suite for start_conversation."""

    def setUp(self):
        self.buyer = create_test_user('buyer@example.com')
        self.seller = create_test_user('seller@example.com')
        self.listing = listings.create_listing(self.seller, {
            'title': 'Irish Potatoes',
            'category': 'vegetables',
            'price_per_unit': Decimal('3500.00'),
            'unit': 'bag',
            'location': 'Nyandarua',
            'expiry_date': timezone.localdate() + timedelta(days=20),
        })

    def test_start_and_reuse_conversation(self):
        conversation, created = conversations.start_conversation(self.buyer.id, self.seller.id)
        again, created_again = conversations.start_conversation(self.buyer.id, self.seller.id)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(conversation.pk, again.pk)

    def test_reverse_direction_reuses_conversation(self):
        conversation, _ = conversations.start_conversation(self.buyer.id, self.seller.id)
        reverse, created = conversations.start_conversation(self.seller.id, self.buyer.id)

        self.assertFalse(created)
        self.assertEqual(conversation.pk, reverse.pk)

    def test_listing_conversation_is_separate(self):
        general, _ = conversations.start_conversation(self.buyer.id, self.seller.id)
        about_listing, created = conversations.start_conversation(
            self.buyer.id, self.seller.id, listing_id=self.listing.pk
        )

        self.assertTrue(created)
        self.assertNotEqual(general.pk, about_listing.pk)
        self.assertEqual(about_listing.listing, self.listing)

    def test_listing_must_belong_to_seller(self):
        with self.assertRaises(ValidationError) as ctx:
            conversations.start_conversation(self.seller.id, self.buyer.id, listing_id=self.listing.pk)
        self.assertEqual(ctx.exception.field, 'listing')

    def test_cannot_message_yourself(self):
        with self.assertRaises(ValidationError):
            conversations.start_conversation(self.buyer.id, self.buyer.id)

    def test_unknown_seller(self):
        with self.assertRaises(NotFound):
            conversations.start_conversation(self.buyer.id, 999999)


class MessagingTestCase(TestCase):
    """Test suite for posting and reading messages."""

    def setUp(self):
        self.buyer = create_test_user('buyer@example.com')
        self.seller = create_test_user('seller@example.com')
        self.stranger = create_test_user('stranger@example.com')
        self.conversation, _ = conversations.start_conversation(self.buyer.id, self.seller.id)

    def test_messages_listed_in_order(self):
        first = conversations.post_message(self.conversation.pk, self.buyer.id, 'Hello')
        second = conversations.post_message(self.conversation.pk, self.seller.id, 'Hi, how can I help?')
        third = conversations.post_message(self.conversation.pk, self.buyer.id, '100 kg please', 'offer')

        messages = list(conversations.list_messages(self.conversation.pk, self.seller.id))
        self.assertEqual(messages, [first, second, third])

        after = list(conversations.list_messages(self.conversation.pk, self.buyer.id, after_id=first.pk))
        self.assertEqual(after, [second, third])

    def test_posted_message_published_after_commit(self):
        client = MagicMock()
        received = []

        with patch('marketplace.conversations.hub', ConversationHub(client=client)) as hub:
            subscription = hub.subscribe(
                self.conversation.pk, lambda message: received.append(message.content)
            )
            self.addCleanup(subscription.unsubscribe)

            with self.captureOnCommitCallbacks(execute=True):
                message = conversations.post_message(self.conversation.pk, self.buyer.id, 'Price?')
                client.publish.assert_not_called()

            client.publish.assert_called_once_with(
                channel_name(self.conversation.pk),
                json.dumps({'conversation_id': self.conversation.pk, 'message_id': message.pk}),
            )
            subscription.deliver_pending()

        self.assertEqual(received, ['Price?'])

    def test_empty_message_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            conversations.post_message(self.conversation.pk, self.buyer.id, '   ')
        self.assertEqual(ctx.exception.field, 'content')

    def test_unknown_message_type_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            conversations.post_message(self.conversation.pk, self.buyer.id, 'Hi', 'sticker')
        self.assertEqual(ctx.exception.field, 'message_type')

    def test_outsider_cannot_post_or_read(self):
        with self.assertRaises(PermissionDenied):
            conversations.post_message(self.conversation.pk, self.stranger.id, 'Hello')
        with self.assertRaises(PermissionDenied):
            conversations.list_messages(self.conversation.pk, self.stranger.id)
        with self.assertRaises(PermissionDenied):
            conversations.mark_read(self.conversation.pk, self.stranger.id)

    def test_unread_count_and_mark_read(self):
        conversations.post_message(self.conversation.pk, self.buyer.id, 'Hello')
        conversations.post_message(self.conversation.pk, self.buyer.id, 'Are you there?')
        conversations.post_message(self.conversation.pk, self.seller.id, 'Yes')

        self.assertEqual(conversations.unread_count(self.seller.id), 2)
        self.assertEqual(conversations.unread_count(self.buyer.id), 1)

        self.assertEqual(conversations.mark_read(self.conversation.pk, self.seller.id), 2)
        self.assertEqual(conversations.unread_count(self.seller.id), 0)
        self.assertEqual(conversations.unread_count(self.buyer.id), 1)

    def test_conversations_for_user(self):
        other_seller = create_test_user('other@example.com')
        other, _ = conversations.start_conversation(self.buyer.id, other_seller.id)

        self.assertEqual(
            set(conversations.conversations_for_user(self.buyer.id)),
            {self.conversation, other},
        )
        self.assertEqual(list(conversations.conversations_for_user(self.stranger.id)), [])
