"""
API views for the farm marketplace.

Views translate HTTP requests into calls on the store modules
(``listings``, ``bookings``, ``conversations``). Domain errors raised by the
stores are DRF exceptions and are rendered by DRF's exception handler; they
are logged here first.
"""

import logging

from django.contrib.auth import get_user_model
from django.db import IntegrityError
from django.utils import timezone
from rest_framework import generics, status
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from . import bookings, conversations, listings
from .exceptions import MarketplaceError, NotFound, ValidationError
from .models import Booking, Listing, Machinery
from .permissions import IsBookingParticipant, IsListingOwner, IsMachineryOwner
from .serializers import (
    BookingActionSerializer,
    BookingCreateSerializer,
    BookingDetailSerializer,
    BookingSerializer,
    ConversationCreateSerializer,
    ConversationSerializer,
    EmailTokenObtainPairSerializer,
    ListingActiveSerializer,
    ListingSerializer,
    ListingWriteSerializer,
    MachinerySerializer,
    MessageCreateSerializer,
    MessageSerializer,
    ReviewCreateSerializer,
    ReviewSerializer,
    UserRegistrationSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)


def _truthy(value):
    return str(value).lower() in ('1', 'true', 'yes')


def _owner_param(params):
    owner = params.get('owner')
    if owner in (None, ''):
        return None
    try:
        return int(owner)
    except ValueError:
        raise ValidationError('owner', 'A valid user id is required.')


class MarketplaceAPIView(APIView):
    """
    Base view that logs domain errors before DRF renders them.
    """

    def handle_exception(self, exc):
        if isinstance(exc, MarketplaceError):
            user = getattr(self.request, 'user', None)
            logger.warning(
                f"{self.__class__.__name__} {self.request.method} failed "
                f"({exc.status_code}) for user {getattr(user, 'id', None)}: {exc.detail}"
            )
        return super().handle_exception(exc)

    def paginate(self, queryset, serializer_class, context=None):
        paginator = PageNumberPagination()
        page = paginator.paginate_queryset(queryset, self.request, view=self)
        serializer = serializer_class(page, many=True, context=context or self.get_serializer_context())
        return paginator.get_paginated_response(serializer.data)

    def get_serializer_context(self):
        return {'request': self.request}


# ============================================================================
# Authentication
# ============================================================================

class EmailTokenObtainPairView(TokenObtainPairView):
    """
    POST /api/token/ with {"email": ..., "password": ...}.
    """
    serializer_class = EmailTokenObtainPairSerializer


class UserRegistrationView(generics.CreateAPIView):
    """
    API endpoint for user registration.

    POST /api/auth/register/
    Returns the created user (without password) on success.
    """
    serializer_class = UserRegistrationSerializer
    permission_classes = [AllowAny]

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            self.perform_create(serializer)
        except IntegrityError:
            # Concurrent registration with the same email
            return Response(
                {'email': ['A user with that email already exists.']},
                status=status.HTTP_400_BAD_REQUEST
            )

        logger.info(f"User registered: {serializer.data['email']} (ID: {serializer.data['id']})")
        return Response(serializer.data, status=status.HTTP_201_CREATED)


# ============================================================================
# Listings
# ============================================================================

class ListingListCreateView(MarketplaceAPIView):
    """
    GET /api/listings/ - search active, unsold listings (public)
    POST /api/listings/ - create a listing (authenticated)

    Query parameters for GET:
    - category, location, q: text filters (location and q are substrings)
    - min_price, max_price: price per unit range
    - min_quantity: minimum quantity available
    - freshness: fresh, soon, urgent or expired
    - owner: seller ID
    - mine=true: the caller's own listings, including inactive and sold ones
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [AllowAny()]
        return [IsAuthenticated()]

    def get(self, request, *args, **kwargs):
        params = request.query_params
        owner_id = _owner_param(params)
        include_inactive = False

        if _truthy(params.get('mine', '')):
            if not request.user.is_authenticated:
                return Response(
                    {'detail': 'Authentication credentials were not provided.'},
                    status=status.HTTP_401_UNAUTHORIZED
                )
            owner_id = request.user.id
            include_inactive = True

        today = timezone.localdate()
        queryset = listings.search_listings(
            category=params.get('category'),
            min_price=params.get('min_price'),
            max_price=params.get('max_price'),
            location=params.get('location'),
            freshness=params.get('freshness'),
            owner_id=owner_id,
            query=params.get('q'),
            min_quantity=params.get('min_quantity'),
            include_inactive=include_inactive,
            today=today,
        )
        return self.paginate(
            queryset,
            ListingSerializer,
            context={'request': request, 'today': today},
        )

    def post(self, request, *args, **kwargs):
        serializer = ListingWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        listing = listings.create_listing(request.user, serializer.validated_data)
        return Response(
            ListingSerializer(listing, context={'request': request}).data,
            status=status.HTTP_201_CREATED
        )


class ListingDetailView(MarketplaceAPIView):
    """
    GET /api/listings/<id>/ - listing details (public)
    PATCH /api/listings/<id>/ - edit (owner only)
    DELETE /api/listings/<id>/ - delete in any state (owner only)
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [AllowAny()]
        return [IsAuthenticated(), IsListingOwner()]

    def get_object(self, pk):
        try:
            listing = Listing.objects.select_related('owner').get(pk=pk)
        except Listing.DoesNotExist:
            raise NotFound('Listing', pk)
        self.check_object_permissions(self.request, listing)
        return listing

    def get(self, request, pk, *args, **kwargs):
        listing = self.get_object(pk)
        return Response(ListingSerializer(listing, context={'request': request}).data)

    def patch(self, request, pk, *args, **kwargs):
        self.get_object(pk)
        serializer = ListingWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        listing = listings.update_listing(pk, request.user.id, serializer.validated_data)
        return Response(ListingSerializer(listing, context={'request': request}).data)

    def delete(self, request, pk, *args, **kwargs):
        self.get_object(pk)
        listings.delete_listing(pk, request.user.id)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ListingActiveView(MarketplaceAPIView):
    """POST /api/listings/<id>/active/ with {"is_active": true|false}."""

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        serializer = ListingActiveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        listing = listings.set_active(pk, serializer.validated_data['is_active'], request.user.id)
        return Response(ListingSerializer(listing, context={'request': request}).data)


class ListingSoldView(MarketplaceAPIView):
    """
    POST /api/listings/<id>/sold/

    Marks the listing sold. Calling it again returns the listing with its
    original ``sold_at``.
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        listing = listings.mark_sold(pk, request.user.id)
        return Response(ListingSerializer(listing, context={'request': request}).data)


class ListingRevertSaleView(MarketplaceAPIView):
    """POST /api/listings/<id>/revert-sale/"""

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        listing = listings.revert_sale(pk, request.user.id)
        return Response(ListingSerializer(listing, context={'request': request}).data)


# ============================================================================
# Machinery
# ============================================================================

class MachineryListCreateView(MarketplaceAPIView):
    """
    GET /api/machinery/ - browse machinery (public)
    POST /api/machinery/ - register machinery owned by the caller

    Query parameters for GET: category, county, available=true, owner.
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [AllowAny()]
        return [IsAuthenticated()]

    def get(self, request, *args, **kwargs):
        params = request.query_params
        queryset = Machinery.objects.select_related('owner')

        if params.get('category'):
            queryset = queryset.filter(category=params['category'])
        if params.get('county'):
            queryset = queryset.filter(county__icontains=params['county'])
        if _truthy(params.get('available', '')):
            queryset = queryset.filter(is_available=True)
        owner_id = _owner_param(params)
        if owner_id is not None:
            queryset = queryset.filter(owner_id=owner_id)

        return self.paginate(queryset, MachinerySerializer)

    def post(self, request, *args, **kwargs):
        serializer = MachinerySerializer(data=request.data, context={'request': request})
        serializer.is_valid(raise_exception=True)
        machinery = serializer.save(owner=request.user)

        if not request.user.is_equipment_owner:
            User.objects.filter(pk=request.user.pk).update(is_equipment_owner=True)

        logger.info(f"Machinery {machinery.pk} registered by user {request.user.id}: {machinery.title}")
        return Response(
            MachinerySerializer(machinery, context={'request': request}).data,
            status=status.HTTP_201_CREATED
        )


class MachineryDetailView(generics.RetrieveUpdateDestroyAPIView):
    """
    GET|PATCH|DELETE /api/machinery/<id>/

    Reads are public; writes are limited to the owner by ``IsMachineryOwner``.
    """

    queryset = Machinery.objects.select_related('owner')
    serializer_class = MachinerySerializer
    http_method_names = ['get', 'patch', 'delete', 'head', 'options']

    def get_permissions(self):
        if self.request.method in ('GET', 'HEAD', 'OPTIONS'):
            return [AllowAny()]
        return [IsAuthenticated(), IsMachineryOwner()]

    def perform_update(self, serializer):
        machinery = serializer.save()
        logger.info(f"Machinery {machinery.pk} updated by user {self.request.user.id}")

    def perform_destroy(self, instance):
        logger.info(f"Machinery {instance.pk} deleted by user {self.request.user.id}")
        instance.delete()


# ============================================================================
# Bookings
# ============================================================================

class BookingListCreateView(MarketplaceAPIView):
    """
    GET /api/bookings/?role=farmer|owner&status=<status>
    POST /api/bookings/ with machinery, start_date, end_date, farmer_notes

    The farmer is always the authenticated user; the total amount is computed
    from the machinery's rate and rental period.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        queryset = bookings.bookings_for_user(
            request.user.id,
            role=request.query_params.get('role'),
            status=request.query_params.get('status'),
        )
        return self.paginate(queryset, BookingSerializer)

    def post(self, request, *args, **kwargs):
        serializer = BookingCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        booking = bookings.create_booking(
            request.user.id,
            data['machinery'],
            data['start_date'],
            data['end_date'],
            notes=data.get('farmer_notes', ''),
        )
        return Response(
            BookingSerializer(booking, context={'request': request}).data,
            status=status.HTTP_201_CREATED
        )


class BookingDetailView(MarketplaceAPIView):
    """GET /api/bookings/<id>/ - participants only."""

    permission_classes = [IsAuthenticated, IsBookingParticipant]

    def get(self, request, pk, *args, **kwargs):
        try:
            booking = Booking.objects.get(pk=pk)
        except Booking.DoesNotExist:
            raise NotFound('Booking', pk)
        self.check_object_permissions(request, booking)

        detail = bookings.booking_detail(pk, request.user.id)
        return Response(BookingDetailSerializer(detail, context={'request': request}).data)


class BookingActionView(MarketplaceAPIView):
    """
    POST /api/bookings/<id>/<action>/

    action is one of approve, reject, start, complete (owner) or cancel
    (farmer). approve and reject accept an optional {"notes": "..."}.

    Error responses:
    - 403: caller is not the actor for this action
    - 400: action is not legal from the current status (includes current_state)
    - 409: the booking changed concurrently (includes current_state)
    """

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, action, *args, **kwargs):
        serializer = BookingActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        booking = bookings.apply_action(
            pk,
            request.user.id,
            action,
            notes=serializer.validated_data.get('notes'),
        )
        return Response(BookingSerializer(booking, context={'request': request}).data)


class BookingReviewView(MarketplaceAPIView):
    """POST /api/bookings/<id>/review/ with {"rating": 1-5, "comment": "..."}."""

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        serializer = ReviewCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        review = bookings.submit_review(
            pk,
            request.user.id,
            serializer.validated_data['rating'],
            serializer.validated_data.get('comment', ''),
        )
        return Response(ReviewSerializer(review).data, status=status.HTTP_201_CREATED)


# ============================================================================
# Conversations
# ============================================================================

class ConversationListCreateView(MarketplaceAPIView):
    """
    GET /api/conversations/ - the caller's conversations, most recent first
    POST /api/conversations/ with {"seller": id, "listing": id, "message": "..."}

    POST returns 201 for a new conversation and 200 for an existing one.
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        queryset = conversations.conversations_for_user(request.user.id)
        return self.paginate(queryset, ConversationSerializer)

    def post(self, request, *args, **kwargs):
        serializer = ConversationCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        conversation, created = conversations.start_conversation(
            request.user.id,
            data['seller'],
            listing_id=data.get('listing'),
        )
        if data.get('message'):
            conversations.post_message(conversation.pk, request.user.id, data['message'])

        return Response(
            ConversationSerializer(conversation, context={'request': request}).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK
        )


class MessageListCreateView(MarketplaceAPIView):
    """
    GET /api/conversations/<id>/messages/?after=<message id>
    POST /api/conversations/<id>/messages/ with {"content": "...", "message_type": "text"}
    """

    permission_classes = [IsAuthenticated]

    def get(self, request, pk, *args, **kwargs):
        after = request.query_params.get('after')
        try:
            after_id = int(after) if after else None
        except ValueError:
            return Response(
                {'after': ['A valid integer is required.']},
                status=status.HTTP_400_BAD_REQUEST
            )
        queryset = conversations.list_messages(pk, request.user.id, after_id=after_id)
        return Response(MessageSerializer(queryset, many=True).data)

    def post(self, request, pk, *args, **kwargs):
        serializer = MessageCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        message = conversations.post_message(
            pk,
            request.user.id,
            serializer.validated_data['content'],
            message_type=serializer.validated_data.get('message_type', 'text'),
        )
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)


class ConversationReadView(MarketplaceAPIView):
    """POST /api/conversations/<id>/read/ - returns {"marked_read": n}."""

    permission_classes = [IsAuthenticated]

    def post(self, request, pk, *args, **kwargs):
        count = conversations.mark_read(pk, request.user.id)
        return Response({'marked_read': count})


class UnreadCountView(MarketplaceAPIView):
    """GET /api/conversations/unread/ - returns {"unread": n}."""

    permission_classes = [IsAuthenticated]

    def get(self, request, *args, **kwargs):
        return Response({'unread': conversations.unread_count(request.user.id)})
