"""
Serializers for the marketplace API.

Input serializers only check shapes and types. Business rules (prices,
dates, transitions, permissions) are enforced by the store modules so the
same errors are raised whether a call comes from the API or from code.
"""

from django.contrib.auth import get_user_model
from django.contrib.auth.password_validation import validate_password
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from .listings import freshness_bucket
from .models import Booking, Conversation, Listing, Machinery, Message, Review
from .validators import validate_phone_number

User = get_user_model()


class EmailTokenObtainPairSerializer(TokenObtainPairSerializer):
    """
    Obtain a JWT pair with email and password.
    """
    username_field = 'email'

    def validate(self, attrs):
        if attrs.get('email'):
            attrs['email'] = attrs['email'].strip().lower()
        return super().validate(attrs)


# ============================================================================
# Users
# ============================================================================

class UserRegistrationSerializer(serializers.ModelSerializer):
    """
    Serializer for user registration.

    Fields:
    - email: Required, unique (case-insensitive)
    - password / confirm_password: Required, must match and pass Django's
      password validators
    - phone_number, location, farm_size, farming_type: Optional profile data
    - is_equipment_owner: Optional, marks users who rent out machinery
    """

    password = serializers.CharField(
        write_only=True,
        required=True,
        style={'input_type': 'password'}
    )
    confirm_password = serializers.CharField(
        write_only=True,
        required=True,
        style={'input_type': 'password'}
    )

    class Meta:
        model = User
        fields = [
            'id', 'email', 'password', 'confirm_password', 'first_name', 'last_name',
            'phone_number', 'location', 'farm_size', 'farming_type',
            'is_equipment_owner', 'created_at',
        ]
        read_only_fields = ['id', 'created_at']
        extra_kwargs = {
            'email': {'required': True},
        }

    def validate_email(self, value):
        value = value.strip().lower()
        if User.objects.filter(email__iexact=value).exists():
            raise serializers.ValidationError("A user with that email already exists.")
        return value

    def validate_password(self, value):
        try:
            validate_password(value)
        except DjangoValidationError as e:
            raise serializers.ValidationError(list(e.messages))
        return value

    def validate_phone_number(self, value):
        try:
            validate_phone_number(value)
        except DjangoValidationError as e:
            raise serializers.ValidationError(list(e.messages))
        return value

    def validate(self, attrs):
        if attrs.get('password') != attrs.get('confirm_password'):
            raise serializers.ValidationError({
                'confirm_password': 'Password confirmation does not match.'
            })
        return attrs

    def create(self, validated_data):
        validated_data.pop('confirm_password', None)
        password = validated_data.pop('password')

        with transaction.atomic():
            user = User.objects.create_user(
                email=validated_data.pop('email'),
                password=password,
                **validated_data
            )
        return user


class UserSummarySerializer(serializers.ModelSerializer):
    """Public profile of a counterparty (seller, owner or farmer)."""

    name = serializers.CharField(source='display_name', read_only=True)
    profile_image_url = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = [
            'id',
            'name',
            'email',
            'phone_number',
            'location',
            'farming_type',
            'is_equipment_owner',
            'profile_image_url',
        ]
        read_only_fields = fields

    def get_profile_image_url(self, obj):
        if not obj.profile_image:
            return None
        request = self.context.get('request')
        if request is not None:
            return request.build_absolute_uri(obj.profile_image.url)
        return obj.profile_image.url


# ============================================================================
# Listings
# ============================================================================

class ListingSerializer(serializers.ModelSerializer):
    """
    Read serializer for listings.

    ``freshness`` is derived from the expiry date (fresh, soon, urgent,
    expired) and ``is_sold`` from ``sold_at``.
    """

    owner = UserSummarySerializer(read_only=True)
    freshness = serializers.SerializerMethodField()
    is_sold = serializers.BooleanField(read_only=True)

    class Meta:
        model = Listing
        fields = [
            'id',
            'owner',
            'title',
            'description',
            'category',
            'unit',
            'price_per_unit',
            'quantity_available',
            'location',
            'harvest_date',
            'expiry_date',
            'freshness',
            'is_active',
            'is_sold',
            'sold_at',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_freshness(self, obj):
        return freshness_bucket(obj.expiry_date, self.context.get('today'))


class ListingWriteSerializer(serializers.Serializer):
    """Input for creating (all required fields) or editing (partial) a listing."""

    title = serializers.CharField(max_length=200)
    description = serializers.CharField(required=False, allow_blank=True)
    category = serializers.CharField(max_length=50)
    unit = serializers.CharField(max_length=20, required=False)
    price_per_unit = serializers.DecimalField(max_digits=12, decimal_places=2)
    quantity_available = serializers.IntegerField(required=False)
    location = serializers.CharField(max_length=200)
    harvest_date = serializers.DateField(required=False, allow_null=True)
    expiry_date = serializers.DateField()


class ListingActiveSerializer(serializers.Serializer):
    is_active = serializers.BooleanField()


# ============================================================================
# Machinery
# ============================================================================

class MachinerySerializer(serializers.ModelSerializer):
    """
    Serializer for registering and editing rentable machinery.

    ``owner``, ``rating_average`` and ``review_count`` are maintained by the
    server.
    """

    owner = UserSummarySerializer(read_only=True)

    class Meta:
        model = Machinery
        fields = [
            'id',
            'owner',
            'title',
            'description',
            'category',
            'rental_rate',
            'rental_period',
            'county',
            'town',
            'brand',
            'model_name',
            'horsepower',
            'is_available',
            'rating_average',
            'review_count',
            'created_at',
            'updated_at',
        ]
        read_only_fields = ['id', 'owner', 'rating_average', 'review_count', 'created_at', 'updated_at']

    def validate_rental_rate(self, value):
        if value <= 0:
            raise serializers.ValidationError("Rental rate must be greater than 0.")
        return value


class MachinerySummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Machinery
        fields = [
            'id',
            'title',
            'category',
            'rental_rate',
            'rental_period',
            'county',
            'town',
            'rating_average',
        ]
        read_only_fields = fields


# ============================================================================
# Bookings & Reviews
# ============================================================================

class BookingCreateSerializer(serializers.Serializer):
    machinery = serializers.IntegerField()
    start_date = serializers.DateField()
    end_date = serializers.DateField()
    farmer_notes = serializers.CharField(required=False, allow_blank=True, default='')


class BookingSerializer(serializers.ModelSerializer):
    """Read serializer for bookings in lists and transition responses."""

    machinery = MachinerySummarySerializer(read_only=True)
    farmer = UserSummarySerializer(read_only=True)
    owner = UserSummarySerializer(read_only=True)

    class Meta:
        model = Booking
        fields = [
            'id',
            'machinery',
            'farmer',
            'owner',
            'start_date',
            'end_date',
            'total_amount',
            'status',
            'farmer_notes',
            'owner_notes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


class BookingActionSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True)


class ReviewSerializer(serializers.ModelSerializer):
    reviewer_name = serializers.CharField(source='reviewer.display_name', read_only=True)

    class Meta:
        model = Review
        fields = [
            'id',
            'booking',
            'machinery',
            'reviewer',
            'reviewer_name',
            'rating',
            'comment',
            'created_at',
        ]
        read_only_fields = fields


class ReviewCreateSerializer(serializers.Serializer):
    # Range is checked by the booking store after the status check
    rating = serializers.IntegerField()
    comment = serializers.CharField(required=False, allow_blank=True, default='')


class BookingDetailSerializer(serializers.Serializer):
    """
    Serializes the dict returned by ``bookings.booking_detail``: the booking
    with its machinery, the caller's role and the counterparty's profile.
    """

    booking = BookingSerializer(read_only=True)
    machinery = MachinerySerializer(read_only=True)
    role = serializers.CharField(read_only=True)
    counterparty = UserSummarySerializer(read_only=True)
    review = ReviewSerializer(read_only=True, allow_null=True)


# ============================================================================
# Conversations
# ============================================================================

class ConversationCreateSerializer(serializers.Serializer):
    seller = serializers.IntegerField()
    listing = serializers.IntegerField(required=False, allow_null=True)
    message = serializers.CharField(required=False, allow_blank=True)


class MessageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Message
        fields = [
            'id',
            'conversation',
            'sender',
            'content',
            'message_type',
            'read',
            'created_at',
        ]
        read_only_fields = fields


class MessageCreateSerializer(serializers.Serializer):
    content = serializers.CharField(allow_blank=True)
    message_type = serializers.CharField(required=False, default='text')


class ConversationSerializer(serializers.ModelSerializer):
    buyer = UserSummarySerializer(read_only=True)
    seller = UserSummarySerializer(read_only=True)
    listing_title = serializers.SerializerMethodField()
    unread = serializers.SerializerMethodField()

    class Meta:
        model = Conversation
        fields = [
            'id',
            'buyer',
            'seller',
            'listing',
            'listing_title',
            'unread',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_listing_title(self, obj):
        return obj.listing.title if obj.listing_id else None

    def get_unread(self, obj):
        request = self.context.get('request')
        if request is None:
            return 0
        return obj.messages.filter(read=False).exclude(sender_id=request.user.id).count()
