"""
Data model for the farm produce marketplace and equipment rental platform.
"""

from decimal import Decimal

from django.contrib.auth.models import AbstractUser, UserManager
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.db import models
from django.utils.translation import gettext_lazy as _

from .validators import (
    validate_phone_number,
    validate_profile_image,
    validate_positive_amount,
)


def user_profile_image_upload_path(instance, filename):
    """
    Generate upload path for user profile images.

    Path format: profile_images/{user_id}/{filename}
    If user_id is not yet available (user not saved), uses 'temp' as placeholder.
    """
    user_id = instance.id if instance.id else 'temp'
    return f'profile_images/{user_id}/{filename}'


class MarketplaceUserManager(UserManager):
    """User manager that normalizes email addresses to lowercase."""

    def create_user(self, username=None, email=None, password=None, **extra_fields):
        if email:
            email = email.lower()
        if not username:
            username = email
        return super().create_user(username, email, password, **extra_fields)

    def create_superuser(self, username=None, email=None, password=None, **extra_fields):
        if email:
            email = email.lower()
        if not username:
            username = email
        return super().create_superuser(username, email, password, **extra_fields)


class User(AbstractUser):
    """
    Custom User model extending Django's AbstractUser.

    Every user can sell produce and book machinery; ``is_equipment_owner``
    marks users who also rent out equipment.

    Additional fields:
    - email: Required, unique email address used to log in
    - phone_number: Optional phone number with validation
    - location: Free-text location (county / town)
    - farm_size, farming_type, bio: Optional profile details
    - is_equipment_owner: Whether the user lists machinery for rent
    - profile_image: Optional profile picture
    """

    email = models.EmailField(
        _('email address'),
        unique=True,
        blank=False,
        null=False,
        error_messages={
            'unique': _('A user with that email already exists.'),
        },
        help_text=_('Required. Enter a valid email address.')
    )

    phone_number = models.CharField(
        _('phone number'),
        max_length=20,
        blank=True,
        default='',
        validators=[validate_phone_number],
        help_text=_('Optional. Kenyan mobile number, e.g. +254712345678.')
    )

    location = models.CharField(
        _('location'),
        max_length=200,
        blank=True,
        default='',
    )

    farm_size = models.CharField(_('farm size'), max_length=50, blank=True, default='')

    farming_type = models.CharField(_('farming type'), max_length=100, blank=True, default='')

    bio = models.TextField(_('bio'), blank=True, default='')

    is_equipment_owner = models.BooleanField(
        _('equipment owner'),
        default=False,
        help_text=_('Whether the user rents out farm machinery.')
    )

    profile_image = models.ImageField(
        _('profile image'),
        upload_to=user_profile_image_upload_path,
        blank=True,
        null=True,
        validators=[validate_profile_image],
        help_text=_('Optional. Upload a profile picture (max 5MB, formats: jpg, png, webp).')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['username']

    objects = MarketplaceUserManager()

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['email'], name='user_email_idx'),
            models.Index(fields=['is_equipment_owner'], name='user_equipment_owner_idx'),
        ]

    def __str__(self):
        """Return email as string representation."""
        return self.email or self.username

    @property
    def display_name(self):
        full_name = self.get_full_name()
        return full_name or 'Farmer'

    def clean(self):
        super().clean()

        if self.email:
            self.email = self.email.lower()

        if not self.email:
            raise ValidationError({
                'email': _('Email address is required.')
            })


# ============================================================================
# Produce Listings
# ============================================================================

class Listing(models.Model):
    """
    Time-limited produce offer posted by a seller.

    Lifecycle:
    - created active by its owner
    - activated / deactivated / edited by the owner
    - marked sold (``sold_at`` set); hidden from search but kept until the
      cleanup sweep removes it after the grace period
    - deleted by the owner, or by the scheduler once sold or expired
    """

    owner = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='listings',
        help_text=_('Seller who posted this listing')
    )

    title = models.CharField(_('title'), max_length=200)

    description = models.TextField(_('description'), blank=True, default='')

    category = models.CharField(
        _('category'),
        max_length=50,
        help_text=_('Produce category, e.g. vegetables, grains, dairy')
    )

    unit = models.CharField(_('unit'), max_length=20, default='kg')

    price_per_unit = models.DecimalField(
        _('price per unit'),
        max_digits=12,
        decimal_places=2,
        validators=[validate_positive_amount],
        help_text=_('Price per unit in KES (must be greater than 0)')
    )

    quantity_available = models.PositiveIntegerField(
        _('quantity available'),
        default=1,
        validators=[MinValueValidator(1, message=_('Quantity must be at least 1.'))],
    )

    location = models.CharField(_('location'), max_length=200)

    harvest_date = models.DateField(_('harvest date'), null=True, blank=True)

    expiry_date = models.DateField(_('expiry date'))

    is_active = models.BooleanField(_('is active'), default=True)

    sold_at = models.DateTimeField(
        _('sold at'),
        null=True,
        blank=True,
        help_text=_('When the listing was marked sold; starts the cleanup grace period')
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('listing')
        verbose_name_plural = _('listings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner'], name='listing_owner_idx'),
            models.Index(fields=['category'], name='listing_category_idx'),
            models.Index(fields=['is_active', 'sold_at'], name='listing_active_sold_idx'),
            models.Index(fields=['expiry_date'], name='listing_expiry_idx'),
        ]

    def __str__(self):
        return self.title

    @property
    def is_sold(self):
        return self.sold_at is not None

    def clean(self):
        """
        Validate model fields.

        Ensures:
        - Title, category and location are not blank
        - Price per unit is greater than 0
        - Quantity available is at least 1
        - Harvest date is not after the expiry date

        Raises:
            ValidationError: If validation fails
        """
        super().clean()

        for field in ('title', 'category', 'location'):
            value = getattr(self, field)
            if not value or not value.strip():
                raise ValidationError({
                    field: _('This field cannot be empty.')
                })

        if self.price_per_unit is not None and self.price_per_unit <= 0:
            raise ValidationError({
                'price_per_unit': _('Price per unit must be greater than 0.')
            })

        if self.quantity_available is not None and self.quantity_available < 1:
            raise ValidationError({
                'quantity_available': _('Quantity must be at least 1.')
            })

        if self.harvest_date and self.expiry_date and self.harvest_date > self.expiry_date:
            raise ValidationError({
                'expiry_date': _('Expiry date cannot be before the harvest date.')
            })

    def save(self, *args, **kwargs):
        # update_fields saves come from store operations that validated already
        if not kwargs.get('update_fields'):
            self.full_clean()
        super().save(*args, **kwargs)


# ============================================================================
# Machinery & Bookings
# ============================================================================

class RentalPeriod(models.TextChoices):
    HOURLY = 'hourly', _('Per hour')
    DAILY = 'daily', _('Per day')
    WEEKLY = 'weekly', _('Per week')
    PER_ACRE = 'per_acre', _('Per acre')


class MachineryCategory(models.TextChoices):
    TRACTOR = 'tractor', _('Tractor')
    HARVESTER = 'harvester', _('Harvester')
    PLOUGH = 'plough', _('Plough')
    SPRAYER = 'sprayer', _('Sprayer')
    PUMP = 'pump', _('Pump')
    SEEDER = 'seeder', _('Seeder')
    THRESHER = 'thresher', _('Thresher')
    TRAILER = 'trailer', _('Trailer')
    OTHER = 'other', _('Other')


class Machinery(models.Model):
    """
    Farm equipment offered for rent by its owner.

    ``rating_average`` and ``review_count`` are maintained by the review
    signals in ``marketplace.signals``.
    """

    owner = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='machinery',
        help_text=_('Owner renting out this equipment')
    )

    title = models.CharField(_('title'), max_length=200)

    description = models.TextField(_('description'), blank=True, default='')

    category = models.CharField(
        _('category'),
        max_length=20,
        choices=MachineryCategory.choices,
        default=MachineryCategory.OTHER,
    )

    rental_rate = models.DecimalField(
        _('rental rate'),
        max_digits=12,
        decimal_places=2,
        validators=[validate_positive_amount],
        help_text=_('Rate in KES per rental period')
    )

    rental_period = models.CharField(
        _('rental period'),
        max_length=10,
        choices=RentalPeriod.choices,
        default=RentalPeriod.DAILY,
    )

    county = models.CharField(_('county'), max_length=100)

    town = models.CharField(_('town'), max_length=100, blank=True, default='')

    brand = models.CharField(_('brand'), max_length=100, blank=True, default='')

    model_name = models.CharField(_('model'), max_length=100, blank=True, default='')

    horsepower = models.PositiveIntegerField(_('horsepower'), null=True, blank=True)

    is_available = models.BooleanField(_('is available'), default=True)

    rating_average = models.DecimalField(
        _('rating average'),
        max_digits=3,
        decimal_places=2,
        default=Decimal('0.00'),
        validators=[
            MinValueValidator(Decimal('0.00')),
            MaxValueValidator(Decimal('5.00')),
        ],
    )

    review_count = models.PositiveIntegerField(_('review count'), default=0)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('machinery')
        verbose_name_plural = _('machinery')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner'], name='machinery_owner_idx'),
            models.Index(fields=['category'], name='machinery_category_idx'),
            models.Index(fields=['is_available'], name='machinery_available_idx'),
        ]

    def __str__(self):
        return self.title

    def clean(self):
        super().clean()

        if not self.title or not self.title.strip():
            raise ValidationError({
                'title': _('Title cannot be empty.')
            })

        if not self.county or not self.county.strip():
            raise ValidationError({
                'county': _('County cannot be empty.')
            })

        if self.rental_rate is not None and self.rental_rate <= 0:
            raise ValidationError({
                'rental_rate': _('Rental rate must be greater than 0.')
            })

    def save(self, *args, **kwargs):
        if not kwargs.get('update_fields'):
            self.full_clean()
        super().save(*args, **kwargs)


class BookingStatus(models.TextChoices):
    PENDING = 'pending', _('Pending')
    APPROVED = 'approved', _('Approved')
    REJECTED = 'rejected', _('Rejected')
    IN_PROGRESS = 'in_progress', _('In progress')
    COMPLETED = 'completed', _('Completed')
    CANCELLED = 'cancelled', _('Cancelled')


TERMINAL_BOOKING_STATUSES = frozenset({
    BookingStatus.REJECTED,
    BookingStatus.CANCELLED,
    BookingStatus.COMPLETED,
})


class Booking(models.Model):
    """
    A farmer's rental request against an owner's machinery.

    Status changes go exclusively through ``marketplace.bookings`` which
    enforces the transition table and optimistic concurrency; this model only
    validates field-level invariants.

    Fields:
    - machinery: Equipment being rented
    - farmer: User renting the equipment
    - owner: Machinery owner at booking time
    - start_date / end_date: Inclusive rental date range
    - total_amount: Computed price at booking time
    - status: Lifecycle state
    - farmer_notes / owner_notes: Free text from each party
    """

    machinery = models.ForeignKey(
        Machinery,
        on_delete=models.CASCADE,
        related_name='bookings',
    )

    farmer = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='farmer_bookings',
        help_text=_('Farmer requesting the equipment')
    )

    owner = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='owner_bookings',
        help_text=_('Owner of the booked equipment')
    )

    start_date = models.DateField(_('start date'))

    end_date = models.DateField(_('end date'))

    total_amount = models.DecimalField(
        _('total amount'),
        max_digits=12,
        decimal_places=2,
    )

    status = models.CharField(
        _('status'),
        max_length=20,
        choices=BookingStatus.choices,
        default=BookingStatus.PENDING,
    )

    farmer_notes = models.TextField(_('farmer notes'), blank=True, default='')

    owner_notes = models.TextField(_('owner notes'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('booking')
        verbose_name_plural = _('bookings')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['farmer'], name='booking_farmer_idx'),
            models.Index(fields=['owner'], name='booking_owner_idx'),
            models.Index(fields=['machinery'], name='booking_machinery_idx'),
            models.Index(fields=['status'], name='booking_status_idx'),
            models.Index(fields=['start_date'], name='booking_start_date_idx'),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(end_date__gte=models.F('start_date')),
                name='booking_end_not_before_start',
            ),
        ]

    def __str__(self):
        return f"Booking #{self.pk} {self.machinery_id} ({self.start_date} - {self.end_date})"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_BOOKING_STATUSES

    def clean(self):
        super().clean()

        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError({
                'end_date': _('End date cannot be before the start date.')
            })

        if self.farmer_id and self.owner_id and self.farmer_id == self.owner_id:
            raise ValidationError({
                'farmer': _('Owners cannot book their own machinery.')
            })

        if self.total_amount is not None and self.total_amount < 0:
            raise ValidationError({
                'total_amount': _('Total amount cannot be negative.')
            })

    def save(self, *args, **kwargs):
        if not kwargs.get('update_fields'):
            self.full_clean()
        super().save(*args, **kwargs)


class Review(models.Model):
    """
    Farmer's review of a completed booking (one review per booking).
    """

    booking = models.OneToOneField(
        Booking,
        on_delete=models.CASCADE,
        related_name='review',
        help_text=_('Booking being reviewed (one review per booking)')
    )

    machinery = models.ForeignKey(
        Machinery,
        on_delete=models.CASCADE,
        related_name='reviews',
    )

    reviewer = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='reviews_given',
    )

    rating = models.PositiveSmallIntegerField(
        _('rating'),
        validators=[
            MinValueValidator(1, message=_('Rating must be at least 1.')),
            MaxValueValidator(5, message=_('Rating must be at most 5.'))
        ],
        help_text=_('Rating from 1 to 5 stars')
    )

    comment = models.TextField(_('comment'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('review')
        verbose_name_plural = _('reviews')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['machinery'], name='review_machinery_idx'),
            models.Index(fields=['reviewer'], name='review_reviewer_idx'),
        ]

    def __str__(self):
        return f"Review by {self.reviewer.email} for booking #{self.booking_id} - {self.rating}★"


# ============================================================================
# Conversations
# ============================================================================

class Conversation(models.Model):
    """Message thread owned by a buyer/seller pair, optionally about a listing."""

    buyer = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='buyer_conversations',
    )

    seller = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='seller_conversations',
    )

    listing = models.ForeignKey(
        Listing,
        on_delete=models.SET_NULL,
        related_name='conversations',
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    updated_at = models.DateTimeField(_('updated at'), auto_now=True)

    class Meta:
        verbose_name = _('conversation')
        verbose_name_plural = _('conversations')
        ordering = ['-updated_at']
        constraints = [
            models.UniqueConstraint(
                fields=['buyer', 'seller', 'listing'],
                name='unique_conversation_per_pair_and_listing',
            ),
        ]

    def __str__(self):
        return f"Conversation #{self.pk} {self.buyer_id} <-> {self.seller_id}"

    def has_participant(self, user_id):
        return user_id in (self.buyer_id, self.seller_id)

    def other_participant_id(self, user_id):
        return self.seller_id if user_id == self.buyer_id else self.buyer_id


class Message(models.Model):
    """Append-only chat message; ``read`` refers to the non-sender."""

    MESSAGE_TYPE_CHOICES = [
        ('text', 'Text'),
        ('offer', 'Offer'),
        ('system', 'System'),
    ]

    conversation = models.ForeignKey(
        Conversation,
        on_delete=models.CASCADE,
        related_name='messages',
    )

    sender = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='messages_sent',
    )

    content = models.TextField(_('content'))

    message_type = models.CharField(
        _('message type'),
        max_length=10,
        choices=MESSAGE_TYPE_CHOICES,
        default='text',
    )

    read = models.BooleanField(_('read'), default=False)

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    class Meta:
        verbose_name = _('message')
        verbose_name_plural = _('messages')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['conversation', 'created_at'], name='message_conversation_idx'),
        ]

    def __str__(self):
        return f"Message #{self.pk} in conversation #{self.conversation_id}"


# ============================================================================
# Notification outbox
# ============================================================================

class NotificationKind(models.TextChoices):
    LISTING_EXPIRING = 'listing_expiring', _('Listing expiring')
    LISTING_SOLD = 'listing_sold', _('Listing sold')
    BOOKING_REQUESTED = 'booking_requested', _('Booking requested')
    BOOKING_STATUS_CHANGED = 'booking_status_changed', _('Booking status changed')
    REVIEW_RECEIVED = 'review_received', _('Review received')
    NEW_MESSAGE = 'new_message', _('New message')


class NotificationStatus(models.TextChoices):
    PENDING = 'pending', _('Pending')
    SENT = 'sent', _('Sent')
    FAILED = 'failed', _('Failed')


class Notification(models.Model):
    """
    Outbox row for a notification awaiting delivery.

    Rows are written by domain-event receivers and drained by the scheduler's
    dispatch sweep. ``dedupe_key`` makes enqueueing idempotent.
    """

    recipient = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='notifications',
    )

    kind = models.CharField(_('kind'), max_length=40, choices=NotificationKind.choices)

    payload = models.JSONField(_('payload'), default=dict, blank=True)

    dedupe_key = models.CharField(
        _('dedupe key'),
        max_length=200,
        unique=True,
        null=True,
        blank=True,
    )

    status = models.CharField(
        _('status'),
        max_length=10,
        choices=NotificationStatus.choices,
        default=NotificationStatus.PENDING,
    )

    attempts = models.PositiveIntegerField(_('attempts'), default=0)

    last_error = models.TextField(_('last error'), blank=True, default='')

    created_at = models.DateTimeField(_('created at'), auto_now_add=True)

    sent_at = models.DateTimeField(_('sent at'), null=True, blank=True)

    class Meta:
        verbose_name = _('notification')
        verbose_name_plural = _('notifications')
        ordering = ['created_at', 'id']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='notification_status_idx'),
            models.Index(fields=['recipient'], name='notification_recipient_idx'),
        ]

    def __str__(self):
        return f"{self.kind} -> {self.recipient_id} ({self.status})"
