"""
Django admin configuration for the marketplace models.
"""

from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.utils.translation import gettext_lazy as _

from .models import (
    Booking,
    Conversation,
    Listing,
    Machinery,
    Message,
    Notification,
    Review,
    User,
)


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    """
    Custom admin interface for User model.

    Extends Django's UserAdmin with the farmer profile fields.
    """

    list_display = [
        'email',
        'username',
        'location',
        'is_equipment_owner',
        'is_staff',
        'is_active',
        'created_at',
    ]

    list_filter = [
        'is_equipment_owner',
        'is_staff',
        'is_superuser',
        'is_active',
        'created_at',
    ]

    search_fields = [
        'email',
        'username',
        'first_name',
        'last_name',
        'location',
    ]

    ordering = ['-created_at']

    fieldsets = (
        (None, {
            'fields': ('email', 'username', 'password')
        }),
        (_('Personal Info'), {
            'fields': (
                'first_name',
                'last_name',
                'phone_number',
                'location',
                'bio',
                'profile_image',
            )
        }),
        (_('Farm'), {
            'fields': ('farm_size', 'farming_type', 'is_equipment_owner')
        }),
        (_('Permissions'), {
            'fields': (
                'is_active',
                'is_staff',
                'is_superuser',
                'groups',
                'user_permissions',
            ),
            'classes': ('collapse',),
        }),
        (_('Important dates'), {
            'fields': ('last_login', 'date_joined', 'created_at', 'updated_at'),
            'classes': ('collapse',),
        }),
    )

    add_fieldsets = (
        (None, {
            'classes': ('wide',),
            'fields': ('email', 'username', 'password1', 'password2', 'is_equipment_owner'),
        }),
    )

    readonly_fields = ['created_at', 'updated_at', 'last_login', 'date_joined']


@admin.register(Listing)
class ListingAdmin(admin.ModelAdmin):
    list_display = [
        'title',
        'owner',
        'category',
        'price_per_unit',
        'quantity_available',
        'expiry_date',
        'is_active',
        'sold_at',
    ]
    list_filter = ['category', 'is_active', 'expiry_date']
    search_fields = ['title', 'description', 'location', 'owner__email']
    readonly_fields = ['sold_at', 'created_at', 'updated_at']
    raw_id_fields = ['owner']


@admin.register(Machinery)
class MachineryAdmin(admin.ModelAdmin):
    list_display = [
        'title',
        'owner',
        'category',
        'rental_rate',
        'rental_period',
        'county',
        'is_available',
        'rating_average',
        'review_count',
    ]
    list_filter = ['category', 'rental_period', 'is_available']
    search_fields = ['title', 'brand', 'model_name', 'county', 'owner__email']
    readonly_fields = ['rating_average', 'review_count', 'created_at', 'updated_at']
    raw_id_fields = ['owner']


@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    """
    Read-mostly admin for bookings.

    ``status`` is read-only here: transitions go through the booking store so
    the transition table and concurrency checks always apply.
    """

    list_display = [
        'id',
        'machinery',
        'farmer',
        'owner',
        'start_date',
        'end_date',
        'total_amount',
        'status',
        'created_at',
    ]
    list_filter = ['status', 'start_date']
    search_fields = ['machinery__title', 'farmer__email', 'owner__email']
    readonly_fields = ['status', 'total_amount', 'created_at', 'updated_at']
    raw_id_fields = ['machinery', 'farmer', 'owner']


@admin.register(Review)
class ReviewAdmin(admin.ModelAdmin):
    list_display = ['booking', 'machinery', 'reviewer', 'rating', 'created_at']
    list_filter = ['rating', 'created_at']
    search_fields = ['reviewer__email', 'machinery__title', 'comment']
    raw_id_fields = ['booking', 'machinery', 'reviewer']


class MessageInline(admin.TabularInline):
    model = Message
    extra = 0
    readonly_fields = ['sender', 'content', 'message_type', 'read', 'created_at']
    can_delete = False


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['id', 'buyer', 'seller', 'listing', 'updated_at']
    search_fields = ['buyer__email', 'seller__email']
    raw_id_fields = ['buyer', 'seller', 'listing']
    inlines = [MessageInline]


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['id', 'recipient', 'kind', 'status', 'attempts', 'created_at', 'sent_at']
    list_filter = ['kind', 'status']
    search_fields = ['recipient__email', 'dedupe_key']
    readonly_fields = ['created_at', 'sent_at', 'last_error']
    raw_id_fields = ['recipient']
