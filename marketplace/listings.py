"""
Listing store: produce listings and their active / inactive / sold lifecycle.

Every mutation checks ``marketplace.permissions`` first. ``mark_sold`` and
``revert_sale`` are compare-and-write operations on ``sold_at`` so they cannot
clobber each other or a concurrent scheduler sweep.
"""

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.db.models import Q
from django.utils import timezone

from .exceptions import (
    ConflictError,
    DjangoValidationError,
    NotFound,
    ValidationError,
)
from .models import Listing
from .permissions import authorize_listing
from .signals import emit, listing_sold

logger = logging.getLogger(__name__)


FRESH = 'fresh'
SOON = 'soon'
URGENT = 'urgent'
EXPIRED = 'expired'

FRESHNESS_BUCKETS = (FRESH, SOON, URGENT, EXPIRED)

EDITABLE_FIELDS = (
    'title',
    'description',
    'category',
    'unit',
    'price_per_unit',
    'quantity_available',
    'location',
    'harvest_date',
    'expiry_date',
)

REQUIRED_FIELDS = ('title', 'category', 'location', 'expiry_date', 'price_per_unit')


def freshness_bucket(expiry_date, today=None):
    """
    Classify a listing by the number of days left until ``expiry_date``.

    fresh: 7 or more days, soon: 3-6, urgent: 1-2, expired: 0 or fewer.
    """
    today = today or timezone.localdate()
    days = (expiry_date - today).days
    if days >= 7:
        return FRESH
    if days >= 3:
        return SOON
    if days >= 1:
        return URGENT
    return EXPIRED


def _freshness_filter(bucket, today):
    if bucket == FRESH:
        return Q(expiry_date__gte=today + timedelta(days=7))
    if bucket == SOON:
        return Q(expiry_date__gte=today + timedelta(days=3), expiry_date__lte=today + timedelta(days=6))
    if bucket == URGENT:
        return Q(expiry_date__gte=today + timedelta(days=1), expiry_date__lte=today + timedelta(days=2))
    if bucket == EXPIRED:
        return Q(expiry_date__lte=today)
    raise ValidationError('freshness', f'Must be one of: {", ".join(FRESHNESS_BUCKETS)}.')


def _get_listing(listing_id):
    try:
        return Listing.objects.get(pk=listing_id)
    except Listing.DoesNotExist:
        raise NotFound('Listing', listing_id)


def _decimal(value, field):
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(field, 'A valid number is required.')
    if not number.is_finite():
        raise ValidationError(field, 'A valid number is required.')
    return number


def _check_amounts(attrs):
    if 'price_per_unit' in attrs:
        price = attrs['price_per_unit']
        if price is None or price == '':
            raise ValidationError('price_per_unit', 'This field is required.')
        if _decimal(price, 'price_per_unit') <= 0:
            raise ValidationError('price_per_unit', 'Price per unit must be greater than 0.')

    if 'quantity_available' in attrs:
        try:
            quantity = int(attrs['quantity_available'])
        except (TypeError, ValueError):
            raise ValidationError('quantity_available', 'A valid integer is required.')
        if quantity < 1:
            raise ValidationError('quantity_available', 'Quantity must be at least 1.')


def create_listing(owner, attrs):
    """
    Create a listing owned by ``owner``.

    Args:
        owner: User instance or user ID of the seller
        attrs: Mapping of listing fields

    Returns:
        Listing: The saved listing, active and unsold

    Raises:
        ValidationError: If a required field is missing or a value is invalid
    """
    for field in REQUIRED_FIELDS:
        value = attrs.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(field, 'This field is required.')

    unknown = set(attrs) - set(EDITABLE_FIELDS)
    if unknown:
        field = sorted(unknown)[0]
        raise ValidationError(field, 'This field cannot be set.')

    _check_amounts(attrs)

    listing = Listing(owner_id=getattr(owner, 'pk', owner), **attrs)
    try:
        listing.save()
    except DjangoValidationError as exc:
        raise ValidationError.from_django(exc)

    logger.info(f"Listing {listing.pk} created by user {listing.owner_id}: {listing.title}")
    return listing


def update_listing(listing_id, caller_id, attrs):
    """
    Edit the mutable fields of a listing. Owner only.

    Only the edited fields are written so a concurrent ``mark_sold`` is never
    overwritten.
    """
    listing = _get_listing(listing_id)
    authorize_listing(caller_id, listing, 'edit')

    for field in attrs:
        if field not in EDITABLE_FIELDS:
            raise ValidationError(field, 'This field cannot be edited.')
    _check_amounts(attrs)

    for field, value in attrs.items():
        setattr(listing, field, value)

    try:
        listing.full_clean()
    except DjangoValidationError as exc:
        raise ValidationError.from_django(exc)

    listing.save(update_fields=list(attrs) + ['updated_at'])
    logger.info(f"Listing {listing.pk} edited by user {caller_id}: {', '.join(attrs) or 'no changes'}")
    return listing


def set_active(listing_id, active, caller_id):
    """Activate or deactivate a listing. Owner only."""
    listing = _get_listing(listing_id)
    action = 'activate' if active else 'deactivate'
    authorize_listing(caller_id, listing, action)

    active = bool(active)
    Listing.objects.filter(pk=listing.pk).update(is_active=active, updated_at=timezone.now())
    listing.is_active = active

    logger.info(f"Listing {listing.pk} {action}d by user {caller_id}")
    return listing


def mark_sold(listing_id, caller_id, now=None):
    """
    Mark a listing sold, starting the cleanup grace period. Owner only.

    The write only succeeds while ``sold_at`` is still empty, so calling this
    again never moves the timestamp. ``listing_sold`` is emitted only by the
    call that actually set it.
    """
    listing = _get_listing(listing_id)
    authorize_listing(caller_id, listing, 'mark_sold')

    now = now or timezone.now()
    updated = Listing.objects.filter(pk=listing.pk, sold_at__isnull=True).update(
        sold_at=now,
        updated_at=now,
    )

    if not updated:
        try:
            listing.refresh_from_db()
        except Listing.DoesNotExist:
            raise NotFound('Listing', listing_id)
        logger.info(f"Listing {listing.pk} already sold at {listing.sold_at}; keeping timestamp")
        return listing

    listing.sold_at = now
    logger.info(f"Listing {listing.pk} marked sold by user {caller_id} at {now.isoformat()}")
    emit(listing_sold, sender=Listing, listing=listing)
    return listing


def revert_sale(listing_id, caller_id):
    """
    Clear ``sold_at`` so the listing is no longer scheduled for removal.

    Raises:
        ConflictError: If ``sold_at`` changed between the read and the write
    """
    listing = _get_listing(listing_id)
    authorize_listing(caller_id, listing, 'revert_sale')

    if listing.sold_at is None:
        return listing

    updated = Listing.objects.filter(pk=listing.pk, sold_at=listing.sold_at).update(
        sold_at=None,
        updated_at=timezone.now(),
    )
    if not updated:
        if not Listing.objects.filter(pk=listing.pk).exists():
            raise NotFound('Listing', listing_id)
        logger.warning(f"Listing {listing.pk} changed while reverting sale for user {caller_id}")
        raise ConflictError('Listing was modified concurrently; reload and try again.')

    listing.sold_at = None
    logger.info(f"Sale of listing {listing.pk} reverted by user {caller_id}")
    return listing


def delete_listing(listing_id, caller_id):
    """Hard-delete a listing in any state. Owner only."""
    listing = _get_listing(listing_id)
    authorize_listing(caller_id, listing, 'delete')

    listing.delete()
    logger.info(f"Listing {listing_id} deleted by user {caller_id}")


def search_listings(
    category=None,
    min_price=None,
    max_price=None,
    location=None,
    freshness=None,
    owner_id=None,
    query=None,
    min_quantity=None,
    include_inactive=False,
    today=None,
):
    """
    Return a queryset of listings matching the filters.

    By default only active, unsold listings are returned; ``include_inactive``
    also returns deactivated and sold ones (an owner's own dashboard).
    ``location`` is a case-insensitive substring match and ``query`` searches
    title, description and location.

    Raises:
        ValidationError: If a price bound or freshness bucket is invalid
    """
    today = today or timezone.localdate()
    queryset = Listing.objects.select_related('owner')

    if not include_inactive:
        queryset = queryset.filter(is_active=True, sold_at__isnull=True)

    if owner_id is not None:
        queryset = queryset.filter(owner_id=owner_id)

    if category:
        queryset = queryset.filter(category__iexact=category)

    if min_price not in (None, ''):
        queryset = queryset.filter(price_per_unit__gte=_decimal(min_price, 'min_price'))

    if max_price not in (None, ''):
        queryset = queryset.filter(price_per_unit__lte=_decimal(max_price, 'max_price'))

    if location:
        queryset = queryset.filter(location__icontains=location)

    if query:
        queryset = queryset.filter(
            Q(title__icontains=query)
            | Q(description__icontains=query)
            | Q(location__icontains=query)
        )

    if min_quantity not in (None, ''):
        try:
            queryset = queryset.filter(quantity_available__gte=int(min_quantity))
        except (TypeError, ValueError):
            raise ValidationError('min_quantity', 'A valid integer is required.')

    if freshness:
        queryset = queryset.filter(_freshness_filter(freshness, today))

    return queryset
