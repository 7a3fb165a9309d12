"""
Booking store: machinery rental requests, their lifecycle and reviews.

Status changes follow a fixed transition table. Each transition is checked in
this order:

1. the booking exists (``NotFound``)
2. the caller is the actor allowed to perform the action (``PermissionDenied``)
3. the action is legal from the current status (``InvalidTransition``)
4. the status is still the one that was read (``ConflictError``)

Step 4 is an optimistic compare-and-write: ``UPDATE ... WHERE status =
<observed>``. Whichever of two racing actors writes second gets a
``ConflictError`` carrying the status the first one set.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation

from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone
from django.utils.dateparse import parse_date

from .exceptions import (
    ConflictError,
    DjangoValidationError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from .models import Booking, BookingStatus, Machinery, RentalPeriod, Review
from .permissions import authorize_booking, can_view_booking
from .signals import booking_requested, booking_status_changed, emit, review_submitted

logger = logging.getLogger(__name__)


# (current status, action) -> new status. Anything not listed is illegal.
TRANSITIONS = {
    (BookingStatus.PENDING, 'approve'): BookingStatus.APPROVED,
    (BookingStatus.PENDING, 'reject'): BookingStatus.REJECTED,
    (BookingStatus.PENDING, 'cancel'): BookingStatus.CANCELLED,
    (BookingStatus.APPROVED, 'start'): BookingStatus.IN_PROGRESS,
    (BookingStatus.IN_PROGRESS, 'complete'): BookingStatus.COMPLETED,
}

ACTIONS = frozenset(action for _, action in TRANSITIONS)

ROLES = ('farmer', 'owner')


def next_status(current, action):
    """
    Look up the status ``action`` leads to from ``current``.

    Raises:
        InvalidTransition: If the pair is not in the transition table
    """
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(action, current)


def rental_days(start_date, end_date):
    """Inclusive number of days between two dates."""
    return (end_date - start_date).days + 1


def compute_amount(rate, period, days):
    """
    Price of a rental.

    Daily machinery is billed ``days * rate``. Every other period bills the
    rate once, whatever the duration.
    """
    rate = Decimal(str(rate))
    if period == RentalPeriod.DAILY:
        return (rate * days).quantize(Decimal('0.01'))
    # TODO: hourly, weekly and per_acre bill a flat rate; confirm pricing with product before changing
    return rate.quantize(Decimal('0.01'))


def _as_date(value, field):
    if isinstance(value, date):
        return value
    if not value:
        raise ValidationError(field, 'This field is required.')
    try:
        parsed = parse_date(str(value))
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError(field, 'Enter a valid date in YYYY-MM-DD format.')
    return parsed


def _get_booking(booking_id):
    try:
        return Booking.objects.select_related('machinery').get(pk=booking_id)
    except Booking.DoesNotExist:
        raise NotFound('Booking', booking_id)


def create_booking(farmer_id, machinery_id, start_date, end_date, notes='', today=None):
    """
    Create a pending booking for ``machinery_id`` on behalf of ``farmer_id``.

    Args:
        farmer_id: ID of the farmer renting the machinery
        machinery_id: ID of the machinery
        start_date / end_date: Inclusive rental range (date or ISO string)
        notes: Farmer's notes for the owner
        today: Reference date for the "not in the past" check

    Returns:
        Booking: The new booking with its computed total_amount

    Raises:
        ValidationError: Bad dates or machinery not available
        NotFound: Machinery does not exist
        PermissionDenied: The farmer owns the machinery
    """
    today = today or timezone.localdate()
    start_date = _as_date(start_date, 'start_date')
    end_date = _as_date(end_date, 'end_date')

    if end_date < start_date:
        raise ValidationError('end_date', 'End date cannot be before the start date.')

    if start_date < today:
        raise ValidationError('start_date', 'Start date cannot be in the past.')

    try:
        machinery = Machinery.objects.get(pk=machinery_id)
    except Machinery.DoesNotExist:
        raise NotFound('Machinery', machinery_id)

    if machinery.owner_id == farmer_id:
        logger.warning(f"User {farmer_id} tried to book own machinery {machinery.pk}")
        raise PermissionDenied('book', 'You cannot book your own machinery.')

    if not machinery.is_available:
        raise ValidationError('machinery', 'This machinery is not available for booking.')

    days = rental_days(start_date, end_date)
    total_amount = compute_amount(machinery.rental_rate, machinery.rental_period, days)

    try:
        with transaction.atomic():
            booking = Booking.objects.create(
                machinery=machinery,
                farmer_id=farmer_id,
                owner_id=machinery.owner_id,
                start_date=start_date,
                end_date=end_date,
                total_amount=total_amount,
                status=BookingStatus.PENDING,
                farmer_notes=notes or '',
            )
            emit(booking_requested, sender=Booking, booking=booking)
    except DjangoValidationError as exc:
        raise ValidationError.from_django(exc)

    logger.info(
        f"Booking {booking.pk} created: farmer={farmer_id}, machinery={machinery.pk}, "
        f"{start_date}..{end_date} ({days} days, {machinery.rental_period}), amount={total_amount}"
    )
    return booking


def _transition(booking_id, actor_id, action, notes=None):
    booking = _get_booking(booking_id)
    authorize_booking(actor_id, booking, action)

    observed = booking.status
    new_status = next_status(observed, action)

    now = timezone.now()
    changes = {'status': new_status, 'updated_at': now}
    if notes is not None:
        changes['owner_notes'] = notes

    with transaction.atomic():
        updated = Booking.objects.filter(pk=booking.pk, status=observed).update(**changes)
        if not updated:
            current = Booking.objects.filter(pk=booking.pk).values_list('status', flat=True).first()
            if current is None:
                raise NotFound('Booking', booking_id)
            logger.warning(
                f"Conflict on booking {booking.pk}: {action} by user {actor_id} expected "
                f"{observed}, found {current}"
            )
            raise ConflictError(
                f'Booking changed to {current} while trying to {action} it.',
                current_state=current,
            )

        for field, value in changes.items():
            setattr(booking, field, value)

        emit(
            booking_status_changed,
            sender=Booking,
            booking=booking,
            old_status=observed,
            new_status=new_status,
            actor_id=actor_id,
        )

    logger.info(f"Booking {booking.pk} {observed} -> {new_status} by user {actor_id}")
    return booking


def approve(booking_id, owner_id, notes=None):
    return _transition(booking_id, owner_id, 'approve', notes)


def reject(booking_id, owner_id, notes=None):
    return _transition(booking_id, owner_id, 'reject', notes)


def start_progress(booking_id, owner_id):
    return _transition(booking_id, owner_id, 'start')


def complete(booking_id, owner_id):
    """Finish a running booking; unlocks review submission."""
    return _transition(booking_id, owner_id, 'complete')


def cancel(booking_id, farmer_id):
    """Withdraw a booking request. Farmer only, while pending."""
    return _transition(booking_id, farmer_id, 'cancel')


def apply_action(booking_id, actor_id, action, notes=None):
    """Dispatch a transition by action name (used by the HTTP layer)."""
    if action not in ACTIONS:
        raise ValidationError('action', f'Unknown action {action!r}.')
    if action in ('approve', 'reject'):
        return _transition(booking_id, actor_id, action, notes)
    return _transition(booking_id, actor_id, action)


def submit_review(booking_id, reviewer_id, rating, comment=''):
    """
    Record the farmer's review of a completed booking.

    Raises:
        NotFound: Booking does not exist
        PermissionDenied: Reviewer is not the booking's farmer
        InvalidTransition: Booking is not completed
        ValidationError: Rating is not an integer from 1 to 5
        ConflictError: The booking already has a review
    """
    booking = _get_booking(booking_id)
    authorize_booking(reviewer_id, booking, 'review')

    if booking.status != BookingStatus.COMPLETED:
        raise InvalidTransition('review', booking.status)

    try:
        rating = int(rating)
    except (TypeError, ValueError):
        raise ValidationError('rating', 'Rating must be an integer from 1 to 5.')
    if isinstance(rating, bool) or not 1 <= rating <= 5:
        raise ValidationError('rating', 'Rating must be an integer from 1 to 5.')

    if Review.objects.filter(booking_id=booking.pk).exists():
        raise ConflictError('This booking has already been reviewed.', current_state=booking.status)

    try:
        with transaction.atomic():
            review = Review.objects.create(
                booking=booking,
                machinery_id=booking.machinery_id,
                reviewer_id=reviewer_id,
                rating=rating,
                comment=comment or '',
            )
            emit(review_submitted, sender=Review, review=review)
    except IntegrityError:
        logger.warning(f"Duplicate review for booking {booking.pk} by user {reviewer_id}")
        raise ConflictError('This booking has already been reviewed.', current_state=booking.status)

    logger.info(f"Review {review.pk} submitted for booking {booking.pk}: rating={rating}")
    return review


# ============================================================================
# Read queries
# ============================================================================

def bookings_for_user(user_id, role=None, status=None):
    """
    Bookings where ``user_id`` is the farmer, the owner, or either.

    Args:
        user_id: ID of the caller
        role: 'farmer', 'owner' or None for both
        status: Optional BookingStatus value to filter on

    Returns:
        QuerySet: Bookings ordered newest first
    """
    if role == 'farmer':
        queryset = Booking.objects.filter(farmer_id=user_id)
    elif role == 'owner':
        queryset = Booking.objects.filter(owner_id=user_id)
    elif role in (None, ''):
        queryset = Booking.objects.filter(Q(farmer_id=user_id) | Q(owner_id=user_id))
    else:
        raise ValidationError('role', f'Must be one of: {", ".join(ROLES)}.')

    if status:
        if status not in BookingStatus.values:
            raise ValidationError('status', f'Must be one of: {", ".join(BookingStatus.values)}.')
        queryset = queryset.filter(status=status)

    return queryset.select_related('machinery', 'farmer', 'owner').order_by('-created_at', '-id')


def booking_detail(booking_id, user_id):
    """
    A booking joined with its machinery and the counterparty's profile.

    Returns:
        dict: booking, machinery, role ('farmer' or 'owner' from the caller's
        point of view), counterparty (User) and review (or None)
    """
    try:
        booking = Booking.objects.select_related('machinery', 'farmer', 'owner').get(pk=booking_id)
    except Booking.DoesNotExist:
        raise NotFound('Booking', booking_id)

    if not can_view_booking(user_id, booking):
        logger.warning(f"User {user_id} denied access to booking {booking.pk}")
        raise PermissionDenied('view', 'Only the booking participants can view this booking.')

    role = 'farmer' if booking.farmer_id == user_id else 'owner'
    counterparty = booking.owner if role == 'farmer' else booking.farmer
    review = Review.objects.filter(booking_id=booking.pk).first()

    return {
        'booking': booking,
        'machinery': booking.machinery,
        'role': role,
        'counterparty': counterparty,
        'review': review,
    }
