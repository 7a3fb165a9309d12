"""
Access-control guard for listings and bookings.

The ``can_*`` predicates are pure functions of the caller and the entity and
are consulted by the stores before every mutation. The DRF permission classes
wrap the same predicates for object-level checks in the HTTP layer.
"""

import logging

from rest_framework import permissions

from .exceptions import PermissionDenied

logger = logging.getLogger(__name__)


LISTING_OWNER_ACTIONS = frozenset({
    'activate',
    'deactivate',
    'mark_sold',
    'revert_sale',
    'edit',
    'delete',
})

# Booking action -> which participant may perform it
BOOKING_ACTORS = {
    'approve': 'owner',
    'reject': 'owner',
    'start': 'owner',
    'complete': 'owner',
    'cancel': 'farmer',
    'review': 'farmer',
}


def can_mutate_listing(user_id, listing, action):
    """
    Return True if ``user_id`` may perform ``action`` on ``listing``.

    Only the listing owner may mutate it, whatever the action.
    """
    if user_id is None or action not in LISTING_OWNER_ACTIONS:
        return False
    return listing.owner_id == user_id


def can_mutate_booking(user_id, booking, action):
    """
    Return True if ``user_id`` is the participant allowed to perform ``action``.

    Args:
        user_id: ID of the caller
        booking: Booking instance
        action: One of approve, reject, start, complete, cancel, review

    Returns:
        bool: True if the caller is the required actor for this action
    """
    actor = BOOKING_ACTORS.get(action)
    if user_id is None or actor is None:
        return False
    if actor == 'owner':
        return booking.owner_id == user_id
    return booking.farmer_id == user_id


def can_view_booking(user_id, booking):
    return user_id is not None and user_id in (booking.farmer_id, booking.owner_id)


def authorize_listing(user_id, listing, action):
    if not can_mutate_listing(user_id, listing, action):
        logger.warning(
            f"Denied {action} on listing {listing.pk} for user {user_id} "
            f"(owner {listing.owner_id})"
        )
        raise PermissionDenied(action, f'Only the listing owner can {action.replace("_", " ")} this listing.')


def authorize_booking(user_id, booking, action):
    if not can_mutate_booking(user_id, booking, action):
        logger.warning(
            f"Denied {action} on booking {booking.pk} for user {user_id}"
        )
        actor = BOOKING_ACTORS.get(action, 'participant')
        raise PermissionDenied(action, f'Only the booking {actor} can {action} this booking.')


# ============================================================================
# DRF permission classes
# ============================================================================

class IsListingOwner(permissions.BasePermission):
    """
    Object-level permission: safe methods for everyone, writes for the owner.

    Denial raises ``PermissionDenied`` from ``authorize_listing`` so the 403
    body names the refused action.
    """

    def has_object_permission(self, request, view, obj):
        if request.method in permissions.SAFE_METHODS:
            return True
        action = 'delete' if request.method == 'DELETE' else 'edit'
        authorize_listing(request.user.id, obj, action)
        return True


class IsMachineryOwner(permissions.BasePermission):
    """Object-level permission: safe methods for everyone, writes for the owner."""

    message = 'Only the machinery owner can modify this machinery.'

    def has_object_permission(self, request, view, obj):
        if request.method in permissions.SAFE_METHODS:
            return True
        return obj.owner_id == request.user.id


class IsBookingParticipant(permissions.BasePermission):
    """
    Object-level permission: only the farmer or the owner of a booking may
    access it.

    Transition-specific checks (who may approve, cancel, ...) are made by the
    booking store so that authorization is always evaluated before the
    transition's legality.
    """

    def has_object_permission(self, request, view, obj):
        if not can_view_booking(request.user.id, obj):
            logger.warning(f"User {request.user.id} denied access to booking {obj.pk}")
            raise PermissionDenied('view', 'Only the booking participants can view this booking.')
        return True
