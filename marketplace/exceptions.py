"""
Domain error taxonomy.

Every error is a DRF ``APIException`` so the API layer renders it with the
right status code through DRF's default exception handler, while the stores
and the scheduler can raise and catch them as ordinary exceptions.
"""

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException


class MarketplaceError(APIException):
    """Base class for lifecycle engine errors."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'The request could not be processed.'
    default_code = 'marketplace_error'


class ValidationError(MarketplaceError):
    """Malformed or missing input; ``field`` names the offending input."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = 'invalid'

    def __init__(self, field, message):
        self.field = field
        self.message = str(message)
        super().__init__({field: [self.message]})

    @classmethod
    def from_django(cls, exc):
        """
        Convert a Django model ``ValidationError`` raised by ``full_clean()``.

        Only the first offending field is reported.
        """
        if hasattr(exc, 'message_dict'):
            field, messages = next(iter(exc.message_dict.items()))
            return cls(field, messages[0])
        return cls('non_field_errors', exc.messages[0])


class PermissionDenied(MarketplaceError):
    """The actor is not allowed to perform ``action`` on the entity."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = 'permission_denied'

    def __init__(self, action, message=None):
        self.action = action
        super().__init__({
            'detail': message or f'You do not have permission to {action} this resource.',
            'action': action,
        })


class NotFound(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = 'not_found'

    def __init__(self, entity, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__({'detail': f'{entity} with ID {entity_id} does not exist.'})


class InvalidTransition(MarketplaceError):
    """The action is not legal from the entity's current state."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = 'invalid_transition'

    def __init__(self, action, current_state):
        self.action = action
        self.current_state = str(current_state)
        super().__init__({
            'detail': f'Cannot {action} a booking that is {self.current_state}.',
            'action': action,
            'current_state': self.current_state,
        })


class ConflictError(MarketplaceError):
    """A concurrent modification was detected by a compare-and-write."""

    status_code = status.HTTP_409_CONFLICT
    default_code = 'conflict'

    def __init__(self, message, current_state=None):
        self.current_state = str(current_state) if current_state is not None else None
        detail = {'detail': message}
        if self.current_state is not None:
            detail['current_state'] = self.current_state
        super().__init__(detail)


__all__ = [
    'MarketplaceError',
    'ValidationError',
    'PermissionDenied',
    'NotFound',
    'InvalidTransition',
    'ConflictError',
    'DjangoValidationError',
]
