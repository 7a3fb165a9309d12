"""
Field validators shared by the marketplace models and serializers.
"""

import re

from django.core.exceptions import ValidationError
from PIL import Image, UnidentifiedImageError

PHONE_ALLOWED_CHARS = re.compile(r'^\+?[\d\s\-()]+$')

# Safaricom / Airtel / Telkom mobile numbers: 07xx or 01xx, nine digits after
# the trunk prefix or the 254 country code.
KENYAN_MOBILE = re.compile(r'^(?:254|0)([17]\d{8})$')

MAX_PROFILE_IMAGE_BYTES = 5 * 1024 * 1024
PROFILE_IMAGE_FORMATS = {'JPEG', 'PNG', 'WEBP'}


def normalize_phone_number(value):
    """
    Return ``value`` in +254XXXXXXXXX form, or None if it is not a Kenyan
    mobile number.
    """
    digits = re.sub(r'\D', '', value or '')
    match = KENYAN_MOBILE.match(digits)
    if not match:
        return None
    return f'+254{match.group(1)}'


def validate_phone_number(value):
    """
    Validate a Kenyan mobile number.

    Accepted forms (spaces, dashes and parentheses are ignored):
    - +254 712 345 678
    - 254712345678
    - 0712 345 678
    - 0110-123-456

    Raises:
        ValidationError: If the number is not a valid mobile number
    """
    if not value:
        return

    if not PHONE_ALLOWED_CHARS.match(value):
        raise ValidationError(
            'Phone number can only contain digits, spaces, dashes, parentheses, and a leading plus sign.',
            code='invalid_phone_chars'
        )

    if normalize_phone_number(value) is None:
        raise ValidationError(
            'Enter a Kenyan mobile number such as +254712345678 or 0712345678.',
            code='invalid_phone_number'
        )


def validate_profile_image(image):
    """
    Reject profile images over 5MB or in a format other than JPEG, PNG or
    WebP. The format is read from the file header with Pillow, not taken from
    the file name.
    """
    if not image:
        return

    if image.size > MAX_PROFILE_IMAGE_BYTES:
        raise ValidationError(
            f'Image file size cannot exceed 5MB. Current size: {image.size / (1024 * 1024):.2f}MB',
            code='image_too_large'
        )

    try:
        image.seek(0)
        with Image.open(image) as img:
            image_format = img.format
    except (UnidentifiedImageError, OSError):
        raise ValidationError('Upload a valid image file.', code='invalid_image')
    finally:
        image.seek(0)

    if image_format not in PROFILE_IMAGE_FORMATS:
        raise ValidationError(
            f'Invalid image format {image_format}. Allowed formats: jpg, png, webp',
            code='invalid_image_format'
        )


def validate_positive_amount(value):
    """Reject zero and negative prices and rates."""
    if value is not None and value <= 0:
        raise ValidationError(
            'Amount must be greater than 0.',
            code='amount_not_positive'
        )
