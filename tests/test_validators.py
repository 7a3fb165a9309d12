"""
Tests for the shared field validators.
"""

from decimal import Decimal
from io import BytesIO

from django.core.exceptions import ValidationError
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase
from PIL import Image

from marketplace.validators import (
    normalize_phone_number,
    validate_phone_number,
    validate_positive_amount,
    validate_profile_image,
)


def make_image_file(name='avatar.png', image_format='PNG'):
    buffer = BytesIO()
    Image.new('RGB', (8, 8), color='green').save(buffer, format=image_format)
    return SimpleUploadedFile(name, buffer.getvalue(), content_type='image/png')


class PhoneNumberTestCase(SimpleTestCase):

    def test_valid_numbers(self):
        for number in ('+254 712 345 678', '254712345678', '0712 345 678', '0110-123-456', ''):
            validate_phone_number(number)

    def test_invalid_numbers(self):
        for number in ('0712', '+1 234 567 8900', '07123456789', 'call me', '0812345678'):
            with self.assertRaises(ValidationError):
                validate_phone_number(number)

    def test_normalize(self):
        self.assertEqual(normalize_phone_number('0712 345 678'), '+254712345678')
        self.assertEqual(normalize_phone_number('(0110) 123-456'), '+254110123456')
        self.assertIsNone(normalize_phone_number('12345'))


class ProfileImageTestCase(SimpleTestCase):

    def test_png_accepted(self):
        validate_profile_image(make_image_file())

    def test_gif_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            validate_profile_image(make_image_file('avatar.gif', 'GIF'))
        self.assertEqual(ctx.exception.code, 'invalid_image_format')

    def test_non_image_rejected(self):
        fake = SimpleUploadedFile('avatar.png', b'not really a png', content_type='image/png')
        with self.assertRaises(ValidationError) as ctx:
            validate_profile_image(fake)
        self.assertEqual(ctx.exception.code, 'invalid_image')

    def test_oversized_rejected(self):
        upload = make_image_file()
        upload.size = 6 * 1024 * 1024
        with self.assertRaises(ValidationError) as ctx:
            validate_profile_image(upload)
        self.assertEqual(ctx.exception.code, 'image_too_large')


class PositiveAmountTestCase(SimpleTestCase):

    def test_amounts(self):
        validate_positive_amount(Decimal('0.01'))
        validate_positive_amount(None)
        for amount in (Decimal('0'), Decimal('-10')):
            with self.assertRaises(ValidationError):
                validate_positive_amount(amount)
