import django.contrib.auth.validators
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from decimal import Decimal
from django.conf import settings
from django.db import migrations, models

import marketplace.models
import marketplace.validators


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                ('is_superuser', models.BooleanField(default=False, help_text='Designates that this user has all permissions without explicitly assigning them.', verbose_name='superuser status')),
                ('username', models.CharField(error_messages={'unique': 'A user with that username already exists.'}, help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.', max_length=150, unique=True, validators=[django.contrib.auth.validators.UnicodeUsernameValidator()], verbose_name='username')),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('is_staff', models.BooleanField(default=False, help_text='Designates whether the user can log into this admin site.', verbose_name='staff status')),
                ('is_active', models.BooleanField(default=True, help_text='Designates whether this user should be treated as active. Unselect this instead of deleting accounts.', verbose_name='active')),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('email', models.EmailField(error_messages={'unique': 'A user with that email already exists.'}, help_text='Required. Enter a valid email address.', max_length=254, unique=True, verbose_name='email address')),
                ('phone_number', models.CharField(blank=True, default='', help_text='Optional. Kenyan mobile number, e.g. +254712345678.', max_length=20, validators=[marketplace.validators.validate_phone_number], verbose_name='phone number')),
                ('location', models.CharField(blank=True, default='', max_length=200, verbose_name='location')),
                ('farm_size', models.CharField(blank=True, default='', max_length=50, verbose_name='farm size')),
                ('farming_type', models.CharField(blank=True, default='', max_length=100, verbose_name='farming type')),
                ('bio', models.TextField(blank=True, default='', verbose_name='bio')),
                ('is_equipment_owner', models.BooleanField(default=False, help_text='Whether the user rents out farm machinery.', verbose_name='equipment owner')),
                ('profile_image', models.ImageField(blank=True, help_text='Optional. Upload a profile picture (max 5MB, formats: jpg, png, webp).', null=True, upload_to=marketplace.models.user_profile_image_upload_path, validators=[marketplace.validators.validate_profile_image], verbose_name='profile image')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('groups', models.ManyToManyField(blank=True, help_text='The groups this user belongs to. A user will get all permissions granted to each of their groups.', related_name='user_set', related_query_name='user', to='auth.group', verbose_name='groups')),
                ('user_permissions', models.ManyToManyField(blank=True, help_text='Specific permissions for this user.', related_name='user_set', related_query_name='user', to='auth.permission', verbose_name='user permissions')),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['email'], name='user_email_idx'),
                    models.Index(fields=['is_equipment_owner'], name='user_equipment_owner_idx'),
                ],
            },
            managers=[
                ('objects', marketplace.models.MarketplaceUserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Listing',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200, verbose_name='title')),
                ('description', models.TextField(blank=True, default='', verbose_name='description')),
                ('category', models.CharField(help_text='Produce category, e.g. vegetables, grains, dairy', max_length=50, verbose_name='category')),
                ('unit', models.CharField(default='kg', max_length=20, verbose_name='unit')),
                ('price_per_unit', models.DecimalField(decimal_places=2, help_text='Price per unit in KES (must be greater than 0)', max_digits=12, validators=[marketplace.validators.validate_positive_amount], verbose_name='price per unit')),
                ('quantity_available', models.PositiveIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1, message='Quantity must be at least 1.')], verbose_name='quantity available')),
                ('location', models.CharField(max_length=200, verbose_name='location')),
                ('harvest_date', models.DateField(blank=True, null=True, verbose_name='harvest date')),
                ('expiry_date', models.DateField(verbose_name='expiry date')),
                ('is_active', models.BooleanField(default=True, verbose_name='is active')),
                ('sold_at', models.DateTimeField(blank=True, help_text='When the listing was marked sold; starts the cleanup grace period', null=True, verbose_name='sold at')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('owner', models.ForeignKey(help_text='Seller who posted this listing', on_delete=django.db.models.deletion.CASCADE, related_name='listings', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'listing',
                'verbose_name_plural': 'listings',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['owner'], name='listing_owner_idx'),
                    models.Index(fields=['category'], name='listing_category_idx'),
                    models.Index(fields=['is_active', 'sold_at'], name='listing_active_sold_idx'),
                    models.Index(fields=['expiry_date'], name='listing_expiry_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Machinery',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200, verbose_name='title')),
                ('description', models.TextField(blank=True, default='', verbose_name='description')),
                ('category', models.CharField(choices=[('tractor', 'Tractor'), ('harvester', 'Harvester'), ('plough', 'Plough'), ('sprayer', 'Sprayer'), ('pump', 'Pump'), ('seeder', 'Seeder'), ('thresher', 'Thresher'), ('trailer', 'Trailer'), ('other', 'Other')], default='other', max_length=20, verbose_name='category')),
                ('rental_rate', models.DecimalField(decimal_places=2, help_text='Rate in KES per rental period', max_digits=12, validators=[marketplace.validators.validate_positive_amount], verbose_name='rental rate')),
                ('rental_period', models.CharField(choices=[('hourly', 'Per hour'), ('daily', 'Per day'), ('weekly', 'Per week'), ('per_acre', 'Per acre')], default='daily', max_length=10, verbose_name='rental period')),
                ('county', models.CharField(max_length=100, verbose_name='county')),
                ('town', models.CharField(blank=True, default='', max_length=100, verbose_name='town')),
                ('brand', models.CharField(blank=True, default='', max_length=100, verbose_name='brand')),
                ('model_name', models.CharField(blank=True, default='', max_length=100, verbose_name='model')),
                ('horsepower', models.PositiveIntegerField(blank=True, null=True, verbose_name='horsepower')),
                ('is_available', models.BooleanField(default=True, verbose_name='is available')),
                ('rating_average', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=3, validators=[django.core.validators.MinValueValidator(Decimal('0.00')), django.core.validators.MaxValueValidator(Decimal('5.00'))], verbose_name='rating average')),
                ('review_count', models.PositiveIntegerField(default=0, verbose_name='review count')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('owner', models.ForeignKey(help_text='Owner renting out this equipment', on_delete=django.db.models.deletion.CASCADE, related_name='machinery', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'machinery',
                'verbose_name_plural': 'machinery',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['owner'], name='machinery_owner_idx'),
                    models.Index(fields=['category'], name='machinery_category_idx'),
                    models.Index(fields=['is_available'], name='machinery_available_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Booking',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('start_date', models.DateField(verbose_name='start date')),
                ('end_date', models.DateField(verbose_name='end date')),
                ('total_amount', models.DecimalField(decimal_places=2, max_digits=12, verbose_name='total amount')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('approved', 'Approved'), ('rejected', 'Rejected'), ('in_progress', 'In progress'), ('completed', 'Completed'), ('cancelled', 'Cancelled')], default='pending', max_length=20, verbose_name='status')),
                ('farmer_notes', models.TextField(blank=True, default='', verbose_name='farmer notes')),
                ('owner_notes', models.TextField(blank=True, default='', verbose_name='owner notes')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('farmer', models.ForeignKey(help_text='Farmer requesting the equipment', on_delete=django.db.models.deletion.CASCADE, related_name='farmer_bookings', to=settings.AUTH_USER_MODEL)),
                ('machinery', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='bookings', to='marketplace.machinery')),
                ('owner', models.ForeignKey(help_text='Owner of the booked equipment', on_delete=django.db.models.deletion.CASCADE, related_name='owner_bookings', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'booking',
                'verbose_name_plural': 'bookings',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['farmer'], name='booking_farmer_idx'),
                    models.Index(fields=['owner'], name='booking_owner_idx'),
                    models.Index(fields=['machinery'], name='booking_machinery_idx'),
                    models.Index(fields=['status'], name='booking_status_idx'),
                    models.Index(fields=['start_date'], name='booking_start_date_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('end_date__gte', models.F('start_date'))), name='booking_end_not_before_start'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Review',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('rating', models.PositiveSmallIntegerField(help_text='Rating from 1 to 5 stars', validators=[django.core.validators.MinValueValidator(1, message='Rating must be at least 1.'), django.core.validators.MaxValueValidator(5, message='Rating must be at most 5.')], verbose_name='rating')),
                ('comment', models.TextField(blank=True, default='', verbose_name='comment')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('booking', models.OneToOneField(help_text='Booking being reviewed (one review per booking)', on_delete=django.db.models.deletion.CASCADE, related_name='review', to='marketplace.booking')),
                ('machinery', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reviews', to='marketplace.machinery')),
                ('reviewer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='reviews_given', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'review',
                'verbose_name_plural': 'reviews',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['machinery'], name='review_machinery_idx'),
                    models.Index(fields=['reviewer'], name='review_reviewer_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Conversation',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('updated_at', models.DateTimeField(auto_now=True, verbose_name='updated at')),
                ('buyer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='buyer_conversations', to=settings.AUTH_USER_MODEL)),
                ('seller', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='seller_conversations', to=settings.AUTH_USER_MODEL)),
                ('listing', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='conversations', to='marketplace.listing')),
            ],
            options={
                'verbose_name': 'conversation',
                'verbose_name_plural': 'conversations',
                'ordering': ['-updated_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('buyer', 'seller', 'listing'), name='unique_conversation_per_pair_and_listing'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Message',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('content', models.TextField(verbose_name='content')),
                ('message_type', models.CharField(choices=[('text', 'Text'), ('offer', 'Offer'), ('system', 'System')], default='text', max_length=10, verbose_name='message type')),
                ('read', models.BooleanField(default=False, verbose_name='read')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('conversation', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='messages', to='marketplace.conversation')),
                ('sender', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='messages_sent', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'message',
                'verbose_name_plural': 'messages',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['conversation', 'created_at'], name='message_conversation_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('listing_expiring', 'Listing expiring'), ('listing_sold', 'Listing sold'), ('booking_requested', 'Booking requested'), ('booking_status_changed', 'Booking status changed'), ('review_received', 'Review received'), ('new_message', 'New message')], max_length=40, verbose_name='kind')),
                ('payload', models.JSONField(blank=True, default=dict, verbose_name='payload')),
                ('dedupe_key', models.CharField(blank=True, max_length=200, null=True, unique=True, verbose_name='dedupe key')),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('sent', 'Sent'), ('failed', 'Failed')], default='pending', max_length=10, verbose_name='status')),
                ('attempts', models.PositiveIntegerField(default=0, verbose_name='attempts')),
                ('last_error', models.TextField(blank=True, default='', verbose_name='last error')),
                ('created_at', models.DateTimeField(auto_now_add=True, verbose_name='created at')),
                ('sent_at', models.DateTimeField(blank=True, null=True, verbose_name='sent at')),
                ('recipient', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='notifications', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'notification',
                'verbose_name_plural': 'notifications',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['status', 'created_at'], name='notification_status_idx'),
                    models.Index(fields=['recipient'], name='notification_recipient_idx'),
                ],
            },
        ),
    ]
