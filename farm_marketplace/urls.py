"""
URL configuration for the farm_marketplace project.
"""
from django.conf import settings
from django.conf.urls.static import static
from django.contrib import admin
from django.urls import path
from rest_framework_simplejwt.views import (
    TokenBlacklistView,
    TokenRefreshView,
)
from marketplace.views import (
    BookingActionView,
    BookingDetailView,
    BookingListCreateView,
    BookingReviewView,
    ConversationListCreateView,
    ConversationReadView,
    EmailTokenObtainPairView,
    ListingActiveView,
    ListingDetailView,
    ListingListCreateView,
    ListingRevertSaleView,
    ListingSoldView,
    MachineryDetailView,
    MachineryListCreateView,
    MessageListCreateView,
    UnreadCountView,
    UserRegistrationView,
)


urlpatterns = [
    path('admin/', admin.site.urls),

    # Authentication endpoints
    path('api/auth/register/', UserRegistrationView.as_view(), name='user_register'),
    path('api/auth/logout/', TokenBlacklistView.as_view(), name='user_logout'),
    path('api/token/', EmailTokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),

    # Listing endpoints
    path('api/listings/', ListingListCreateView.as_view(), name='listing_list'),
    path('api/listings/<int:pk>/', ListingDetailView.as_view(), name='listing_detail'),
    path('api/listings/<int:pk>/active/', ListingActiveView.as_view(), name='listing_active'),
    path('api/listings/<int:pk>/sold/', ListingSoldView.as_view(), name='listing_sold'),
    path('api/listings/<int:pk>/revert-sale/', ListingRevertSaleView.as_view(), name='listing_revert_sale'),

    # Machinery endpoints
    path('api/machinery/', MachineryListCreateView.as_view(), name='machinery_list'),
    path('api/machinery/<int:pk>/', MachineryDetailView.as_view(), name='machinery_detail'),

    # Booking endpoints
    path('api/bookings/', BookingListCreateView.as_view(), name='booking_list'),
    path('api/bookings/<int:pk>/', BookingDetailView.as_view(), name='booking_detail'),
    path('api/bookings/<int:pk>/review/', BookingReviewView.as_view(), name='booking_review'),
    path(
        'api/bookings/<int:pk>/<str:action>/',
        BookingActionView.as_view(),
        name='booking_action'
    ),

    # Conversation endpoints
    path('api/conversations/', ConversationListCreateView.as_view(), name='conversation_list'),
    path('api/conversations/unread/', UnreadCountView.as_view(), name='conversation_unread'),
    path(
        'api/conversations/<int:pk>/messages/',
        MessageListCreateView.as_view(),
        name='conversation_messages'
    ),
    path('api/conversations/<int:pk>/read/', ConversationReadView.as_view(), name='conversation_read'),
]

if settings.DEBUG:
    urlpatterns += static(settings.MEDIA_URL, document_root=settings.MEDIA_ROOT)
