from django.apps import AppConfig


class MarketplaceConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'marketplace'
    verbose_name = 'Farm Marketplace'

    def ready(self):
        # Connect domain event and rating receivers
        from . import signals  # noqa: F401
