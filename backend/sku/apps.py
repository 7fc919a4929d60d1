from django.apps import AppConfig


class SkuConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'backend.sku'
    verbose_name = 'SKU Generation'
