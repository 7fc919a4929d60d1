from django.apps import AppConfig


class RelationshipsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'backend.relationships'
    verbose_name = 'Entity Relationships'
