from django.urls import path
from .views import (
    relationship_type_list,
    relationship_list_create, relationship_detail,
    entity_relationships, related_entities,
    relationship_stats, relationship_suggestions, relationship_mention,
)

urlpatterns = [
    # RelationshipType endpoints
    path('relationship-types/', relationship_type_list, name='relationship-type-list'),

    # EntityRelationship endpoints
    path('relationships/', relationship_list_create, name='relationship-list-create'),
    path('relationships/<int:pk>/', relationship_detail, name='relationship-detail'),
    path('relationships/stats/', relationship_stats, name='relationship-stats'),
    path('relationships/suggestions/', relationship_suggestions, name='relationship-suggestions'),
    path('relationships/mentions/', relationship_mention, name='relationship-mention'),
    path('relationships/entity/<str:entity_type>/<str:entity_id>/', entity_relationships,
         name='entity-relationships'),
    path('relationships/related/<str:entity_type>/<str:entity_id>/<str:relationship_type>/', related_entities,
         name='related-entities'),
]
