"""
Built-in relationship types.

Seeded by ``manage.py seed_relationship_types``. Every bidirectional type
names its reverse; reverse types are plain one-way types so mirroring stops
after one hop. ``works_with`` and ``related_to`` are symmetric.
"""
import logging

from django.db import transaction

from backend.core.cache_signals import suspend_cache_signals, invalidate_relationship_types_cache
from .registry import RelationshipTypeRegistry

logger = logging.getLogger(__name__)


def _pair(name, display_name, description, source_types, target_types, reverse_name, reverse_display_name,
          reverse_description, default_strength, color, icon, reverse_icon=None, is_system=True):
    forward = {
        'name': name,
        'display_name': display_name,
        'description': description,
        'source_types': source_types,
        'target_types': target_types,
        'is_bidirectional': True,
        'reverse_type_name': reverse_name,
        'default_strength': default_strength,
        'is_system': is_system,
        'color': color,
        'icon': icon,
    }
    reverse = {
        'name': reverse_name,
        'display_name': reverse_display_name,
        'description': reverse_description,
        'source_types': target_types,
        'target_types': source_types,
        'is_bidirectional': False,
        'reverse_type_name': None,
        'default_strength': default_strength,
        'is_system': is_system,
        'color': color,
        'icon': reverse_icon or icon,
    }
    return [forward, reverse]


RELATIONSHIP_TYPES = [
    # Product relationships
    *_pair('supplier', 'Supplier', 'Entity supplies products/services to another entity',
           ['Contact', 'Vendor'], ['Product'],
           'supplied_by', 'Supplied By', 'Entity is supplied by another entity',
           3, '#2563eb', 'truck'),
    *_pair('category', 'Category', 'Entity belongs to a category',
           ['Product'], ['ProductCategory'],
           'contains', 'Contains', 'Category contains entities',
           2, '#7c3aed', 'folder'),

    # Task and Project relationships
    *_pair('assigned_to', 'Assigned To', 'Task/Project assigned to user',
           ['Task', 'Project'], ['User'],
           'assigned', 'Assigned', 'User is assigned to task/project',
           4, '#059669', 'user-check'),
    *_pair('belongs_to', 'Belongs To', 'Entity belongs to project',
           ['Task', 'Budget', 'WorkOrder'], ['Project'],
           'includes', 'Includes', 'Project includes entities',
           3, '#dc2626', 'folder-open'),

    # Budget relationships
    *_pair('funds', 'Funds', 'Budget funds project/task',
           ['Budget'], ['Project', 'Task'],
           'funded_by', 'Funded By', 'Project/Task funded by budget',
           3, '#ea580c', 'dollar-sign'),

    # Work Order relationships
    *_pair('produces', 'Produces', 'Work order produces product',
           ['WorkOrder'], ['Product'],
           'produced_by', 'Produced By', 'Product produced by work order',
           4, '#7c2d12', 'cog'),

    # Collaboration
    {
        'name': 'works_with',
        'display_name': 'Works With',
        'description': 'Entity works with another entity',
        'source_types': ['User', 'Contact'],
        'target_types': ['User', 'Contact'],
        'is_bidirectional': True,
        'reverse_type_name': 'works_with',
        'default_strength': 2,
        'is_system': True,
        'color': '#0891b2',
        'icon': 'users',
    },
    *_pair('manages', 'Manages', 'User manages entity',
           ['User'], ['Project', 'Task', 'Budget', 'WorkOrder'],
           'managed_by', 'Managed By', 'Entity managed by user',
           4, '#be123c', 'crown'),

    # Mentions
    {
        'name': 'mentioned_in',
        'display_name': 'Mentioned In',
        'description': 'Entity mentioned in another entity',
        'source_types': ['User', 'Contact', 'Product', 'Project', 'Task'],
        'target_types': ['Task', 'Comment', 'Document', 'Budget'],
        'is_bidirectional': False,
        'reverse_type_name': None,
        'default_strength': 1,
        'is_system': True,
        'color': '#6b7280',
        'icon': 'at-sign',
    },

    # Recipes
    *_pair('ingredient_of', 'Ingredient Of', 'Product is ingredient of another product',
           ['Product'], ['Product'],
           'uses_ingredient', 'Uses Ingredient', 'Product uses another product as ingredient',
           3, '#16a34a', 'package'),

    # Brands
    *_pair('brand_of', 'Brand Of', 'Brand associated with product',
           ['Brand', 'Contact'], ['Product'],
           'branded_by', 'Branded By', 'Product branded by entity',
           3, '#9333ea', 'star'),

    # Locations
    *_pair('located_at', 'Located At', 'Entity located at location',
           ['Product', 'WorkOrder', 'User'], ['Location'],
           'houses', 'Houses', 'Location houses entities',
           2, '#0d9488', 'map-pin'),

    # Generic
    {
        'name': 'related_to',
        'display_name': 'Related To',
        'description': 'Generic relationship between entities',
        'source_types': ['*'],
        'target_types': ['*'],
        'is_bidirectional': True,
        'reverse_type_name': 'related_to',
        'default_strength': 1,
        'is_system': False,
        'color': '#6b7280',
        'icon': 'link',
    },
    *_pair('depends_on', 'Depends On', 'Entity depends on another entity',
           ['Task', 'Project', 'WorkOrder'], ['Task', 'Project', 'Product', 'User'],
           'dependency_of', 'Dependency Of', 'Entity is dependency of another entity',
           3, '#f59e0b', 'arrow-right-circle', reverse_icon='arrow-left-circle'),
]


def build_catalog_registry():
    """Validated registry of the built-in types (raises ConfigError if the catalog is inconsistent)"""
    return RelationshipTypeRegistry.from_definitions(RELATIONSHIP_TYPES)


def seed_relationship_types(clear=False):
    """
    Create or update the built-in relationship types.

    Returns:
        (created, updated) counts
    """
    from .models import RelationshipType

    registry = build_catalog_registry()
    created_count = 0
    updated_count = 0

    with suspend_cache_signals(), transaction.atomic():
        if clear:
            deleted, _ = RelationshipType.objects.all().delete()
            logger.info(f"Cleared {deleted} relationship type(s)")
        for type_def in registry:
            values = type_def.to_dict()
            name = values.pop('name')
            values['reverse_type_name'] = values['reverse_type_name'] or None
            _, created = RelationshipType.objects.update_or_create(name=name, defaults=values)
            if created:
                created_count += 1
            else:
                updated_count += 1

    invalidate_relationship_types_cache()
    logger.info(f"Seeded relationship types: {created_count} created, {updated_count} updated")
    return created_count, updated_count
