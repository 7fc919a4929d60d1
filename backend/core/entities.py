"""
Polymorphic entity lookup.

Relationship edges and SKU templates refer to business entities as plain
``(kind, id)`` pairs.  Nothing in the graph or the SKU engine imports domain
models directly; they ask an ``EntityLookup`` to turn a reference into a
plain dict of field values instead.  Domain apps register their models here
under the entity kind names used in the relationship catalog.
"""
import logging
from dataclasses import dataclass

from django.apps import apps
from django.core.exceptions import ValidationError
from django.db import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityRef:
    """A typed reference to any business entity"""
    kind: str
    id: str

    def __post_init__(self):
        object.__setattr__(self, 'id', str(self.id))

    def __str__(self):
        return f"{self.kind}#{self.id}"


def _plain_fields(instance, exclude=()):
    data = {}
    for field in instance._meta.concrete_fields:
        if field.name in exclude:
            continue
        if isinstance(field, models.ForeignKey):
            value = getattr(instance, field.attname)
            data[field.attname] = str(value) if value is not None else None
        else:
            data[field.name] = getattr(instance, field.attname)
    data['id'] = str(instance.pk)
    return data


def serialize_instance(instance, exclude=()):
    """
    Convert a model instance into a dict, following foreign keys one level.

    ``{'category_id': '3', 'category': {'id': '3', 'name': ...}}`` so that
    dotted paths like ``category.abbreviation`` resolve without another query.
    """
    data = _plain_fields(instance, exclude)
    for field in instance._meta.concrete_fields:
        if not isinstance(field, models.ForeignKey) or field.name in exclude:
            continue
        related = getattr(instance, field.name)
        data[field.name] = _plain_fields(related, ('password',)) if related is not None else None
    return data


class EntityLookup:
    """Registry of entity kinds and how to load them"""

    def __init__(self):
        self._loaders = {}

    def register(self, kind, model, select_related=(), exclude=(), extra=None):
        """
        Register an entity kind.

        Args:
            kind: Entity kind tag used in relationships (e.g., 'Product')
            model: Model class or 'app_label.ModelName'
            select_related: Foreign keys to fetch in the same query
            exclude: Field names never exposed (e.g., password)
            extra: Optional callable(instance) -> dict of derived fields
        """
        self._loaders[kind] = {
            'model': model,
            'select_related': tuple(select_related),
            'exclude': tuple(exclude),
            'extra': extra,
        }

    def kinds(self):
        return sorted(self._loaders)

    def is_registered(self, kind):
        return kind in self._loaders

    def model_for(self, kind):
        loader = self._loaders.get(kind)
        if loader is None:
            return None
        model = loader['model']
        if isinstance(model, str):
            model = apps.get_model(model)
        return model

    def _get_instance(self, kind, entity_id):
        loader = self._loaders.get(kind)
        if loader is None:
            logger.debug(f"No loader registered for entity kind {kind}")
            return None, None
        model = self.model_for(kind)
        try:
            pk = model._meta.pk.to_python(entity_id)
        except ValidationError:
            return loader, None
        queryset = model.objects.all()
        if loader['select_related']:
            queryset = queryset.select_related(*loader['select_related'])
        return loader, queryset.filter(pk=pk).first()

    def load(self, kind, entity_id):
        """Load an entity as a dict, or None if it does not exist"""
        loader, instance = self._get_instance(kind, entity_id)
        if instance is None:
            return None
        data = serialize_instance(instance, loader['exclude'])
        if loader['extra']:
            data.update(loader['extra'](instance))
        data['entity_type'] = kind
        return data

    def exists(self, kind, entity_id):
        """Check whether a reference resolves, without serializing it"""
        model = self.model_for(kind)
        if model is None:
            return False
        try:
            pk = model._meta.pk.to_python(entity_id)
        except ValidationError:
            return False
        return model.objects.filter(pk=pk).exists()


def _product_extra(product):
    return {
        'type': product.product_type,
        'extras': list(product.extras or []),
    }


def build_default_lookup():
    """Entity kinds known to this backend"""
    lookup = EntityLookup()
    lookup.register('Product', 'catalog.Product', select_related=('category', 'brand'), extra=_product_extra)
    lookup.register('ProductCategory', 'catalog.Category')
    lookup.register('Brand', 'catalog.Brand')
    lookup.register('Vendor', 'parties.Vendor')
    lookup.register('Contact', 'parties.Contact', extra=lambda contact: {'type': contact.contact_type})
    lookup.register('User', 'core.User', select_related=('role',), exclude=('password',))
    lookup.register('Project', 'projects.Project')
    lookup.register('Task', 'projects.Task', select_related=('project', 'assignee'))
    lookup.register('Budget', 'projects.Budget', select_related=('project',))
    lookup.register('Comment', 'projects.Comment')
    lookup.register('WorkOrder', 'costs.WorkOrder')
    lookup.register('Cost', 'costs.Cost')
    return lookup


_default_lookup = None


def get_entity_lookup():
    """Process-wide default lookup"""
    global _default_lookup
    if _default_lookup is None:
        _default_lookup = build_default_lookup()
    return _default_lookup
