"""
Relationship type registry.

Holds the catalog of edge kinds and answers the two questions every write
asks: is this (source kind, target kind) pair allowed for the type, and what
is the reverse type for mirroring. The catalog is configuration data: it is
read from the ``relationship_types`` table once, shared through the Django
cache and kept in memory per process until invalidated or expired.
"""
import logging
import threading
import time

from django.core.cache import cache

from backend.core.conf import engine_setting
from backend.core.exceptions import ConfigError, IncompatibleTypes, RelationshipTypeNotFound
from .types import RelationshipTypeDef

logger = logging.getLogger(__name__)

REGISTRY_CACHE_KEY = 'relationship_types:registry'


class RelationshipTypeRegistry:
    """
    Catalog of relationship types.

    Loading is two-pass: ``register`` every type, then ``validate`` the cross
    references (reverse types may be registered after the types that name
    them).
    """

    def __init__(self):
        self._types = {}
        self._validated = False

    @classmethod
    def from_definitions(cls, definitions):
        """Build and validate a registry from dicts or RelationshipTypeDef objects"""
        registry = cls()
        for definition in definitions:
            registry.register(definition)
        return registry.validate()

    def register(self, type_def):
        if isinstance(type_def, dict):
            type_def = RelationshipTypeDef.from_dict(type_def)

        if not type_def.name:
            raise ConfigError("Relationship type without a name")

        existing = self._types.get(type_def.name)
        if existing is not None:
            if existing == type_def:
                return existing
            raise ConfigError(
                f"Relationship type '{type_def.name}' is already registered with a different definition",
                details={'name': type_def.name},
            )

        if type_def.is_bidirectional and not type_def.reverse_type_name:
            raise ConfigError(
                f"Bidirectional relationship type '{type_def.name}' has no reverse type",
                details={'name': type_def.name},
            )
        if not type_def.source_types or not type_def.target_types:
            raise ConfigError(
                f"Relationship type '{type_def.name}' must declare source and target types",
                details={'name': type_def.name},
            )
        if not 1 <= type_def.default_strength <= 5:
            raise ConfigError(
                f"Relationship type '{type_def.name}' has default strength {type_def.default_strength} (expected 1-5)",
                details={'name': type_def.name},
            )

        self._types[type_def.name] = type_def
        self._validated = False
        return type_def

    def validate(self):
        """Check reverse-type references; raises ConfigError listing every problem"""
        errors = []
        for type_def in self._types.values():
            if not type_def.is_bidirectional:
                continue
            reverse = self._types.get(type_def.reverse_type_name)
            if reverse is None:
                errors.append(
                    f"'{type_def.name}': reverse type '{type_def.reverse_type_name}' is not registered"
                )
            elif type_def.is_symmetric:
                if type_def.source_types != type_def.target_types:
                    errors.append(f"'{type_def.name}': symmetric type must have identical source and target types")
            elif reverse.source_types != type_def.target_types or reverse.target_types != type_def.source_types:
                errors.append(
                    f"'{type_def.name}': reverse type '{reverse.name}' does not swap source and target types"
                )

        if errors:
            raise ConfigError(
                f"Invalid relationship type catalog ({len(errors)} problem(s)): " + '; '.join(errors),
                details={'errors': errors},
            )
        self._validated = True
        return self

    @property
    def is_validated(self):
        return self._validated

    def resolve(self, name):
        try:
            return self._types[name]
        except KeyError:
            raise RelationshipTypeNotFound(
                f"Unknown relationship type: {name}", details={'name': name}
            ) from None

    def get(self, name):
        return self._types.get(name)

    def validate_edge(self, rel_type, source_kind, target_kind):
        """Return the type if the endpoints are allowed, else raise IncompatibleTypes"""
        type_def = self.resolve(rel_type) if isinstance(rel_type, str) else rel_type
        if not type_def.allows_source(source_kind) or not type_def.allows_target(target_kind):
            raise IncompatibleTypes(type_def.name, source_kind, target_kind)
        return type_def

    def reverse_of(self, rel_type):
        type_def = self.resolve(rel_type) if isinstance(rel_type, str) else rel_type
        if not type_def.is_bidirectional:
            return None
        return self._types.get(type_def.reverse_type_name)

    def names(self):
        return sorted(self._types)

    def __contains__(self, name):
        return name in self._types

    def __iter__(self):
        return iter(sorted(self._types.values(), key=lambda t: t.name))

    def __len__(self):
        return len(self._types)


def load_registry(use_cache=True):
    """Read the catalog (shared cache first, then the database) and validate it"""
    definitions = cache.get(REGISTRY_CACHE_KEY) if use_cache else None
    if definitions is None:
        from .models import RelationshipType
        logger.debug("Cache MISS for relationship type registry")
        definitions = [rt.to_definition().to_dict() for rt in RelationshipType.objects.all()]
        cache.set(REGISTRY_CACHE_KEY, definitions, engine_setting('REGISTRY_CACHE_TTL'))
    else:
        logger.debug("Cache HIT for relationship type registry")
    return RelationshipTypeRegistry.from_definitions(definitions)


_lock = threading.Lock()
_current = None  # (registry, loaded_at)


def get_registry():
    """Process-wide registry, reloaded after REGISTRY_CACHE_TTL seconds"""
    global _current
    ttl = engine_setting('REGISTRY_CACHE_TTL')
    current = _current
    if current is None or time.monotonic() - current[1] > ttl:
        with _lock:
            current = _current
            if current is None or time.monotonic() - current[1] > ttl:
                current = (load_registry(), time.monotonic())
                _current = current
                logger.info(f"Loaded relationship type registry ({len(current[0])} types)")
    return current[0]


def invalidate_registry():
    global _current
    with _lock:
        _current = None
    cache.delete(REGISTRY_CACHE_KEY)
