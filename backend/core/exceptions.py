"""Error kinds raised by the relationship graph and the SKU engine.

Every error carries a human-readable message plus an optional ``details``
dict so callers (views, management commands, backfill reports) can tell the
kinds apart without parsing messages.
"""


class EntityGraphError(Exception):
    """Base exception for all relationship graph and SKU errors."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(EntityGraphError):
    """Malformed relationship type or SKU template catalog.

    Raised while loading configuration: missing reverse types, unknown
    component or transform names, invalid validation patterns.
    """


class RelationshipTypeNotFound(EntityGraphError):
    """A relationship type name is not registered."""


class IncompatibleTypes(EntityGraphError):
    """An edge's source/target kind is not permitted by its relationship type."""

    def __init__(self, relationship_type, source_type, target_type):
        super().__init__(
            f"Relationship '{relationship_type}' does not allow "
            f"{source_type} -> {target_type}",
            details={
                'relationship_type': relationship_type,
                'source_type': source_type,
                'target_type': target_type,
            },
        )
        self.relationship_type = relationship_type
        self.source_type = source_type
        self.target_type = target_type


class EntityNotFound(EntityGraphError):
    """A polymorphic (kind, id) reference does not resolve to an entity."""

    def __init__(self, entity_type, entity_id):
        super().__init__(
            f"{entity_type} {entity_id} does not exist",
            details={'entity_type': entity_type, 'entity_id': str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = str(entity_id)


class NoTemplateConfigured(EntityGraphError):
    """No active default SKU template exists for an entity type."""

    def __init__(self, entity_type):
        super().__init__(
            f"No SKU template configured for entity type: {entity_type}",
            details={'entity_type': entity_type},
        )
        self.entity_type = entity_type


class TemplateRenderInvalid(EntityGraphError):
    """A rendered SKU does not satisfy its template's validation pattern.

    Attributes:
        value: The rendered value that was rejected
        pattern: The validation pattern it violated
    """

    def __init__(self, value, pattern, template_name=None):
        super().__init__(
            f"Rendered SKU '{value}' does not match pattern {pattern}",
            details={'value': value, 'pattern': pattern, 'template': template_name},
        )
        self.value = value
        self.pattern = pattern
        self.template_name = template_name


class SequenceContention(EntityGraphError):
    """Sequence allocation kept conflicting; safe to retry later."""

    retryable = True

    def __init__(self, scope_kind, scope_key, attempts):
        super().__init__(
            f"Could not allocate sequence for {scope_kind}/{scope_key} after {attempts} attempts",
            details={'scope_kind': scope_kind, 'scope_key': scope_key, 'attempts': attempts},
        )
        self.scope_kind = scope_kind
        self.scope_key = scope_key
        self.attempts = attempts


class MirrorWriteFailed(EntityGraphError):
    """The reverse edge of a bidirectional relationship could not be written.

    Never propagated out of an upsert: the primary edge stands and the
    failure is logged and written to the audit log.
    """


class RecordTimeout(EntityGraphError):
    """A single backfill record exceeded its processing deadline."""
