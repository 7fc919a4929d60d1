"""
SKU generation.

``SKUEngine.generate`` picks the entity kind's default template (or an
explicit one), renders it against the entity, makes the value unique and
stores it as a new ``EntitySKU`` version. Sequence draws commit in their own
short transaction before the write, so counter rows are never locked for the
rest of a generation and a rejected render leaves a gap in the sequence.
"""
import logging

from django.core.cache import cache
from django.db import IntegrityError, transaction
from django.db.models import Count, F
from django.utils import timezone

from backend.core.conf import engine_setting
from backend.core.entities import EntityRef, get_entity_lookup
from backend.core.exceptions import (
    ConfigError, EntityGraphError, EntityNotFound, NoTemplateConfigured, SequenceContention,
    TemplateRenderInvalid,
)
from backend.core.utils import create_audit_log
from backend.relationships.store import EntityRelationshipStore
from .components import compile_sku_template
from .models import EntitySKU, SKUTemplate
from .resolver import ComponentResolverSet, DataContext, TemplateResolver
from .sequences import DatabaseSequenceAllocator

logger = logging.getLogger(__name__)

TEMPLATE_CACHE_PREFIX = 'sku_template:'
MAX_UNIQUE_SUFFIX = 99


def _version_key(entity_type=None):
    return f"{TEMPLATE_CACHE_PREFIX}version:{entity_type or '*'}"


def _default_template_key(entity_type, tenant_id):
    versions = cache.get_many([_version_key(), _version_key(entity_type)])
    return (
        f"{TEMPLATE_CACHE_PREFIX}default:{entity_type}:{tenant_id or '-'}:"
        f"{versions.get(_version_key(), 0)}:{versions.get(_version_key(entity_type), 0)}"
    )


def invalidate_template_cache(entity_type=None):
    """Make cached default-template lookups stale, for one entity kind or all of them"""
    key = _version_key(entity_type)
    try:
        cache.incr(key)
    except ValueError:
        cache.set(key, 1, None)


class SKUEngine:
    """
    Generates and stores SKUs.

    Args:
        store: EntityRelationshipStore for relationship components
        lookup: EntityLookup used to load the subject and related entities
        allocator: SequenceAllocator (database-backed by default)
        clock: callable returning the reference time for date components
    """

    def __init__(self, store=None, lookup=None, allocator=None, clock=None):
        self.store = store or EntityRelationshipStore()
        self.lookup = lookup or get_entity_lookup()
        self.allocator = allocator or DatabaseSequenceAllocator()
        self.clock = clock or timezone.now
        self.resolver = TemplateResolver(ComponentResolverSet(self.allocator, self.store, self.lookup))

    # ==================== TEMPLATES ====================

    def get_template(self, template_id):
        template = SKUTemplate.objects.filter(pk=template_id, is_active=True).first()
        if template is None:
            raise EntityNotFound('SKUTemplate', template_id)
        return template

    def _default_template_ids(self, entity_type, tenant_id):
        defaults = SKUTemplate.objects.filter(entity_type=entity_type, is_default=True, is_active=True)
        if tenant_id:
            # A tenant's own default takes precedence over the shared one
            ids = list(defaults.filter(tenant_id=tenant_id).values_list('pk', flat=True))
            if ids:
                return ids
        return list(defaults.filter(tenant_id__isnull=True).values_list('pk', flat=True))

    @staticmethod
    def _single_default(entity_type, ids):
        if not ids:
            raise NoTemplateConfigured(entity_type)
        if len(ids) > 1:
            raise ConfigError(
                f"{len(ids)} active default SKU templates for {entity_type}; exactly one is allowed",
                details={'entity_type': entity_type, 'template_ids': ids},
            )
        return ids[0]

    def get_default_template(self, entity_type, tenant_id=None):
        """The single active default template for an entity kind"""
        cache_key = _default_template_key(entity_type, tenant_id)
        ids = cache.get(cache_key)
        if ids is None:
            logger.debug(f"Cache MISS for default SKU template of {entity_type}")
            ids = self._default_template_ids(entity_type, tenant_id)
            cache.set(cache_key, ids, engine_setting('TEMPLATE_CACHE_TTL'))
        else:
            logger.debug(f"Cache HIT for default SKU template of {entity_type}")

        template_id = self._single_default(entity_type, ids)
        template = SKUTemplate.objects.filter(
            pk=template_id, entity_type=entity_type, is_active=True, is_default=True
        ).first()
        if template is None:
            # Changed by a bulk update that sent no signal
            cache.delete(cache_key)
            template_id = self._single_default(entity_type, self._default_template_ids(entity_type, tenant_id))
            template = SKUTemplate.objects.get(pk=template_id)
        return template

    def set_default_template(self, template_id, user=None):
        """Make a template its entity kind's only default"""
        with transaction.atomic():
            template = SKUTemplate.objects.select_for_update().filter(pk=template_id, is_active=True).first()
            if template is None:
                raise EntityNotFound('SKUTemplate', template_id)
            unset = (
                SKUTemplate.objects.filter(
                    entity_type=template.entity_type, tenant_id=template.tenant_id, is_default=True
                )
                .exclude(pk=template.pk)
                .update(is_default=False)
            )
            template.is_default = True
            template.save(update_fields=['is_default', 'updated_at'])

        invalidate_template_cache(template.entity_type)
        logger.info(f"SKU template {template.name} is now the default for {template.entity_type} ({unset} unset)")
        create_audit_log(
            action='sku_template_default',
            model_name='SKUTemplate',
            object_id=template.pk,
            object_name=template.name,
            object_reference=template.entity_type,
            user=user,
        )
        return template

    def list_templates(self, entity_type=None, tenant_id=None):
        queryset = SKUTemplate.objects.filter(is_active=True)
        if entity_type:
            queryset = queryset.filter(entity_type=entity_type)
        if tenant_id:
            queryset = queryset.filter(tenant_id=tenant_id)
        return queryset.order_by('-created_at')

    def check_templates(self, registry=None):
        """
        Compile every active template and check default uniqueness.

        Returns:
            list of problem descriptions (empty when the catalog is valid)
        """
        problems = []
        for template in SKUTemplate.objects.filter(is_active=True).order_by('entity_type', 'name'):
            try:
                compile_sku_template(template, registry=registry)
            except ConfigError as e:
                problems.append(e.message)

        duplicated = (
            SKUTemplate.objects.filter(is_active=True, is_default=True)
            .order_by()
            .values('entity_type', 'tenant_id')
            .annotate(count=Count('id'))
            .filter(count__gt=1)
        )
        for row in duplicated:
            problems.append(
                f"{row['count']} active default templates for {row['entity_type']}"
                f"{' (tenant ' + row['tenant_id'] + ')' if row['tenant_id'] else ''}"
            )
        return problems

    # ==================== GENERATION ====================

    def generate(self, entity_type, entity_id, template_id=None, custom_components=None,
                 tenant_id=None, user=None):
        """
        Render and store a new SKU version for an entity.

        Raises:
            NoTemplateConfigured: no active default template for the kind
            EntityNotFound: the entity (or the explicit template) does not exist
            TemplateRenderInvalid: the rendered value breaks the template's rules
            ConfigError: the template itself is malformed
            SequenceContention: the sequence counter or the SKU version stayed contended
        """
        template = self.get_template(template_id) if template_id else self.get_default_template(entity_type, tenant_id)
        if template.entity_type != entity_type:
            raise ConfigError(
                f"SKU template '{template.name}' is for {template.entity_type}, not {entity_type}",
                details={'template': template.name, 'entity_type': entity_type},
            )
        compiled = compile_sku_template(template)

        subject = self.lookup.load(entity_type, entity_id)
        if subject is None:
            raise EntityNotFound(entity_type, entity_id)
        subject_ref = EntityRef(entity_type, entity_id)
        now = self.clock()
        context = DataContext(subject=subject, now=now, overrides=dict(custom_components or {}), tenant_id=tenant_id)

        # Sequence draws commit on their own; a rejected render leaves a gap
        result = self.resolver.render(compiled, subject_ref, context)
        if not result.valid:
            raise TemplateRenderInvalid(result.value, compiled.rule_description, template.name)

        entity_sku = self._persist(compiled, template, subject_ref, result, now, tenant_id, user)
        sku_value = entity_sku.sku_value

        logger.info(f"Generated SKU {sku_value} for {subject_ref} (template {template.name}, v{entity_sku.version})")
        create_audit_log(
            action='sku_generate',
            model_name=entity_type,
            object_id=subject_ref.id,
            object_name=template.name,
            object_reference=sku_value,
            changes={'components': result.component_values, 'version': entity_sku.version},
            user=user,
        )
        return entity_sku

    def _persist(self, compiled, template, subject_ref, result, now, tenant_id, user):
        """Store the rendered value as the entity's next version, retrying lost version races"""
        max_retries = engine_setting('UPSERT_MAX_RETRIES')
        for attempt in range(1, max_retries + 1):
            try:
                with transaction.atomic():
                    sku_value = result.value
                    if engine_setting('SKU_ENSURE_UNIQUE'):
                        sku_value = self._ensure_unique(sku_value, compiled, subject_ref)
                    entity_sku = self._store_version(subject_ref, sku_value, template, result.component_values,
                                                     now, tenant_id, user)
                    SKUTemplate.objects.filter(pk=template.pk).update(
                        usage_count=F('usage_count') + 1, last_used_at=now
                    )
                return entity_sku
            except IntegrityError as e:
                logger.info(f"SKU version for {subject_ref} taken concurrently ({attempt}/{max_retries}): {str(e)}")
        logger.warning(f"Giving up storing SKU for {subject_ref} after {max_retries} attempts")
        raise SequenceContention('sku_version', str(subject_ref), max_retries)

    def _taken_by_other(self, value, subject_ref):
        return (
            EntitySKU.objects.filter(sku_value=value)
            .exclude(entity_type=subject_ref.kind, entity_id=subject_ref.id)
            .exists()
        )

    def _ensure_unique(self, value, compiled, subject_ref):
        """Append -01, -02... while another entity holds the value"""
        if not self._taken_by_other(value, subject_ref):
            return value
        for counter in range(1, MAX_UNIQUE_SUFFIX + 1):
            candidate = f"{value}-{counter:02d}"
            if self._taken_by_other(candidate, subject_ref):
                continue
            if not compiled.is_valid(candidate):
                raise TemplateRenderInvalid(candidate, compiled.rule_description, compiled.name)
            logger.info(f"SKU {value} already taken, using {candidate} for {subject_ref}")
            return candidate
        raise TemplateRenderInvalid(
            f"{value}-{MAX_UNIQUE_SUFFIX:02d}", compiled.rule_description, compiled.name
        )

    def _store_version(self, subject_ref, sku_value, template, components, now, tenant_id, user):
        history = EntitySKU.objects.select_for_update().filter(
            entity_type=subject_ref.kind, entity_id=subject_ref.id
        )
        latest = history.order_by('-version').first()
        version = latest.version + 1 if latest else 1
        EntitySKU.objects.filter(
            entity_type=subject_ref.kind, entity_id=subject_ref.id, is_active=True
        ).update(is_active=False)
        return EntitySKU.objects.create(
            entity_type=subject_ref.kind,
            entity_id=subject_ref.id,
            sku_value=sku_value,
            template=template,
            components=components,
            version=version,
            is_active=True,
            generated_at=now,
            tenant_id=tenant_id,
            generated_by=user if user is not None and user.is_authenticated else None,
        )

    # ==================== LOOKUPS ====================

    def get_entity_sku(self, entity_type, entity_id, tenant_id=None):
        """The entity's current SKU, or None"""
        queryset = EntitySKU.objects.select_related('template').filter(
            entity_type=entity_type, entity_id=str(entity_id), is_active=True
        )
        if tenant_id:
            queryset = queryset.filter(tenant_id=tenant_id)
        return queryset.order_by('-version').first()

    def validate_sku(self, value):
        """Check a candidate value: ``{'is_valid': bool, 'reason': str | None}``"""
        if not value or len(value) < 3:
            return {'is_valid': False, 'reason': 'SKU too short'}
        if EntitySKU.objects.filter(sku_value=value).exists():
            return {'is_valid': False, 'reason': 'SKU already exists'}
        return {'is_valid': True, 'reason': None}

    def generate_missing(self, entity_type, entity_ids, tenant_id=None, missing_only=True, user=None):
        """
        Generate SKUs for many entities, continuing past failures.

        Returns:
            (generated EntitySKU list, list of (entity_id, error message))
        """
        generated = []
        failures = []
        existing = set()
        if missing_only:
            existing = set(
                EntitySKU.objects.filter(entity_type=entity_type, is_active=True)
                .values_list('entity_id', flat=True)
            )
        for entity_id in entity_ids:
            if str(entity_id) in existing:
                continue
            try:
                generated.append(self.generate(entity_type, entity_id, tenant_id=tenant_id, user=user))
            except (NoTemplateConfigured, ConfigError):
                raise
            except EntityGraphError as e:
                logger.warning(f"Could not generate SKU for {entity_type}#{entity_id}: {e.message}")
                failures.append((str(entity_id), e.message))
        return generated, failures
