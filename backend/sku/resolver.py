"""
Rendering of compiled SKU templates.

``ComponentResolverSet`` turns one component spec into a raw value for a
subject entity: a field read, a related entity's field, a formatted date or a
sequence draw. ``TemplateResolver`` formats those values (defaults, padding,
truncation), assembles the string and checks it against the template's
validation rules. Nothing here writes to the database except the sequence
allocator.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from django.utils import timezone

from .components import (
    CategoryCodeComponent, DateComponent, EntityFieldComponent, RelationshipComponent,
    SequenceComponent, StaticComponent, SupplierCodeComponent, abbreviate,
)

logger = logging.getLogger(__name__)

DATE_TOKENS = re.compile(r'YYYY|YY|MM|DD|HH|mm|ss')

MISSING_SCOPE = 'NONE'


@dataclass
class DataContext:
    """Everything a render may read besides the database"""
    subject: dict
    now: datetime
    overrides: dict = field(default_factory=dict)
    tenant_id: Optional[str] = None


@dataclass
class RenderResult:
    value: str
    component_values: dict
    valid: bool
    pattern: Optional[str] = None
    errors: list = field(default_factory=list)


def read_path(data, path):
    """Read ``a.b`` style paths from nested dicts; None when any step is missing"""
    current = data
    for key in path.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def is_empty(value):
    return value is None or value == '' or value == [] or value == {}


def format_date(moment, pattern):
    """Format with YYYY, YY, MM, DD, HH, mm and ss tokens; other text is kept"""
    if timezone.is_aware(moment):
        moment = timezone.localtime(moment)
    values = {
        'YYYY': f'{moment.year:04d}',
        'YY': f'{moment.year % 100:02d}',
        'MM': f'{moment.month:02d}',
        'DD': f'{moment.day:02d}',
        'HH': f'{moment.hour:02d}',
        'mm': f'{moment.minute:02d}',
        'ss': f'{moment.second:02d}',
    }
    return DATE_TOKENS.sub(lambda match: values[match.group(0)], pattern)


def format_value(spec, raw):
    """Apply the component's default, padding and truncation"""
    if is_empty(raw):
        raw = spec.default
    if is_empty(raw):
        return ''
    if isinstance(spec, SequenceComponent):
        text = str(raw)
        # Sequences are padded but never truncated
        return text.zfill(spec.length) if spec.length else text
    text = str(raw).upper()
    if spec.length:
        text = text[:spec.length]
    return text


class ComponentResolverSet:
    """
    Raw value lookup for each component type.

    Args:
        allocator: SequenceAllocator for ``sequence`` components
        store: EntityRelationshipStore for relationship traversal
        lookup: EntityLookup to load related entities
    """

    def __init__(self, allocator, store, lookup):
        self.allocator = allocator
        self.store = store
        self.lookup = lookup
        self._resolvers = {
            CategoryCodeComponent: self._category_code,
            SupplierCodeComponent: self._supplier_code,
            EntityFieldComponent: self._entity_field,
            RelationshipComponent: self._relationship,
            DateComponent: self._date,
            SequenceComponent: self._sequence,
            StaticComponent: self._static,
        }

    def resolve(self, spec, subject_ref, context):
        return self._resolvers[type(spec)](spec, subject_ref, context)

    # ---- component types ----

    def _entity_field(self, spec, subject_ref, context):
        return self._transform(spec, read_path(context.subject, spec.field))

    def _relationship(self, spec, subject_ref, context):
        related = self._first_related(subject_ref, spec.relationship_type, context)
        if related is None:
            return None
        return self._transform(spec, read_path(related, spec.field))

    def _category_code(self, spec, subject_ref, context):
        return self.category_code(context.subject)

    def _supplier_code(self, spec, subject_ref, context):
        supplier = context.subject.get('supplier')
        if isinstance(supplier, dict) and supplier.get('code'):
            return supplier['code']
        related = self._first_related(subject_ref, 'supplied_by', context)
        if related is None:
            return None
        return related.get('sku_abbreviation') or related.get('code') or abbreviate(related.get('name'))

    def _date(self, spec, subject_ref, context):
        return format_date(context.now, spec.format)

    def _sequence(self, spec, subject_ref, context):
        scope_key = f"{subject_ref.kind}|{self.scope_key(spec.scope, subject_ref, context)}"
        return self.allocator.next(spec.scope, scope_key)

    def _static(self, spec, subject_ref, context):
        return spec.value

    # ---- helpers ----

    @staticmethod
    def _transform(spec, value):
        if spec.transform is None or is_empty(value):
            return value
        return spec.transform.apply(value)

    def _first_related(self, subject_ref, relationship_type, context):
        """The highest-priority related entity as a dict, or None"""
        refs = self.store.related_of(
            subject_ref.kind, subject_ref.id, relationship_type, tenant_id=context.tenant_id, at=context.now
        )
        if not refs:
            return None
        related = self.lookup.load(refs[0].kind, refs[0].id)
        if related is None:
            logger.warning(f"{subject_ref} is {relationship_type} {refs[0]}, which no longer exists")
        return related

    @staticmethod
    def category_code(subject):
        category = subject.get('category')
        if not isinstance(category, dict):
            return None
        return category.get('abbreviation') or abbreviate(category.get('name')) or None

    def brand_code(self, subject_ref, context):
        brand = context.subject.get('brand')
        if not isinstance(brand, dict):
            brand = self._first_related(subject_ref, 'branded_by', context)
        if not brand:
            return None
        return brand.get('code') or brand.get('sku_abbreviation') or abbreviate(brand.get('name')) or None

    def scope_key(self, scope, subject_ref, context):
        """
        Counter key for a sequence scope. Missing dimensions become NONE so
        entities lacking them share one counter.
        """
        subject = context.subject
        if scope == 'global':
            return 'global'
        if scope == 'category':
            return self.category_code(subject) or MISSING_SCOPE
        if scope == 'brand_category':
            brand = self.brand_code(subject_ref, context) or MISSING_SCOPE
            category = self.category_code(subject) or MISSING_SCOPE
            return f"{brand}:{category}"
        if scope == 'daily':
            moment = timezone.localtime(context.now) if timezone.is_aware(context.now) else context.now
            return moment.date().isoformat()
        if scope == 'project':
            refs = self.store.related_of(
                subject_ref.kind, subject_ref.id, 'belongs_to', tenant_id=context.tenant_id, at=context.now
            )
            for ref in refs:
                if ref.kind == 'Project':
                    return ref.id
            return subject.get('project_id') or MISSING_SCOPE
        if scope == 'department':
            role = subject.get('role')
            if isinstance(role, dict):
                return role.get('code') or abbreviate(role.get('name')) or MISSING_SCOPE
            return MISSING_SCOPE
        if scope == 'type':
            return str(subject.get('type') or MISSING_SCOPE)
        raise ValueError(f"Unknown sequence scope: {scope}")


class TemplateResolver:
    """Renders compiled templates against a subject entity"""

    def __init__(self, resolvers):
        self.resolvers = resolvers

    def render(self, compiled, subject_ref, context):
        """
        Render ``compiled`` for ``subject_ref``.

        Each placeholder is resolved once even if it appears several times.
        Caller-supplied ``context.overrides`` replace resolution for the
        named components and are formatted like resolved values.
        """
        values = {}
        for name in compiled.placeholders:
            spec = compiled.components[name]
            override = context.overrides.get(name)
            if not is_empty(override):
                raw = override
            else:
                raw = self.resolvers.resolve(spec, subject_ref, context)
            values[name] = format_value(spec, raw)

        value = ''.join(values[text] if is_placeholder else text for is_placeholder, text in compiled.segments)
        errors = compiled.check(value)
        if errors:
            logger.debug(f"Rendered {value} for {subject_ref} with template {compiled.name}: {'; '.join(errors)}")
        return RenderResult(
            value=value,
            component_values=values,
            valid=not errors,
            pattern=compiled.pattern,
            errors=errors,
        )
