"""
SKU template grammar.

A template such as ``{category}-{supplier}-{format}-{sequence}`` is parsed
once into literal segments and placeholders, and its ``components`` JSON into
typed component specs. Anything malformed (unknown component type or
transform, a placeholder with no component, a bad validation pattern) is a
ConfigError raised here, before any entity is rendered.
"""
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from backend.core.exceptions import ConfigError

PLACEHOLDER_PATTERN = re.compile(r'\{([A-Za-z_][A-Za-z0-9_]*)\}')

SEQUENCE_SCOPES = ('global', 'category', 'brand_category', 'daily', 'project', 'department', 'type')

# Product extras as digits, e.g. ["VEGANO", "SIN_AZUCAR"] -> "89"
PRODUCT_EXTRA_CODES = {
    'ARTESANAL': '2',
    'INTEGRAL': '3',
    'LIGHT': '4',
    'ORGANICO': '5',
    'SIN_GLUTEN': '6',
    'KETO': '7',
    'VEGANO': '8',
    'SIN_AZUCAR': '9',
}


# ==================== TRANSFORMS ====================

def abbreviate(value):
    """Upper-case ASCII letters and digits only ("Café Sur" -> "CAFESUR")"""
    if value is None:
        return ''
    text = unicodedata.normalize('NFKD', str(value)).encode('ascii', 'ignore').decode('ascii')
    return re.sub(r'[^A-Za-z0-9]', '', text).upper()


def array_to_codes(value):
    """Map product extras to their digit codes, sorted and concatenated"""
    if value is None or value == '':
        return ''
    if isinstance(value, str):
        value = [value]
    codes = {PRODUCT_EXTRA_CODES[str(item).upper()] for item in value if str(item).upper() in PRODUCT_EXTRA_CODES}
    return ''.join(sorted(codes))


class TransformFunction(Enum):
    ABBREVIATE = 'abbreviate'
    ARRAY_TO_CODES = 'array_to_codes'


TRANSFORM_FUNCTIONS = {
    TransformFunction.ABBREVIATE: abbreviate,
    TransformFunction.ARRAY_TO_CODES: array_to_codes,
}


@dataclass(frozen=True)
class LiteralMap:
    """Case-sensitive value -> code table; unmapped values fall back to the component default"""
    mapping: dict

    def apply(self, value):
        if value is None:
            return None
        return self.mapping.get(str(value))


@dataclass(frozen=True)
class NamedFunction:
    function: TransformFunction

    def apply(self, value):
        return TRANSFORM_FUNCTIONS[self.function](value)


def parse_transform(raw, component_name):
    if raw is None:
        return None
    if isinstance(raw, dict):
        return LiteralMap({str(key): str(code) for key, code in raw.items()})
    if isinstance(raw, str):
        try:
            return NamedFunction(TransformFunction(raw))
        except ValueError:
            raise ConfigError(
                f"Component '{component_name}': unknown transform '{raw}'",
                details={'component': component_name, 'transform': raw},
            ) from None
    raise ConfigError(
        f"Component '{component_name}': transform must be a mapping or a function name",
        details={'component': component_name},
    )


# ==================== COMPONENT SPECS ====================

@dataclass(frozen=True)
class ComponentSpec:
    name: str
    length: Optional[int] = None
    default: Optional[str] = None
    description: str = ''

    type = None


@dataclass(frozen=True)
class CategoryCodeComponent(ComponentSpec):
    type = 'category_code'


@dataclass(frozen=True)
class SupplierCodeComponent(ComponentSpec):
    type = 'supplier_code'


@dataclass(frozen=True)
class EntityFieldComponent(ComponentSpec):
    field: str = ''
    transform: Optional[object] = None

    type = 'entity_field'


@dataclass(frozen=True)
class RelationshipComponent(ComponentSpec):
    relationship_type: str = ''
    field: str = ''
    transform: Optional[object] = None

    type = 'relationship'


@dataclass(frozen=True)
class DateComponent(ComponentSpec):
    format: str = 'YYMMDD'

    type = 'date'


@dataclass(frozen=True)
class SequenceComponent(ComponentSpec):
    scope: str = 'global'
    length: Optional[int] = 4

    type = 'sequence'


@dataclass(frozen=True)
class StaticComponent(ComponentSpec):
    value: str = ''

    type = 'static'


COMPONENT_TYPES = {
    cls.type: cls
    for cls in (
        CategoryCodeComponent, SupplierCodeComponent, EntityFieldComponent,
        RelationshipComponent, DateComponent, SequenceComponent, StaticComponent,
    )
}


def _require(raw, key, name):
    value = raw.get(key)
    if not value:
        raise ConfigError(
            f"Component '{name}' ({raw.get('type')}) requires '{key}'",
            details={'component': name, 'missing': key},
        )
    return value


def parse_component(name, raw):
    """Build a ComponentSpec from one entry of a template's ``components`` JSON"""
    if not isinstance(raw, dict):
        raise ConfigError(f"Component '{name}' must be an object", details={'component': name})

    component_type = raw.get('type')
    cls = COMPONENT_TYPES.get(component_type)
    if cls is None:
        raise ConfigError(
            f"Component '{name}': unknown type '{component_type}'",
            details={'component': name, 'type': component_type, 'known': sorted(COMPONENT_TYPES)},
        )

    common = {
        'name': name,
        'default': str(raw['default']) if raw.get('default') is not None else None,
        'description': raw.get('description', ''),
    }
    length = raw.get('length')
    if length is not None:
        if not isinstance(length, int) or isinstance(length, bool) or length < 1:
            raise ConfigError(
                f"Component '{name}': length must be a positive integer", details={'component': name}
            )
        common['length'] = length

    if cls is EntityFieldComponent:
        return cls(field=_require(raw, 'field', name), transform=parse_transform(raw.get('transform'), name), **common)
    if cls is RelationshipComponent:
        return cls(
            relationship_type=_require(raw, 'relationship_type', name),
            field=_require(raw, 'field', name),
            transform=parse_transform(raw.get('transform'), name),
            **common,
        )
    if cls is DateComponent:
        return cls(format=raw.get('format') or 'YYMMDD', **common)
    if cls is SequenceComponent:
        scope = raw.get('scope') or 'global'
        if scope not in SEQUENCE_SCOPES:
            raise ConfigError(
                f"Component '{name}': unknown sequence scope '{scope}'",
                details={'component': name, 'scope': scope, 'known': list(SEQUENCE_SCOPES)},
            )
        return cls(scope=scope, **common)
    if cls is StaticComponent:
        return cls(value=str(raw.get('value', '')), **common)
    return cls(**common)


# ==================== COMPILED TEMPLATES ====================

@dataclass
class CompiledTemplate:
    """A parsed SKU template ready to render"""
    name: str
    entity_type: str
    template: str
    segments: list
    components: dict
    pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    template_id: Optional[int] = None
    _regex: Optional[re.Pattern] = field(default=None, repr=False)

    @property
    def placeholders(self):
        """Placeholder names in order of first appearance"""
        return list(dict.fromkeys(text for is_placeholder, text in self.segments if is_placeholder))

    def check(self, value):
        """Return the list of validation rules ``value`` breaks"""
        errors = []
        if self._regex is not None and not self._regex.fullmatch(value):
            errors.append(f"does not match pattern {self.pattern}")
        if self.min_length is not None and len(value) < self.min_length:
            errors.append(f"shorter than {self.min_length} characters")
        if self.max_length is not None and len(value) > self.max_length:
            errors.append(f"longer than {self.max_length} characters")
        return errors

    def is_valid(self, value):
        return not self.check(value)

    @property
    def rule_description(self):
        if self.pattern:
            return self.pattern
        return f"length {self.min_length or 0}-{self.max_length or '*'}"


def split_template(template):
    """``'WO-{date}'`` -> ``[(False, 'WO-'), (True, 'date')]``"""
    segments = []
    position = 0
    for match in PLACEHOLDER_PATTERN.finditer(template):
        if match.start() > position:
            segments.append((False, template[position:match.start()]))
        segments.append((True, match.group(1)))
        position = match.end()
    if position < len(template):
        segments.append((False, template[position:]))
    return segments


def compile_template(template, components, validation_rules=None, name='', entity_type='',
                     template_id=None, registry=None):
    """
    Parse a template string and its components.

    Args:
        registry: optional RelationshipTypeRegistry; when given, relationship
            components must name registered types
    """
    if not template:
        raise ConfigError(f"SKU template '{name}' is empty", details={'template': name})

    segments = split_template(template)
    stray = [text for is_placeholder, text in segments if not is_placeholder and ('{' in text or '}' in text)]
    if stray:
        raise ConfigError(
            f"SKU template '{name}' has malformed placeholders: {template}",
            details={'template': name, 'segments': stray},
        )

    specs = {key: parse_component(key, raw) for key, raw in (components or {}).items()}
    missing = [text for is_placeholder, text in segments if is_placeholder and text not in specs]
    if missing:
        raise ConfigError(
            f"SKU template '{name}' uses placeholders without components: {', '.join(missing)}",
            details={'template': name, 'missing': missing},
        )

    if registry is not None:
        for spec in specs.values():
            if isinstance(spec, RelationshipComponent) and spec.relationship_type not in registry:
                raise ConfigError(
                    f"SKU template '{name}': component '{spec.name}' uses unknown relationship type "
                    f"'{spec.relationship_type}'",
                    details={'template': name, 'relationship_type': spec.relationship_type},
                )

    rules = validation_rules or {}
    pattern = rules.get('pattern') or None
    regex = None
    if pattern:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ConfigError(
                f"SKU template '{name}' has an invalid validation pattern {pattern}: {e}",
                details={'template': name, 'pattern': pattern},
            ) from None

    return CompiledTemplate(
        name=name,
        entity_type=entity_type,
        template=template,
        segments=segments,
        components=specs,
        pattern=pattern,
        min_length=rules.get('min_length'),
        max_length=rules.get('max_length'),
        template_id=template_id,
        _regex=regex,
    )


def compile_sku_template(sku_template, registry=None):
    """Compile an SKUTemplate row"""
    return compile_template(
        sku_template.template,
        sku_template.components,
        sku_template.validation_rules,
        name=sku_template.name,
        entity_type=sku_template.entity_type,
        template_id=sku_template.pk,
        registry=registry,
    )
