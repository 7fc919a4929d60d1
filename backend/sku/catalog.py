"""
Built-in SKU templates, seeded by ``manage.py seed_sku_templates``.

Relationship components follow edges outward from the entity being coded,
so a product's brand is reached over ``branded_by`` and its supplier over
``supplied_by`` (the mirrors of ``brand_of`` and ``supplier``).
"""
import logging

from django.db import transaction

from backend.core.cache_signals import suspend_cache_signals, invalidate_sku_templates_cache
from .components import compile_template

logger = logging.getLogger(__name__)


SKU_TEMPLATES = [
    # Product
    {
        'name': 'Standard Product SKU',
        'description': 'Standard format for finished products with category, supplier, and sequence',
        'entity_type': 'Product',
        'template': '{category}-{supplier}-{format}-{sequence}',
        'components': {
            'category': {
                'type': 'category_code',
                'length': 3,
                'description': 'Product category abbreviation',
                'default': 'GEN',
            },
            'supplier': {
                'type': 'supplier_code',
                'length': 3,
                'description': 'Primary supplier abbreviation',
                'default': 'GEN',
            },
            'format': {
                'type': 'entity_field',
                'field': 'format',
                'description': 'Product format (100=Envasados, 200=Congelados, 300=Frescos)',
                'default': '100',
                'transform': {
                    'ENVASADOS': '100',
                    'CONGELADOS': '200',
                    'FRESCOS': '300',
                },
            },
            'sequence': {
                'type': 'sequence',
                'length': 3,
                'scope': 'category',
                'description': 'Sequential number within category',
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'CAF-SMT-100-001',
        'validation_rules': {
            'min_length': 10,
            'max_length': 15,
            'pattern': '^[A-Z]{3}-[A-Z]{3}-[0-9]{3}-[0-9]{3}$',
        },
    },
    {
        'name': 'Simple Product SKU',
        'description': 'Simplified format for internal products',
        'entity_type': 'Product',
        'template': '{type_prefix}{sequence}',
        'components': {
            'type_prefix': {
                'type': 'entity_field',
                'field': 'type',
                'description': 'Product type prefix',
                'default': 'P',
                'transform': {
                    'TERMINADO': 'T',
                    'INSUMO': 'I',
                    'SERVICIO': 'S',
                },
            },
            'sequence': {
                'type': 'sequence',
                'length': 5,
                'scope': 'global',
                'description': 'Global sequential number',
            },
        },
        'is_active': True,
        'is_default': False,
        'example_output': 'T00001',
        'validation_rules': {
            'min_length': 6,
            'max_length': 6,
            'pattern': '^[TIS][0-9]{5}$',
        },
    },
    {
        'name': 'Brand-Supplier Product SKU',
        'description': 'Format including brand and supplier information',
        'entity_type': 'Product',
        'template': '{brand}-{supplier}-{category}-{extras}-{sequence}',
        'components': {
            'brand': {
                'type': 'relationship',
                'relationship_type': 'branded_by',
                'field': 'name',
                'length': 3,
                'description': 'Brand abbreviation',
                'default': 'OWN',
                'transform': 'abbreviate',
            },
            'supplier': {
                'type': 'relationship',
                'relationship_type': 'supplied_by',
                'field': 'sku_abbreviation',
                'length': 3,
                'description': 'Supplier code',
                'default': 'GEN',
            },
            'category': {
                'type': 'category_code',
                'length': 3,
                'description': 'Category code',
                'default': 'GEN',
            },
            'extras': {
                'type': 'entity_field',
                'field': 'extras',
                'description': 'Product extras (Vegano=8, Sin Azucar=9, etc.)',
                'default': '0',
                'transform': 'array_to_codes',
            },
            'sequence': {
                'type': 'sequence',
                'length': 2,
                'scope': 'brand_category',
                'description': 'Sequential within brand-category',
            },
        },
        'is_active': True,
        'is_default': False,
        'example_output': 'SMT-LUZ-CAF-89-01',
        'validation_rules': {},
    },

    # Work orders
    {
        'name': 'Standard Work Order SKU',
        'description': 'Work order identification with date and product',
        'entity_type': 'WorkOrder',
        'template': 'WO-{date}-{product}-{sequence}',
        'components': {
            'date': {
                'type': 'date',
                'format': 'YYMMDD',
                'description': 'Work order date',
            },
            'product': {
                'type': 'relationship',
                'relationship_type': 'produces',
                'field': 'sku',
                'length': 8,
                'description': 'Product SKU being produced',
                'default': 'UNKNOWN',
            },
            'sequence': {
                'type': 'sequence',
                'length': 3,
                'scope': 'daily',
                'description': 'Daily sequence number',
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'WO-241201-CAF-SMT-001',
        'validation_rules': {},
    },

    # Tasks
    {
        'name': 'Project Task SKU',
        'description': 'Task identification within projects',
        'entity_type': 'Task',
        'template': '{project_code}-T{sequence}',
        'components': {
            'project_code': {
                'type': 'relationship',
                'relationship_type': 'belongs_to',
                'field': 'name',
                'length': 6,
                'description': 'Project code/abbreviation',
                'default': 'PROJ',
                'transform': 'abbreviate',
            },
            'sequence': {
                'type': 'sequence',
                'length': 4,
                'scope': 'project',
                'description': 'Sequential within project',
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'MURALL-T0001',
        'validation_rules': {},
    },

    # Contacts
    {
        'name': 'Contact Reference Code',
        'description': 'Reference codes for contacts and suppliers',
        'entity_type': 'Contact',
        'template': '{type_prefix}-{sequence}',
        'components': {
            'type_prefix': {
                'type': 'entity_field',
                'field': 'type',
                'description': 'Contact type prefix',
                'default': 'CNT',
                'transform': {
                    'supplier': 'SUP',
                    'customer': 'CUS',
                    'brand': 'BRD',
                    'important': 'VIP',
                },
            },
            'sequence': {
                'type': 'sequence',
                'length': 4,
                'scope': 'type',
                'description': 'Sequential within contact type',
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'SUP-0001',
        'validation_rules': {},
    },

    # Budgets
    {
        'name': 'Budget Reference Code',
        'description': 'Budget identification with project and period',
        'entity_type': 'Budget',
        'template': 'BGT-{project}-{period}-{category}',
        'components': {
            'project': {
                'type': 'relationship',
                'relationship_type': 'belongs_to',
                'field': 'name',
                'length': 4,
                'description': 'Project abbreviation',
                'default': 'GEN',
                'transform': 'abbreviate',
            },
            'period': {
                'type': 'date',
                'format': 'YYYY',
                'description': 'Budget year',
            },
            'category': {
                'type': 'entity_field',
                'field': 'category',
                'description': 'Budget category',
                'default': 'OPX',
                'transform': {
                    'OPEX': 'OPX',
                    'CAPEX': 'CPX',
                    'REVENUE': 'REV',
                    'OTHER': 'OTH',
                },
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'BGT-MUR-2024-OPX',
        'validation_rules': {},
    },

    # Employees
    {
        'name': 'Employee Code',
        'description': 'Employee identification code',
        'entity_type': 'User',
        'template': 'EMP-{department}-{sequence}',
        'components': {
            'department': {
                'type': 'entity_field',
                'field': 'role.name',
                'length': 3,
                'description': 'Department/Role code',
                'default': 'GEN',
                'transform': 'abbreviate',
            },
            'sequence': {
                'type': 'sequence',
                'length': 3,
                'scope': 'department',
                'description': 'Sequential within department',
            },
        },
        'is_active': True,
        'is_default': True,
        'example_output': 'EMP-ADM-001',
        'validation_rules': {},
    },
]


def validate_catalog(registry=None):
    """Compile every built-in template; raises ConfigError on the first bad one"""
    for values in SKU_TEMPLATES:
        compile_template(
            values['template'],
            values['components'],
            values['validation_rules'],
            name=values['name'],
            entity_type=values['entity_type'],
            registry=registry,
        )


def seed_sku_templates(clear=False):
    """
    Create or update the built-in templates by name.

    Returns:
        (created, updated) counts
    """
    from .models import SKUTemplate

    validate_catalog()
    created_count = 0
    updated_count = 0

    with suspend_cache_signals(), transaction.atomic():
        if clear:
            deleted, _ = SKUTemplate.objects.all().delete()
            logger.info(f"Cleared {deleted} SKU template row(s)")
        for values in SKU_TEMPLATES:
            defaults = dict(values)
            name = defaults.pop('name')
            _, created = SKUTemplate.objects.update_or_create(name=name, defaults=defaults)
            if created:
                created_count += 1
            else:
                updated_count += 1

    invalidate_sku_templates_cache()
    logger.info(f"Seeded SKU templates: {created_count} created, {updated_count} updated")
    return created_count, updated_count
