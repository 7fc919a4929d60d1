"""
Test suite for SKU generation
Tests: template grammar, component transforms, sequence allocators, rendering,
generation/versioning/uniqueness, template defaults, API endpoints and commands
"""
import threading
from datetime import datetime, timedelta
from io import StringIO
from unittest import mock

from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import IntegrityError, OperationalError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework import status

from backend.core.exceptions import (
    ConfigError, EntityNotFound, NoTemplateConfigured, SequenceContention, TemplateRenderInvalid,
)
from backend.core.entities import EntityRef
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.relationships.catalog import build_catalog_registry, seed_relationship_types
from backend.relationships.registry import invalidate_registry
from backend.relationships.store import EntityRelationshipStore
from backend.relationships.types import NewEdgeRequest
from backend.sku.catalog import SKU_TEMPLATES, seed_sku_templates, validate_catalog
from backend.sku.components import (
    LiteralMap, SequenceComponent, StaticComponent, abbreviate, array_to_codes,
    compile_template, parse_component, split_template,
)
from backend.sku.engine import SKUEngine, invalidate_template_cache
from backend.sku.models import EntitySKU, SequenceCounter, SKUTemplate
from backend.sku.resolver import (
    ComponentResolverSet, DataContext, TemplateResolver, format_date, format_value,
)
from backend.sku.sequences import DatabaseSequenceAllocator, InMemorySequenceAllocator


class ComponentGrammarTests(SimpleTestCase):
    """Test template parsing, component specs and transforms"""

    def test_abbreviate(self):
        """Test abbreviate strips accents, spaces and punctuation"""
        self.assertEqual(abbreviate('Café Sur'), 'CAFESUR')
        self.assertEqual(abbreviate('Muralla-Café 2'), 'MURALLACAFE2')
        self.assertEqual(abbreviate(None), '')

    def test_array_to_codes(self):
        """Test product extras become sorted digit codes"""
        self.assertEqual(array_to_codes(['SIN_AZUCAR', 'VEGANO']), '89')
        self.assertEqual(array_to_codes(['vegano', 'UNKNOWN', 'ARTESANAL']), '28')
        self.assertEqual(array_to_codes('KETO'), '7')
        self.assertEqual(array_to_codes([]), '')

    def test_literal_map_is_case_sensitive(self):
        """Test literal maps only match exact keys"""
        transform = LiteralMap({'ENVASADOS': '100'})
        self.assertEqual(transform.apply('ENVASADOS'), '100')
        self.assertIsNone(transform.apply('envasados'))

    def test_split_template(self):
        """Test templates split into literal and placeholder segments"""
        self.assertEqual(
            split_template('WO-{date}-{sequence}'),
            [(False, 'WO-'), (True, 'date'), (False, '-'), (True, 'sequence')]
        )

    def test_parse_component_types(self):
        """Test each component type parses into its spec"""
        spec = parse_component('seq', {'type': 'sequence', 'length': 3, 'scope': 'category'})
        self.assertIsInstance(spec, SequenceComponent)
        self.assertEqual((spec.length, spec.scope), (3, 'category'))

        spec = parse_component('seq', {'type': 'sequence'})
        self.assertEqual((spec.length, spec.scope), (4, 'global'))

        spec = parse_component('lit', {'type': 'static', 'value': 'X'})
        self.assertIsInstance(spec, StaticComponent)

    def test_parse_component_errors(self):
        """Test malformed components are ConfigErrors"""
        bad = [
            {'type': 'bogus'},
            {'type': 'entity_field'},
            {'type': 'relationship', 'field': 'name'},
            {'type': 'sequence', 'scope': 'weekly'},
            {'type': 'sequence', 'length': 0},
            {'type': 'entity_field', 'field': 'name', 'transform': 'reverse'},
            {'type': 'entity_field', 'field': 'name', 'transform': 5},
            'category_code',
        ]
        for raw in bad:
            with self.subTest(raw=raw):
                with self.assertRaises(ConfigError):
                    parse_component('x', raw)

    def test_compile_template_errors(self):
        """Test template-level problems are ConfigErrors"""
        with self.assertRaises(ConfigError):
            compile_template('', {})
        with self.assertRaises(ConfigError):
            compile_template('{category}-{missing}', {'category': {'type': 'category_code'}})
        with self.assertRaises(ConfigError):
            compile_template('{category', {'category': {'type': 'category_code'}})
        with self.assertRaises(ConfigError):
            compile_template('{category}', {'category': {'type': 'category_code'}}, {'pattern': '[A-Z'})

    def test_compile_checks_relationship_types(self):
        """Test relationship components must name registered types when a registry is given"""
        components = {'brand': {'type': 'relationship', 'relationship_type': 'sponsored_by', 'field': 'name'}}
        compile_template('{brand}', components)
        with self.assertRaises(ConfigError):
            compile_template('{brand}', components, registry=build_catalog_registry())

    def test_validation_rules(self):
        """Test pattern and length rules"""
        compiled = compile_template(
            '{category}', {'category': {'type': 'category_code'}},
            {'pattern': '^[A-Z]{3}$', 'min_length': 3, 'max_length': 3}
        )
        self.assertTrue(compiled.is_valid('CAF'))
        self.assertFalse(compiled.is_valid('CA'))
        self.assertEqual(len(compiled.check('ca')), 2)

    def test_trailing_newline_breaks_anchored_pattern(self):
        """Test a value ending in a newline never satisfies an anchored pattern"""
        compiled = compile_template(
            '{a}-{b}-{c}-{d}',
            {
                'a': {'type': 'static', 'value': 'ABC'},
                'b': {'type': 'static', 'value': 'DEF'},
                'c': {'type': 'static', 'value': '001'},
                'd': {'type': 'entity_field', 'field': 'code'},
            },
            {'pattern': '^[A-Z]{3}-[A-Z]{3}-[0-9]{3}-[0-9]{3}$'},
        )
        self.assertFalse(compiled.is_valid('ABC-DEF-001-456\n'))

        resolver = TemplateResolver(ComponentResolverSet(InMemorySequenceAllocator(), None, None))
        context = DataContext(subject={'code': '456\n'}, now=datetime(2024, 12, 1, 10, 0))
        result = resolver.render(compiled, EntityRef('Product', 1), context)
        self.assertEqual(result.value, 'ABC-DEF-001-456\n')
        self.assertFalse(result.valid)

        context = DataContext(subject={'code': '456'}, now=datetime(2024, 12, 1, 10, 0))
        self.assertTrue(resolver.render(compiled, EntityRef('Product', 1), context).valid)

    def test_repeated_placeholder_listed_once(self):
        """Test placeholders are unique in order of appearance"""
        compiled = compile_template('{a}-{b}-{a}', {'a': {'type': 'static', 'value': 'X'},
                                                    'b': {'type': 'static', 'value': 'Y'}})
        self.assertEqual(compiled.placeholders, ['a', 'b'])

    def test_builtin_templates_compile(self):
        """Test every built-in template compiles against the built-in relationship types"""
        validate_catalog(build_catalog_registry())
        self.assertEqual(sum(1 for t in SKU_TEMPLATES if t['entity_type'] == 'Product' and t['is_default']), 1)


class FormattingTests(SimpleTestCase):
    """Test value formatting"""

    def test_sequence_padded_never_truncated(self):
        """Test sequences are zero-padded but keep every digit"""
        spec = SequenceComponent(name='seq', length=3)
        self.assertEqual(format_value(spec, 7), '007')
        self.assertEqual(format_value(spec, 1234), '1234')

    def test_default_and_truncation(self):
        """Test empty values fall back to the default and text is upper-cased and truncated"""
        spec = StaticComponent(name='x', length=3, default='gen')
        self.assertEqual(format_value(spec, None), 'GEN')
        self.assertEqual(format_value(spec, ''), 'GEN')
        self.assertEqual(format_value(spec, 'coffee'), 'COF')
        self.assertEqual(format_value(StaticComponent(name='x'), None), '')

    def test_format_date(self):
        """Test date tokens"""
        moment = datetime(2024, 12, 1, 9, 5, 7)
        self.assertEqual(format_date(moment, 'YYMMDD'), '241201')
        self.assertEqual(format_date(moment, 'YYYY'), '2024')
        self.assertEqual(format_date(moment, 'YYYY-MM-DD HH:mm:ss'), '2024-12-01 09:05:07')


class InMemorySequenceAllocatorTests(SimpleTestCase):
    """Test the lock-per-scope allocator"""

    def test_concurrent_draws_are_gapless(self):
        """Test N concurrent draws on one scope return exactly 1..N"""
        allocator = InMemorySequenceAllocator()
        drawn = []
        drawn_lock = threading.Lock()

        def draw():
            for _ in range(50):
                value = allocator.next('category', 'Product|CAF')
                with drawn_lock:
                    drawn.append(value)

        threads = [threading.Thread(target=draw) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(drawn), list(range(1, 401)))
        self.assertEqual(allocator.peek('category', 'Product|CAF'), 400)

    def test_scopes_are_independent(self):
        """Test each scope has its own counter"""
        allocator = InMemorySequenceAllocator(initial={('category', 'Product|PAN'): 9})
        self.assertEqual(allocator.next('category', 'Product|CAF'), 1)
        self.assertEqual(allocator.next('category', 'Product|PAN'), 10)
        self.assertEqual(allocator.next('global', 'Product|global'), 1)


class DatabaseSequenceAllocatorTests(TestCase):
    """Test the database-backed allocator"""

    def test_next_and_peek(self):
        """Test counters start at 1 and increase per scope"""
        allocator = DatabaseSequenceAllocator()
        self.assertEqual(allocator.peek('category', 'Product|CAF'), 0)
        self.assertEqual(allocator.next('category', 'Product|CAF'), 1)
        self.assertEqual(allocator.next('category', 'Product|CAF'), 2)
        self.assertEqual(allocator.next('category', 'Product|PAN'), 1)
        self.assertEqual(allocator.peek('category', 'Product|CAF'), 2)
        self.assertEqual(SequenceCounter.objects.count(), 2)

    def test_contention_gives_up(self):
        """Test a persistently failing scope raises SequenceContention after backing off"""
        sleeps = []
        allocator = DatabaseSequenceAllocator(max_retries=3, backoff=0.01, sleep=sleeps.append)
        with mock.patch.object(allocator, '_increment', side_effect=OperationalError('database is locked')):
            with self.assertRaises(SequenceContention) as ctx:
                allocator.next('daily', 'WorkOrder|2024-12-01')

        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(sleeps, [0.01, 0.02])

    def test_contention_then_success(self):
        """Test a transient failure is retried"""
        allocator = DatabaseSequenceAllocator(max_retries=3, backoff=0, sleep=lambda seconds: None)
        real_increment = allocator._increment
        calls = []

        def flaky(scope_kind, scope_key):
            calls.append(scope_key)
            if len(calls) == 1:
                raise OperationalError('database is locked')
            return real_increment(scope_kind, scope_key)

        with mock.patch.object(allocator, '_increment', side_effect=flaky):
            self.assertEqual(allocator.next('global', 'x'), 1)
        self.assertEqual(len(calls), 2)
        self.assertEqual(allocator.peek('global', 'x'), 1)


class ConcurrentDatabaseSequenceTests(TransactionTestCase):
    """Test the database-backed allocator with real concurrent connections"""

    def test_concurrent_draws_are_unique_and_gapless(self):
        """Test threads drawing from one scope get exactly 1..N between them"""
        allocator = DatabaseSequenceAllocator(max_retries=30, backoff=0.005)
        drawn = []
        errors = []
        drawn_lock = threading.Lock()

        def draw():
            try:
                for _ in range(15):
                    value = allocator.next('category', 'Product|CAF')
                    with drawn_lock:
                        drawn.append(value)
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=draw) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(sorted(drawn), list(range(1, 61)))
        self.assertEqual(allocator.peek('category', 'Product|CAF'), 60)
        self.assertEqual(SequenceCounter.objects.count(), 1)


class SKUTestCase(TestCase):
    """Seeds relationship types and SKU templates"""

    def setUp(self):
        cache.clear()
        invalidate_registry()
        seed_relationship_types()
        seed_sku_templates()
        self.store = EntityRelationshipStore()
        self.engine = SKUEngine(store=self.store)

    def tearDown(self):
        invalidate_registry()

    def link(self, relationship_type, source, target):
        return self.store.upsert(NewEdgeRequest(
            relationship_type=relationship_type,
            source_type=type(source).__name__,
            source_id=source.pk,
            target_type=type(target).__name__,
            target_id=target.pk,
        ))

    def template(self, name):
        return SKUTemplate.objects.get(name=name)


class ProductSKUGenerationTests(SKUTestCase):
    """Test product SKU generation"""

    def setUp(self):
        super().setUp()
        self.cafe = TestDataFactory.create_category(name='Cafe', abbreviation='CAF')
        self.vendor = TestDataFactory.create_vendor(name='Sumat', sku_abbreviation='SMT')

    def test_simple_sku(self):
        """Test the simple template renders type prefix plus global sequence"""
        template = self.template('Simple Product SKU')
        first = TestDataFactory.create_product(product_type='TERMINADO')
        second = TestDataFactory.create_product(product_type='INSUMO')

        sku = self.engine.generate('Product', first.pk, template_id=template.pk)
        self.assertEqual(sku.sku_value, 'T00001')
        self.assertEqual(sku.version, 1)
        self.assertEqual(sku.components, {'type_prefix': 'T', 'sequence': '00001'})

        sku = self.engine.generate('Product', second.pk, template_id=template.pk)
        self.assertEqual(sku.sku_value, 'I00002')

    def test_standard_sku_with_supplier(self):
        """Test the default product template uses category, supplier and format"""
        product = TestDataFactory.create_product(category=self.cafe, format='ENVASADOS')
        self.link('supplier', self.vendor, product)

        sku = self.engine.generate('Product', product.pk)
        self.assertEqual(sku.sku_value, 'CAF-SMT-100-001')
        self.assertEqual(sku.template.name, 'Standard Product SKU')

    def test_missing_values_fall_back_to_defaults(self):
        """Test missing supplier and unmapped format use component defaults"""
        product = TestDataFactory.create_product(category=self.cafe)
        sku = self.engine.generate('Product', product.pk)
        self.assertEqual(sku.sku_value, 'CAF-GEN-100-001')

    def test_category_scoped_sequence(self):
        """Test each category has its own counter"""
        bread = TestDataFactory.create_category(name='Pan', abbreviation='PAN')
        values = [
            self.engine.generate('Product', TestDataFactory.create_product(category=category,
                                                                           format='FRESCOS').pk).sku_value
            for category in (self.cafe, self.cafe, bread, self.cafe)
        ]
        self.assertEqual(values, ['CAF-GEN-300-001', 'CAF-GEN-300-002', 'PAN-GEN-300-001', 'CAF-GEN-300-003'])
        self.assertEqual(DatabaseSequenceAllocator().peek('category', 'Product|CAF'), 3)

    def test_category_without_abbreviation(self):
        """Test the category name is abbreviated when no code is set"""
        category = TestDataFactory.create_category(name='Té verde')
        product = TestDataFactory.create_product(category=category, format='CONGELADOS')
        sku = self.engine.generate('Product', product.pk)
        self.assertEqual(sku.sku_value, 'TEV-GEN-200-001')

    def test_custom_components_override_resolution(self):
        """Test caller-supplied values replace resolved ones and are formatted"""
        product = TestDataFactory.create_product(category=self.cafe)
        sku = self.engine.generate('Product', product.pk, custom_components={'supplier': 'luz', 'format': ''})
        self.assertEqual(sku.sku_value, 'CAF-LUZ-100-001')

    def test_brand_supplier_sku(self):
        """Test relationship components follow branded_by and supplied_by"""
        brand = TestDataFactory.create_brand(name='Sumat')
        vendor = TestDataFactory.create_vendor(name='Luz', sku_abbreviation='LUZ')
        product = TestDataFactory.create_product(category=self.cafe, extras=['VEGANO', 'SIN_AZUCAR'])
        self.link('brand_of', brand, product)
        self.link('supplier', vendor, product)

        template = self.template('Brand-Supplier Product SKU')
        sku = self.engine.generate('Product', product.pk, template_id=template.pk)
        self.assertEqual(sku.sku_value, 'SUM-LUZ-CAF-89-01')
        self.assertEqual(DatabaseSequenceAllocator().peek('brand_category', 'Product|SUMAT:CAF'), 1)

    def test_invalid_render_persists_nothing(self):
        """Test a value breaking the pattern raises and stores nothing, though the sequence draw is spent"""
        category = TestDataFactory.create_category(name='Ca', abbreviation='CA')
        product = TestDataFactory.create_product(category=category)

        with self.assertRaises(TemplateRenderInvalid) as ctx:
            self.engine.generate('Product', product.pk)

        self.assertEqual(ctx.exception.details['value'], 'CA-GEN-100-001')
        self.assertFalse(EntitySKU.objects.exists())
        self.assertEqual(DatabaseSequenceAllocator().peek('category', 'Product|CA'), 1)
        self.assertEqual(self.template('Standard Product SKU').usage_count, 0)

    def test_missing_entity(self):
        """Test generating for an unknown entity raises EntityNotFound"""
        with self.assertRaises(EntityNotFound):
            self.engine.generate('Product', 999999)

    def test_no_template_configured(self):
        """Test kinds without a default template raise NoTemplateConfigured"""
        with self.assertRaises(NoTemplateConfigured):
            self.engine.generate('Vendor', self.vendor.pk)

    def test_template_for_other_kind_rejected(self):
        """Test an explicit template must match the entity kind"""
        product = TestDataFactory.create_product()
        with self.assertRaises(ConfigError):
            self.engine.generate('Product', product.pk, template_id=self.template('Employee Code').pk)

    def test_inactive_template_rejected(self):
        """Test an inactive explicit template is not found"""
        template = self.template('Simple Product SKU')
        template.is_active = False
        template.save()
        product = TestDataFactory.create_product()
        with self.assertRaises(EntityNotFound):
            self.engine.generate('Product', product.pk, template_id=template.pk)

    def test_versioning(self):
        """Test regenerating creates a new active version and deactivates the old one"""
        product = TestDataFactory.create_product(category=self.cafe)
        first = self.engine.generate('Product', product.pk)
        second = self.engine.generate('Product', product.pk)

        self.assertEqual((first.version, second.version), (1, 2))
        self.assertEqual(second.sku_value, 'CAF-GEN-100-002')
        first.refresh_from_db()
        self.assertFalse(first.is_active)
        self.assertTrue(second.is_active)
        self.assertEqual(EntitySKU.objects.filter(entity_type='Product', entity_id=str(product.pk),
                                                  is_active=True).count(), 1)
        self.assertEqual(self.engine.get_entity_sku('Product', product.pk).pk, second.pk)

    def test_lost_version_race_is_retried(self):
        """Test a version taken by a concurrent generation is allocated again"""
        product = TestDataFactory.create_product(category=self.cafe)
        real_store = self.engine._store_version
        calls = []

        def racing(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                raise IntegrityError('UNIQUE constraint failed: uniq_entity_sku_version')
            return real_store(*args, **kwargs)

        with mock.patch.object(self.engine, '_store_version', side_effect=racing):
            sku = self.engine.generate('Product', product.pk)

        self.assertEqual(len(calls), 2)
        self.assertEqual((sku.sku_value, sku.version), ('CAF-GEN-100-001', 1))
        self.assertEqual(EntitySKU.objects.count(), 1)
        self.assertEqual(self.template('Standard Product SKU').usage_count, 1)

    def test_version_race_gives_up_with_contention(self):
        """Test a version that stays contended raises SequenceContention and stores nothing"""
        product = TestDataFactory.create_product(category=self.cafe)
        with mock.patch.object(self.engine, '_store_version',
                               side_effect=IntegrityError('UNIQUE constraint failed')) as store_version:
            with self.assertRaises(SequenceContention) as ctx:
                self.engine.generate('Product', product.pk)

        self.assertEqual(store_version.call_count, 3)
        self.assertEqual(ctx.exception.scope_kind, 'sku_version')
        self.assertFalse(EntitySKU.objects.exists())
        self.assertEqual(self.template('Standard Product SKU').usage_count, 0)

    def test_usage_and_audit(self):
        """Test generation bumps template usage and writes an audit entry"""
        user = TestDataFactory.create_user()
        product = TestDataFactory.create_product(category=self.cafe)
        sku = self.engine.generate('Product', product.pk, user=user)

        template = self.template('Standard Product SKU')
        self.assertEqual(template.usage_count, 1)
        self.assertIsNotNone(template.last_used_at)
        self.assertEqual(sku.generated_by, user)
        audit = AuditLog.objects.get(action='sku_generate')
        self.assertEqual(audit.object_reference, 'CAF-GEN-100-001')

    def test_unique_suffix(self):
        """Test a value held by another entity gets a -NN suffix"""
        contact = TestDataFactory.create_contact(contact_type='supplier')
        other = TestDataFactory.create_contact(contact_type='supplier')
        EntitySKU.objects.create(entity_type='Contact', entity_id=str(other.pk), sku_value='SUP-0001')

        sku = self.engine.generate('Contact', contact.pk)
        self.assertEqual(sku.sku_value, 'SUP-0001-01')

    def test_unique_suffix_must_match_pattern(self):
        """Test a suffixed value breaking the template's rules is rejected"""
        product = TestDataFactory.create_product()
        other = TestDataFactory.create_product()
        EntitySKU.objects.create(entity_type='Product', entity_id=str(other.pk), sku_value='T00001')

        with self.assertRaises(TemplateRenderInvalid):
            self.engine.generate('Product', product.pk, template_id=self.template('Simple Product SKU').pk)
        self.assertFalse(EntitySKU.objects.filter(entity_id=str(product.pk)).exists())

    def test_validate_sku(self):
        """Test candidate SKU validation"""
        product = TestDataFactory.create_product(category=self.cafe)
        self.engine.generate('Product', product.pk)

        self.assertEqual(self.engine.validate_sku('AB'), {'is_valid': False, 'reason': 'SKU too short'})
        self.assertEqual(self.engine.validate_sku('CAF-GEN-100-001'),
                         {'is_valid': False, 'reason': 'SKU already exists'})
        self.assertEqual(self.engine.validate_sku('CAF-GEN-100-999'), {'is_valid': True, 'reason': None})

    def test_generate_missing(self):
        """Test bulk generation skips entities with SKUs and collects failures"""
        done = TestDataFactory.create_product(category=self.cafe)
        self.engine.generate('Product', done.pk)
        todo = TestDataFactory.create_product(category=self.cafe)
        broken = TestDataFactory.create_product(category=TestDataFactory.create_category(abbreviation='X'))

        generated, failures = self.engine.generate_missing('Product', [done.pk, todo.pk, broken.pk])

        self.assertEqual([sku.entity_id for sku in generated], [str(todo.pk)])
        self.assertEqual([entity_id for entity_id, _ in failures], [str(broken.pk)])


class SKUSequenceCommitTests(TransactionTestCase):
    """Test sequence draws commit apart from the SKU write"""

    def setUp(self):
        cache.clear()
        invalidate_registry()
        seed_relationship_types()
        seed_sku_templates()
        self.engine = SKUEngine()

    def tearDown(self):
        invalidate_registry()

    def test_draw_survives_failed_write(self):
        """Test a failing SKU write leaves the sequence draw committed and nothing else"""
        category = TestDataFactory.create_category(name='Cafe', abbreviation='CAF')
        product = TestDataFactory.create_product(category=category)

        with mock.patch.object(self.engine, '_store_version', side_effect=RuntimeError('disk full')):
            with self.assertRaises(RuntimeError):
                self.engine.generate('Product', product.pk)

        self.assertFalse(EntitySKU.objects.exists())
        self.assertEqual(SKUTemplate.objects.get(name='Standard Product SKU').usage_count, 0)
        self.assertEqual(DatabaseSequenceAllocator().peek('category', 'Product|CAF'), 1)

        sku = self.engine.generate('Product', product.pk)
        self.assertEqual(sku.sku_value, 'CAF-GEN-100-002')


class OtherEntitySKUTests(SKUTestCase):
    """Test the built-in templates of non-product kinds"""

    def test_task_sku_uses_project_relationship(self):
        """Test task codes come from the belongs_to project and count per project"""
        project = TestDataFactory.create_project(name='Muralla Cafe')
        first = TestDataFactory.create_task()
        second = TestDataFactory.create_task()
        self.link('belongs_to', first, project)
        self.link('belongs_to', second, project)

        self.assertEqual(self.engine.generate('Task', first.pk).sku_value, 'MURALL-T0001')
        self.assertEqual(self.engine.generate('Task', second.pk).sku_value, 'MURALL-T0002')
        self.assertEqual(DatabaseSequenceAllocator().peek('project', f'Task|{project.pk}'), 2)

    def test_task_without_project(self):
        """Test tasks without a project share the NONE scope and the default code"""
        task = TestDataFactory.create_task()
        self.assertEqual(self.engine.generate('Task', task.pk).sku_value, 'PROJ-T0001')
        self.assertEqual(DatabaseSequenceAllocator().peek('project', 'Task|NONE'), 1)

    def test_expired_relationship_is_ignored(self):
        """Test relationship components only follow edges valid at generation time"""
        project = TestDataFactory.create_project(name='Muralla')
        task = TestDataFactory.create_task()
        self.store.upsert(NewEdgeRequest(
            relationship_type='belongs_to', source_type='Task', source_id=task.pk,
            target_type='Project', target_id=project.pk,
            valid_until=timezone.now() - timedelta(days=1),
        ))
        self.assertEqual(self.engine.generate('Task', task.pk).sku_value, 'PROJ-T0001')

    def test_work_order_sku(self):
        """Test work order codes use the date, produced product and a daily sequence"""
        fixed = timezone.make_aware(datetime(2024, 12, 1, 12, 0))
        engine = SKUEngine(store=self.store, clock=lambda: fixed)
        product = TestDataFactory.create_product(sku='CAFSMT01')
        work_order = TestDataFactory.create_work_order()
        self.link('produces', work_order, product)

        sku = engine.generate('WorkOrder', work_order.pk)
        self.assertEqual(sku.sku_value, 'WO-241201-CAFSMT01-001')
        self.assertEqual(DatabaseSequenceAllocator().peek('daily', 'WorkOrder|2024-12-01'), 1)

    def test_contact_sku_by_type(self):
        """Test contact prefixes map by type with separate counters"""
        supplier = TestDataFactory.create_contact(contact_type='supplier')
        customer = TestDataFactory.create_contact(contact_type='customer')
        other = TestDataFactory.create_contact(contact_type='other')

        self.assertEqual(self.engine.generate('Contact', supplier.pk).sku_value, 'SUP-0001')
        self.assertEqual(self.engine.generate('Contact', customer.pk).sku_value, 'CUS-0001')
        self.assertEqual(self.engine.generate('Contact', other.pk).sku_value, 'CNT-0001')

    def test_budget_sku(self):
        """Test budget codes use the project, year and category"""
        fixed = timezone.make_aware(datetime(2024, 6, 1, 12, 0))
        engine = SKUEngine(store=self.store, clock=lambda: fixed)
        project = TestDataFactory.create_project(name='Muralla')
        budget = TestDataFactory.create_budget(category='CAPEX')
        self.link('belongs_to', budget, project)

        self.assertEqual(engine.generate('Budget', budget.pk).sku_value, 'BGT-MURA-2024-CPX')

    def test_employee_sku(self):
        """Test employee codes use the role and count per department"""
        role = TestDataFactory.create_role(name='Administracion')
        first = TestDataFactory.create_user(role=role)
        second = TestDataFactory.create_user(role=role)

        self.assertEqual(self.engine.generate('User', first.pk).sku_value, 'EMP-ADM-001')
        self.assertEqual(self.engine.generate('User', second.pk).sku_value, 'EMP-ADM-002')


class SKUTemplateDefaultTests(SKUTestCase):
    """Test default template selection and caching"""

    def test_default_template(self):
        """Test the default template is returned per kind"""
        self.assertEqual(self.engine.get_default_template('Product').name, 'Standard Product SKU')
        self.assertEqual(self.engine.get_default_template('Task').name, 'Project Task SKU')

    def test_set_default_template(self):
        """Test switching the default unsets the previous one and takes effect immediately"""
        self.engine.get_default_template('Product')
        simple = self.template('Simple Product SKU')
        self.engine.set_default_template(simple.pk)

        self.assertFalse(self.template('Standard Product SKU').is_default)
        self.assertEqual(self.engine.get_default_template('Product').pk, simple.pk)
        product = TestDataFactory.create_product()
        self.assertEqual(self.engine.generate('Product', product.pk).sku_value, 'T00001')
        self.assertTrue(AuditLog.objects.filter(action='sku_template_default').exists())

    def test_duplicate_defaults(self):
        """Test two shared defaults for one kind are a configuration error"""
        SKUTemplate.objects.filter(name='Simple Product SKU').update(is_default=True)
        invalidate_template_cache('Product')
        with self.assertRaises(ConfigError):
            self.engine.get_default_template('Product')
        self.assertEqual(len(self.engine.check_templates()), 1)

    def test_deactivated_default(self):
        """Test deactivating the only default leaves the kind unconfigured"""
        template = self.template('Project Task SKU')
        self.engine.get_default_template('Task')
        template.is_active = False
        template.save()
        with self.assertRaises(NoTemplateConfigured):
            self.engine.get_default_template('Task')

    def test_tenant_default_precedence(self):
        """Test a tenant's own default wins over the shared one"""
        SKUTemplate.objects.create(
            name='Tenant Product SKU',
            entity_type='Product',
            template='TEN-{sequence}',
            components={'sequence': {'type': 'sequence', 'length': 3}},
            is_default=True,
            tenant_id='t1',
        )
        self.assertEqual(self.engine.get_default_template('Product', tenant_id='t1').name, 'Tenant Product SKU')
        self.assertEqual(self.engine.get_default_template('Product', tenant_id='t2').name, 'Standard Product SKU')
        self.assertEqual(self.engine.get_default_template('Product').name, 'Standard Product SKU')
        self.assertEqual(self.engine.check_templates(), [])

    def test_check_templates_reports_broken_rows(self):
        """Test stored templates with bad components are reported"""
        SKUTemplate.objects.create(
            name='Broken', entity_type='Cost', template='{x}', components={'x': {'type': 'bogus'}}
        )
        problems = self.engine.check_templates()
        self.assertEqual(len(problems), 1)
        self.assertIn('bogus', problems[0])

    def test_seed_is_idempotent(self):
        """Test re-seeding updates in place"""
        created, updated = seed_sku_templates()
        self.assertEqual((created, updated), (0, len(SKU_TEMPLATES)))
        self.assertEqual(SKUTemplate.objects.count(), len(SKU_TEMPLATES))


class SKUAPITests(SKUTestCase):
    """Test SKU API endpoints"""

    def setUp(self):
        super().setUp()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.category = TestDataFactory.create_category(name='Cafe', abbreviation='CAF')
        self.product = TestDataFactory.create_product(category=self.category)

    def test_template_list(self):
        """Test listing templates, optionally by entity type"""
        response = self.client.get('/api/v1/sku-templates/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), len(SKU_TEMPLATES))

        response = self.client.get('/api/v1/sku-templates/', {'entity_type': 'Product'})
        self.assertEqual(len(response.data), 3)

    def test_set_default_requires_staff(self):
        """Test only staff can change the default template"""
        simple = self.template('Simple Product SKU')
        response = self.client.post(f'/api/v1/sku-templates/{simple.pk}/set-default/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(TestDataFactory.create_user(is_staff=True))
        response = self.client.post(f'/api/v1/sku-templates/{simple.pk}/set-default/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['is_default'])

        response = self.client.post('/api/v1/sku-templates/999999/set-default/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_generate(self):
        """Test generating through the API"""
        response = self.client.post('/api/v1/skus/generate/', {
            'entity_type': 'Product', 'entity_id': str(self.product.pk)
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['sku_value'], 'CAF-GEN-100-001')
        self.assertEqual(response.data['template_name'], 'Standard Product SKU')
        self.assertEqual(response.data['generated_by_username'], self.user.username)

    def test_generate_errors(self):
        """Test engine errors map to HTTP statuses"""
        response = self.client.post('/api/v1/skus/generate/', {'entity_type': 'Product'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post('/api/v1/skus/generate/', {
            'entity_type': 'Product', 'entity_id': '999999'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        vendor = TestDataFactory.create_vendor()
        response = self.client.post('/api/v1/skus/generate/', {
            'entity_type': 'Vendor', 'entity_id': str(vendor.pk)
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'NoTemplateConfigured')

        bad = TestDataFactory.create_product(category=TestDataFactory.create_category(abbreviation='X'))
        response = self.client.post('/api/v1/skus/generate/', {
            'entity_type': 'Product', 'entity_id': str(bad.pk)
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(response.data['code'], 'TemplateRenderInvalid')

    def test_entity_sku_detail(self):
        """Test reading the current SKU with history"""
        url = f'/api/v1/skus/Product/{self.product.pk}/'
        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        self.engine.generate('Product', self.product.pk)
        self.engine.generate('Product', self.product.pk)

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['version'], 2)
        self.assertNotIn('history', response.data)

        response = self.client.get(url, {'history': 'true'})
        self.assertEqual([row['version'] for row in response.data['history']], [2, 1])

    def test_validate(self):
        """Test the validate endpoint"""
        response = self.client.post('/api/v1/skus/validate/', {'sku': 'AB'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['is_valid'])

        response = self.client.post('/api/v1/skus/validate/', {'sku': 'CAF-GEN-100-001'}, format='json')
        self.assertTrue(response.data['is_valid'])


class SKUCommandTests(SKUTestCase):
    """Test SKU management commands"""

    def test_generate_skus_command(self):
        """Test bulk generation from the command line"""
        category = TestDataFactory.create_category(abbreviation='CAF')
        for _ in range(3):
            TestDataFactory.create_product(category=category)

        out = StringIO()
        call_command('generate_skus', '--entity-type', 'Product', '--missing-only', stdout=out)
        self.assertIn('Generated 3 SKU(s), 0 failed.', out.getvalue())

        out = StringIO()
        call_command('generate_skus', '--entity-type', 'Product', '--missing-only', stdout=out)
        self.assertIn('Generated 0 SKU(s), 0 failed.', out.getvalue())

    def test_generate_skus_unknown_kind(self):
        """Test unknown kinds and kinds without templates are command errors"""
        with self.assertRaises(CommandError):
            call_command('generate_skus', '--entity-type', 'Spaceship', stdout=StringIO())
        TestDataFactory.create_vendor()
        with self.assertRaises(CommandError):
            call_command('generate_skus', '--entity-type', 'Vendor', stdout=StringIO())

    def test_check_catalog(self):
        """Test the catalog check passes on seeded data and fails on a broken template"""
        out = StringIO()
        call_command('check_catalog', stdout=out)
        self.assertIn('Catalogs are valid.', out.getvalue())

        SKUTemplate.objects.create(
            name='Broken', entity_type='Cost', template='{x}',
            components={'x': {'type': 'relationship', 'relationship_type': 'sponsored_by', 'field': 'name'}},
        )
        with self.assertRaises(CommandError):
            call_command('check_catalog', stdout=StringIO())

    def test_seed_sku_templates_command(self):
        """Test the seed command reports its counts"""
        out = StringIO()
        call_command('seed_sku_templates', '--clear', stdout=out)
        self.assertIn(f'Created: {len(SKU_TEMPLATES)}', out.getvalue())
