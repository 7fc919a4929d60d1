"""
Test suite for the relationship graph
Tests: type registry, edge upsert/mirroring/soft delete, reads, reconciliation,
backfill jobs, API endpoints and management commands
"""
import threading
from datetime import timedelta
from io import StringIO

from django.core.management import call_command
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework import status

from backend.core.exceptions import (
    ConfigError, EntityNotFound, IncompatibleTypes, RelationshipTypeNotFound,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.projects.models import Budget
from backend.relationships.backfill import BackfillProcessor, audit_legacy_relationships
from backend.relationships.catalog import RELATIONSHIP_TYPES, build_catalog_registry, seed_relationship_types
from backend.relationships.models import EntityRelationship, RelationshipType
from backend.relationships.registry import RelationshipTypeRegistry, get_registry, invalidate_registry
from backend.relationships.store import EntityRelationshipStore
from backend.relationships.types import NewEdgeRequest


def edge_request(relationship_type, source, target, **kwargs):
    """NewEdgeRequest between two model instances"""
    return NewEdgeRequest(
        relationship_type=relationship_type,
        source_type=kwargs.pop('source_type', type(source).__name__),
        source_id=source.pk,
        target_type=kwargs.pop('target_type', type(target).__name__),
        target_id=target.pk,
        **kwargs
    )


class GraphTestCase(TestCase):
    """Seeds the built-in relationship types and resets the shared registry"""

    def setUp(self):
        invalidate_registry()
        seed_relationship_types()
        self.store = EntityRelationshipStore()

    def tearDown(self):
        invalidate_registry()


class RelationshipTypeRegistryTests(TestCase):
    """Test registry loading and validation rules"""

    def test_builtin_catalog_is_valid(self):
        """Test the built-in catalog loads and validates"""
        registry = build_catalog_registry()
        self.assertEqual(len(registry), len(RELATIONSHIP_TYPES))
        self.assertTrue(registry.is_validated)
        self.assertEqual(registry.reverse_of('supplier').name, 'supplied_by')
        self.assertIsNone(registry.reverse_of('mentioned_in'))

    def test_symmetric_types_reference_themselves(self):
        """Test works_with and related_to are their own reverse"""
        registry = build_catalog_registry()
        self.assertTrue(registry.resolve('works_with').is_symmetric)
        self.assertTrue(registry.resolve('related_to').is_symmetric)
        self.assertFalse(registry.resolve('supplier').is_symmetric)

    def test_register_same_definition_twice_is_allowed(self):
        """Test re-registering an identical type is a no-op"""
        registry = RelationshipTypeRegistry()
        definition = {'name': 'owns', 'source_types': ['User'], 'target_types': ['Product']}
        registry.register(definition)
        registry.register(definition)
        self.assertEqual(len(registry), 1)

    def test_register_conflicting_definition_fails(self):
        """Test a name collision with a different definition raises ConfigError"""
        registry = RelationshipTypeRegistry()
        registry.register({'name': 'owns', 'source_types': ['User'], 'target_types': ['Product']})
        with self.assertRaises(ConfigError):
            registry.register({'name': 'owns', 'source_types': ['User'], 'target_types': ['Project']})

    def test_bidirectional_without_reverse_fails(self):
        """Test a bidirectional type must name its reverse"""
        registry = RelationshipTypeRegistry()
        with self.assertRaises(ConfigError):
            registry.register({
                'name': 'owns', 'source_types': ['User'], 'target_types': ['Product'],
                'is_bidirectional': True,
            })

    def test_unregistered_reverse_fails_validation(self):
        """Test two-pass loading reports a reverse type that never gets registered"""
        registry = RelationshipTypeRegistry()
        registry.register({
            'name': 'owns', 'source_types': ['User'], 'target_types': ['Product'],
            'is_bidirectional': True, 'reverse_type_name': 'owned_by',
        })
        with self.assertRaises(ConfigError) as ctx:
            registry.validate()
        self.assertIn('owned_by', ctx.exception.message)

    def test_reverse_registered_later_passes_validation(self):
        """Test the reverse may be registered after the type naming it"""
        registry = RelationshipTypeRegistry.from_definitions([
            {'name': 'owns', 'source_types': ['User'], 'target_types': ['Product'],
             'is_bidirectional': True, 'reverse_type_name': 'owned_by'},
            {'name': 'owned_by', 'source_types': ['Product'], 'target_types': ['User']},
        ])
        self.assertEqual(registry.reverse_of('owns').name, 'owned_by')

    def test_reverse_must_swap_endpoint_types(self):
        """Test a reverse type with unswapped source/target sets is rejected"""
        with self.assertRaises(ConfigError):
            RelationshipTypeRegistry.from_definitions([
                {'name': 'owns', 'source_types': ['User'], 'target_types': ['Product'],
                 'is_bidirectional': True, 'reverse_type_name': 'owned_by'},
                {'name': 'owned_by', 'source_types': ['User'], 'target_types': ['Product']},
            ])

    def test_strength_out_of_range_fails(self):
        """Test default strength must be 1-5"""
        registry = RelationshipTypeRegistry()
        with self.assertRaises(ConfigError):
            registry.register({
                'name': 'owns', 'source_types': ['User'], 'target_types': ['Product'], 'default_strength': 9,
            })

    def test_validate_edge(self):
        """Test endpoint kinds are checked against the type, with wildcards"""
        registry = build_catalog_registry()
        registry.validate_edge('supplier', 'Vendor', 'Product')
        registry.validate_edge('related_to', 'Budget', 'Location')
        with self.assertRaises(IncompatibleTypes):
            registry.validate_edge('supplier', 'Task', 'Product')
        with self.assertRaises(RelationshipTypeNotFound):
            registry.validate_edge('no_such_type', 'Task', 'Product')

    def test_get_registry_reads_stored_types(self):
        """Test the shared registry is loaded from the database and reloaded on change"""
        invalidate_registry()
        seed_relationship_types()
        self.assertIn('supplier', get_registry())

        RelationshipType.objects.create(
            name='sponsors', display_name='Sponsors', source_types=['Contact'], target_types=['Project'],
        )
        self.assertIn('sponsors', get_registry())
        invalidate_registry()


class EntityRelationshipStoreTests(GraphTestCase):
    """Test upsert, mirroring and soft delete"""

    def setUp(self):
        super().setUp()
        self.user = TestDataFactory.create_user()
        self.project = TestDataFactory.create_project()
        self.task = TestDataFactory.create_task(project=self.project)
        self.vendor = TestDataFactory.create_vendor()
        self.product = TestDataFactory.create_product()

    def test_upsert_creates_edge_with_default_strength(self):
        """Test a new edge takes the type's default strength and interaction count 1"""
        edge = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        self.assertEqual(edge.strength, 4)
        self.assertEqual(edge.interaction_count, 1)
        self.assertEqual(edge.source_id, str(self.task.pk))
        self.assertIsNotNone(edge.last_interaction_at)

    def test_repeated_upsert_never_duplicates(self):
        """Test the same natural key always maps to one row"""
        first = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        second = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        third = self.store.upsert(edge_request('assigned_to', self.task, self.user))

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(first.pk, third.pk)
        self.assertEqual(third.interaction_count, 3)
        self.assertEqual(
            EntityRelationship.objects.filter(
                relationship_type='assigned_to', source_id=str(self.task.pk), is_deleted=False
            ).count(),
            1
        )

    def test_merge_semantics(self):
        """Test merge: metadata shallow-merged, tags unioned, strength kept unless given"""
        self.store.upsert(edge_request(
            'supplier', self.vendor, self.product, strength=2,
            metadata={'supplyCount': 1, 'note': 'first'}, tags=['supplier'],
        ))
        edge = self.store.upsert(edge_request(
            'supplier', self.vendor, self.product,
            metadata={'supplyCount': 5}, tags=['supplier', 'cost-based'],
        ))
        self.assertEqual(edge.strength, 2)
        self.assertEqual(edge.metadata, {'supplyCount': 5, 'note': 'first'})
        self.assertEqual(edge.tags, ['supplier', 'cost-based'])

        edge = self.store.upsert(edge_request('supplier', self.vendor, self.product, strength=5))
        self.assertEqual(edge.strength, 5)

    def test_bidirectional_assignment(self):
        """Test assigned_to writes the assigned mirror"""
        self.store.upsert(edge_request('assigned_to', self.task, self.user))
        related = self.store.related_of('User', self.user.pk, 'assigned')
        self.assertEqual([(ref.kind, ref.id) for ref in related], [('Task', str(self.task.pk))])

    def test_mirror_is_not_mirrored_again(self):
        """Test one upsert of a bidirectional type writes exactly two rows"""
        self.store.upsert(edge_request('supplier', self.vendor, self.product))
        self.assertEqual(EntityRelationship.objects.count(), 2)
        mirror = EntityRelationship.objects.get(relationship_type='supplied_by')
        self.assertEqual((mirror.source_type, mirror.source_id), ('Product', str(self.product.pk)))
        self.assertEqual((mirror.target_type, mirror.target_id), ('Vendor', str(self.vendor.pk)))

    def test_one_way_type_has_no_mirror(self):
        """Test mentioned_in is not mirrored"""
        comment = TestDataFactory.create_comment('hello', author=self.user, task=self.task)
        self.store.upsert(edge_request('mentioned_in', self.user, comment))
        self.assertEqual(EntityRelationship.objects.count(), 1)

    def test_symmetric_type(self):
        """Test works_with mirrors with the same type and stays idempotent"""
        other = TestDataFactory.create_user()
        self.store.upsert(edge_request('works_with', self.user, other))
        self.store.upsert(edge_request('works_with', self.user, other))

        self.assertEqual(EntityRelationship.objects.filter(relationship_type='works_with').count(), 2)
        related = self.store.related_of('User', other.pk, 'works_with')
        self.assertEqual([ref.id for ref in related], [str(self.user.pk)])

    def test_symmetric_self_loop_writes_one_row(self):
        """Test a symmetric edge from an entity to itself is its own mirror"""
        self.store.upsert(edge_request('works_with', self.user, self.user))
        self.assertEqual(EntityRelationship.objects.count(), 1)

    def test_incompatible_edge_rejected(self):
        """Test supplier from a Task is rejected and nothing is persisted"""
        with self.assertRaises(IncompatibleTypes):
            self.store.upsert(edge_request('supplier', self.task, self.product))
        self.assertEqual(EntityRelationship.objects.count(), 0)

    def test_unknown_type_rejected(self):
        """Test an unregistered relationship type is rejected"""
        with self.assertRaises(RelationshipTypeNotFound):
            self.store.upsert(edge_request('sponsors', self.task, self.product))
        self.assertEqual(EntityRelationship.objects.count(), 0)

    def test_strength_out_of_range_rejected(self):
        """Test strength outside 1-5 is rejected before anything is written"""
        with self.assertRaises(ValueError):
            edge_request('supplier', self.vendor, self.product, strength=7)

    def test_mirror_failure_keeps_primary(self):
        """Test a failing mirror write is logged and audited, the primary stands"""
        registry = RelationshipTypeRegistry()
        registry.register({
            'name': 'reviews', 'source_types': ['User'], 'target_types': ['Task'],
            'is_bidirectional': True, 'reverse_type_name': 'reviewed_by',
        })
        store = EntityRelationshipStore(registry=registry)

        with self.assertLogs('backend.relationships.store', level='WARNING'):
            edge = store.upsert(edge_request('reviews', self.user, self.task))

        self.assertTrue(EntityRelationship.objects.filter(pk=edge.pk).exists())
        self.assertEqual(EntityRelationship.objects.count(), 1)
        audit = AuditLog.objects.get(action='mirror_write_failed')
        self.assertEqual(audit.object_id, str(edge.pk))

    def test_soft_delete(self):
        """Test soft delete hides the edge, keeps the row and leaves the mirror alone"""
        edge = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        deleted = self.store.soft_delete(edge.pk, by=self.user)

        self.assertTrue(deleted.is_deleted)
        self.assertFalse(deleted.is_active)
        self.assertEqual(deleted.deleted_by, self.user)
        self.assertIsNotNone(deleted.deleted_at)
        self.assertEqual(self.store.related_of('Task', self.task.pk, 'assigned_to'), [])
        # The mirror has its own lifecycle
        self.assertEqual(len(self.store.related_of('User', self.user.pk, 'assigned')), 1)
        self.assertTrue(AuditLog.objects.filter(action='relationship_delete', object_id=str(edge.pk)).exists())

        with self.assertRaises(EntityNotFound):
            self.store.soft_delete(edge.pk)

    def test_upsert_after_soft_delete_creates_new_row(self):
        """Test deleted rows do not take part in uniqueness"""
        edge = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        self.store.soft_delete(edge.pk)
        again = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        self.assertNotEqual(edge.pk, again.pk)
        self.assertEqual(again.interaction_count, 1)

    def test_merge_reactivates_inactive_edge(self):
        """Test upserting an inactive (not deleted) edge makes it active again"""
        edge = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        EntityRelationship.objects.filter(pk=edge.pk).update(is_active=False)
        again = self.store.upsert(edge_request('assigned_to', self.task, self.user))
        self.assertEqual(edge.pk, again.pk)
        self.assertTrue(again.is_active)

    def test_touch(self):
        """Test touch bumps the interaction count of an existing edge only"""
        self.store.upsert(edge_request('assigned_to', self.task, self.user))
        self.assertTrue(self.store.touch('Task', self.task.pk, 'User', self.user.pk, 'assigned_to'))
        edge = EntityRelationship.objects.get(relationship_type='assigned_to')
        self.assertEqual(edge.interaction_count, 2)
        self.assertFalse(self.store.touch('Task', self.task.pk, 'User', 999999, 'assigned_to'))

    def test_relationship_from_mention(self):
        """Test mentions are stored with provenance metadata and tags"""
        comment = TestDataFactory.create_comment('ping', author=self.user, task=self.task)
        edge = self.store.relationship_from_mention('User', self.user.pk, 'Comment', comment.pk, context_type='comment')
        self.assertEqual(edge.relationship_type, 'mentioned_in')
        self.assertEqual(edge.strength, 1)
        self.assertEqual(edge.metadata['createdFrom'], 'mention')
        self.assertEqual(edge.metadata['contextType'], 'comment')
        self.assertEqual(edge.tags, ['mention', 'comment'])


class EntityRelationshipReadTests(GraphTestCase):
    """Test find, related_of and aggregate reads"""

    def setUp(self):
        super().setUp()
        self.product = TestDataFactory.create_product()
        self.vendors = [TestDataFactory.create_vendor() for _ in range(3)]

    def test_related_of_orders_by_priority(self):
        """Test related entities come back highest priority first"""
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product, priority=1))
        self.store.upsert(edge_request('supplier', self.vendors[1], self.product, priority=5))
        self.store.upsert(edge_request('supplier', self.vendors[2], self.product, priority=3))

        related = self.store.related_of('Product', self.product.pk, 'supplied_by')
        self.assertEqual(
            [ref.id for ref in related],
            [str(self.vendors[1].pk), str(self.vendors[2].pk), str(self.vendors[0].pk)]
        )

    def test_related_of_skips_expired_and_future_edges(self):
        """Test the validity window is honoured"""
        now = timezone.now()
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product,
                                       valid_until=now - timedelta(days=1)))
        self.store.upsert(edge_request('supplier', self.vendors[1], self.product,
                                       valid_from=now + timedelta(days=1)))
        self.store.upsert(edge_request('supplier', self.vendors[2], self.product,
                                       valid_until=now + timedelta(days=1)))

        related = self.store.related_of('Vendor', self.vendors[2].pk, 'supplier')
        self.assertEqual(len(related), 1)
        self.assertEqual(self.store.related_of('Vendor', self.vendors[0].pk, 'supplier'), [])
        self.assertEqual(self.store.related_of('Vendor', self.vendors[1].pk, 'supplier'), [])

    def test_find_filters(self):
        """Test find by type, tags and strength with pagination"""
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product, strength=1, tags=['a']))
        self.store.upsert(edge_request('supplier', self.vendors[1], self.product, strength=4, tags=['b']))
        self.store.upsert(edge_request('supplier', self.vendors[2], self.product, strength=5, tags=['a', 'c']))

        page = self.store.find(relationship_type='supplier')
        self.assertEqual(page['total'], 3)

        page = self.store.find(relationship_type='supplier', min_strength=4)
        self.assertEqual(page['total'], 2)

        page = self.store.find(relationship_type='supplier', tags=['a'])
        self.assertEqual({edge.source_id for edge in page['results']},
                         {str(self.vendors[0].pk), str(self.vendors[2].pk)})

        page = self.store.find(target_type='Product', page=2, limit=2)
        self.assertEqual(page['total'], 3)
        self.assertEqual(page['total_pages'], 2)
        self.assertEqual(len(page['results']), 1)

    def test_find_orders_by_priority_then_age(self):
        """Test find returns highest priority first and the oldest edge first within a priority"""
        low = self.store.upsert(edge_request('supplier', self.vendors[0], self.product, priority=1))
        first_high = self.store.upsert(edge_request('supplier', self.vendors[1], self.product, priority=5))
        second_high = self.store.upsert(edge_request('supplier', self.vendors[2], self.product, priority=5))
        EntityRelationship.objects.filter(pk=second_high.pk).update(
            created_at=first_high.created_at + timedelta(seconds=1)
        )

        page = self.store.find(relationship_type='supplier')
        self.assertEqual([edge.pk for edge in page['results']], [first_high.pk, second_high.pk, low.pk])

    def test_find_excludes_deleted(self):
        """Test soft-deleted edges are never returned"""
        edge = self.store.upsert(edge_request('supplier', self.vendors[0], self.product))
        self.store.soft_delete(edge.pk)
        self.assertEqual(self.store.find(relationship_type='supplier')['total'], 0)
        self.assertEqual(self.store.find(relationship_type='supplier', is_active=None)['total'], 0)

    def test_entity_relationships_both_directions(self):
        """Test edges touching an entity are found as source and as target"""
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product))
        edges = self.store.entity_relationships('Product', self.product.pk)
        self.assertEqual({edge.relationship_type for edge in edges}, {'supplier', 'supplied_by'})

    def test_stats(self):
        """Test counts and mean strength per type"""
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product, strength=2))
        self.store.upsert(edge_request('supplier', self.vendors[1], self.product, strength=4))
        stats = {row['relationship_type']: row for row in self.store.stats()}
        self.assertEqual(stats['supplier']['count'], 2)
        self.assertEqual(stats['supplier']['avg_strength'], 3.0)
        self.assertEqual(stats['supplied_by']['count'], 2)

    def test_suggestions(self):
        """Test targets linked from other entities of the same kind are suggested"""
        other_product = TestDataFactory.create_product()
        self.store.upsert(edge_request('supplier', self.vendors[0], self.product))
        self.store.upsert(edge_request('supplier', self.vendors[1], self.product))
        self.store.upsert(edge_request('supplier', self.vendors[1], other_product))

        suggestions = self.store.suggestions('Vendor', self.vendors[2].pk, 'Product')
        self.assertEqual(suggestions[0]['target_id'], str(self.product.pk))
        self.assertEqual(suggestions[0]['relationship_count'], 2)


class ConcurrentUpsertTests(TransactionTestCase):
    """Test upserts of one natural key from several connections at once"""

    def setUp(self):
        invalidate_registry()
        seed_relationship_types()
        self.store = EntityRelationshipStore()

    def tearDown(self):
        invalidate_registry()

    @override_settings(ENTITY_GRAPH={'UPSERT_MAX_RETRIES': 30, 'UPSERT_RETRY_BACKOFF': 0.005})
    def test_concurrent_upserts_merge_into_one_edge(self):
        """Test racing writers leave one live edge counting every call"""
        vendor = TestDataFactory.create_vendor()
        product = TestDataFactory.create_product()
        errors = []

        def upsert():
            try:
                for _ in range(5):
                    self.store.upsert(edge_request('supplier', vendor, product), mirror=False)
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=upsert) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        edges = EntityRelationship.objects.filter(is_deleted=False, relationship_type='supplier')
        self.assertEqual(edges.count(), 1)
        self.assertEqual(edges.get().interaction_count, 20)


class MirrorReconciliationTests(GraphTestCase):
    """Test detection and repair of missing mirror edges"""

    def test_find_and_repair_orphaned_mirrors(self):
        """Test a one-directional bidirectional edge is found and repaired"""
        vendor = TestDataFactory.create_vendor()
        product = TestDataFactory.create_product()
        edge = self.store.upsert(edge_request('supplier', vendor, product), mirror=False)

        orphans = self.store.find_orphaned_mirrors()
        self.assertEqual(len(orphans), 1)
        self.assertEqual(orphans[0][0].pk, edge.pk)
        self.assertEqual(orphans[0][1].relationship_type, 'supplied_by')

        repaired = self.store.repair_mirrors()
        self.assertEqual(len(repaired), 1)
        self.assertEqual(repaired[0].metadata['repairedFrom'], str(edge.pk))
        self.assertEqual(self.store.find_orphaned_mirrors(), [])
        self.assertTrue(AuditLog.objects.filter(action='mirror_repaired').exists())


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class BackfillProcessorTests(GraphTestCase):
    """Test per-record processing, cancellation and timeouts"""

    def setUp(self):
        super().setUp()
        self.user = TestDataFactory.create_user()
        self.tasks = [TestDataFactory.create_task() for _ in range(10)]

    def _assignment(self, record):
        return [NewEdgeRequest(
            relationship_type='assigned_to',
            source_type='Task', source_id=record['task'],
            target_type='User', target_id=record['user'],
        )]

    def test_partial_failure(self):
        """Test 10 records with a missing target on #5: 9 succeed, 1 error, nothing written for #5"""
        records = [
            (index, {'task': task.pk, 'user': 999999 if index == 5 else self.user.pk})
            for index, task in enumerate(self.tasks, start=1)
        ]
        result = BackfillProcessor().process('test_source', records, self._assignment)

        self.assertEqual(result.processed, 10)
        self.assertEqual(result.succeeded, 9)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].record_id, '5')
        self.assertFalse(EntityRelationship.objects.filter(source_id=str(self.tasks[4].pk)).exists())
        self.assertFalse(EntityRelationship.objects.filter(target_id=str(self.tasks[4].pk)).exists())
        # 9 primaries plus their mirrors
        self.assertEqual(EntityRelationship.objects.count(), 18)
        for edge in EntityRelationship.objects.filter(relationship_type='assigned_to'):
            self.assertEqual(edge.metadata['migratedFrom'], 'test_source')

    def test_unexpected_error_is_recorded(self):
        """Test any exception in one record is collected and the batch continues"""
        def derive(record):
            if record == 2:
                raise RuntimeError('boom')
            return []

        with self.assertLogs('backend.relationships.backfill', level='ERROR'):
            result = BackfillProcessor().process('test_source', [(1, 1), (2, 2), (3, 3)], derive)
        self.assertEqual(result.processed, 3)
        self.assertEqual(result.skipped, 2)
        self.assertEqual(result.errors[0].message, 'boom')

    def test_cancellation_between_records(self):
        """Test a cancel request stops the batch after the current record"""
        cancel_event = threading.Event()
        processor = BackfillProcessor(cancel_event=cancel_event)

        def derive(record):
            if record['task'] == self.tasks[2].pk:
                cancel_event.set()
            return self._assignment(record)

        records = [(task.pk, {'task': task.pk, 'user': self.user.pk}) for task in self.tasks]
        result = processor.process('test_source', records, derive)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.processed, 3)
        self.assertEqual(result.succeeded, 3)
        self.assertEqual(EntityRelationship.objects.filter(relationship_type='assigned_to').count(), 3)

    def test_record_timeout_rolls_back_only_that_record(self):
        """Test a record running past its deadline is rolled back, others are kept"""
        clock = FakeClock()
        processor = BackfillProcessor(record_timeout=10, clock=clock)

        def derive(record):
            if record['task'] == self.tasks[1].pk:
                clock.now += 60
            return self._assignment(record)

        records = [(task.pk, {'task': task.pk, 'user': self.user.pk}) for task in self.tasks[:3]]
        result = processor.process('test_source', records, derive)

        self.assertEqual(result.succeeded, 2)
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].record_id, str(self.tasks[1].pk))
        self.assertFalse(EntityRelationship.objects.filter(source_id=str(self.tasks[1].pk)).exists())
        self.assertTrue(EntityRelationship.objects.filter(source_id=str(self.tasks[0].pk)).exists())
        self.assertTrue(EntityRelationship.objects.filter(source_id=str(self.tasks[2].pk)).exists())

    def test_dry_run_writes_nothing(self):
        """Test dry runs derive and check edges without writing"""
        records = [(task.pk, {'task': task.pk, 'user': self.user.pk}) for task in self.tasks]
        result = BackfillProcessor(dry_run=True).process('test_source', records, self._assignment)
        self.assertEqual(result.succeeded, 10)
        self.assertEqual(EntityRelationship.objects.count(), 0)

    def test_unknown_source(self):
        """Test running an unknown named source fails"""
        with self.assertRaises(ValueError):
            BackfillProcessor().run('no_such_source')


class BackfillSourceTests(GraphTestCase):
    """Test the named legacy-data sources"""

    def test_task_assignee_field(self):
        """Test task assignees become assigned_to edges weighted by priority"""
        user = TestDataFactory.create_user()
        urgent = TestDataFactory.create_task(assignee=user, priority='URGENT', status='IN_PROGRESS')
        low = TestDataFactory.create_task(assignee=user, priority='LOW')
        TestDataFactory.create_task()

        result = BackfillProcessor().run('task_assignee_field')

        self.assertEqual(result.processed, 2)
        self.assertEqual(result.succeeded, 2)
        edge = EntityRelationship.objects.get(relationship_type='assigned_to', source_id=str(urgent.pk))
        self.assertEqual(edge.strength, 5)
        self.assertEqual(edge.metadata['taskPriority'], 'URGENT')
        self.assertEqual(edge.metadata['taskStatus'], 'IN_PROGRESS')
        self.assertEqual(edge.metadata['migratedFrom'], 'task_assignee_field')
        self.assertEqual(edge.tags, ['assignment', 'migrated'])
        low_edge = EntityRelationship.objects.get(relationship_type='assigned_to', source_id=str(low.pk))
        self.assertEqual(low_edge.strength, 2)
        self.assertTrue(AuditLog.objects.filter(action='backfill_run', object_id='task_assignee_field').exists())

    def test_rerun_is_idempotent(self):
        """Test running a source twice merges instead of duplicating"""
        user = TestDataFactory.create_user()
        TestDataFactory.create_task(assignee=user)
        BackfillProcessor().run('task_assignee_field')
        BackfillProcessor().run('task_assignee_field')
        edge = EntityRelationship.objects.get(relationship_type='assigned_to')
        self.assertEqual(edge.interaction_count, 2)

    def test_task_project_field(self):
        """Test task projects become belongs_to edges"""
        project = TestDataFactory.create_project()
        task = TestDataFactory.create_task(project=project)
        BackfillProcessor().run('task_project_field')
        related = self.store.related_of('Task', task.pk, 'belongs_to')
        self.assertEqual([ref.id for ref in related], [str(project.pk)])
        self.assertEqual(len(self.store.related_of('Project', project.pk, 'includes')), 1)

    def test_name_matching(self):
        """Test budgets are linked to projects whose name they contain"""
        project = TestDataFactory.create_project(name='Muralla Cafe')
        budget = TestDataFactory.create_budget(name='Q1 muralla cafe marketing')
        unrelated = TestDataFactory.create_budget(name='Office rent')

        result = BackfillProcessor().run('name_matching')

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(result.skipped, 1)
        edge = EntityRelationship.objects.get(relationship_type='funds')
        self.assertEqual(edge.source_id, str(budget.pk))
        self.assertEqual(edge.target_id, str(project.pk))
        self.assertEqual(edge.strength, 4)
        self.assertEqual(edge.metadata['migratedFrom'], 'name_matching')
        self.assertEqual(edge.metadata['projectName'], 'Muralla Cafe')
        self.assertFalse(EntityRelationship.objects.filter(source_id=str(unrelated.pk), source_type='Budget').exists())

    def test_name_matching_skips_blank_budget_names(self):
        """Test a budget without a name is only matched through its description"""
        TestDataFactory.create_project(name='Muralla Cafe')
        bakery = TestDataFactory.create_project(name='Panaderia')
        blank = TestDataFactory.create_budget()
        described = TestDataFactory.create_budget(description='Hornos para la panaderia')
        Budget.objects.filter(pk__in=[blank.pk, described.pk]).update(name='  ')

        result = BackfillProcessor().run('name_matching')

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(result.skipped, 1)
        edge = EntityRelationship.objects.get(relationship_type='funds')
        self.assertEqual(edge.source_id, str(described.pk))
        self.assertEqual(edge.target_id, str(bakery.pk))

    def test_work_order_components(self):
        """Test the component with the largest planned quantity is the produced product"""
        flour = TestDataFactory.create_product(name='Flour')
        bread = TestDataFactory.create_product(name='Bread')
        work_order = TestDataFactory.create_work_order(components=[(flour, 2), (bread, 50)])
        TestDataFactory.create_work_order(status='cancelled', components=[(flour, 10)])

        result = BackfillProcessor().run('work_order_components')

        self.assertEqual(result.processed, 1)
        edge = EntityRelationship.objects.get(relationship_type='produces')
        self.assertEqual(edge.source_id, str(work_order.pk))
        self.assertEqual(edge.target_id, str(bread.pk))

    def test_cost_analysis(self):
        """Test vendors named in cost descriptions become suppliers of the bought products"""
        vendor = TestDataFactory.create_vendor(name='Lucerna')
        coffee = TestDataFactory.create_product(name='Coffee')
        for _ in range(3):
            TestDataFactory.create_cost(description='Compra Lucerna', lines=[(coffee, 100)])
        TestDataFactory.create_cost(description='Compra Lucerna', status='cancelled', lines=[(coffee, 100)])

        BackfillProcessor().run('cost_analysis')

        edge = EntityRelationship.objects.get(relationship_type='supplier')
        self.assertEqual(edge.source_id, str(vendor.pk))
        self.assertEqual(edge.target_id, str(coffee.pk))
        self.assertEqual(edge.strength, 2)
        self.assertEqual(edge.metadata['supplyCount'], 3)
        self.assertEqual(edge.metadata['migratedFrom'], 'cost_analysis')

    def test_product_brand_field(self):
        """Test brand foreign keys and brand contacts become brand_of edges"""
        brand = TestDataFactory.create_brand(name='Sumat')
        branded = TestDataFactory.create_product(brand=brand)
        contact = TestDataFactory.create_contact(name='Luz', contact_type='brand')
        by_name = TestDataFactory.create_product(brand_name='Luz')
        TestDataFactory.create_product(brand_name='Nobody')

        result = BackfillProcessor().run('product_brand_field')

        self.assertEqual(result.succeeded, 2)
        self.assertEqual(result.skipped, 1)
        related = self.store.related_of('Product', branded.pk, 'branded_by')
        self.assertEqual([(ref.kind, ref.id) for ref in related], [('Brand', str(brand.pk))])
        related = self.store.related_of('Product', by_name.pk, 'branded_by')
        self.assertEqual([(ref.kind, ref.id) for ref in related], [('Contact', str(contact.pk))])

    def test_comment_parsing(self):
        """Test @mentions in comments become mentioned_in edges"""
        author = TestDataFactory.create_user()
        mentioned = TestDataFactory.create_user(username='jdoe')
        comment = TestDataFactory.create_comment('Please review @jdoe and @nobody_here', author=author)

        result = BackfillProcessor().run('comment_parsing')

        self.assertEqual(result.succeeded, 1)
        edge = EntityRelationship.objects.get(relationship_type='mentioned_in')
        self.assertEqual((edge.source_type, edge.source_id), ('User', str(mentioned.pk)))
        self.assertEqual((edge.target_type, edge.target_id), ('Comment', str(comment.pk)))
        self.assertEqual(edge.metadata['mentionText'], '@jdoe')

    def test_detect_supplier_relationships(self):
        """Test contacts named on two or more costs are detected as suppliers"""
        contact = TestDataFactory.create_contact(name='Granos SpA', contact_type='supplier')
        beans = TestDataFactory.create_product(name='Beans')
        milk = TestDataFactory.create_product(name='Milk')
        TestDataFactory.create_cost(description='Granos SpA', lines=[(beans, 50)])
        TestDataFactory.create_cost(description='Granos SpA', lines=[(beans, 70)])
        TestDataFactory.create_cost(description='Granos SpA', lines=[(milk, 10)])

        BackfillProcessor().detect_supplier_relationships()

        edge = EntityRelationship.objects.get(relationship_type='supplier')
        self.assertEqual((edge.source_type, edge.source_id), ('Contact', str(contact.pk)))
        self.assertEqual(edge.target_id, str(beans.pk))
        self.assertTrue(edge.metadata['autoDetected'])
        self.assertEqual(edge.metadata['interactionCount'], 2)

    def test_audit_legacy_relationships(self):
        """Test the audit report counts legacy links missing from the graph"""
        user = TestDataFactory.create_user()
        TestDataFactory.create_task(assignee=user)

        report = audit_legacy_relationships()
        self.assertEqual(report['missing_in_graph']['task_assignments'], 1)
        self.assertTrue(report['recommendations'])

        BackfillProcessor().run('task_assignee_field')
        report = audit_legacy_relationships()
        self.assertEqual(report['missing_in_graph']['task_assignments'], 0)
        self.assertEqual(report['migrated_relationships'], 2)


class RelationshipAPITests(GraphTestCase):
    """Test relationship API endpoints"""

    def setUp(self):
        super().setUp()
        self.user = TestDataFactory.create_user()
        self.client = AuthenticatedAPIClient()
        self.client.authenticate_user(self.user)
        self.task = TestDataFactory.create_task()

    def _payload(self, **overrides):
        data = {
            'relationship_type': 'assigned_to',
            'source_type': 'Task',
            'source_id': str(self.task.pk),
            'target_type': 'User',
            'target_id': str(self.user.pk),
        }
        data.update(overrides)
        return data

    def test_requires_authentication(self):
        """Test unauthenticated requests are rejected"""
        self.client.logout()
        response = self.client.get('/api/v1/relationships/')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_relationship_type_list(self):
        """Test listing and filtering relationship types"""
        response = self.client.get('/api/v1/relationship-types/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), len(RELATIONSHIP_TYPES))

        response = self.client.get('/api/v1/relationship-types/', {'entity_type': 'Budget'})
        names = {row['name'] for row in response.data}
        self.assertIn('funds', names)
        self.assertIn('related_to', names)
        self.assertNotIn('supplier', names)

    def test_create_then_merge(self):
        """Test POST returns 201 on create and 200 on merge"""
        response = self.client.post('/api/v1/relationships/', self._payload(), format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['interaction_count'], 1)

        response = self.client.post('/api/v1/relationships/', self._payload(tags=['api']), format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['interaction_count'], 2)
        self.assertEqual(response.data['tags'], ['api'])

    def test_create_incompatible(self):
        """Test incompatible endpoint kinds map to 400"""
        product = TestDataFactory.create_product()
        response = self.client.post(
            '/api/v1/relationships/',
            self._payload(relationship_type='supplier', target_type='Product', target_id=str(product.pk)),
            format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'IncompatibleTypes')

    def test_create_unknown_type(self):
        """Test an unknown relationship type maps to 404"""
        response = self.client.post('/api/v1/relationships/', self._payload(relationship_type='sponsors'),
                                    format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_create_missing_entity(self):
        """Test a reference to a missing entity maps to 404"""
        response = self.client.post('/api/v1/relationships/', self._payload(target_id='999999'), format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'EntityNotFound')

    def test_create_invalid_strength(self):
        """Test strength is validated by the serializer"""
        response = self.client.post('/api/v1/relationships/', self._payload(strength=9), format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('strength', response.data)

    def test_list_with_filters(self):
        """Test list filtering and pagination"""
        self.client.post('/api/v1/relationships/', self._payload(tags=['urgent']), format='json')
        response = self.client.get('/api/v1/relationships/', {'relationship_type': 'assigned_to'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total'], 1)

        response = self.client.get('/api/v1/relationships/', {'tags': 'urgent,other'})
        self.assertEqual(response.data['total'], 1)

        response = self.client.get('/api/v1/relationships/', {'source_type': 'User'})
        self.assertEqual(response.data['total'], 1)
        self.assertEqual(response.data['results'][0]['relationship_type'], 'assigned')

    def test_list_matches_store_find(self):
        """Test the list endpoint returns what the store's find returns, inactive edges on request"""
        vendors = [TestDataFactory.create_vendor() for _ in range(3)]
        product = TestDataFactory.create_product()
        for vendor, priority in zip(vendors, (1, 5, 3)):
            self.store.upsert(edge_request('supplier', vendor, product, priority=priority))
        EntityRelationship.objects.filter(source_type='Vendor', source_id=str(vendors[0].pk)).update(is_active=False)

        response = self.client.get('/api/v1/relationships/', {'relationship_type': 'supplier'})
        expected = self.store.find(relationship_type='supplier')
        self.assertEqual([row['id'] for row in response.data['results']],
                         [edge.pk for edge in expected['results']])
        self.assertEqual([row['source_id'] for row in response.data['results']],
                         [str(vendors[1].pk), str(vendors[2].pk)])

        response = self.client.get('/api/v1/relationships/', {'relationship_type': 'supplier', 'is_active': 'false'})
        self.assertEqual(response.data['total'], 1)
        self.assertEqual(response.data['results'][0]['source_id'], str(vendors[0].pk))

        response = self.client.get('/api/v1/relationships/', {'page': 'two'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_detail_and_delete(self):
        """Test retrieve and soft delete"""
        created = self.client.post('/api/v1/relationships/', self._payload(), format='json')
        url = f"/api/v1/relationships/{created.data['id']}/"

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        response = self.client.delete(url)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        edge = EntityRelationship.objects.get(pk=created.data['id'])
        self.assertTrue(edge.is_deleted)
        self.assertEqual(edge.deleted_by, self.user)

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_entity_and_related_endpoints(self):
        """Test entity relationships and related entities endpoints"""
        self.client.post('/api/v1/relationships/', self._payload(), format='json')

        response = self.client.get(f'/api/v1/relationships/entity/Task/{self.task.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['outgoing']), 1)
        self.assertEqual(len(response.data['incoming']), 1)

        response = self.client.get(
            f'/api/v1/relationships/related/User/{self.user.pk}/assigned/', {'include_entities': 'true'}
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total'], 1)
        self.assertEqual(response.data['results'][0]['entity']['title'], self.task.title)

        response = self.client.get(f'/api/v1/relationships/related/User/{self.user.pk}/sponsors/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_stats_and_suggestions(self):
        """Test stats and suggestions endpoints"""
        self.client.post('/api/v1/relationships/', self._payload(), format='json')
        response = self.client.get('/api/v1/relationships/stats/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)

        response = self.client.get('/api/v1/relationships/suggestions/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        other = TestDataFactory.create_task()
        response = self.client.get('/api/v1/relationships/suggestions/', {
            'entity_type': 'Task', 'entity_id': other.pk, 'target_type': 'User'
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['target_id'], str(self.user.pk))

    def test_mention(self):
        """Test recording a mention"""
        comment = TestDataFactory.create_comment('hi', author=self.user, task=self.task)
        response = self.client.post('/api/v1/relationships/mentions/', {
            'mentioned_type': 'User', 'mentioned_id': str(self.user.pk),
            'context_entity_type': 'Comment', 'context_entity_id': str(comment.pk),
            'context_type': 'comment',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['relationship_type'], 'mentioned_in')


class RelationshipCommandTests(TestCase):
    """Test relationship management commands"""

    def setUp(self):
        invalidate_registry()

    def tearDown(self):
        invalidate_registry()

    def test_seed_relationship_types(self):
        """Test seeding creates every type and re-seeding updates them"""
        out = StringIO()
        call_command('seed_relationship_types', stdout=out)
        self.assertEqual(RelationshipType.objects.count(), len(RELATIONSHIP_TYPES))
        self.assertIn(f'Created: {len(RELATIONSHIP_TYPES)}', out.getvalue())

        out = StringIO()
        call_command('seed_relationship_types', stdout=out)
        self.assertEqual(RelationshipType.objects.count(), len(RELATIONSHIP_TYPES))
        self.assertIn(f'Updated: {len(RELATIONSHIP_TYPES)}', out.getvalue())

    def test_backfill_command(self):
        """Test the backfill command runs a source, honouring --dry-run"""
        seed_relationship_types()
        user = TestDataFactory.create_user()
        TestDataFactory.create_task(assignee=user)

        out = StringIO()
        call_command('backfill_relationships', '--source', 'task_assignee_field', '--dry-run', stdout=out)
        self.assertEqual(EntityRelationship.objects.count(), 0)
        self.assertIn('task_assignee_field: 1 processed', out.getvalue())

        call_command('backfill_relationships', '--source', 'task_assignee_field', stdout=StringIO())
        self.assertEqual(EntityRelationship.objects.count(), 2)

    def test_backfill_command_unknown_source(self):
        """Test an unknown source is a command error"""
        from django.core.management.base import CommandError
        with self.assertRaises(CommandError):
            call_command('backfill_relationships', '--source', 'nope', stdout=StringIO())

    def test_reconcile_mirrors_command(self):
        """Test orphaned mirrors are reported and repaired with --repair"""
        seed_relationship_types()
        vendor = TestDataFactory.create_vendor()
        product = TestDataFactory.create_product()
        EntityRelationshipStore().upsert(edge_request('supplier', vendor, product), mirror=False)

        out = StringIO()
        call_command('reconcile_mirrors', stdout=out)
        self.assertIn('1 relationship(s) without a mirror edge', out.getvalue())
        self.assertEqual(EntityRelationship.objects.count(), 1)

        call_command('reconcile_mirrors', '--repair', stdout=StringIO())
        self.assertEqual(EntityRelationship.objects.count(), 2)

    def test_audit_relationships_command(self):
        """Test the audit command prints its report"""
        out = StringIO()
        call_command('audit_relationships', stdout=out)
        self.assertIn('RELATIONSHIP AUDIT', out.getvalue())
