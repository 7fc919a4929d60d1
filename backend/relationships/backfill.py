"""
Backfill of relationship edges from legacy data.

Each source walks one kind of legacy record (a foreign key column, a
free-text field, cost lines) and derives ``NewEdgeRequest``s from it. Records
are processed independently: each runs in its own transaction, a failing
record is rolled back and reported, and the batch carries on. Every derived
edge carries ``metadata.migratedFrom`` naming its source so heuristic edges
can be audited or reverted in bulk.
"""
import logging
import math
import re
import threading
import time
from dataclasses import asdict, dataclass, field

from django.db import DatabaseError, transaction
from django.db.models import CharField, Count, Exists, Max, OuterRef, Q, Sum
from django.db.models.functions import Cast
from django.utils import timezone

from backend.core.conf import engine_setting
from backend.core.entities import get_entity_lookup
from backend.core.exceptions import EntityGraphError, EntityNotFound, RecordTimeout
from backend.core.utils import create_audit_log
from .models import EntityRelationship
from .store import EntityRelationshipStore
from .types import NewEdgeRequest

logger = logging.getLogger(__name__)

ASSIGNMENT_STRENGTH = {
    'URGENT': 5,
    'HIGH': 4,
    'MEDIUM': 3,
    'LOW': 2,
}

MENTION_PATTERN = re.compile(r'@(\w+)')


@dataclass
class BackfillError:
    record_id: str
    message: str


@dataclass
class BackfillResult:
    source: str
    processed: int = 0
    succeeded: int = 0
    edges: int = 0
    errors: list = field(default_factory=list)
    cancelled: bool = False
    skipped: int = 0
    dry_run: bool = False

    @property
    def failed(self):
        return len(self.errors)

    def as_dict(self):
        return asdict(self)


class BackfillProcessor:
    """
    Derives relationship edges from legacy records.

    Args:
        store: EntityRelationshipStore used for every write
        lookup: EntityLookup used to check both endpoints before writing
        record_timeout: seconds one record may take before it is rolled back
            (defaults to BACKFILL_RECORD_TIMEOUT; 0 disables the check)
        cancel_event: threading.Event checked between records
        dry_run: derive and check edges without writing them
        clock: monotonic clock, replaceable in tests
    """

    def __init__(self, store=None, lookup=None, record_timeout=None, cancel_event=None,
                 dry_run=False, clock=time.monotonic):
        self.store = store or EntityRelationshipStore()
        self.lookup = lookup or get_entity_lookup()
        if record_timeout is None:
            record_timeout = engine_setting('BACKFILL_RECORD_TIMEOUT')
        self.record_timeout = record_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.dry_run = dry_run
        self.clock = clock
        self.sources = {
            'task_assignee_field': self._task_assignee_records,
            'task_project_field': self._task_project_records,
            'name_matching': self._budget_name_matching_records,
            'work_order_components': self._work_order_records,
            'cost_analysis': self._vendor_cost_records,
            'product_brand_field': self._product_brand_records,
            'comment_parsing': self._comment_mention_records,
            'supplier_detection': self._supplier_detection_records,
        }

    def cancel(self):
        self.cancel_event.set()

    # ==================== DRIVER ====================

    def run(self, source, limit=None, user=None):
        """Run one named source"""
        try:
            records = self.sources[source]
        except KeyError:
            raise ValueError(f"Unknown backfill source '{source}'. Choose from: {', '.join(self.sources)}") from None
        result = self.process(source, records(limit))
        if not self.dry_run:
            create_audit_log(
                action='backfill_run',
                model_name='EntityRelationship',
                object_id=source,
                object_name=source,
                changes={
                    'processed': result.processed,
                    'succeeded': result.succeeded,
                    'edges': result.edges,
                    'failed': result.failed,
                    'cancelled': result.cancelled,
                },
                user=user,
            )
        return result

    def run_all(self, sources=None, limit=None, user=None):
        results = []
        for source in sources or self.sources:
            if self.cancel_event.is_set():
                break
            results.append(self.run(source, limit=limit, user=user))
        return results

    def process(self, source, records, derive=None):
        """
        Process legacy records one by one.

        Args:
            source: provenance name stored in metadata.migratedFrom
            records: iterable of (record_id, record) pairs
            derive: callable(record) -> list of NewEdgeRequest; when omitted
                each record must itself be a callable returning the requests
        """
        result = BackfillResult(source=source, dry_run=self.dry_run)
        for record_id, record in records:
            if self.cancel_event.is_set():
                result.cancelled = True
                logger.warning(f"Backfill {source} cancelled after {result.processed} record(s)")
                break

            result.processed += 1
            try:
                written = self._process_record(source, record_id, record, derive)
            except EntityGraphError as e:
                result.errors.append(BackfillError(str(record_id), e.message))
                logger.warning(f"Backfill {source}: record {record_id} skipped: {e.message}")
                continue
            except (DatabaseError, ValueError) as e:
                result.errors.append(BackfillError(str(record_id), str(e)))
                logger.warning(f"Backfill {source}: record {record_id} failed: {str(e)}")
                continue
            except Exception as e:
                # One bad record never aborts the batch
                result.errors.append(BackfillError(str(record_id), str(e)))
                logger.error(f"Backfill {source}: unexpected error on record {record_id}: {str(e)}", exc_info=True)
                continue

            if written:
                result.succeeded += 1
                result.edges += written
            else:
                result.skipped += 1

        logger.info(
            f"Backfill {source}: {result.processed} processed, {result.succeeded} succeeded, "
            f"{result.edges} edges, {result.skipped} skipped, {result.failed} failed"
            f"{' (dry run)' if self.dry_run else ''}"
        )
        return result

    def _process_record(self, source, record_id, record, derive):
        deadline = self.clock() + self.record_timeout if self.record_timeout else None
        with transaction.atomic():
            requests = list(derive(record) if derive is not None else record())
            for request in requests:
                request.metadata.setdefault('migratedFrom', source)
                self._check_endpoints(request)
                if not self.dry_run:
                    self.store.upsert(request)
            self._check_deadline(deadline, record_id)
        return len(requests)

    def _check_endpoints(self, request):
        if not self.lookup.exists(request.source_type, request.source_id):
            raise EntityNotFound(request.source_type, request.source_id)
        if not self.lookup.exists(request.target_type, request.target_id):
            raise EntityNotFound(request.target_type, request.target_id)

    def _check_deadline(self, deadline, record_id):
        if deadline is not None and self.clock() > deadline:
            raise RecordTimeout(
                f"Record {record_id} exceeded {self.record_timeout}s and was rolled back",
                details={'record_id': str(record_id), 'timeout': self.record_timeout},
            )

    # ==================== SOURCES ====================

    @staticmethod
    def _limited(queryset, limit):
        return queryset[:limit] if limit else queryset

    def _task_assignee_records(self, limit=None):
        from backend.projects.models import Task
        tasks = Task.objects.filter(assignee__isnull=False, is_deleted=False).order_by('id')
        for task in self._limited(tasks, limit):
            yield task.pk, (lambda task=task: [NewEdgeRequest(
                relationship_type='assigned_to',
                source_type='Task',
                source_id=task.pk,
                target_type='User',
                target_id=task.assignee_id,
                strength=ASSIGNMENT_STRENGTH.get(task.priority, 3),
                metadata={
                    'taskPriority': task.priority,
                    'taskStatus': task.status,
                    'migratedFrom': 'task_assignee_field',
                },
                tags=['assignment', 'migrated'],
            )])

    def _task_project_records(self, limit=None):
        from backend.projects.models import Task
        tasks = Task.objects.filter(project__isnull=False, is_deleted=False).order_by('id')
        for task in self._limited(tasks, limit):
            yield task.pk, (lambda task=task: [NewEdgeRequest(
                relationship_type='belongs_to',
                source_type='Task',
                source_id=task.pk,
                target_type='Project',
                target_id=task.project_id,
                metadata={'migratedFrom': 'task_project_field'},
                tags=['project', 'migrated'],
            )])

    def _budget_name_matching_records(self, limit=None):
        from backend.projects.models import Budget, Project
        projects = list(Project.objects.filter(is_active=True).order_by('id'))
        budgets = Budget.objects.filter(is_deleted=False, project__isnull=True).order_by('id')
        for budget in self._limited(budgets, limit):
            yield budget.pk, (lambda budget=budget: self._match_budget(budget, projects))

    @staticmethod
    def _match_budget(budget, projects):
        """Link a budget to the first project whose name overlaps the budget's name or description"""
        budget_name = (budget.name or '').strip().lower()
        description = (budget.description or '').lower()
        for project in projects:
            project_name = project.name.strip().lower()
            if not project_name:
                continue
            # A blank budget name would be contained in every project name
            name_overlap = bool(budget_name) and (project_name in budget_name or budget_name in project_name)
            if name_overlap or project_name in description:
                return [NewEdgeRequest(
                    relationship_type='funds',
                    source_type='Budget',
                    source_id=budget.pk,
                    target_type='Project',
                    target_id=project.pk,
                    strength=4,
                    metadata={
                        'migratedFrom': 'name_matching',
                        'budgetName': budget.name,
                        'projectName': project.name,
                    },
                    tags=['funding', 'migrated'],
                )]
        return []

    def _work_order_records(self, limit=None):
        from backend.costs.models import WorkOrder
        work_orders = (
            WorkOrder.objects.exclude(status='cancelled')
            .filter(components__isnull=False)
            .distinct()
            .prefetch_related('components')
            .order_by('id')
        )
        for work_order in self._limited(work_orders, limit):
            yield work_order.pk, (lambda work_order=work_order: self._main_product_edge(work_order))

    @staticmethod
    def _main_product_edge(work_order):
        components = list(work_order.components.all())
        if not components:
            return []
        # The component with the largest planned quantity is the product being made
        main = components[0]
        for component in components[1:]:
            if component.qty_planned > main.qty_planned:
                main = component
        return [NewEdgeRequest(
            relationship_type='produces',
            source_type='WorkOrder',
            source_id=work_order.pk,
            target_type='Product',
            target_id=main.product_id,
            strength=4,
            metadata={
                'plannedQuantity': str(main.qty_planned),
                'actualQuantity': str(main.qty_consumed),
                'migratedFrom': 'work_order_components',
            },
            tags=['production', 'migrated'],
        )]

    def _vendor_cost_records(self, limit=None):
        from backend.parties.models import Vendor
        vendors = Vendor.objects.filter(is_active=True).order_by('id')
        for vendor in self._limited(vendors, limit):
            yield vendor.pk, (lambda vendor=vendor: self._vendor_supply_edges(vendor))

    @staticmethod
    def _vendor_supply_edges(vendor):
        """Products bought on costs whose description names the vendor"""
        from backend.costs.models import CostLine
        rows = (
            CostLine.objects.filter(product__isnull=False, cost__description__icontains=vendor.name)
            .exclude(cost__status='cancelled')
            .values('product_id')
            .annotate(supply_count=Count('id'), total_value=Sum('total_cost'), last_supply_date=Max('cost__date'))
            .order_by('product_id')
        )
        return [
            NewEdgeRequest(
                relationship_type='supplier',
                source_type='Vendor',
                source_id=vendor.pk,
                target_type='Product',
                target_id=row['product_id'],
                strength=min(5, math.ceil(row['supply_count'] / 2)),
                metadata={
                    'supplyCount': row['supply_count'],
                    'totalValue': str(row['total_value']),
                    'lastSupplyDate': row['last_supply_date'].isoformat() if row['last_supply_date'] else None,
                    'migratedFrom': 'cost_analysis',
                },
                tags=['supplier', 'migrated', 'cost-based'],
            )
            for row in rows
        ]

    def _product_brand_records(self, limit=None):
        from backend.catalog.models import Product
        products = (
            Product.objects.filter(Q(brand__isnull=False) | ~Q(brand_name=''))
            .select_related('brand')
            .order_by('id')
        )
        for product in self._limited(products, limit):
            yield product.pk, (lambda product=product: self._brand_edge(product))

    @staticmethod
    def _brand_edge(product):
        from backend.parties.models import Contact
        if product.brand_id:
            brand_type, brand_id, brand_name = 'Brand', product.brand_id, product.brand.name
        else:
            contact = Contact.objects.filter(name=product.brand_name, contact_type='brand').first()
            if contact is None:
                return []
            brand_type, brand_id, brand_name = 'Contact', contact.pk, product.brand_name
        return [NewEdgeRequest(
            relationship_type='brand_of',
            source_type=brand_type,
            source_id=brand_id,
            target_type='Product',
            target_id=product.pk,
            strength=3,
            metadata={'brandName': brand_name, 'migratedFrom': 'product_brand_field'},
            tags=['brand', 'migrated'],
        )]

    def _comment_mention_records(self, limit=None):
        from backend.projects.models import Comment
        comments = Comment.objects.filter(content__contains='@', is_deleted=False).order_by('id')
        for comment in self._limited(comments, limit):
            yield comment.pk, (lambda comment=comment: self._mention_edges(comment))

    @staticmethod
    def _mention_edges(comment):
        from backend.core.models import User
        requests = []
        seen = set()
        for mention_name in MENTION_PATTERN.findall(comment.content):
            user = (
                User.objects.filter(
                    Q(username=mention_name) |
                    Q(first_name__icontains=mention_name) |
                    Q(last_name__icontains=mention_name)
                )
                .filter(is_active=True)
                .order_by('id')
                .first()
            )
            if user is None or user.pk in seen:
                continue
            seen.add(user.pk)
            requests.append(NewEdgeRequest(
                relationship_type='mentioned_in',
                source_type='User',
                source_id=user.pk,
                target_type='Comment',
                target_id=comment.pk,
                strength=1,
                metadata={
                    'mentionText': f'@{mention_name}',
                    'context': 'comment',
                    'migratedFrom': 'comment_parsing',
                },
                tags=['mention', 'migrated'],
            ))
        return requests

    def _supplier_detection_records(self, limit=None):
        from backend.parties.models import Contact
        contacts = Contact.objects.filter(is_active=True).order_by('id')
        for contact in self._limited(contacts, limit):
            yield contact.pk, (lambda contact=contact: self._detected_supplier_edges(contact))

    @staticmethod
    def _detected_supplier_edges(contact):
        """Products that appear on at least two costs described by the contact's name or company"""
        from backend.costs.models import CostLine
        described_by = Q(cost__description=contact.name)
        if contact.company:
            described_by |= Q(cost__description=contact.company)
        rows = (
            CostLine.objects.filter(product__isnull=False)
            .filter(described_by)
            .values('product_id')
            .annotate(interaction_count=Count('id'), total_value=Sum('total_cost'))
            .filter(interaction_count__gte=2)
            .order_by('-total_value')
        )
        detected_at = timezone.now().isoformat()
        return [
            NewEdgeRequest(
                relationship_type='supplier',
                source_type='Contact',
                source_id=contact.pk,
                target_type='Product',
                target_id=row['product_id'],
                strength=min(5, math.ceil(row['interaction_count'] / 2)),
                metadata={
                    'autoDetected': True,
                    'interactionCount': row['interaction_count'],
                    'totalValue': str(row['total_value']),
                    'detectedAt': detected_at,
                    'migratedFrom': 'supplier_detection',
                },
                tags=['supplier', 'auto-detected'],
            )
            for row in rows
        ]

    def detect_supplier_relationships(self, limit=None, user=None):
        return self.run('supplier_detection', limit=limit, user=user)


def _edge_exists(relationship_type, source_type, target_type, source_field='pk', target_field=None):
    """Exists() subquery matching a live edge from the outer row"""
    condition = {
        'relationship_type': relationship_type,
        'source_type': source_type,
        'source_id': Cast(OuterRef(source_field), output_field=CharField()),
        'target_type': target_type,
        'is_deleted': False,
    }
    if target_field:
        condition['target_id'] = Cast(OuterRef(target_field), output_field=CharField())
    return Exists(EntityRelationship.objects.filter(**condition))


def audit_legacy_relationships():
    """
    Compare legacy foreign-key columns with the relationship graph.

    Returns:
        dict with legacy field usage, rows not yet mirrored into the graph,
        graph totals and recommendations
    """
    from backend.catalog.models import Product
    from backend.projects.models import Comment, Task

    live_tasks = Task.objects.filter(is_deleted=False)
    tasks_with_assignee = live_tasks.filter(assignee__isnull=False)
    tasks_with_project = live_tasks.filter(project__isnull=False)
    products_with_brand = Product.objects.filter(brand__isnull=False)

    legacy_fields = [
        {'model': 'Task', 'field': 'assignee', 'count': tasks_with_assignee.count()},
        {'model': 'Task', 'field': 'project', 'count': tasks_with_project.count()},
        {'model': 'Product', 'field': 'brand', 'count': products_with_brand.count()},
        {'model': 'Comment', 'field': 'task', 'count': Comment.objects.filter(task__isnull=False, is_deleted=False).count()},
        {'model': 'Comment', 'field': 'budget', 'count': Comment.objects.filter(budget__isnull=False, is_deleted=False).count()},
    ]

    missing = {
        'task_assignments': tasks_with_assignee.exclude(
            _edge_exists('assigned_to', 'Task', 'User', target_field='assignee_id')
        ).count(),
        'task_projects': tasks_with_project.exclude(
            _edge_exists('belongs_to', 'Task', 'Project', target_field='project_id')
        ).count(),
        'product_brands': products_with_brand.exclude(
            Exists(EntityRelationship.objects.filter(
                relationship_type='brand_of',
                source_type='Brand',
                source_id=Cast(OuterRef('brand_id'), output_field=CharField()),
                target_type='Product',
                target_id=Cast(OuterRef('pk'), output_field=CharField()),
                is_deleted=False,
            ))
        ).count(),
    }

    live = EntityRelationship.objects.filter(is_deleted=False)
    by_type = list(
        live.values('relationship_type').annotate(count=Count('id')).order_by('-count', 'relationship_type')[:10]
    )
    migrated = live.filter(metadata__has_key='migratedFrom').count()

    recommendations = []
    if missing['task_assignments']:
        recommendations.append(
            f"{missing['task_assignments']} task assignment(s) not in the graph: run backfill_relationships --source task_assignee_field"
        )
    if missing['task_projects']:
        recommendations.append(
            f"{missing['task_projects']} task/project link(s) not in the graph: run backfill_relationships --source task_project_field"
        )
    if missing['product_brands']:
        recommendations.append(
            f"{missing['product_brands']} product brand(s) not in the graph: run backfill_relationships --source product_brand_field"
        )

    return {
        'legacy_fields': legacy_fields,
        'missing_in_graph': missing,
        'total_relationships': live.count(),
        'migrated_relationships': migrated,
        'by_type': by_type,
        'recommendations': recommendations,
    }
