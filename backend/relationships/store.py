"""
Entity relationship store.

All writes to the relationship graph go through ``EntityRelationshipStore``:
insert-or-merge on the natural key, best-effort mirror edges for
bidirectional types, soft deletes, and the read helpers used by the SKU
engine and the API.
"""
import logging
import math
import time

from django.db import DatabaseError, IntegrityError, OperationalError, connection, transaction
from django.db.models import Avg, Count, F, Q
from django.utils import timezone

from backend.core.conf import engine_setting
from backend.core.entities import EntityRef
from backend.core.exceptions import EntityGraphError, EntityNotFound, MirrorWriteFailed
from backend.core.utils import create_audit_log
from .models import EntityRelationship
from .registry import get_registry
from .types import NewEdgeRequest

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 1.0  # seconds


def filter_by_tags(queryset, tags):
    """Keep edges carrying any of ``tags``"""
    tags = [tag for tag in (tags or []) if tag]
    if not tags:
        return queryset
    if connection.features.supports_json_field_contains:
        condition = Q()
        for tag in tags:
            condition |= Q(tags__contains=[tag])
        return queryset.filter(condition)
    # JSON containment is not available (SQLite); match in Python
    wanted = set(tags)
    matching_ids = [
        pk for pk, edge_tags in queryset.values_list('pk', 'tags')
        if wanted.intersection(edge_tags or [])
    ]
    return queryset.filter(pk__in=matching_ids)


def live_edges(tenant_id=None):
    """Non-deleted edges, optionally restricted to one tenant"""
    queryset = EntityRelationship.objects.filter(is_deleted=False)
    if tenant_id is not None:
        queryset = queryset.filter(tenant_id=tenant_id)
    return queryset


def request_from_edge(edge):
    return NewEdgeRequest(
        relationship_type=edge.relationship_type,
        source_type=edge.source_type,
        source_id=edge.source_id,
        target_type=edge.target_type,
        target_id=edge.target_id,
        strength=edge.strength,
        metadata=edge.metadata,
        tags=edge.tags,
        priority=edge.priority,
        valid_from=edge.valid_from,
        valid_until=edge.valid_until,
        tenant_id=edge.tenant_id,
    )


class EntityRelationshipStore:
    """
    Persistence operations over EntityRelationship rows.

    Args:
        registry: RelationshipTypeRegistry to validate against; the shared
            process registry is used when omitted
    """

    def __init__(self, registry=None):
        self._registry = registry

    @property
    def registry(self):
        return self._registry if self._registry is not None else get_registry()

    # ==================== WRITES ====================

    def upsert(self, request, mirror=True, user=None):
        """
        Insert or merge an edge keyed by its natural key.

        For bidirectional types the reverse edge is upserted as well; that
        write never mirrors again and its failure never undoes the primary.
        """
        rel_type = self.registry.validate_edge(
            request.relationship_type, request.source_type, request.target_type
        )
        edge, created = self._write(request, rel_type)
        logger.info(f"{'Created' if created else 'Merged'} relationship {request} (id={edge.pk})")

        if mirror and rel_type.is_bidirectional:
            self._write_mirror(edge, request, rel_type, user=user)
        return edge

    def _write(self, request, rel_type):
        max_retries = engine_setting('UPSERT_MAX_RETRIES')
        backoff = engine_setting('UPSERT_RETRY_BACKOFF')
        attempt = 0
        while True:
            attempt += 1
            try:
                with transaction.atomic():
                    return self._insert_or_merge(request, rel_type)
            except (IntegrityError, OperationalError) as e:
                # Another writer inserted the same natural key first or holds its lock
                if attempt >= max_retries:
                    raise
                logger.info(f"Concurrent upsert of {request}, retrying ({attempt}/{max_retries}): {str(e)}")
                if backoff:
                    time.sleep(min(backoff * 2 ** (attempt - 1), MAX_RETRY_DELAY))

    def _insert_or_merge(self, request, rel_type):
        now = timezone.now()
        existing = (
            EntityRelationship.objects.select_for_update()
            .filter(is_deleted=False, **request.natural_key_filter())
            .first()
        )
        if existing is not None:
            if request.strength is not None:
                existing.strength = request.strength
            if request.metadata:
                existing.metadata = {**(existing.metadata or {}), **request.metadata}
            if request.tags:
                existing.tags = list(dict.fromkeys(list(existing.tags or []) + request.tags))
            if request.priority is not None:
                existing.priority = request.priority
            if request.valid_from is not None:
                existing.valid_from = request.valid_from
            if request.valid_until is not None:
                existing.valid_until = request.valid_until
            if existing.tenant_id is None and request.tenant_id is not None:
                existing.tenant_id = request.tenant_id
            existing.interaction_count += 1
            existing.last_interaction_at = now
            existing.is_active = True
            existing.save()
            return existing, False

        edge = EntityRelationship.objects.create(
            relationship_type=request.relationship_type,
            source_type=request.source_type,
            source_id=request.source_id,
            target_type=request.target_type,
            target_id=request.target_id,
            strength=request.strength if request.strength is not None else rel_type.default_strength,
            metadata=request.metadata,
            tags=request.tags,
            priority=request.priority or 0,
            valid_from=request.valid_from,
            valid_until=request.valid_until,
            tenant_id=request.tenant_id,
            last_interaction_at=now,
            interaction_count=1,
        )
        return edge, True

    def _write_mirror(self, edge, request, rel_type, user=None):
        mirror_request = request.mirrored(rel_type.reverse_type_name)
        if mirror_request.natural_key == request.natural_key:
            # Symmetric self-loop; the primary is its own mirror
            return None
        try:
            reverse = self.registry.validate_edge(
                mirror_request.relationship_type, mirror_request.source_type, mirror_request.target_type
            )
            mirror_edge, _ = self._write(mirror_request, reverse)
            return mirror_edge
        except (EntityGraphError, DatabaseError) as e:
            failure = MirrorWriteFailed(
                f"Mirror edge {mirror_request} for relationship {edge.pk} could not be written: {e}",
                details={
                    'relationship_id': edge.pk,
                    'mirror': str(mirror_request),
                    'reason': str(e),
                },
            )
            logger.warning(failure.message)
            create_audit_log(
                action='mirror_write_failed',
                model_name='EntityRelationship',
                object_id=edge.pk,
                object_name=rel_type.reverse_type_name,
                object_reference=str(mirror_request),
                changes=failure.details,
                user=user,
            )
            return None

    def soft_delete(self, edge_id, by=None):
        """
        Mark one edge deleted. The mirror edge, if any, is left untouched;
        callers wanting both directions gone delete both.
        """
        with transaction.atomic():
            edge = (
                EntityRelationship.objects.select_for_update()
                .filter(pk=edge_id, is_deleted=False)
                .first()
            )
            if edge is None:
                raise EntityNotFound('EntityRelationship', edge_id)
            edge.is_deleted = True
            edge.is_active = False
            edge.deleted_at = timezone.now()
            edge.deleted_by = by
            edge.save(update_fields=['is_deleted', 'is_active', 'deleted_at', 'deleted_by', 'updated_at'])

        logger.info(f"Soft-deleted relationship {edge.natural_key_display} (id={edge.pk})")
        create_audit_log(
            action='relationship_delete',
            model_name='EntityRelationship',
            object_id=edge.pk,
            object_name=edge.relationship_type,
            object_reference=edge.natural_key_display,
            user=by,
        )
        return edge

    def touch(self, source_type, source_id, target_type, target_id, relationship_type):
        """Record an interaction on an existing edge; returns False if there is none"""
        now = timezone.now()
        updated = EntityRelationship.objects.filter(
            is_deleted=False,
            source_type=source_type,
            source_id=str(source_id),
            target_type=target_type,
            target_id=str(target_id),
            relationship_type=relationship_type,
        ).update(interaction_count=F('interaction_count') + 1, last_interaction_at=now, updated_at=now)
        return bool(updated)

    def relationship_from_mention(self, mentioned_type, mentioned_id, context_entity_type, context_entity_id,
                                  context_type=None, context_data=None, tenant_id=None, user=None):
        """Record that an entity was @mentioned inside another (mentioned -> mentioned_in -> context)"""
        request = NewEdgeRequest(
            relationship_type='mentioned_in',
            source_type=mentioned_type,
            source_id=mentioned_id,
            target_type=context_entity_type,
            target_id=context_entity_id,
            strength=1,
            metadata={
                'contextType': context_type,
                'contextData': context_data,
                'createdFrom': 'mention',
                'timestamp': timezone.now().isoformat(),
            },
            tags=[tag for tag in ('mention', context_type) if tag],
            tenant_id=tenant_id,
        )
        return self.upsert(request, user=user)

    # ==================== READS ====================

    def get(self, edge_id):
        edge = live_edges().filter(pk=edge_id).first()
        if edge is None:
            raise EntityNotFound('EntityRelationship', edge_id)
        return edge

    def find(self, source_type=None, source_id=None, target_type=None, target_id=None,
             relationship_type=None, tags=None, min_strength=None, max_strength=None,
             is_active=True, tenant_id=None, page=1, limit=None):
        """
        Page through non-deleted edges matching every given criterion.

        ``is_active=None`` returns active and inactive edges alike. Results
        are ordered by priority (highest first), then creation time.

        Returns:
            dict with results, total, page, limit and total_pages
        """
        queryset = live_edges(tenant_id)
        if source_type:
            queryset = queryset.filter(source_type=source_type)
        if source_id is not None:
            queryset = queryset.filter(source_id=str(source_id))
        if target_type:
            queryset = queryset.filter(target_type=target_type)
        if target_id is not None:
            queryset = queryset.filter(target_id=str(target_id))
        if relationship_type:
            queryset = queryset.filter(relationship_type=relationship_type)
        if min_strength is not None:
            queryset = queryset.filter(strength__gte=min_strength)
        if max_strength is not None:
            queryset = queryset.filter(strength__lte=max_strength)
        if is_active is not None:
            queryset = queryset.filter(is_active=is_active)
        queryset = filter_by_tags(queryset, tags)

        return paginate(queryset.order_by('-priority', 'created_at', 'id'), page, limit)

    def related_of(self, entity_type, entity_id, relationship_type, tenant_id=None, at=None):
        """
        Targets reachable from an entity over one relationship type.

        Only active, non-deleted edges whose validity window covers ``at``
        (default: now) are followed. Ordered by priority then creation time.
        """
        at = at or timezone.now()
        rows = (
            live_edges(tenant_id)
            .filter(
                is_active=True,
                source_type=entity_type,
                source_id=str(entity_id),
                relationship_type=relationship_type,
            )
            .filter(Q(valid_until__isnull=True) | Q(valid_until__gt=at))
            .filter(Q(valid_from__isnull=True) | Q(valid_from__lte=at))
            .order_by('-priority', 'created_at', 'id')
            .values_list('target_type', 'target_id')
        )
        return [EntityRef(target_type, target_id) for target_type, target_id in rows]

    def entity_relationships(self, entity_type, entity_id, tenant_id=None):
        """Active edges touching an entity in either direction"""
        entity_id = str(entity_id)
        return list(
            live_edges(tenant_id)
            .filter(is_active=True)
            .filter(
                Q(source_type=entity_type, source_id=entity_id) |
                Q(target_type=entity_type, target_id=entity_id)
            )
            .order_by('-priority', '-strength', 'created_at')
        )

    def stats(self, tenant_id=None):
        """Edge counts and mean strength per (type, source kind, target kind)"""
        rows = (
            live_edges(tenant_id)
            .filter(is_active=True)
            .values('relationship_type', 'source_type', 'target_type')
            .annotate(count=Count('id'), avg_strength=Avg('strength'))
            .order_by('relationship_type', 'source_type', 'target_type')
        )
        return [
            {
                'relationship_type': row['relationship_type'],
                'source_type': row['source_type'],
                'target_type': row['target_type'],
                'count': row['count'],
                'avg_strength': round(row['avg_strength'], 2) if row['avg_strength'] is not None else None,
            }
            for row in rows
        ]

    def suggestions(self, entity_type, entity_id, target_type, tenant_id=None, limit=10):
        """
        Targets of ``target_type`` most often linked from other entities of
        the same kind, as candidates to link ``entity_id`` to.
        """
        rows = (
            live_edges(tenant_id)
            .filter(is_active=True, source_type=entity_type, target_type=target_type)
            .exclude(source_id=str(entity_id))
            .values('target_type', 'target_id')
            .annotate(relationship_count=Count('id'), avg_strength=Avg('strength'))
            .order_by('-relationship_count', '-avg_strength', 'target_id')[:limit]
        )
        return list(rows)

    # ==================== RECONCILIATION ====================

    def find_orphaned_mirrors(self, relationship_type=None, tenant_id=None):
        """
        Edges of bidirectional types whose reverse edge is missing.

        Returns:
            list of (edge, expected mirror NewEdgeRequest) pairs
        """
        registry = self.registry
        bidirectional = [t.name for t in registry if t.is_bidirectional]
        if relationship_type:
            bidirectional = [name for name in bidirectional if name == relationship_type]

        orphans = []
        queryset = live_edges(tenant_id).filter(is_active=True, relationship_type__in=bidirectional)
        for edge in queryset.order_by('id').iterator():
            rel_type = registry.resolve(edge.relationship_type)
            expected = request_from_edge(edge).mirrored(rel_type.reverse_type_name)
            if expected.natural_key == edge.natural_key:
                continue
            if not live_edges().filter(**expected.natural_key_filter()).exists():
                orphans.append((edge, expected))
        return orphans

    def repair_mirrors(self, relationship_type=None, tenant_id=None, user=None):
        """Write every missing mirror edge; returns the repaired mirrors"""
        repaired = []
        for edge, expected in self.find_orphaned_mirrors(relationship_type, tenant_id):
            expected.metadata['repairedFrom'] = str(edge.pk)
            try:
                reverse = self.registry.validate_edge(
                    expected.relationship_type, expected.source_type, expected.target_type
                )
                mirror_edge, _ = self._write(expected, reverse)
            except (EntityGraphError, DatabaseError) as e:
                logger.warning(f"Could not repair mirror {expected} of relationship {edge.pk}: {e}")
                continue
            create_audit_log(
                action='mirror_repaired',
                model_name='EntityRelationship',
                object_id=mirror_edge.pk,
                object_name=expected.relationship_type,
                object_reference=str(expected),
                changes={'repaired_from': edge.pk},
                user=user,
            )
            repaired.append(mirror_edge)
        logger.info(f"Repaired {len(repaired)} mirror relationship(s)")
        return repaired


def paginate(queryset, page=1, limit=None):
    limit = int(limit or engine_setting('DEFAULT_PAGE_SIZE'))
    if limit < 1:
        limit = 1
    page = max(int(page or 1), 1)
    total = queryset.count()
    offset = (page - 1) * limit
    return {
        'results': list(queryset[offset:offset + limit]),
        'total': total,
        'page': page,
        'limit': limit,
        'total_pages': math.ceil(total / limit) if total else 0,
    }
