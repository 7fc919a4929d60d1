from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from backend.core.entities import get_entity_lookup
from backend.core.exceptions import EntityGraphError, EntityNotFound
from backend.core.utils import engine_error_response
from .filters import EntityRelationshipFilter
from .models import RelationshipType
from .serializers import (
    RelationshipTypeSerializer, EntityRelationshipSerializer,
    EntityRelationshipUpsertSerializer, MentionSerializer,
)
from .store import EntityRelationshipStore, live_edges


def _find_criteria(filterset):
    """Store.find keyword arguments from a validated EntityRelationshipFilter"""
    data = filterset.form.cleaned_data
    criteria = {
        name: data.get(name) or None
        for name in ('relationship_type', 'source_type', 'source_id', 'target_type', 'target_id', 'tenant_id')
    }
    criteria['min_strength'] = data.get('min_strength')
    criteria['max_strength'] = data.get('max_strength')
    # Active edges unless the caller asks otherwise
    criteria['is_active'] = True if data.get('is_active') is None else data['is_active']
    criteria['tags'] = [tag.strip() for tag in (data.get('tags') or '').split(',') if tag.strip()] or None
    return criteria


# RelationshipType views (read-only; the catalog is seeded by command)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def relationship_type_list(request):
    """List relationship types, optionally those valid for an entity kind"""
    queryset = RelationshipType.objects.all()
    entity_type = request.query_params.get('entity_type', None)
    serializer = RelationshipTypeSerializer(queryset, many=True)
    data = serializer.data
    if entity_type:
        data = [
            row for row in data
            if '*' in row['source_types'] or entity_type in row['source_types']
            or '*' in row['target_types'] or entity_type in row['target_types']
        ]
    return Response(data)


# EntityRelationship views
@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def relationship_list_create(request):
    """List relationships with filtering, or create/merge one"""
    if request.method == 'GET':
        filterset = EntityRelationshipFilter(request.query_params, queryset=live_edges())
        if not filterset.is_valid():
            return Response(filterset.errors, status=status.HTTP_400_BAD_REQUEST)
        try:
            page = EntityRelationshipStore().find(
                page=request.query_params.get('page', 1),
                limit=request.query_params.get('limit'),
                **_find_criteria(filterset)
            )
        except ValueError:
            return Response({'error': 'page and limit must be integers'}, status=status.HTTP_400_BAD_REQUEST)
        page['results'] = EntityRelationshipSerializer(page['results'], many=True).data
        return Response(page)

    serializer = EntityRelationshipUpsertSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    edge_request = serializer.to_request()

    lookup = get_entity_lookup()
    try:
        for kind, entity_id in ((edge_request.source_type, edge_request.source_id),
                                (edge_request.target_type, edge_request.target_id)):
            if lookup.is_registered(kind) and not lookup.exists(kind, entity_id):
                raise EntityNotFound(kind, entity_id)
        edge = EntityRelationshipStore().upsert(edge_request, user=request.user)
    except EntityGraphError as e:
        return engine_error_response(e)

    response_status = status.HTTP_201_CREATED if edge.interaction_count == 1 else status.HTTP_200_OK
    return Response(EntityRelationshipSerializer(edge).data, status=response_status)


@api_view(['GET', 'DELETE'])
@permission_classes([IsAuthenticated])
def relationship_detail(request, pk):
    """Retrieve or soft-delete a relationship"""
    store = EntityRelationshipStore()
    try:
        if request.method == 'GET':
            return Response(EntityRelationshipSerializer(store.get(pk)).data)
        store.soft_delete(pk, by=request.user)
    except EntityGraphError as e:
        return engine_error_response(e)
    return Response(status=status.HTTP_204_NO_CONTENT)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def entity_relationships(request, entity_type, entity_id):
    """All active relationships touching an entity, split by direction"""
    tenant_id = request.query_params.get('tenant_id', None)
    edges = EntityRelationshipStore().entity_relationships(entity_type, entity_id, tenant_id=tenant_id)
    outgoing = [edge for edge in edges if edge.source_type == entity_type and edge.source_id == str(entity_id)]
    incoming = [edge for edge in edges if edge not in outgoing]
    return Response({
        'entity_type': entity_type,
        'entity_id': str(entity_id),
        'outgoing': EntityRelationshipSerializer(outgoing, many=True).data,
        'incoming': EntityRelationshipSerializer(incoming, many=True).data,
        'total': len(edges),
    })


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def related_entities(request, entity_type, entity_id, relationship_type):
    """Entities reachable from an entity over one relationship type"""
    store = EntityRelationshipStore()
    try:
        store.registry.resolve(relationship_type)
    except EntityGraphError as e:
        return engine_error_response(e)

    refs = store.related_of(entity_type, entity_id, relationship_type,
                            tenant_id=request.query_params.get('tenant_id', None))
    include = request.query_params.get('include_entities', 'false').lower() == 'true'
    lookup = get_entity_lookup()
    results = []
    for ref in refs:
        row = {'entity_type': ref.kind, 'entity_id': ref.id}
        if include:
            row['entity'] = lookup.load(ref.kind, ref.id)
        results.append(row)
    return Response({'results': results, 'total': len(results)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def relationship_stats(request):
    """Counts and mean strength per relationship type and endpoint kinds"""
    return Response(EntityRelationshipStore().stats(tenant_id=request.query_params.get('tenant_id', None)))


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def relationship_suggestions(request):
    """Suggest targets an entity could be linked to"""
    entity_type = request.query_params.get('entity_type', None)
    entity_id = request.query_params.get('entity_id', None)
    target_type = request.query_params.get('target_type', None)
    if not entity_type or not entity_id or not target_type:
        return Response(
            {'error': 'entity_type, entity_id and target_type are required'},
            status=status.HTTP_400_BAD_REQUEST
        )
    try:
        limit = int(request.query_params.get('limit', 10))
    except ValueError:
        return Response({'error': 'limit must be an integer'}, status=status.HTTP_400_BAD_REQUEST)

    suggestions = EntityRelationshipStore().suggestions(
        entity_type, entity_id, target_type,
        tenant_id=request.query_params.get('tenant_id', None), limit=limit
    )
    return Response(suggestions)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def relationship_mention(request):
    """Record that an entity was @mentioned inside another"""
    serializer = MentionSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        edge = EntityRelationshipStore().relationship_from_mention(
            data['mentioned_type'], data['mentioned_id'],
            data['context_entity_type'], data['context_entity_id'],
            context_type=data.get('context_type') or None,
            context_data=data.get('context_data'),
            tenant_id=data.get('tenant_id') or None,
            user=request.user,
        )
    except EntityGraphError as e:
        return engine_error_response(e)
    response_status = status.HTTP_201_CREATED if edge.interaction_count == 1 else status.HTTP_200_OK
    return Response(EntityRelationshipSerializer(edge).data, status=response_status)
