from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated

from backend.core.exceptions import EntityGraphError
from backend.core.utils import engine_error_response
from .engine import SKUEngine
from .models import EntitySKU
from .serializers import SKUTemplateSerializer, EntitySKUSerializer, GenerateSKUSerializer, ValidateSKUSerializer


# SKUTemplate views (read-only; templates are seeded by command)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def sku_template_list(request):
    """List active SKU templates"""
    templates = SKUEngine().list_templates(
        entity_type=request.query_params.get('entity_type', None),
        tenant_id=request.query_params.get('tenant_id', None),
    )
    serializer = SKUTemplateSerializer(templates, many=True)
    return Response(serializer.data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def sku_template_set_default(request, pk):
    """Make a template the default for its entity type"""
    if not request.user.is_staff:
        return Response({'error': 'Permission denied'}, status=status.HTTP_403_FORBIDDEN)
    try:
        template = SKUEngine().set_default_template(pk, user=request.user)
    except EntityGraphError as e:
        return engine_error_response(e)
    return Response(SKUTemplateSerializer(template).data)


# EntitySKU views
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def sku_generate(request):
    """Generate a new SKU version for an entity"""
    serializer = GenerateSKUSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    data = serializer.validated_data
    try:
        entity_sku = SKUEngine().generate(
            data['entity_type'],
            data['entity_id'],
            template_id=data.get('template_id'),
            custom_components=data.get('custom_components'),
            tenant_id=data.get('tenant_id') or None,
            user=request.user,
        )
    except EntityGraphError as e:
        return engine_error_response(e)
    return Response(EntitySKUSerializer(entity_sku).data, status=status.HTTP_201_CREATED)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def entity_sku_detail(request, entity_type, entity_id):
    """Current SKU of an entity; ?history=true adds every earlier version"""
    entity_sku = SKUEngine().get_entity_sku(
        entity_type, entity_id, tenant_id=request.query_params.get('tenant_id', None)
    )
    if entity_sku is None:
        return Response(
            {'error': f'No SKU generated for {entity_type} {entity_id}'},
            status=status.HTTP_404_NOT_FOUND
        )
    data = EntitySKUSerializer(entity_sku).data
    if request.query_params.get('history', 'false').lower() == 'true':
        history = EntitySKU.objects.filter(entity_type=entity_type, entity_id=str(entity_id)).order_by('-version')
        data['history'] = EntitySKUSerializer(history, many=True).data
    return Response(data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def sku_validate(request):
    """Check whether a value can be used as a new SKU"""
    serializer = ValidateSKUSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    return Response(SKUEngine().validate_sku(serializer.validated_data['sku']))
