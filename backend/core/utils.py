"""Utility functions for audit logging"""
import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def get_client_ip(request):
    """Extract client IP address from request"""
    if not request or not hasattr(request, 'META'):
        return None
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR')
    return ip or None


def create_audit_log(request=None, action=None, model_name=None, object_id=None,
                     changes=None, user=None, object_name=None, object_reference=None):
    """
    Create an audit log entry

    Args:
        request: Django request object (for user and IP) - optional if user is provided
        action: Action type (sku_generate, mirror_write_failed, etc.)
        model_name: Name of the model being acted upon
        object_id: ID of the object (as string)
        changes: Dictionary of changes made
        user: Optional user override (defaults to request.user if request provided)
        object_name: Human-readable name of the object
        object_reference: Reference identifier (e.g., natural key of an edge)
    """
    try:
        audit_user = None
        if user:
            audit_user = user
        elif request and hasattr(request, 'user'):
            audit_user = request.user

        ip_address = get_client_ip(request) if request else None

        if not action or not model_name or not object_id:
            logger.warning(f"Audit log creation skipped: missing required fields (action={action}, model_name={model_name}, object_id={object_id})")
            return None

        return AuditLog.objects.create(
            user=audit_user if audit_user and audit_user.is_authenticated else None,
            action=action,
            model_name=model_name,
            object_id=str(object_id),
            object_name=object_name,
            object_reference=object_reference,
            changes=changes or {},
            ip_address=ip_address
        )
    except Exception as e:
        # Don't fail the main operation if audit logging fails
        logger.error(f"Failed to create audit log: {str(e)}")
        return None


def engine_error_response(exc):
    """
    Translate an engine error into an API response

    Validation-class errors map to 400, missing things to 404,
    allocator contention to 409 and rejected renders to 422.
    """
    from rest_framework import status
    from rest_framework.response import Response
    from .exceptions import (
        EntityNotFound, NoTemplateConfigured, RelationshipTypeNotFound,
        SequenceContention, TemplateRenderInvalid,
    )

    if isinstance(exc, (EntityNotFound, NoTemplateConfigured, RelationshipTypeNotFound)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, SequenceContention):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, TemplateRenderInvalid):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    body = {'error': exc.message, 'code': type(exc).__name__}
    if exc.details:
        body['details'] = exc.details
    return Response(body, status=status_code)
