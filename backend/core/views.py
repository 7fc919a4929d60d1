from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer, TokenRefreshSerializer
from rest_framework_simplejwt.exceptions import InvalidToken, TokenError
from django.contrib.auth import get_user_model
from django.core.exceptions import ObjectDoesNotExist
from django.shortcuts import get_object_or_404
from .conf import engine_setting
from .models import AuditLog
from .serializers import UserSerializer, AuditLogSerializer

User = get_user_model()


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    def validate(self, attrs):
        data = super().validate(attrs)
        # Ensure user is active
        if not self.user.is_active:
            from rest_framework_simplejwt.exceptions import AuthenticationFailed
            raise AuthenticationFailed('User account is disabled.')
        return data

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token['username'] = user.username
        token['role'] = user.role.code if user.role_id else None
        return token


class CustomTokenObtainPairView(TokenObtainPairView):
    serializer_class = CustomTokenObtainPairSerializer


class CustomTokenRefreshSerializer(TokenRefreshSerializer):
    """Token refresh that reports deleted users as an invalid token"""
    def validate(self, attrs):
        try:
            return super().validate(attrs)
        except (InvalidToken, TokenError):
            raise InvalidToken('Token is invalid or expired.')
        except (ObjectDoesNotExist, User.DoesNotExist):
            raise InvalidToken('Token is invalid. User no longer exists.')


class CustomTokenRefreshView(TokenRefreshView):
    serializer_class = CustomTokenRefreshSerializer


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def user_me(request):
    """Get current user"""
    user_data = UserSerializer(request.user).data
    user_data['groups'] = list(request.user.groups.values_list('name', flat=True))
    return Response(user_data)


# Audit trail (read-only)
AUDIT_LOG_FILTERS = {
    'action': 'action',
    'model': 'model_name',
    'object_id': 'object_id',
    'reference': 'object_reference',
    'date_from': 'created_at__gte',
    'date_to': 'created_at__lte',
}


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log_list(request):
    """
    List audit entries, newest first.

    Non-staff users only see entries they produced. Query params map onto
    AUDIT_LOG_FILTERS; ``limit`` caps the result size.
    """
    queryset = AuditLog.objects.select_related('user', 'user__role')
    if not request.user.is_staff:
        queryset = queryset.filter(user=request.user)

    lookups = {
        field: request.query_params[param]
        for param, field in AUDIT_LOG_FILTERS.items()
        if request.query_params.get(param)
    }
    queryset = queryset.filter(**lookups).order_by('-created_at')

    try:
        limit = int(request.query_params.get('limit', engine_setting('DEFAULT_PAGE_SIZE')))
    except ValueError:
        return Response({'error': 'limit must be an integer'}, status=status.HTTP_400_BAD_REQUEST)
    serializer = AuditLogSerializer(queryset[:max(limit, 1)], many=True)
    return Response(serializer.data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def audit_log_detail(request, pk):
    """Retrieve an audit log"""
    audit_log = get_object_or_404(AuditLog, pk=pk)

    if not request.user.is_staff and audit_log.user != request.user:
        return Response({'error': 'Permission denied'}, status=status.HTTP_403_FORBIDDEN)

    serializer = AuditLogSerializer(audit_log)
    return Response(serializer.data)
