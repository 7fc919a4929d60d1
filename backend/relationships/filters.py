import django_filters
from .models import EntityRelationship
from .store import filter_by_tags


class EntityRelationshipFilter(django_filters.FilterSet):
    """Filter for EntityRelationship using django-filter"""

    relationship_type = django_filters.CharFilter(field_name='relationship_type', lookup_expr='exact')
    source_type = django_filters.CharFilter(field_name='source_type', lookup_expr='exact')
    source_id = django_filters.CharFilter(field_name='source_id', lookup_expr='exact')
    target_type = django_filters.CharFilter(field_name='target_type', lookup_expr='exact')
    target_id = django_filters.CharFilter(field_name='target_id', lookup_expr='exact')
    min_strength = django_filters.NumberFilter(field_name='strength', lookup_expr='gte')
    max_strength = django_filters.NumberFilter(field_name='strength', lookup_expr='lte')
    is_active = django_filters.BooleanFilter(field_name='is_active')
    tenant_id = django_filters.CharFilter(field_name='tenant_id', lookup_expr='exact')
    # Comma-separated; an edge matches when it carries any of them
    tags = django_filters.CharFilter(method='filter_tags', label='Tags')

    class Meta:
        model = EntityRelationship
        fields = ['relationship_type', 'source_type', 'source_id', 'target_type', 'target_id',
                  'min_strength', 'max_strength', 'is_active', 'tenant_id', 'tags']

    def filter_tags(self, queryset, name, value):
        tags = [tag.strip() for tag in value.split(',') if tag.strip()]
        return filter_by_tags(queryset, tags)
