from django.urls import path
from .views import (
    sku_template_list, sku_template_set_default,
    sku_generate, entity_sku_detail, sku_validate,
)

urlpatterns = [
    # SKUTemplate endpoints
    path('sku-templates/', sku_template_list, name='sku-template-list'),
    path('sku-templates/<int:pk>/set-default/', sku_template_set_default, name='sku-template-set-default'),

    # EntitySKU endpoints
    path('skus/generate/', sku_generate, name='sku-generate'),
    path('skus/validate/', sku_validate, name='sku-validate'),
    path('skus/<str:entity_type>/<str:entity_id>/', entity_sku_detail, name='entity-sku-detail'),
]
