"""
URL configuration for backend project.

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/5.2/topics/http/urls/
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Entity Graph Admin Panel"
admin.site.site_title = "Entity Graph Admin Portal"
admin.site.index_title = "Relationships & SKU Administration"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('backend.core.urls')),
    path('api/v1/', include('backend.relationships.urls')),
    path('api/v1/', include('backend.sku.urls')),
]
