from django.contrib import admin
from .models import Cost, CostLine, WorkOrder, WorkOrderComponent


class CostLineInline(admin.TabularInline):
    model = CostLine
    extra = 0


class WorkOrderComponentInline(admin.TabularInline):
    model = WorkOrderComponent
    extra = 0


@admin.register(Cost)
class CostAdmin(admin.ModelAdmin):
    list_display = ['id', 'description', 'date', 'status', 'total']
    list_filter = ['status', 'date']
    search_fields = ['description']
    inlines = [CostLineInline]


@admin.register(WorkOrder)
class WorkOrderAdmin(admin.ModelAdmin):
    list_display = ['number', 'status', 'planned_date', 'created_at']
    list_filter = ['status']
    search_fields = ['number']
    inlines = [WorkOrderComponentInline]
