from django.db import models
from decimal import Decimal
from backend.catalog.models import Product


class Cost(models.Model):
    """Recorded cost/expense document"""
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('approved', 'Approved'),
        ('cancelled', 'Cancelled'),
    ]

    description = models.CharField(max_length=255, blank=True)
    date = models.DateField()
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.description or f"Cost-{self.id}"

    def get_total(self):
        """Sum of all line totals"""
        return sum((line.total_cost for line in self.lines.all()), Decimal('0.00'))

    class Meta:
        db_table = 'costs'
        ordering = ['-date', '-created_at']
        indexes = [
            models.Index(fields=['status'], name='idx_cost_status'),
        ]


class CostLine(models.Model):
    """Cost line items; a line may reference a product"""
    cost = models.ForeignKey(Cost, on_delete=models.CASCADE, related_name='lines')
    product = models.ForeignKey(Product, on_delete=models.SET_NULL, null=True, blank=True, related_name='cost_lines')
    description = models.CharField(max_length=255, blank=True)
    total_cost = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal('0.00'))

    class Meta:
        db_table = 'cost_lines'
        ordering = ['id']


class WorkOrder(models.Model):
    """Production work order"""
    STATUS_CHOICES = [
        ('planned', 'Planned'),
        ('in_progress', 'In progress'),
        ('done', 'Done'),
        ('cancelled', 'Cancelled'),
    ]

    number = models.CharField(max_length=100, unique=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='planned')
    planned_date = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.number

    class Meta:
        db_table = 'work_orders'
        ordering = ['-created_at']


class WorkOrderComponent(models.Model):
    """Product consumed by a work order"""
    work_order = models.ForeignKey(WorkOrder, on_delete=models.CASCADE, related_name='components')
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name='work_order_components')
    qty_planned = models.DecimalField(max_digits=10, decimal_places=3, default=Decimal('0'))
    qty_consumed = models.DecimalField(max_digits=10, decimal_places=3, default=Decimal('0'))

    class Meta:
        db_table = 'work_order_components'
        ordering = ['id']
        indexes = [
            models.Index(fields=['work_order', 'product'], name='idx_wocomp_wo_product'),
        ]
