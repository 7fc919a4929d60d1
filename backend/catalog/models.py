from django.db import models


class Category(models.Model):
    """Product categories"""
    name = models.CharField(max_length=200, db_index=True)
    abbreviation = models.CharField(max_length=10, blank=True, help_text="SKU category code (e.g., CAF)")
    parent = models.ForeignKey('self', on_delete=models.SET_NULL, null=True, blank=True, related_name='children')
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'categories'
        verbose_name_plural = 'categories'


class Brand(models.Model):
    """Product brands"""
    name = models.CharField(max_length=200, unique=True)
    code = models.CharField(max_length=10, blank=True, help_text="SKU brand code (e.g., SMT)")
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'brands'


class Product(models.Model):
    """Product master"""
    PRODUCT_TYPE_CHOICES = [
        ('TERMINADO', 'Finished good'),
        ('INSUMO', 'Supply'),
        ('SERVICIO', 'Service'),
    ]
    FORMAT_CHOICES = [
        ('ENVASADOS', 'Packaged'),
        ('CONGELADOS', 'Frozen'),
        ('FRESCOS', 'Fresh'),
    ]

    name = models.CharField(max_length=200, db_index=True)
    sku = models.CharField(max_length=100, unique=True, blank=True, null=True, db_index=True)
    product_type = models.CharField(max_length=20, choices=PRODUCT_TYPE_CHOICES, default='TERMINADO')
    format = models.CharField(max_length=20, choices=FORMAT_CHOICES, blank=True)
    extras = models.JSONField(default=list, blank=True)  # e.g., ["VEGANO", "SIN_AZUCAR"]
    category = models.ForeignKey(Category, on_delete=models.SET_NULL, null=True, blank=True, related_name='products')
    brand = models.ForeignKey(Brand, on_delete=models.SET_NULL, null=True, blank=True, related_name='products')
    # Free-text brand from older imports, matched against brand contacts during backfill
    brand_name = models.CharField(max_length=200, blank=True)
    description = models.TextField(blank=True)
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} ({self.sku or 'NO-SKU'})"

    class Meta:
        db_table = 'products'
