from django.db import models


class Vendor(models.Model):
    """Vendors that supply products (matched against cost descriptions)"""
    name = models.CharField(max_length=200)
    code = models.CharField(max_length=50, unique=True, blank=True, null=True)
    sku_abbreviation = models.CharField(max_length=10, blank=True, help_text="Supplier code used in SKUs (e.g., SMT)")
    phone = models.CharField(max_length=20, blank=True)
    email = models.EmailField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'vendors'


class Contact(models.Model):
    """Contacts: suppliers, customers, brands and other people/companies"""
    CONTACT_TYPE_CHOICES = [
        ('supplier', 'Supplier'),
        ('customer', 'Customer'),
        ('brand', 'Brand'),
        ('important', 'Important'),
        ('other', 'Other'),
    ]

    name = models.CharField(max_length=200, db_index=True)
    company = models.CharField(max_length=200, blank=True)
    contact_type = models.CharField(max_length=20, choices=CONTACT_TYPE_CHOICES, default='other')
    sku_abbreviation = models.CharField(max_length=10, blank=True)
    phone = models.CharField(max_length=20, blank=True)
    email = models.EmailField(blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name

    class Meta:
        db_table = 'contacts'
