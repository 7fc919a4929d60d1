"""
Test utilities and factories for creating test data
"""
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import RefreshToken
from backend.core.models import Role
from backend.catalog.models import Category, Brand, Product
from backend.parties.models import Vendor, Contact
from backend.projects.models import Project, Task, Budget, Comment
from backend.costs.models import Cost, CostLine, WorkOrder, WorkOrderComponent
from decimal import Decimal
from django.utils import timezone
import random
import string

User = get_user_model()


class TestDataFactory:
    """Factory class for creating test data"""

    @staticmethod
    def random_string(length=10):
        """Generate a random string"""
        return ''.join(random.choices(string.ascii_letters + string.digits, k=length))

    @staticmethod
    def create_role(name=None, code=''):
        """Create a test role/department"""
        if not name:
            name = f'Role_{TestDataFactory.random_string(6)}'
        return Role.objects.create(name=name, code=code)

    @staticmethod
    def create_user(username=None, email=None, password='testpass123', is_staff=False,
                    is_superuser=False, role=None, first_name=''):
        """Create a test user"""
        if not username:
            username = f'testuser_{TestDataFactory.random_string(6)}'
        if not email:
            email = f'{username}@test.com'
        return User.objects.create_user(
            username=username,
            email=email,
            password=password,
            is_staff=is_staff,
            is_superuser=is_superuser,
            role=role,
            first_name=first_name,
        )

    @staticmethod
    def create_category(name=None, abbreviation='', description=None):
        """Create a test category"""
        if not name:
            name = f'Category_{TestDataFactory.random_string(6)}'
        return Category.objects.create(
            name=name,
            abbreviation=abbreviation,
            description=description or f'Test category {name}'
        )

    @staticmethod
    def create_brand(name=None, code=''):
        """Create a test brand"""
        if not name:
            name = f'Brand_{TestDataFactory.random_string(6)}'
        return Brand.objects.create(name=name, code=code)

    @staticmethod
    def create_product(name=None, sku=None, category=None, brand=None, product_type='TERMINADO',
                       format='', extras=None, brand_name=''):
        """Create a test product; category and brand are optional"""
        if not name:
            name = f'Product_{TestDataFactory.random_string(6)}'
        return Product.objects.create(
            name=name,
            sku=sku,
            category=category,
            brand=brand,
            product_type=product_type,
            format=format,
            extras=extras or [],
            brand_name=brand_name,
        )

    @staticmethod
    def create_vendor(name=None, code=None, sku_abbreviation=''):
        """Create a test vendor"""
        if not name:
            name = f'Vendor_{TestDataFactory.random_string(6)}'
        return Vendor.objects.create(name=name, code=code, sku_abbreviation=sku_abbreviation)

    @staticmethod
    def create_contact(name=None, contact_type='other', company='', sku_abbreviation=''):
        """Create a test contact"""
        if not name:
            name = f'Contact_{TestDataFactory.random_string(6)}'
        return Contact.objects.create(
            name=name,
            contact_type=contact_type,
            company=company,
            sku_abbreviation=sku_abbreviation,
        )

    @staticmethod
    def create_project(name=None, code=''):
        """Create a test project"""
        if not name:
            name = f'Project_{TestDataFactory.random_string(6)}'
        return Project.objects.create(name=name, code=code)

    @staticmethod
    def create_task(title=None, project=None, assignee=None, priority='MEDIUM', status='TODO'):
        """Create a test task"""
        if not title:
            title = f'Task_{TestDataFactory.random_string(6)}'
        return Task.objects.create(
            title=title,
            project=project,
            assignee=assignee,
            priority=priority,
            status=status,
        )

    @staticmethod
    def create_budget(name=None, category='OPEX', description='', project=None, amount=None):
        """Create a test budget"""
        if not name:
            name = f'Budget_{TestDataFactory.random_string(6)}'
        return Budget.objects.create(
            name=name,
            category=category,
            description=description,
            project=project,
            amount=amount if amount is not None else Decimal('1000.00'),
        )

    @staticmethod
    def create_comment(content, author=None, task=None, budget=None):
        """Create a test comment"""
        return Comment.objects.create(content=content, author=author, task=task, budget=budget)

    @staticmethod
    def create_cost(description='', date=None, status='approved', lines=()):
        """
        Create a test cost

        Args:
            lines: iterable of (product, total_cost) pairs
        """
        cost = Cost.objects.create(
            description=description,
            date=date or timezone.now().date(),
            status=status,
        )
        for product, total_cost in lines:
            CostLine.objects.create(cost=cost, product=product, total_cost=Decimal(str(total_cost)))
        cost.total = cost.get_total()
        cost.save(update_fields=['total'])
        return cost

    @staticmethod
    def create_work_order(number=None, status='planned', components=()):
        """
        Create a test work order

        Args:
            components: iterable of (product, qty_planned) pairs
        """
        if not number:
            number = f'WO-{TestDataFactory.random_string(6).upper()}'
        work_order = WorkOrder.objects.create(number=number, status=status)
        for product, qty_planned in components:
            WorkOrderComponent.objects.create(
                work_order=work_order,
                product=product,
                qty_planned=Decimal(str(qty_planned)),
            )
        return work_order


class AuthenticatedAPIClient(APIClient):
    """APIClient with authentication helper"""

    def authenticate_user(self, user):
        """Authenticate the client with a user"""
        refresh = RefreshToken.for_user(user)
        self.credentials(HTTP_AUTHORIZATION=f'Bearer {refresh.access_token}')
        return self

    def logout(self):
        """Remove authentication"""
        self.credentials()
