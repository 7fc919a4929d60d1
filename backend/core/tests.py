"""
Test suite for core
Tests: entity lookup, engine settings, error mapping, audit logging, auth endpoints
"""
from django.test import SimpleTestCase, TestCase, override_settings
from rest_framework import status

from backend.core.conf import engine_setting
from backend.core.entities import EntityRef, get_entity_lookup
from backend.core.exceptions import (
    ConfigError, EntityNotFound, IncompatibleTypes, NoTemplateConfigured,
    RelationshipTypeNotFound, SequenceContention, TemplateRenderInvalid,
)
from backend.core.models import AuditLog
from backend.core.test_utils import TestDataFactory, AuthenticatedAPIClient
from backend.core.utils import create_audit_log, engine_error_response


class EngineSettingTests(SimpleTestCase):
    """Test ENTITY_GRAPH settings access"""

    def test_defaults(self):
        """Test built-in defaults apply when nothing is configured"""
        with override_settings(ENTITY_GRAPH={}):
            self.assertEqual(engine_setting('SEQUENCE_MAX_RETRIES'), 5)
            self.assertTrue(engine_setting('SKU_ENSURE_UNIQUE'))

    def test_override(self):
        """Test settings override single keys"""
        with override_settings(ENTITY_GRAPH={'DEFAULT_PAGE_SIZE': 10}):
            self.assertEqual(engine_setting('DEFAULT_PAGE_SIZE'), 10)
            self.assertEqual(engine_setting('UPSERT_MAX_RETRIES'), 3)

    def test_unknown_setting(self):
        """Test unknown names are rejected"""
        with self.assertRaises(KeyError):
            engine_setting('NOT_A_SETTING')


class ErrorResponseTests(SimpleTestCase):
    """Test engine error to HTTP status mapping"""

    def test_status_codes(self):
        """Test each error kind maps to its status"""
        cases = [
            (EntityNotFound('Product', 1), status.HTTP_404_NOT_FOUND),
            (NoTemplateConfigured('Vendor'), status.HTTP_404_NOT_FOUND),
            (RelationshipTypeNotFound('Unknown relationship type: x'), status.HTTP_404_NOT_FOUND),
            (SequenceContention('global', 'Product|global', 5), status.HTTP_409_CONFLICT),
            (TemplateRenderInvalid('CA-GEN', '^[A-Z]{3}$'), status.HTTP_422_UNPROCESSABLE_ENTITY),
            (IncompatibleTypes('supplier', 'Task', 'Product'), status.HTTP_400_BAD_REQUEST),
            (ConfigError('bad template'), status.HTTP_400_BAD_REQUEST),
        ]
        for exc, expected in cases:
            with self.subTest(error=type(exc).__name__):
                response = engine_error_response(exc)
                self.assertEqual(response.status_code, expected)
                self.assertEqual(response.data['code'], type(exc).__name__)
                self.assertEqual(response.data['error'], exc.message)

    def test_details_included(self):
        """Test error details are passed through"""
        response = engine_error_response(IncompatibleTypes('supplier', 'Task', 'Product'))
        self.assertEqual(response.data['details']['source_type'], 'Task')


class EntityLookupTests(TestCase):
    """Test polymorphic entity loading"""

    def setUp(self):
        self.lookup = get_entity_lookup()

    def test_entity_ref_id_is_string(self):
        """Test references normalise ids to strings"""
        self.assertEqual(EntityRef('Product', 5), EntityRef('Product', '5'))
        self.assertEqual(str(EntityRef('Product', 5)), 'Product#5')

    def test_load_product_follows_foreign_keys(self):
        """Test products load with category and derived fields"""
        category = TestDataFactory.create_category(name='Cafe', abbreviation='CAF')
        product = TestDataFactory.create_product(category=category, product_type='INSUMO', extras=['VEGANO'])

        data = self.lookup.load('Product', product.pk)
        self.assertEqual(data['id'], str(product.pk))
        self.assertEqual(data['entity_type'], 'Product')
        self.assertEqual(data['category_id'], str(category.pk))
        self.assertEqual(data['category']['abbreviation'], 'CAF')
        self.assertIsNone(data['brand'])
        self.assertEqual(data['type'], 'INSUMO')
        self.assertEqual(data['extras'], ['VEGANO'])

    def test_load_user_hides_password(self):
        """Test users load with their role and without the password hash"""
        role = TestDataFactory.create_role(name='Cocina', code='COC')
        user = TestDataFactory.create_user(role=role)
        data = self.lookup.load('User', user.pk)
        self.assertNotIn('password', data)
        self.assertEqual(data['role']['code'], 'COC')

    def test_missing_and_unknown(self):
        """Test missing ids, malformed ids and unknown kinds"""
        self.assertIsNone(self.lookup.load('Product', 999999))
        self.assertIsNone(self.lookup.load('Product', 'not-a-number'))
        self.assertIsNone(self.lookup.load('Spaceship', 1))
        self.assertFalse(self.lookup.exists('Product', 999999))
        self.assertFalse(self.lookup.exists('Spaceship', 1))
        self.assertFalse(self.lookup.is_registered('Spaceship'))

    def test_exists(self):
        """Test existence checks"""
        vendor = TestDataFactory.create_vendor()
        self.assertTrue(self.lookup.exists('Vendor', vendor.pk))
        self.assertTrue(self.lookup.exists('Vendor', str(vendor.pk)))


class AuditLogTests(TestCase):
    """Test audit log helpers and endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user()
        self.admin = TestDataFactory.create_user(is_staff=True)
        self.client = AuthenticatedAPIClient()

    def test_create_audit_log(self):
        """Test audit entries are written with the acting user"""
        entry = create_audit_log(action='sku_generate', model_name='Product', object_id=1,
                                 object_reference='CAF-SMT-100-001', user=self.user)
        self.assertEqual(entry.user, self.user)
        self.assertEqual(entry.object_id, '1')

    def test_missing_fields_skipped(self):
        """Test entries without required fields are not written"""
        self.assertIsNone(create_audit_log(action='sku_generate', model_name='Product'))
        self.assertEqual(AuditLog.objects.count(), 0)

    def test_audit_log_list_scoped_to_user(self):
        """Test non-staff users only see their own entries"""
        create_audit_log(action='sku_generate', model_name='Product', object_id=1, user=self.user)
        create_audit_log(action='backfill_run', model_name='EntityRelationship', object_id='x', user=self.admin)

        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/audit-logs/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)

        self.client.authenticate_user(self.admin)
        response = self.client.get('/api/v1/audit-logs/', {'action': 'backfill_run'})
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['model_name'], 'EntityRelationship')

    def test_audit_log_filters_and_limit(self):
        """Test object id filtering, the limit cap and a malformed limit"""
        for object_id in (1, 1, 2):
            create_audit_log(action='sku_generate', model_name='Product', object_id=object_id, user=self.admin)
        self.client.authenticate_user(self.admin)

        response = self.client.get('/api/v1/audit-logs/', {'object_id': '1'})
        self.assertEqual(len(response.data), 2)
        response = self.client.get('/api/v1/audit-logs/', {'limit': '1'})
        self.assertEqual(len(response.data), 1)
        response = self.client.get('/api/v1/audit-logs/', {'limit': 'many'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_audit_log_detail_permissions(self):
        """Test users cannot read other users' entries"""
        entry = create_audit_log(action='backfill_run', model_name='EntityRelationship', object_id='x', user=self.admin)

        self.client.authenticate_user(self.user)
        response = self.client.get(f'/api/v1/audit-logs/{entry.pk}/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.authenticate_user(self.admin)
        response = self.client.get(f'/api/v1/audit-logs/{entry.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)


class AuthAPITests(TestCase):
    """Test JWT login and current-user endpoints"""

    def setUp(self):
        self.user = TestDataFactory.create_user(username='jdoe', password='s3cret-pass')
        self.client = AuthenticatedAPIClient()

    def test_login(self):
        """Test login returns an access and a refresh token"""
        response = self.client.post('/api/v1/auth/login/', {
            'username': 'jdoe', 'password': 's3cret-pass'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)
        self.assertIn('refresh', response.data)

    def test_login_wrong_password(self):
        """Test wrong credentials are rejected"""
        response = self.client.post('/api/v1/auth/login/', {
            'username': 'jdoe', 'password': 'nope'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_me(self):
        """Test the current user endpoint"""
        self.client.authenticate_user(self.user)
        response = self.client.get('/api/v1/auth/me/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['username'], 'jdoe')
