"""
Tests for the shared API plumbing: error envelopes, gateway identity,
permissions, buyer profile lookup, rate limiting and the health check.
"""
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import redis
from django.core.cache import cache
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from rest_framework import exceptions as drf_exceptions
from rest_framework.request import Request
from rest_framework.test import APIClient, APIRequestFactory

from core.authentication import (
    GatewayIdentityAuthentication,
    HasWebhookSecret,
    Identity,
    IsAdmin,
    IsAdminOrReadOnly,
)
from core.exceptions import (
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
    _first_message,
    api_exception_handler,
)
from core.identity import ClerkIdentityProvider, placeholder_profile
from inventory.models import Category, Product


class ExceptionHandlerTestCase(SimpleTestCase):

    def handle(self, exc):
        return api_exception_handler(exc, {'view': None})

    def test_domain_errors_keep_their_status(self):
        cases = [
            (ValidationError('Bad quantity'), 400),
            (UnauthorizedError(), 401),
            (ForbiddenError('Not yours'), 403),
            (NotFoundError('Order not found'), 404),
        ]
        for exc, status_code in cases:
            with self.subTest(exc=exc.__class__.__name__):
                response = self.handle(exc)
                self.assertEqual(response.status_code, status_code)
                self.assertEqual(response.data, {'success': False, 'message': exc.message})

    def test_forbidden_is_an_unauthorized_error(self):
        self.assertTrue(issubclass(ForbiddenError, UnauthorizedError))
        self.assertEqual(UnauthorizedError().message, 'User not authenticated')

    def test_drf_errors_are_wrapped(self):
        response = self.handle(drf_exceptions.ValidationError({'items': ['This field is required.']}))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data['message'], 'items: This field is required.')

        response = self.handle(drf_exceptions.Throttled(wait=30))
        self.assertEqual(response.status_code, 429)
        self.assertEqual(response['Retry-After'], '30')

    def test_unexpected_error_is_hidden(self):
        with self.assertLogs('core.exceptions', level='ERROR') as logs:
            response = self.handle(KeyError('secret internals'))

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.data['message'], 'Internal Server Error')
        self.assertIn('secret internals', logs.output[0])

    def test_first_message(self):
        self.assertEqual(_first_message({'detail': 'Not found.'}), 'Not found.')
        self.assertEqual(_first_message({'non_field_errors': ['Pick one']}), 'Pick one')
        self.assertEqual(
            _first_message({'shipping_address': {'city': ['This field is required.']}}),
            'shipping_address: city: This field is required.'
        )
        self.assertEqual(_first_message([]), 'Invalid request')


class GatewayAuthenticationTestCase(SimpleTestCase):

    def setUp(self):
        self.factory = APIRequestFactory()
        self.auth = GatewayIdentityAuthentication()

    def authenticate(self, **headers):
        return self.auth.authenticate(Request(self.factory.get('/', **headers)))

    def test_identity_from_headers(self):
        user, _ = self.authenticate(HTTP_X_USER_ID='user_1', HTTP_X_USER_ROLE='admin')

        self.assertEqual(user, Identity('user_1', 'admin'))
        self.assertTrue(user.is_authenticated)
        self.assertTrue(user.is_admin)

    def test_buyer_is_not_admin(self):
        user, _ = self.authenticate(HTTP_X_USER_ID='user_1')
        self.assertFalse(user.is_admin)

    def test_missing_or_placeholder_id(self):
        for value in (None, '', '  ', 'undefined', 'null'):
            with self.subTest(value=value):
                headers = {} if value is None else {'HTTP_X_USER_ID': value}
                self.assertIsNone(self.authenticate(**headers))

    @override_settings(ADMIN_ROLE='staff')
    def test_admin_role_is_configurable(self):
        self.assertTrue(Identity('u', 'staff').is_admin)
        self.assertFalse(Identity('u', 'admin').is_admin)


class PermissionTestCase(SimpleTestCase):

    def setUp(self):
        self.factory = APIRequestFactory()

    def request(self, method='get', user=None, **headers):
        request = getattr(self.factory, method)('/', **headers)
        request.user = user
        return request

    def test_is_admin(self):
        permission = IsAdmin()
        self.assertTrue(permission.has_permission(self.request(user=Identity('a', 'admin')), None))
        self.assertFalse(permission.has_permission(self.request(user=Identity('b')), None))
        self.assertFalse(permission.has_permission(self.request(), None))

    def test_is_admin_or_read_only(self):
        permission = IsAdminOrReadOnly()
        self.assertTrue(permission.has_permission(self.request(), None))
        self.assertFalse(permission.has_permission(self.request('post', user=Identity('b')), None))
        self.assertTrue(permission.has_permission(self.request('post', user=Identity('a', 'admin')), None))

    def test_webhook_secret(self):
        permission = HasWebhookSecret()

        with self.assertLogs('core.authentication', level='ERROR'):
            self.assertFalse(permission.has_permission(
                self.request('put', HTTP_X_WEBHOOK_SECRET=''), None
            ))

        with override_settings(ORDERS_WEBHOOK_SECRET='hush'):
            self.assertTrue(permission.has_permission(
                self.request('put', HTTP_X_WEBHOOK_SECRET='hush'), None
            ))
            self.assertFalse(permission.has_permission(
                self.request('put', HTTP_X_WEBHOOK_SECRET='nope'), None
            ))
            self.assertFalse(permission.has_permission(self.request('put'), None))


CLERK_USER = {
    'id': 'user_1',
    'first_name': 'Ada',
    'last_name': 'Lovelace',
    'username': 'ada',
    'image_url': 'https://img.example.com/ada.png',
    'created_at': 1700000000000,
    'primary_email_address_id': 'email_2',
    'email_addresses': [
        {'id': 'email_1', 'email_address': 'old@example.com'},
        {'id': 'email_2', 'email_address': 'ada@example.com'},
    ],
}


@override_settings(IDENTITY_PROFILE_CACHE_SECONDS=60)
class ClerkIdentityProviderTestCase(SimpleTestCase):

    def setUp(self):
        cache.clear()
        self.requests = []

    def transport(self, status_code=200, payload=None):
        def handler(request):
            self.requests.append(request)
            return httpx.Response(status_code, json=payload if payload is not None else {})
        return httpx.MockTransport(handler)

    def provider(self, **kwargs):
        kwargs.setdefault('secret_key', 'sk_test')
        kwargs.setdefault('api_url', 'https://clerk.test/v1')
        return ClerkIdentityProvider(**kwargs)

    def test_profile_uses_primary_email(self):
        provider = self.provider(transport=self.transport(payload=CLERK_USER))

        profile = provider.profile('user_1')

        self.assertEqual(profile['full_name'], 'Ada Lovelace')
        self.assertEqual(profile['email'], 'ada@example.com')
        self.assertEqual(profile['username'], 'ada')
        self.assertFalse(profile['unavailable'])
        request = self.requests[0]
        self.assertEqual(request.url.path, '/v1/users/user_1')
        self.assertEqual(request.headers['Authorization'], 'Bearer sk_test')

    def test_profile_is_cached(self):
        provider = self.provider(transport=self.transport(payload=CLERK_USER))

        provider.profile('user_1')
        provider.profile('user_1')

        self.assertEqual(len(self.requests), 1)

    def test_http_error_gives_placeholder(self):
        provider = self.provider(transport=self.transport(status_code=404))

        with self.assertLogs('core.identity', level='ERROR'):
            profile = provider.profile('user_404')

        self.assertEqual(profile, placeholder_profile('user_404'))
        # Failures are not cached
        with self.assertLogs('core.identity', level='ERROR'):
            provider.profile('user_404')
        self.assertEqual(len(self.requests), 2)

    def test_network_error_gives_placeholder(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        provider = self.provider(transport=httpx.MockTransport(handler))
        with self.assertLogs('core.identity', level='ERROR'):
            profile = provider.profile('user_1')

        self.assertTrue(profile['unavailable'])

    def test_missing_secret_key(self):
        provider = self.provider(secret_key='', transport=self.transport(payload=CLERK_USER))

        with self.assertLogs('core.identity', level='ERROR'):
            profile = provider.profile('user_1')

        self.assertTrue(profile['unavailable'])
        self.assertEqual(self.requests, [])

    def test_blank_ids_skip_lookup(self):
        provider = self.provider(transport=self.transport(payload=CLERK_USER))

        for user_id in ('', 'undefined', 'null'):
            self.assertEqual(provider.profile(user_id)['full_name'], 'Unknown User')
        self.assertEqual(self.requests, [])

    def test_profiles_one_call_per_distinct_id(self):
        provider = self.provider(transport=self.transport(payload=CLERK_USER))

        profiles = provider.profiles(['user_1', 'user_1'])

        self.assertEqual(list(profiles), ['user_1'])
        self.assertEqual(len(self.requests), 1)


class RateLimitTestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.redis = MagicMock()
        self.redis.ttl.return_value = 42
        patcher = patch('core.rate_limiting.get_redis_client', return_value=self.redis)
        patcher.start()
        self.addCleanup(patcher.stop)

        category = Category.objects.create(name='Limits')
        self.product = Product.objects.create(
            category=category, name='Limited Lamp', price=Decimal('12.00'), stock=3
        )

    def order_payload(self):
        return {
            'items': [{'product_id': self.product.id, 'quantity': 1}],
            'shipping_address': {'line1': '1 Main St', 'city': 'Kandy', 'phone': '0712345678'},
            'payment_method': 'COD',
        }

    def test_order_creation_over_limit(self):
        self.redis.incr.return_value = 11

        response = self.client.post(reverse('orders:order-list'), self.order_payload(),
                                    format='json', HTTP_X_USER_ID='user_busy')

        self.assertEqual(response.status_code, 429)
        self.assertFalse(response.data['success'])
        self.assertEqual(response['Retry-After'], '42')
        self.redis.incr.assert_called_once_with('rate_limit:OrderListCreateView:user:user_busy')
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock, 3)

    def test_order_creation_under_limit_reports_remaining(self):
        self.redis.incr.return_value = 1

        response = self.client.post(reverse('orders:order-list'), self.order_payload(),
                                    format='json', HTTP_X_USER_ID='user_calm')

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response['X-RateLimit-Remaining'], '9')
        self.redis.expire.assert_called_once()

    def test_reads_are_not_counted(self):
        response = self.client.get(reverse('orders:order-list'), HTTP_X_USER_ID='user_calm')

        self.assertEqual(response.status_code, 200)
        self.redis.incr.assert_not_called()

    def test_redis_failure_fails_open(self):
        self.redis.incr.side_effect = redis.ConnectionError('gone')

        with self.assertLogs('core.rate_limiting', level='ERROR'):
            response = self.client.post(reverse('orders:order-list'), self.order_payload(),
                                        format='json', HTTP_X_USER_ID='user_calm')

        self.assertEqual(response.status_code, 201)

    def test_decorated_view_over_limit(self):
        self.redis.incr.return_value = 21

        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'lamp'},
                                   REMOTE_ADDR='10.0.0.9')

        self.assertEqual(response.status_code, 429)
        key = self.redis.incr.call_args[0][0]
        self.assertTrue(key.endswith('ip:10.0.0.9'))

    @override_settings(RATE_LIMIT_ENABLED=False)
    def test_disabled_by_setting(self):
        self.redis.incr.return_value = 999

        response = self.client.get(reverse('inventory:product-autocomplete'), {'q': 'lamp'})

        self.assertEqual(response.status_code, 200)
        self.redis.incr.assert_not_called()


class HealthCheckTestCase(TestCase):

    def test_healthy(self):
        response = self.client.get(reverse('health-check'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'healthy')

    def test_database_down(self):
        with patch('config.urls.connection') as connection:
            connection.cursor.side_effect = DatabaseError('no route to host')
            with self.assertLogs('core.health', level='ERROR'):
                response = self.client.get(reverse('health-check'))

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['database'], 'unavailable')
