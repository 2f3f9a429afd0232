"""
Tests for the DRF exception handler and rate limit view.
"""
import json
import pytest
from unittest.mock import Mock
from django.test import RequestFactory
from django_ratelimit.exceptions import Ratelimited
from rest_framework.exceptions import (
    NotAuthenticated, NotFound as DRFNotFound, ValidationError as DRFValidationError,
)

from apps.core.exceptions import (
    AccessDenied, HRMSException, NotFound, ServiceUnavailable, StoreUnavailable,
    custom_exception_handler, get_client_ip, ratelimit_view,
)


@pytest.fixture
def context():
    request = RequestFactory().get('/v1/roles')
    request.request_id = 'req-123'
    return {'request': request, 'view': Mock()}


class TestCustomExceptionHandler:

    def test_domain_exception_envelope(self, context):
        exc = NotFound('Role not found', code='ROLE_NOT_FOUND')

        response = custom_exception_handler(exc, context)

        assert response.status_code == 404
        assert response.data == {
            'error': 'Role not found',
            'code': 'ROLE_NOT_FOUND',
            'request_id': 'req-123',
        }

    def test_domain_exception_details(self, context):
        exc = HRMSException('Role in use', code='ROLE_IN_USE', details={'userCount': 3})

        response = custom_exception_handler(exc, context)

        assert response.status_code == 400
        assert response.data['details'] == {'userCount': 3}

    def test_store_unavailable_is_503(self, context):
        response = custom_exception_handler(StoreUnavailable('Store down'), context)

        assert response.status_code == 503
        assert response.data['code'] == 'STORE_UNAVAILABLE'

    def test_access_denied_is_flattened(self, context):
        exc = AccessDenied('Access denied. Insufficient role permissions.',
                           details={'required': ['ADMIN'], 'current': 'EMPLOYEE'})

        response = custom_exception_handler(exc, context)

        assert response.status_code == 403
        assert response.data == {
            'error': 'Access denied. Insufficient role permissions.',
            'code': 'FORBIDDEN',
            'details': {'required': ['ADMIN'], 'current': 'EMPLOYEE'},
            'request_id': 'req-123',
        }

    def test_missing_principal_is_401(self, context):
        response = custom_exception_handler(NotAuthenticated('Authentication required'), context)

        assert response.status_code == 401
        assert response.data == {
            'error': 'Authentication required',
            'code': 'not_authenticated',
            'request_id': 'req-123',
        }

    def test_domain_exceptions_cover_data_errors_only(self):
        # 401 and 403 are raised by the access policy as DRF exceptions
        statuses = {cls.__name__: cls.status_code for cls in HRMSException.__subclasses__()}

        assert statuses == {'ValidationError': 400, 'NotFound': 404, 'StoreUnavailable': 503}

    def test_service_unavailable(self, context):
        response = custom_exception_handler(ServiceUnavailable(), context)

        assert response.status_code == 503
        assert response.data['error'] == 'Permission store unavailable, please retry.'

    def test_drf_not_found_is_flattened(self, context):
        response = custom_exception_handler(DRFNotFound(), context)

        assert response.status_code == 404
        assert response.data['code'] == 'not_found'

    def test_field_errors_keep_drf_shape(self, context):
        response = custom_exception_handler(DRFValidationError({'name': ['required']}), context)

        assert response.status_code == 400
        assert response.data['name'] == ['required']
        assert response.data['request_id'] == 'req-123'

    def test_unhandled_exception_is_500(self, context):
        response = custom_exception_handler(RuntimeError('boom'), context)

        assert response.status_code == 500
        assert response.data['code'] == 'INTERNAL_ERROR'
        assert 'boom' not in json.dumps(response.data)

    def test_ratelimited_is_429(self, context):
        response = custom_exception_handler(Ratelimited(), context)

        assert response.status_code == 429
        assert response['Retry-After'] == '60'


class TestRatelimitView:

    def test_returns_429_with_retry_after(self):
        request = RequestFactory().post('/v1/auth/login')

        response = ratelimit_view(request, Ratelimited())

        assert response.status_code == 429
        assert response['Retry-After'] == '60'
        assert json.loads(response.content)['code'] == 'RATE_LIMIT_EXCEEDED'


class TestGetClientIp:

    def test_prefers_first_forwarded_address(self):
        request = RequestFactory().get('/', HTTP_X_FORWARDED_FOR='203.0.113.9, 10.0.0.1')

        assert get_client_ip(request) == '203.0.113.9'

    def test_falls_back_to_remote_addr(self):
        request = RequestFactory().get('/', REMOTE_ADDR='198.51.100.4')

        assert get_client_ip(request) == '198.51.100.4'

    def test_missing_address(self):
        request = RequestFactory().get('/')
        del request.META['REMOTE_ADDR']

        assert get_client_ip(request) is None
