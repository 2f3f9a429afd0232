"""
Tests for core views and request middleware.
"""
import logging
import pytest
from django.db import DatabaseError
from django.urls import reverse
from rest_framework.test import APIClient
from unittest.mock import patch

from apps.core.middleware import LoggingFilter, get_current_request_id


@pytest.mark.django_db
class TestHealthCheckView:
    """Test health check endpoint."""

    def test_health_check_success(self):
        """Health check returns 200 when database and cache respond."""
        response = APIClient().get(reverse('health-check'))

        assert response.status_code == 200
        assert response.data['status'] == 'healthy'
        assert response.data['database'] == 'healthy'
        assert response.data['cache'] == 'healthy'
        assert response.data['permission_cache_entries'] == 0

    def test_health_check_reports_cache_entries(self):
        from apps.rbac.cache import get_permission_cache

        get_permission_cache().put(1, ['view_profile'])

        response = APIClient().get(reverse('health-check'))

        assert response.data['permission_cache_entries'] == 1

    def test_health_check_cache_failure(self):
        """Health check returns 503 when the cache is unreachable."""
        with patch('apps.core.views.cache.set', side_effect=ConnectionError('refused')):
            response = APIClient().get(reverse('health-check'))

        assert response.status_code == 503
        assert response.data['status'] == 'unhealthy'
        assert response.data['cache'] == 'unhealthy'
        assert response.data['errors']

    def test_health_check_database_failure(self):
        with patch('apps.core.views.connection') as connection:
            connection.cursor.side_effect = DatabaseError('down')
            response = APIClient().get(reverse('health-check'))

        assert response.status_code == 503
        assert response.data['database'] == 'unhealthy'


@pytest.mark.django_db
class TestRequestIDMiddleware:

    def test_generates_request_id(self):
        response = APIClient().get(reverse('health-check'))

        assert len(response['X-Request-ID']) == 36

    def test_echoes_client_request_id(self):
        response = APIClient().get(reverse('health-check'), HTTP_X_REQUEST_ID='trace-abc')

        assert response['X-Request-ID'] == 'trace-abc'

    def test_context_is_cleared_after_response(self):
        APIClient().get(reverse('health-check'), HTTP_X_REQUEST_ID='trace-abc')

        assert get_current_request_id() is None


class TestLoggingFilter:

    def test_keeps_explicit_request_id(self):
        record = logging.LogRecord('x', logging.INFO, __file__, 1, 'msg', (), None)
        record.request_id = 'explicit'

        assert LoggingFilter().filter(record)
        assert record.request_id == 'explicit'

    def test_no_request_in_flight(self):
        record = logging.LogRecord('x', logging.INFO, __file__, 1, 'msg', (), None)

        LoggingFilter().filter(record)

        assert not hasattr(record, 'request_id')
