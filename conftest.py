"""
Pytest configuration and fixtures.
"""
from io import StringIO

import pytest
from django.conf import settings
import django
from django.core.management import call_command


def pytest_configure(config):
    """Configure Django settings for tests."""
    settings.DATABASES['default'] = {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
        'ATOMIC_REQUESTS': False,
    }
    settings.CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'test-cache',
        }
    }
    settings.RATELIMIT_ENABLE = False
    settings.PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']
    django.setup()


@pytest.fixture(scope='session')
def django_db_setup(django_db_setup, django_db_blocker):
    """Set up test database with migrations."""
    with django_db_blocker.unblock():
        call_command('migrate', '--run-syncdb', verbosity=0)


@pytest.fixture(autouse=True)
def clear_caches():
    """Start every test with an empty permission cache and rate limit counters."""
    from django.core.cache import cache
    from apps.rbac.cache import get_permission_cache

    get_permission_cache().invalidate_all()
    cache.clear()
    yield
    get_permission_cache().invalidate_all()


@pytest.fixture
def api_client():
    """Return DRF API client."""
    from rest_framework.test import APIClient
    return APIClient()


@pytest.fixture
def request_factory():
    """Return DRF request factory."""
    from rest_framework.test import APIRequestFactory
    return APIRequestFactory()


@pytest.fixture
def roles(db):
    """Seed the permission catalog and default roles; return roles by name."""
    from apps.rbac.models import Role

    call_command('seed_rbac', stdout=StringIO())
    return {role.name: role for role in Role.objects.all()}


def _make_user(email, name, role, department=None):
    from apps.rbac.models import User
    return User.objects.create_user(
        email=email,
        password='SecurePass123!',
        name=name,
        department=department,
        role=role,
    )


@pytest.fixture
def admin_user(roles):
    return _make_user('admin@example.com', 'Ada Admin', roles['ADMIN'], department='Management')


@pytest.fixture
def hr_user(roles):
    return _make_user('hr@example.com', 'Harriet Hr', roles['HR'], department='Human Resources')


@pytest.fixture
def manager_user(roles):
    return _make_user('manager@example.com', 'Mo Manager', roles['MANAGER'], department='Engineering')


@pytest.fixture
def employee_user(roles):
    return _make_user('employee@example.com', 'Eve Employee', roles['EMPLOYEE'], department='Engineering')


@pytest.fixture
def roleless_user(db):
    return _make_user('nobody@example.com', 'No Role', None)


@pytest.fixture
def auth_client(api_client):
    """Return a factory for API clients authenticated with a real JWT."""
    from apps.rbac.services import AuthService

    def make(user):
        api_client.credentials(HTTP_AUTHORIZATION=f'Bearer {AuthService.generate_jwt(user)}')
        return api_client

    return make
