"""
DRF permission class and decorators for access control.

This module provides:
- AccessPolicy: DRF permission class that evaluates declared requirements
  with the access decision engine
- @requires_roles, @requires_permissions, @requires_owner_or_elevated,
  @requires_department: decorators declaring requirements on views
"""
import logging
from functools import wraps
from rest_framework.exceptions import NotAuthenticated
from rest_framework.permissions import BasePermission

from apps.core.exceptions import AccessDenied, ServiceUnavailable
from apps.core.logging import SecurityLogger
from apps.rbac.access import (
    AUTHENTICATION_REQUIRED, STORE_UNAVAILABLE,
    DepartmentIn, OwnerOrElevated, PermissionCheck, PermissionMode, Principal, RoleIn,
    get_access_engine, resolve_target_id,
)

logger = logging.getLogger(__name__)


def _get_principal(request):
    """Build (once per request) the principal for the authenticated user."""
    if hasattr(request, 'principal'):
        return request.principal

    user = getattr(request, 'user', None)
    principal = Principal.from_user(user) if user is not None and user.is_authenticated else None
    request.principal = principal
    return principal


class AccessPolicy(BasePermission):
    """
    DRF permission class that enforces declared access requirements.

    Requirements are collected from the view class and from the handler
    method for the request's HTTP verb; all of them must pass. Role
    requirements are evaluated before permission lookups.

    Outcomes:
    1. No principal -> 401 (NotAuthenticated)
    2. Permission store unreachable -> 503 (ServiceUnavailable), never allow
    3. Requirement unmet -> 403 (AccessDenied) with reason and details

    Usage in views:
        @requires_roles('ADMIN', 'HR')
        class RoleListView(APIView):
            permission_classes = [AccessPolicy]

            def get(self, request):
                pass

            @requires_roles('ADMIN')
            def post(self, request):
                pass
    """

    def has_permission(self, request, view):
        requirements = self._requirements(request, view)
        if not requirements:
            return True

        engine = getattr(view, 'access_engine', None) or get_access_engine()
        principal = _get_principal(request)

        def target_lookup(param):
            return resolve_target_id(
                param,
                path_params=getattr(view, 'kwargs', None),
                body=request.data,
                query=request.query_params,
            )

        decision = engine.authorize_all(principal, requirements, target_lookup=target_lookup)

        if decision.allowed:
            logger.debug(
                f"Access granted to {view.__class__.__name__}",
                extra={'user_id': principal.id, 'view': view.__class__.__name__}
            )
            return True

        if decision.code == AUTHENTICATION_REQUIRED:
            raise NotAuthenticated(decision.reason)

        if decision.code == STORE_UNAVAILABLE:
            raise ServiceUnavailable()

        logger.warning(
            f"Access denied: {decision.reason}",
            extra={
                'user_id': principal.id,
                'role': principal.role_name,
                'details': decision.details,
                'view': view.__class__.__name__,
                'method': request.method,
                'path': request.path,
                'request_id': getattr(request, 'request_id', None),
            }
        )
        SecurityLogger.log_permission_denied(
            principal,
            reason=decision.reason,
            requirement=', '.join(requirement.describe() for requirement in requirements),
            path=request.path,
            ip_address=request.META.get('REMOTE_ADDR'),
        )
        raise AccessDenied(decision.reason, details=decision.details)

    def _requirements(self, request, view):
        requirements = list(getattr(view, 'access_requirements', ()))
        handler = getattr(view, request.method.lower(), None)
        requirements.extend(getattr(handler, 'access_requirements', ()))
        return requirements


def _declare(requirement):
    """
    Build a decorator that adds ``requirement`` to a view class or method.

    Requirements accumulate, so stacking decorators means all must pass.
    """
    def decorator(view_or_method):
        if isinstance(view_or_method, type):
            existing = view_or_method.__dict__.get('access_requirements', ())
            inherited = () if existing else getattr(view_or_method, 'access_requirements', ())
            view_or_method.access_requirements = tuple(inherited) + tuple(existing) + (requirement,)
            return view_or_method

        @wraps(view_or_method)
        def wrapped(self, request, *args, **kwargs):
            return view_or_method(self, request, *args, **kwargs)

        wrapped.access_requirements = tuple(getattr(view_or_method, 'access_requirements', ())) + (requirement,)
        return wrapped

    return decorator


def requires_roles(*role_names):
    """
    Require the principal's role to be one of ``role_names``.

    Usage:
        @requires_roles('ADMIN')
        class RoleCreateView(APIView):
            permission_classes = [AccessPolicy]
    """
    return _declare(RoleIn(role_names))


def requires_permissions(*permission_ids, mode=PermissionMode.ALL):
    """
    Require the principal to hold all (default) or any of ``permission_ids``.

    Usage:
        @requires_permissions('view_audit_logs')
        def get(self, request):
            pass
    """
    return _declare(PermissionCheck(permission_ids, mode))


def requires_owner_or_elevated(target_param='id'):
    """
    Require the principal to own the target record or hold an elevated role.

    The target id is read from the URL kwarg ``target_param``, then the
    request body, then the query string.
    """
    return _declare(OwnerOrElevated(target_param))


def requires_department(*departments):
    """Require the principal to belong to one of ``departments`` (admins pass)."""
    return _declare(DepartmentIn(departments))
