"""
RBAC REST API views.

Implements endpoints for:
- Role management (CRUD, stats, history, revert)
- Permission catalog
- User lookup and role assignment
- Audit log viewing and recording
"""
import logging
from datetime import datetime, time, timedelta

from django.db.models import Count, Q
from django.utils import timezone
from django.utils.dateparse import parse_date, parse_datetime
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiExample, OpenApiParameter
from rest_framework import status
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.core.exceptions import StoreUnavailable, ValidationError
from apps.core.permissions import (
    AccessPolicy, requires_owner_or_elevated, requires_permissions, requires_roles,
)
from apps.rbac.audit import AuditDraft, AuditRecorder
from apps.rbac.exceptions import AuditLogNotFound, RoleNotFound, UserNotFound
from apps.rbac.models import AuditLog, Permission, Role, User
from apps.rbac.revert import RoleReverter
from apps.rbac.serializers import (
    AssignRoleSerializer, AuditLogCreateSerializer, AuditLogSerializer,
    PermissionWithUsageSerializer, RoleDetailSerializer, RoleHistorySerializer,
    RoleSerializer, RoleWriteSerializer, UserSerializer,
)
from apps.rbac.services import RoleService

logger = logging.getLogger(__name__)


class StandardResultsSetPagination(PageNumberPagination):
    """Standard pagination for list endpoints."""
    page_size = 50
    page_size_query_param = 'page_size'
    max_page_size = 100


def _validation_error_response(serializer):
    return Response(
        {
            'error': 'Validation error',
            'code': 'VALIDATION_ERROR',
            'details': serializer.errors
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def _parse_date_param(value, name, end_of_day=False):
    """
    Parse an ISO date or datetime query parameter.

    A bare date covers the whole day: start of day for ``startDate``,
    end of day for ``endDate``.
    """
    try:
        day = parse_date(value)
        parsed = None if day is not None else parse_datetime(value)
    except ValueError:
        day = parsed = None

    if day is not None:
        parsed = datetime.combine(day, time.max if end_of_day else time.min)
    elif parsed is None:
        raise ValidationError(
            f'Invalid {name}: expected an ISO 8601 date',
            details={name: value},
        )
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


# ===== ROLE VIEWS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='List roles',
        description='''
List all roles with their permission ids and user counts.

**Required role:** `ADMIN` or `HR`
        ''',
        responses={200: RoleSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Roles'],
        summary='Create role',
        description='''
Create a role with its permissions and, optionally, initial users.

Listed users are moved to the new role and their cached permissions are
invalidated. The creation is recorded as a `CREATE_ROLE` audit entry.

**Required role:** `ADMIN`
        ''',
        request=RoleWriteSerializer,
        responses={
            201: RoleSerializer,
            400: OpenApiTypes.OBJECT,
            403: OpenApiTypes.OBJECT,
        },
        examples=[
            OpenApiExample(
                'Create Request',
                value={
                    'name': 'AUDITOR',
                    'description': 'Read-only access to audit logs',
                    'color': 'purple',
                    'permissions': ['view_audit_logs', 'view_reports'],
                    'userIds': []
                },
                request_only=True
            ),
            OpenApiExample(
                'Duplicate Name',
                value={
                    'error': 'A role with name "AUDITOR" already exists.',
                    'code': 'ROLE_NAME_CONFLICT',
                    'details': {'name': 'AUDITOR'}
                },
                response_only=True,
                status_codes=['400']
            )
        ]
    )
)
@requires_roles('ADMIN', 'HR')
class RoleListView(APIView):
    """
    GET /v1/roles
    POST /v1/roles

    List roles (ADMIN, HR) or create a role (ADMIN).
    """

    permission_classes = [AccessPolicy]

    def get(self, request):
        """List roles."""
        roles = Role.objects.with_counts().order_by('name')
        serializer = RoleSerializer(roles, many=True)
        return Response({
            'count': len(serializer.data),
            'roles': serializer.data
        })

    @requires_roles('ADMIN')
    def post(self, request):
        """Create a role."""
        serializer = RoleWriteSerializer(data=request.data)
        if not serializer.is_valid():
            return _validation_error_response(serializer)

        role = RoleService().create_role(
            actor=request.user,
            request=request,
            **serializer.to_service_kwargs()
        )

        return Response(RoleSerializer(role).data, status=status.HTTP_201_CREATED)


@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Roles'],
        summary='Get role details',
        description='''
Get a role with its full permissions and the users holding it.

**Required role:** `ADMIN` or `HR`
        ''',
        responses={200: RoleDetailSerializer, 404: OpenApiTypes.OBJECT},
    ),
    put=extend_schema(
        tags=['RBAC - Roles'],
        summary='Update role',
        description='''
Update the provided fields of a role. Omitted fields are unchanged.

`userIds` replaces the set of holders. Changes are recorded as an
`UPDATE_ROLE` audit entry with `{field: {from, to}}` pairs, which the
revert endpoint can undo.

**Required role:** `ADMIN`
        ''',
        request=RoleWriteSerializer,
        responses={200: RoleSerializer, 400: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    ),
    delete=extend_schema(
        tags=['RBAC - Roles'],
        summary='Delete role',
        description='''
Delete a role. Refused with `ROLE_IN_USE` while users are assigned to it.

**Required role:** `ADMIN`
        ''',
        responses={200: OpenApiTypes.OBJECT, 400: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
    )
)
@requires_roles('ADMIN', 'HR')
class RoleDetailView(APIView):
    """
    GET /v1/roles/{role_id}
    PUT /v1/roles/{role_id}
    DELETE /v1/roles/{role_id}
    """

    permission_classes = [AccessPolicy]

    def get(self, request, role_id):
        """Get role details."""
        role = Role.objects.prefetch_related('permissions').filter(pk=role_id).first()
        if role is None:
            raise RoleNotFound('Role not found', details={'roleId': role_id})

        return Response(RoleDetailSerializer(role).data)

    @requires_roles('ADMIN')
    def put(self, request, role_id):
        """Update a role."""
        serializer = RoleWriteSerializer(data=request.data, partial=True)
        if not serializer.is_valid():
            return _validation_error_response(serializer)

        role = RoleService().update_role(
            role_id,
            actor=request.user,
            request=request,
            **serializer.to_service_kwargs()
        )

        return Response(RoleSerializer(role).data)

    @requires_roles('ADMIN')
    def delete(self, request, role_id):
        """Delete a role."""
        snapshot = RoleService().delete_role(role_id, actor=request.user, request=request)

        return Response({
            'message': f'Role "{snapshot["name"]}" deleted',
            'role': snapshot
        })


@extend_schema(
    tags=['RBAC - Roles'],
    summary='Role statistics',
    description='''
Counts of roles, permissions and users, plus the number of users per role.

**Required role:** `ADMIN` or `HR`
    ''',
    responses={200: OpenApiTypes.OBJECT},
)
@requires_roles('ADMIN', 'HR')
class RoleStatsView(APIView):
    """GET /v1/roles/stats"""

    permission_classes = [AccessPolicy]

    def get(self, request):
        return Response(RoleService.role_stats())


@extend_schema(
    tags=['RBAC - Roles'],
    summary='Role change history',
    description='''
Role-management audit entries for one role, newest first. Each entry is
flagged with `canRevert`.

**Required role:** `ADMIN`
    ''',
    responses={200: RoleHistorySerializer(many=True)},
)
@requires_roles('ADMIN')
class RoleHistoryView(APIView):
    """GET /v1/roles/history/{role_id}"""

    permission_classes = [AccessPolicy]
    pagination_class = StandardResultsSetPagination

    def get(self, request, role_id):
        """List the history of a role."""
        logs = RoleService.role_history(role_id)

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(logs, request)

        serializer = RoleHistorySerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)


@extend_schema(
    tags=['RBAC - Roles'],
    summary='List role audit logs',
    description='''
All role-management audit entries, newest first.

`search` matches the description, action, role name and actor email.

**Required role:** `ADMIN`
    ''',
    parameters=[
        OpenApiParameter('search', OpenApiTypes.STR, description='Free-text filter'),
    ],
    responses={200: RoleHistorySerializer(many=True)},
)
@requires_roles('ADMIN')
class RoleAuditLogListView(APIView):
    """GET /v1/roles/audit-logs"""

    permission_classes = [AccessPolicy]
    pagination_class = StandardResultsSetPagination

    def get(self, request):
        """List role-management audit logs."""
        logs = AuditLog.objects.role_management().select_related('user')

        search = request.query_params.get('search')
        if search:
            logs = logs.filter(
                Q(description__icontains=search)
                | Q(action__icontains=search)
                | Q(details__roleName__icontains=search)
                | Q(user__email__icontains=search)
            )

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(logs, request)

        serializer = RoleHistorySerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)


@extend_schema(
    tags=['RBAC - Roles'],
    summary='Revert role change',
    description='''
Undo the role mutation recorded by an audit entry.

- `CREATE_ROLE`: deletes the role (refused while users hold it)
- `UPDATE_ROLE`: restores the previous values of every changed field
- `DELETE_ROLE`: recreates the role with the permissions still in the catalog

The revert is itself recorded as a `REVERT_*` entry, which cannot be reverted.

**Required role:** `ADMIN`
    ''',
    request=None,
    responses={
        200: OpenApiTypes.OBJECT,
        400: OpenApiTypes.OBJECT,
        404: OpenApiTypes.OBJECT,
    },
    examples=[
        OpenApiExample(
            'Success Response',
            value={
                'message': 'Role "AUDITOR" changes have been reverted',
                'revertedAction': 'UPDATE_ROLE',
                'originalAuditLogId': 42,
                'auditLogId': 57,
                'role': {'id': 5, 'name': 'AUDITOR'}
            },
            response_only=True
        ),
        OpenApiExample(
            'Role In Use',
            value={
                'error': 'Cannot revert role creation. 2 user(s) are currently assigned to this role.',
                'code': 'ROLE_IN_USE',
                'details': {'userCount': 2}
            },
            response_only=True,
            status_codes=['400']
        )
    ]
)
@requires_roles('ADMIN')
class RoleRevertView(APIView):
    """POST /v1/roles/revert/{audit_log_id}"""

    permission_classes = [AccessPolicy]

    def post(self, request, audit_log_id):
        """Revert an audited role mutation."""
        result = RoleReverter().revert(audit_log_id, actor=request.user, request=request)

        return Response({
            'message': result.message,
            'revertedAction': result.reverted_action.value,
            'originalAuditLogId': result.original_audit_log_id,
            'auditLogId': result.audit_log.id if result.audit_log else None,
            'role': RoleSerializer(result.role).data if result.role else None,
        })


# ===== PERMISSION VIEWS =====

@extend_schema(
    tags=['RBAC - Permissions'],
    summary='List permissions',
    description='''
List the permission catalog, with the number of roles granting each one.

Optional `category` filter.

**Required role:** `ADMIN` or `HR`
    ''',
    parameters=[
        OpenApiParameter('category', OpenApiTypes.STR, description='Filter by category'),
    ],
    responses={200: PermissionWithUsageSerializer(many=True)},
)
@requires_roles('ADMIN', 'HR')
class PermissionListView(APIView):
    """GET /v1/permissions"""

    permission_classes = [AccessPolicy]

    def get(self, request):
        """List permissions."""
        permissions = Permission.objects.annotate(role_count=Count('roles'))

        category = request.query_params.get('category')
        if category:
            permissions = permissions.filter(category=category)

        serializer = PermissionWithUsageSerializer(permissions, many=True)
        return Response({
            'count': len(serializer.data),
            'permissions': serializer.data
        })


# ===== USER VIEWS =====

@extend_schema(
    tags=['RBAC - Users'],
    summary='Get user',
    description='''
Get a user's profile and role.

Users can read their own record; `ADMIN`, `HR` and `MANAGER` can read anyone's.
    ''',
    responses={200: UserSerializer, 403: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
)
@requires_owner_or_elevated('id')
class UserDetailView(APIView):
    """GET /v1/users/{id}"""

    permission_classes = [AccessPolicy]

    def get(self, request, id):
        user = User.objects.select_related('role').filter(pk=id).first()
        if user is None:
            raise UserNotFound('User not found', details={'userId': id})
        return Response(UserSerializer(user).data)


@extend_schema(
    tags=['RBAC - Users'],
    summary='Assign role to user',
    description='''
Assign a role to a user, or remove it with `"roleId": null`.

The change is recorded as an `ASSIGN_ROLE` audit entry and the user's
cached permissions are invalidated immediately.

**Required role:** `ADMIN`
    ''',
    request=AssignRoleSerializer,
    responses={200: UserSerializer, 400: OpenApiTypes.OBJECT, 404: OpenApiTypes.OBJECT},
)
@requires_roles('ADMIN')
class UserRoleView(APIView):
    """PUT /v1/users/{id}/role"""

    permission_classes = [AccessPolicy]

    def put(self, request, id):
        serializer = AssignRoleSerializer(data=request.data)
        if not serializer.is_valid():
            return _validation_error_response(serializer)

        user = RoleService().assign_role(
            id,
            serializer.validated_data['roleId'],
            actor=request.user,
            request=request,
        )
        return Response(UserSerializer(user).data)


# ===== AUDIT LOG VIEWS =====

@extend_schema_view(
    get=extend_schema(
        tags=['RBAC - Audit'],
        summary='List audit logs',
        description='''
List audit logs, newest first.

Filters: `category`, `severity`, `status`, `action`, `startDate`, `endDate`
(ISO 8601 date or datetime) and free-text `search`.

**Required permission:** `view_audit_logs`
        ''',
        parameters=[
            OpenApiParameter('category', OpenApiTypes.STR),
            OpenApiParameter('severity', OpenApiTypes.STR),
            OpenApiParameter('status', OpenApiTypes.STR),
            OpenApiParameter('action', OpenApiTypes.STR),
            OpenApiParameter('startDate', OpenApiTypes.STR),
            OpenApiParameter('endDate', OpenApiTypes.STR),
            OpenApiParameter('search', OpenApiTypes.STR),
        ],
        responses={200: AuditLogSerializer(many=True)},
    ),
    post=extend_schema(
        tags=['RBAC - Audit'],
        summary='Record audit log',
        description='''
Record an audit entry on behalf of another subsystem.

**Required permission:** `manage_audit_logs`
        ''',
        request=AuditLogCreateSerializer,
        responses={201: AuditLogSerializer, 400: OpenApiTypes.OBJECT, 503: OpenApiTypes.OBJECT},
    )
)
class AuditLogListView(APIView):
    """
    GET /v1/audit-logs
    POST /v1/audit-logs
    """

    permission_classes = [AccessPolicy]
    pagination_class = StandardResultsSetPagination

    @requires_permissions('view_audit_logs')
    def get(self, request):
        """List audit logs."""
        logs = AuditLog.objects.select_related('user')
        params = request.query_params

        for param in ('category', 'severity', 'status', 'action'):
            value = params.get(param)
            if value:
                logs = logs.filter(**{param: value})

        start_date = params.get('startDate')
        if start_date:
            logs = logs.filter(timestamp__gte=_parse_date_param(start_date, 'startDate'))

        end_date = params.get('endDate')
        if end_date:
            logs = logs.filter(timestamp__lte=_parse_date_param(end_date, 'endDate', end_of_day=True))

        search = params.get('search')
        if search:
            logs = logs.filter(
                Q(description__icontains=search)
                | Q(action__icontains=search)
                | Q(resource__icontains=search)
                | Q(user__email__icontains=search)
                | Q(user__name__icontains=search)
            )

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(logs, request)

        serializer = AuditLogSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    @requires_permissions('manage_audit_logs')
    def post(self, request):
        """Record an audit entry."""
        serializer = AuditLogCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return _validation_error_response(serializer)

        data = serializer.validated_data
        audit_log = AuditRecorder().record(AuditDraft(
            action=data['action'],
            category=data['category'],
            resource=data['resource'],
            resource_id=data.get('resourceId') or None,
            details=data['details'],
            description=data['description'],
            severity=data['severity'],
            status=data['status'],
            user=request.user,
        ), request=request)

        if audit_log is None:
            raise StoreUnavailable('Failed to record audit log')

        return Response(AuditLogSerializer(audit_log).data, status=status.HTTP_201_CREATED)


@extend_schema(
    tags=['RBAC - Audit'],
    summary='Audit log statistics',
    description='''
Totals by category, severity and status, plus the number of entries in the
last 24 hours.

**Required permission:** `view_audit_logs`
    ''',
    responses={200: OpenApiTypes.OBJECT},
)
@requires_permissions('view_audit_logs')
class AuditLogStatsView(APIView):
    """GET /v1/audit-logs/stats"""

    permission_classes = [AccessPolicy]

    def get(self, request):
        def grouped(field_name):
            rows = AuditLog.objects.order_by().values(field_name).annotate(count=Count('id'))
            return {row[field_name]: row['count'] for row in rows}

        since = timezone.now() - timedelta(hours=24)
        return Response({
            'total': AuditLog.objects.count(),
            'last24Hours': AuditLog.objects.filter(timestamp__gte=since).count(),
            'byCategory': grouped('category'),
            'bySeverity': grouped('severity'),
            'byStatus': grouped('status'),
        })


@extend_schema(
    tags=['RBAC - Audit'],
    summary='Get audit log',
    description='''
Get a single audit entry.

**Required permission:** `view_audit_logs`
    ''',
    responses={200: AuditLogSerializer, 404: OpenApiTypes.OBJECT},
)
@requires_permissions('view_audit_logs')
class AuditLogDetailView(APIView):
    """GET /v1/audit-logs/{audit_log_id}"""

    permission_classes = [AccessPolicy]

    def get(self, request, audit_log_id):
        audit_log = AuditLog.objects.select_related('user').filter(pk=audit_log_id).first()
        if audit_log is None:
            raise AuditLogNotFound('Audit log not found', details={'auditLogId': audit_log_id})
        return Response(AuditLogSerializer(audit_log).data)
