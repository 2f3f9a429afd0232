"""
RBAC API URLs.

Provides endpoints for:
- Role management (CRUD, stats, history, revert)
- Permission catalog
- User lookup and role assignment
- Audit log viewing and recording
"""
from django.urls import path
from apps.rbac.views import (
    RoleListView,
    RoleDetailView,
    RoleStatsView,
    RoleHistoryView,
    RoleAuditLogListView,
    RoleRevertView,
    PermissionListView,
    UserDetailView,
    UserRoleView,
    AuditLogListView,
    AuditLogStatsView,
    AuditLogDetailView,
)

app_name = 'rbac'

urlpatterns = [
    # Role endpoints
    path('roles', RoleListView.as_view(), name='role-list'),
    path('roles/stats', RoleStatsView.as_view(), name='role-stats'),
    path('roles/audit-logs', RoleAuditLogListView.as_view(), name='role-audit-logs'),
    path('roles/history/<int:role_id>', RoleHistoryView.as_view(), name='role-history'),
    path('roles/revert/<int:audit_log_id>', RoleRevertView.as_view(), name='role-revert'),
    path('roles/<int:role_id>', RoleDetailView.as_view(), name='role-detail'),

    # Permission catalog
    path('permissions', PermissionListView.as_view(), name='permission-list'),

    # User endpoints
    path('users/<int:id>', UserDetailView.as_view(), name='user-detail'),
    path('users/<int:id>/role', UserRoleView.as_view(), name='user-role'),

    # Audit log endpoints
    path('audit-logs', AuditLogListView.as_view(), name='audit-log-list'),
    path('audit-logs/stats', AuditLogStatsView.as_view(), name='audit-log-stats'),
    path('audit-logs/<int:audit_log_id>', AuditLogDetailView.as_view(), name='audit-log-detail'),
]
