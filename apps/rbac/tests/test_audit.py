"""
Tests for the audit recorder and role detail builders.
"""
import pytest
from unittest.mock import patch
from django.db import DatabaseError, transaction
from rest_framework.test import APIRequestFactory

from apps.rbac.audit import (
    AuditDraft, AuditRecorder, RESOURCE_ROLE, record_audit,
    role_created_details, role_deleted_details, role_snapshot, role_update_changes,
)
from apps.rbac.models import AuditLog, Role


def _snapshot(**overrides):
    snapshot = {
        'name': 'AUDITOR',
        'description': 'Reads logs',
        'color': 'purple',
        'permissions': ['view_audit_logs'],
        'users': [1, 2],
    }
    snapshot.update(overrides)
    return snapshot


class TestRoleUpdateChanges:
    """Structural diff of role snapshots."""

    def test_no_changes(self):
        assert role_update_changes(_snapshot(), _snapshot()) == {}

    def test_permission_order_is_not_a_change(self):
        before = _snapshot(permissions=['b', 'a', 'c'])
        after = _snapshot(permissions=['c', 'b', 'a'])

        assert role_update_changes(before, after) == {}

    def test_user_order_is_not_a_change(self):
        assert role_update_changes(_snapshot(users=[3, 1]), _snapshot(users=[1, 3])) == {}

    def test_description_change(self):
        changes = role_update_changes(_snapshot(description='d1'), _snapshot(description='d2'))

        assert changes == {'description': {'from': 'd1', 'to': 'd2'}}

    def test_string_comparison_is_exact(self):
        changes = role_update_changes(_snapshot(name='Auditor'), _snapshot(name='AUDITOR'))

        assert changes == {'name': {'from': 'Auditor', 'to': 'AUDITOR'}}

    def test_set_changes_are_sorted(self):
        before = _snapshot(permissions=['view_reports'], users=[2, 1])
        after = _snapshot(permissions=['view_reports', 'manage_team'], users=[3])

        changes = role_update_changes(before, after)

        assert changes['permissions'] == {
            'from': ['view_reports'],
            'to': ['manage_team', 'view_reports'],
        }
        assert changes['users'] == {'from': [1, 2], 'to': [3]}


class TestRoleDetailBuilders:

    def test_created_details_snapshot_full_state(self):
        details = role_created_details(_snapshot())

        assert details == {
            'roleName': 'AUDITOR',
            'description': 'Reads logs',
            'color': 'purple',
            'permissionIds': ['view_audit_logs'],
            'userIds': [1, 2],
            'permissionCount': 1,
            'userCount': 2,
        }

    def test_deleted_details_keep_what_a_revert_needs(self):
        details = role_deleted_details(_snapshot())

        assert details['roleName'] == 'AUDITOR'
        assert details['description'] == 'Reads logs'
        assert details['color'] == 'purple'
        assert details['permissionIds'] == ['view_audit_logs']

    @pytest.mark.django_db
    def test_role_snapshot_reads_sorted_ids(self, roles, employee_user, manager_user):
        role = roles['EMPLOYEE']
        manager_user.role = role
        manager_user.save()

        snapshot = role_snapshot(role)

        assert snapshot['name'] == 'EMPLOYEE'
        assert snapshot['permissions'] == ['view_profile']
        assert snapshot['users'] == sorted([employee_user.id, manager_user.id])


@pytest.mark.django_db
class TestAuditRecorder:

    def test_records_entry(self, admin_user):
        entry = AuditRecorder().record(AuditDraft(
            action='CREATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=12,
            details={'roleName': 'AUDITOR'},
            description='Created role "AUDITOR"',
            user=admin_user,
        ))

        assert entry.pk is not None
        assert entry.resource_id == '12'
        assert entry.user == admin_user
        assert entry.severity == AuditLog.SEVERITY_INFO
        assert entry.status == AuditLog.STATUS_SUCCESS
        assert entry.timestamp is not None

    def test_captures_request_context(self, admin_user):
        request = APIRequestFactory().post(
            '/v1/roles',
            HTTP_X_FORWARDED_FOR='203.0.113.9, 10.0.0.1',
            HTTP_USER_AGENT='pytest-agent',
        )
        request.request_id = 'req-123'

        entry = record_audit(AuditDraft(
            action='CREATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=1,
            user=admin_user,
        ), request=request)

        assert entry.ip_address == '203.0.113.9'
        assert entry.user_agent == 'pytest-agent'
        assert entry.request_id == 'req-123'

    def test_anonymous_actor_is_stored_as_system(self, db):
        from django.contrib.auth.models import AnonymousUser

        entry = record_audit(AuditDraft(
            action='SYSTEM_EVENT',
            category=AuditLog.CATEGORY_SYSTEM,
            resource='SYSTEM',
            user=AnonymousUser(),
        ))

        assert entry.user is None

    def test_write_failure_is_swallowed_and_alerted(self, admin_user):
        with patch.object(AuditLog.objects, 'create', side_effect=DatabaseError('disk full')), \
                patch('apps.rbac.audit.SecurityLogger.log_audit_write_failed') as alert:
            result = record_audit(AuditDraft(
                action='DELETE_ROLE',
                category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
                resource=RESOURCE_ROLE,
                resource_id=3,
                user=admin_user,
            ))

        assert result is None
        alert.assert_called_once()
        assert alert.call_args.kwargs['action'] == 'DELETE_ROLE'

    def test_write_failure_does_not_roll_back_caller(self, admin_user):
        with transaction.atomic():
            role = Role.objects.create(name='TEMP')
            with patch.object(AuditLog.objects, 'create', side_effect=DatabaseError('boom')):
                assert record_audit(AuditDraft(
                    action='CREATE_ROLE',
                    category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
                    resource=RESOURCE_ROLE,
                    resource_id=role.id,
                    user=admin_user,
                )) is None

        assert Role.objects.filter(name='TEMP').exists()


@pytest.mark.django_db
class TestAuditLogImmutability:

    def _entry(self):
        return record_audit(AuditDraft(
            action='CREATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=1,
        ))

    def test_entries_cannot_be_updated(self):
        entry = self._entry()
        entry.description = 'tampered'

        with pytest.raises(ValueError):
            entry.save()

    def test_entries_cannot_be_deleted(self):
        entry = self._entry()

        with pytest.raises(ValueError):
            entry.delete()

        assert AuditLog.objects.filter(pk=entry.pk).exists()
