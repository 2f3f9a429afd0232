"""
Tests for the role revert engine.

Tests validation, each revertible action, and the guards that refuse a
revert without changing anything.
"""
import pytest

from apps.rbac.audit import AuditDraft, RESOURCE_ROLE, record_audit
from apps.rbac.cache import get_permission_cache
from apps.rbac.exceptions import (
    AuditLogNotFound, MalformedChangeDetails, MalformedResourceId, MissingChangeDetails,
    NonRevertibleAction, RevertError, RoleInUse, RoleNameConflict, RoleNotFound, WrongCategory,
)
from apps.rbac.models import AuditLog, Permission, Role, User
from apps.rbac.revert import RevertibleAction, RoleReverter, can_revert, revert_role_audit
from apps.rbac.services import RoleService


@pytest.fixture
def service():
    return RoleService()


@pytest.fixture
def reverter():
    return RoleReverter()


def _latest(action):
    return AuditLog.objects.filter(action=action).order_by('-id').first()


@pytest.mark.django_db
class TestRevertValidation:

    def test_missing_entry(self, reverter, admin_user):
        with pytest.raises(AuditLogNotFound):
            reverter.revert(999999, actor=admin_user)

    def test_wrong_category(self, reverter, admin_user):
        entry = record_audit(AuditDraft(
            action='LOGIN',
            category=AuditLog.CATEGORY_AUTHENTICATION,
            resource='USER',
            resource_id=admin_user.id,
        ))

        with pytest.raises(WrongCategory):
            reverter.revert(entry.id, actor=admin_user)

    def test_unknown_action(self, reverter, admin_user):
        entry = record_audit(AuditDraft(
            action='ARCHIVE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=1,
        ))

        with pytest.raises(NonRevertibleAction):
            reverter.revert(entry.id, actor=admin_user)

    def test_failed_entry_is_not_revertible(self, reverter, admin_user, roles):
        entry = record_audit(AuditDraft(
            action='UPDATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=roles['HR'].id,
            details={'roleName': 'HR', 'changes': {'description': {'from': 'old', 'to': 'new'}}},
            status=AuditLog.STATUS_FAILED,
        ))
        description = roles['HR'].description

        assert not can_revert(entry)
        with pytest.raises(NonRevertibleAction) as exc_info:
            reverter.revert(entry.id, actor=admin_user)

        assert exc_info.value.details['status'] == AuditLog.STATUS_FAILED
        assert Role.objects.get(pk=roles['HR'].id).description == description
        assert not AuditLog.objects.filter(action='REVERT_UPDATE_ROLE').exists()

    def test_malformed_resource_id(self, reverter, admin_user):
        entry = record_audit(AuditDraft(
            action='UPDATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id='not-a-number',
            details={'changes': {'description': {'from': 'a', 'to': 'b'}}},
        ))

        with pytest.raises(MalformedResourceId):
            reverter.revert(entry.id, actor=admin_user)

    def test_revert_entries_are_not_revertible(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'AUDITOR', description='d1')
        service.update_role(role.id, admin_user, description='d2')
        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)
        revert_entry = _latest('REVERT_UPDATE_ROLE')

        assert not can_revert(revert_entry)
        with pytest.raises(NonRevertibleAction) as exc_info:
            reverter.revert(revert_entry.id, actor=admin_user)

        assert exc_info.value.code == 'NON_REVERTIBLE_ACTION'
        assert Role.objects.get(pk=role.id).description == 'd1'

    def test_every_revertible_action_has_a_handler(self, reverter):
        assert set(reverter._handlers) == set(RevertibleAction)

    def test_revert_action_names(self):
        assert RevertibleAction.UPDATE_ROLE.revert_action == 'REVERT_UPDATE_ROLE'


@pytest.mark.django_db
class TestRevertCreate:

    def test_deletes_unassigned_role(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'AUDITOR', permission_ids=['view_audit_logs'])
        entry = _latest('CREATE_ROLE')

        result = reverter.revert(entry.id, actor=admin_user)

        assert not Role.objects.filter(pk=role.id).exists()
        assert result.reverted_action is RevertibleAction.CREATE_ROLE
        assert result.role is None

        revert_entry = result.audit_log
        assert revert_entry.action == 'REVERT_CREATE_ROLE'
        assert revert_entry.severity == AuditLog.SEVERITY_WARNING
        assert revert_entry.details['originalAuditLogId'] == entry.id
        assert revert_entry.details['roleName'] == 'AUDITOR'
        assert revert_entry.user == admin_user

    def test_refused_while_users_hold_the_role(self, service, reverter, admin_user, employee_user, manager_user):
        role = service.create_role(admin_user, 'AUDITOR', user_ids=[employee_user.id, manager_user.id])
        entry = _latest('CREATE_ROLE')

        with pytest.raises(RoleInUse) as exc_info:
            reverter.revert(entry.id, actor=admin_user)

        assert exc_info.value.user_count == 2
        assert exc_info.value.details == {'userCount': 2}
        assert '2 user(s)' in exc_info.value.message
        assert Role.objects.filter(pk=role.id).exists()
        assert not AuditLog.objects.filter(action='REVERT_CREATE_ROLE').exists()

    def test_role_already_gone(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'AUDITOR')
        entry = _latest('CREATE_ROLE')
        service.delete_role(role.id, admin_user)

        with pytest.raises(RoleNotFound):
            reverter.revert(entry.id, actor=admin_user)


@pytest.mark.django_db
class TestRevertUpdate:

    def test_description_round_trip(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'X', description='d1')
        service.update_role(role.id, admin_user, description='d2')
        entry = _latest('UPDATE_ROLE')
        assert entry.details['changes'] == {'description': {'from': 'd1', 'to': 'd2'}}

        result = reverter.revert(entry.id, actor=admin_user)

        role.refresh_from_db()
        assert role.description == 'd1'
        assert result.audit_log.action == 'REVERT_UPDATE_ROLE'
        assert result.audit_log.details['restoredFields'] == ['description']

    def test_restores_only_changed_fields(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'X', description='d1', color='blue')
        service.update_role(role.id, admin_user, color='green')
        # A later edit that the revert must leave alone
        Role.objects.filter(pk=role.id).update(description='edited elsewhere')

        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        role.refresh_from_db()
        assert role.color == 'blue'
        assert role.description == 'edited elsewhere'

    def test_restores_name(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'OLD')
        service.update_role(role.id, admin_user, name='NEW')

        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        role.refresh_from_db()
        assert role.name == 'OLD'

    def test_name_restore_collision(self, service, reverter, admin_user):
        role = service.create_role(admin_user, 'OLD')
        service.update_role(role.id, admin_user, name='NEW')
        service.create_role(admin_user, 'OLD')

        with pytest.raises(RoleNameConflict):
            reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        role.refresh_from_db()
        assert role.name == 'NEW'

    def test_restores_permissions_and_invalidates_holders(self, service, reverter, admin_user, employee_user):
        role = service.create_role(
            admin_user, 'X', permission_ids=['view_profile'], user_ids=[employee_user.id]
        )
        service.update_role(role.id, admin_user, permission_ids=['view_profile', 'view_reports'])
        cache = get_permission_cache()
        cache.put(employee_user.id, ['view_profile', 'view_reports'])

        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        assert role.permission_ids() == ['view_profile']
        assert cache.get(employee_user.id) is None

    def test_restores_user_assignments(self, service, reverter, admin_user, employee_user, manager_user, roles):
        role = service.create_role(admin_user, 'X', user_ids=[employee_user.id])
        service.update_role(role.id, admin_user, user_ids=[manager_user.id])

        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        assert role.user_ids() == [employee_user.id]
        assert User.objects.get(pk=manager_user.id).role_id is None

    def test_skips_permissions_removed_from_catalog(self, service, reverter, admin_user):
        Permission.objects.create(id='temp_perm', name='Temp', category='Test')
        role = service.create_role(admin_user, 'X', permission_ids=['view_profile', 'temp_perm'])
        service.update_role(role.id, admin_user, permission_ids=[])
        Permission.objects.filter(id='temp_perm').delete()

        reverter.revert(_latest('UPDATE_ROLE').id, actor=admin_user)

        assert role.permission_ids() == ['view_profile']

    def test_missing_changes(self, reverter, admin_user, roles):
        entry = record_audit(AuditDraft(
            action='UPDATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=roles['HR'].id,
            details={'roleName': 'HR'},
        ))

        with pytest.raises(MissingChangeDetails) as exc_info:
            reverter.revert(entry.id, actor=admin_user)

        assert exc_info.value.message == 'No change details found in audit log'

    @pytest.mark.parametrize('changes', [
        {'name': 'oops'},
        {'description': {'to': 'x'}},
        {'permissions': {'from': 5}},
        {'name': {'from': None}},
        {'name': {'from': '   '}},
        {'color': {'from': 7}},
        {'users': {'from': ['abc']}},
        {'permissions': {'from': [{'name': 'no id'}]}},
        ['not', 'a', 'mapping'],
    ])
    def test_malformed_changes_are_refused(self, reverter, admin_user, roles, changes):
        hr = roles['HR']
        before = (hr.name, hr.description, hr.color, hr.permission_ids(), hr.user_ids())
        entry = record_audit(AuditDraft(
            action='UPDATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=hr.id,
            details={'roleName': 'HR', 'changes': changes},
        ))

        with pytest.raises(MalformedChangeDetails) as exc_info:
            reverter.revert(entry.id, actor=admin_user)

        assert isinstance(exc_info.value, RevertError)
        assert exc_info.value.code == 'MALFORMED_CHANGE_DETAILS'
        hr = Role.objects.get(pk=hr.id)
        assert (hr.name, hr.description, hr.color, hr.permission_ids(), hr.user_ids()) == before
        assert not AuditLog.objects.filter(action='REVERT_UPDATE_ROLE').exists()

    def test_null_description_restores_blank(self, reverter, admin_user, roles):
        entry = record_audit(AuditDraft(
            action='UPDATE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=roles['HR'].id,
            details={'roleName': 'HR', 'changes': {'description': {'from': None, 'to': 'x'}}},
        ))

        reverter.revert(entry.id, actor=admin_user)

        assert Role.objects.get(pk=roles['HR'].id).description == ''


@pytest.mark.django_db
class TestRevertDelete:

    def test_recreates_role_with_permissions(self, service, reverter, admin_user):
        role = service.create_role(
            admin_user, 'Temp', description='temporary', color='teal',
            permission_ids=['view_profile', 'view_reports'],
        )
        service.delete_role(role.id, admin_user)
        entry = _latest('DELETE_ROLE')

        result = reverter.revert(entry.id, actor=admin_user)

        restored = Role.objects.get(name='Temp')
        assert restored.description == 'temporary'
        assert restored.color == 'teal'
        assert restored.permission_ids() == ['view_profile', 'view_reports']
        assert result.role == restored
        assert result.audit_log.action == 'REVERT_DELETE_ROLE'
        assert result.audit_log.resource_id == str(restored.id)
        assert result.audit_log.details['restoredRoleId'] == restored.id
        assert result.audit_log.details['skippedPermissions'] == []

    def test_skips_permissions_no_longer_in_catalog(self, service, reverter, admin_user):
        Permission.objects.create(id='p1', name='P1', category='Test')
        Permission.objects.create(id='p2', name='P2', category='Test')
        role = service.create_role(admin_user, 'Temp', permission_ids=['p1', 'p2'])
        service.delete_role(role.id, admin_user)
        Permission.objects.filter(id='p2').delete()

        result = reverter.revert(_latest('DELETE_ROLE').id, actor=admin_user)

        assert Role.objects.get(name='Temp').permission_ids() == ['p1']
        assert result.audit_log.status == AuditLog.STATUS_SUCCESS
        assert result.audit_log.details['skippedPermissions'] == ['p2']

    def test_name_collision_is_refused(self, reverter, admin_user, roles):
        # An earlier, different role also named HR was deleted
        entry = record_audit(AuditDraft(
            action='DELETE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=987654,
            details={'roleName': 'HR', 'description': 'old HR', 'permissionIds': ['view_profile']},
        ))

        with pytest.raises(RoleNameConflict) as exc_info:
            reverter.revert(entry.id, actor=admin_user)

        assert 'already exists' in exc_info.value.message
        assert Role.objects.filter(name='HR').count() == 1
        assert not AuditLog.objects.filter(action='REVERT_DELETE_ROLE').exists()

    def test_accepts_legacy_permission_objects(self, reverter, admin_user, roles):
        entry = record_audit(AuditDraft(
            action='DELETE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=555,
            details={
                'roleName': 'LEGACY',
                'permissions': [{'id': 'view_profile', 'name': 'View Personal Profile'}],
            },
        ))

        revert_role_audit(entry.id, actor=admin_user)

        assert Role.objects.get(name='LEGACY').permission_ids() == ['view_profile']

    @pytest.mark.parametrize('details', [
        {'roleName': 'GONE', 'permissionIds': 5},
        {'roleName': 'GONE', 'permissionIds': [{'name': 'no id'}]},
        {'roleName': ['GONE']},
        {'roleName': 'GONE', 'color': 3},
    ])
    def test_malformed_snapshot_is_refused(self, reverter, admin_user, roles, details):
        entry = record_audit(AuditDraft(
            action='DELETE_ROLE',
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=424242,
            details=details,
        ))
        role_count = Role.objects.count()

        with pytest.raises(MalformedChangeDetails):
            reverter.revert(entry.id, actor=admin_user)

        assert Role.objects.count() == role_count
        assert not AuditLog.objects.filter(action='REVERT_DELETE_ROLE').exists()
