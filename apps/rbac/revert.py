"""
Revert engine for audited role mutations.

Given the id of a ROLE_MANAGEMENT audit entry, applies the inverse of the
recorded mutation and records a new ``REVERT_*`` entry pointing back at the
original:

- CREATE_ROLE  -> delete the role (refused while users hold it)
- UPDATE_ROLE  -> restore the ``from`` side of every recorded change
- DELETE_ROLE  -> recreate the role with the permissions still in the catalog

``REVERT_*`` entries are themselves not revertible. Each revert is one
transaction; a refusal raises a RevertError (or NotFound) and changes
nothing.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from django.db import transaction

from apps.core.logging import SecurityLogger
from apps.rbac.audit import AuditDraft, AuditRecorder, RESOURCE_ROLE
from apps.rbac.cache import PermissionCache, get_permission_cache
from apps.rbac.exceptions import (
    AuditLogNotFound, MalformedChangeDetails, MalformedResourceId, MissingChangeDetails,
    NonRevertibleAction, RoleInUse, RoleNameConflict, RoleNotFound, WrongCategory,
)
from apps.rbac.models import AuditLog, Permission, Role, User

logger = logging.getLogger(__name__)


class RevertibleAction(str, Enum):
    CREATE_ROLE = 'CREATE_ROLE'
    UPDATE_ROLE = 'UPDATE_ROLE'
    DELETE_ROLE = 'DELETE_ROLE'

    @property
    def revert_action(self) -> str:
        return f'REVERT_{self.value}'


REVERTIBLE_ACTIONS = frozenset(action.value for action in RevertibleAction)


def can_revert(entry: AuditLog) -> bool:
    """Whether ``entry`` is a successful, revertible role mutation."""
    return (
        entry.category == AuditLog.CATEGORY_ROLE_MANAGEMENT
        and entry.action in REVERTIBLE_ACTIONS
        and entry.status == AuditLog.STATUS_SUCCESS
    )


@dataclass
class RevertResult:
    message: str
    reverted_action: RevertibleAction
    original_audit_log_id: int
    role: Optional[Role] = None
    audit_log: Optional[AuditLog] = None


def _ids(values):
    """Normalise a stored id list; older entries stored ``{id, name}`` dicts."""
    return [value['id'] if isinstance(value, dict) else value for value in values or []]


def _malformed(field_name, value):
    return MalformedChangeDetails(
        f'Audit log holds malformed change details for "{field_name}"',
        details={'field': field_name, 'value': value},
    )


def _id_list(field_name, values, id_type=str):
    if values is None:
        return []
    if not isinstance(values, (list, tuple)) or any(
            isinstance(value, dict) and 'id' not in value for value in values):
        raise _malformed(field_name, values)
    ids = _ids(values)
    # bool is an int subclass
    if any(isinstance(i, bool) or not isinstance(i, id_type) for i in ids):
        raise _malformed(field_name, values)
    return ids


def _previous_values(changes) -> dict:
    """
    Validate a stored ``changes`` mapping and return the ``from`` side of each
    known field. Raises MalformedChangeDetails before anything is mutated.
    """
    if not isinstance(changes, dict):
        raise _malformed('changes', changes)

    previous = {}
    for field_name in ('name', 'description', 'color', 'permissions', 'users'):
        if field_name not in changes:
            continue
        change = changes[field_name]
        if not isinstance(change, dict) or 'from' not in change:
            raise _malformed(field_name, change)
        value = change['from']

        if field_name == 'name':
            if not isinstance(value, str) or not value.strip():
                raise _malformed(field_name, value)
        elif field_name in ('description', 'color'):
            if value is not None and not isinstance(value, str):
                raise _malformed(field_name, value)
            value = value or ''
        elif field_name == 'permissions':
            value = _id_list(field_name, value)
        else:
            value = _id_list(field_name, value, id_type=int)
        previous[field_name] = value
    return previous


class RoleReverter:
    """Applies the inverse of an audited role mutation."""

    def __init__(self, cache: Optional[PermissionCache] = None, recorder: Optional[AuditRecorder] = None):
        self.cache = cache if cache is not None else get_permission_cache()
        self.recorder = recorder if recorder is not None else AuditRecorder()
        self._handlers = {
            RevertibleAction.CREATE_ROLE: self._revert_create,
            RevertibleAction.UPDATE_ROLE: self._revert_update,
            RevertibleAction.DELETE_ROLE: self._revert_delete,
        }
        missing = set(RevertibleAction) - set(self._handlers)
        if missing:
            raise NotImplementedError(f"No revert handler for {sorted(a.value for a in missing)}")

    def validate(self, audit_log_id):
        """
        Load the audit entry and check that it can be reverted.

        Returns (entry, action, role_id).
        """
        entry = AuditLog.objects.filter(pk=audit_log_id).first()
        if entry is None:
            raise AuditLogNotFound('Audit log not found', details={'auditLogId': audit_log_id})

        if entry.category != AuditLog.CATEGORY_ROLE_MANAGEMENT:
            raise WrongCategory(
                'This audit log is not related to role management',
                details={'category': entry.category},
            )

        try:
            action = RevertibleAction(entry.action)
        except ValueError:
            raise NonRevertibleAction(
                f'Cannot revert action: {entry.action}',
                details={'action': entry.action},
            )

        if entry.status != AuditLog.STATUS_SUCCESS:
            raise NonRevertibleAction(
                f'Cannot revert failed action: {entry.action}',
                details={'action': entry.action, 'status': entry.status},
            )

        try:
            role_id = int(entry.resource_id)
        except (TypeError, ValueError):
            raise MalformedResourceId(
                'Audit log does not reference a valid role',
                details={'resourceId': entry.resource_id},
            )

        return entry, action, role_id

    def revert(self, audit_log_id, actor, request=None) -> RevertResult:
        """
        Revert the role mutation recorded by ``audit_log_id``.

        Raises:
            AuditLogNotFound, RoleNotFound: referenced entry or role is gone
            RevertError subclasses, RoleInUse, RoleNameConflict: refused
        """
        with transaction.atomic():
            entry, action, role_id = self.validate(audit_log_id)
            handler = self._handlers[action]
            result, affected_user_ids = handler(entry, role_id, actor, request)

        if affected_user_ids:
            self.cache.invalidate_many(affected_user_ids)

        SecurityLogger.log_role_reverted(
            actor_id=getattr(actor, 'pk', None),
            audit_log_id=entry.id,
            action=entry.action,
            role_name=entry.details.get('roleName'),
        )
        logger.info(
            f"Reverted {entry.action} (audit log {entry.id})",
            extra={'audit_log_id': entry.id, 'role_id': role_id}
        )
        return result

    def _record(self, entry, action: RevertibleAction, role_id, actor, request, description,
                severity, extra_details) -> Optional[AuditLog]:
        details = {
            'roleName': entry.details.get('roleName'),
            'originalAuditLogId': entry.id,
            'originalAction': entry.action,
            'originalTimestamp': entry.timestamp.isoformat(),
        }
        details.update(extra_details)
        return self.recorder.record(AuditDraft(
            action=action.revert_action,
            category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
            resource=RESOURCE_ROLE,
            resource_id=role_id,
            details=details,
            description=description,
            severity=severity,
            user=actor,
        ), request=request)

    def _revert_create(self, entry, role_id, actor, request):
        role = Role.objects.select_for_update().filter(pk=role_id).first()
        if role is None:
            raise RoleNotFound('Role no longer exists', details={'roleId': role_id})

        user_count = role.users.count()
        if user_count:
            raise RoleInUse(
                user_count,
                message=(
                    f'Cannot revert role creation. {user_count} user(s) are currently '
                    f'assigned to this role.'
                ),
            )

        role_name = role.name
        role.delete()

        audit_log = self._record(
            entry, RevertibleAction.CREATE_ROLE, role_id, actor, request,
            description=f'Reverted creation of role "{role_name}"',
            severity=AuditLog.SEVERITY_WARNING,
            extra_details={'deletedRoleName': role_name},
        )
        result = RevertResult(
            message=f'Role "{role_name}" creation has been reverted (role deleted)',
            reverted_action=RevertibleAction.CREATE_ROLE,
            original_audit_log_id=entry.id,
            audit_log=audit_log,
        )
        return result, []

    def _revert_update(self, entry, role_id, actor, request):
        details = entry.details if isinstance(entry.details, dict) else {}
        changes = details.get('changes')
        if not changes:
            raise MissingChangeDetails('No change details found in audit log')
        previous = _previous_values(changes)

        role = Role.objects.select_for_update().filter(pk=role_id).first()
        if role is None:
            raise RoleNotFound('Role no longer exists', details={'roleId': role_id})

        affected = set(role.users.values_list('id', flat=True))
        restored_fields = []

        if 'name' in previous:
            previous_name = previous['name']
            if Role.objects.name_taken(previous_name, exclude_id=role.id):
                raise RoleNameConflict(
                    previous_name,
                    message=f'Cannot revert role update. A role with name "{previous_name}" already exists.',
                )
            role.name = previous_name
            restored_fields.append('name')

        for field_name in ('description', 'color'):
            if field_name in previous:
                setattr(role, field_name, previous[field_name])
                restored_fields.append(field_name)

        role.save()

        if 'permissions' in previous:
            permission_ids = Permission.objects.existing_ids(previous['permissions'])
            role.permissions.set(permission_ids)
            restored_fields.append('permissions')

        if 'users' in previous:
            previous_user_ids = set(previous['users'])
            role.users.exclude(id__in=previous_user_ids).update(role=None)
            User.objects.filter(id__in=previous_user_ids).update(role=role)
            affected |= previous_user_ids
            restored_fields.append('users')

        audit_log = self._record(
            entry, RevertibleAction.UPDATE_ROLE, role_id, actor, request,
            description=f'Reverted update of role "{role.name}": {", ".join(restored_fields)}',
            severity=AuditLog.SEVERITY_WARNING,
            extra_details={'revertedChanges': changes, 'restoredFields': restored_fields},
        )
        result = RevertResult(
            message=f'Role "{role.name}" changes have been reverted',
            reverted_action=RevertibleAction.UPDATE_ROLE,
            original_audit_log_id=entry.id,
            role=role,
            audit_log=audit_log,
        )
        if not {'permissions', 'users'} & set(restored_fields):
            affected = set()
        return result, affected

    def _revert_delete(self, entry, role_id, actor, request):
        details = entry.details if isinstance(entry.details, dict) else {}
        role_name = details.get('roleName')
        if not role_name:
            raise MissingChangeDetails('No role snapshot found in audit log')
        if not isinstance(role_name, str) or not role_name.strip():
            raise _malformed('roleName', role_name)
        for field_name in ('description', 'color'):
            value = details.get(field_name)
            if value is not None and not isinstance(value, str):
                raise _malformed(field_name, value)
        snapshot_ids = _id_list('permissionIds', details.get('permissionIds', details.get('permissions')))

        if Role.objects.name_taken(role_name):
            raise RoleNameConflict(
                role_name,
                message=f'Cannot revert role deletion. A role with name "{role_name}" already exists.',
            )

        role = Role.objects.create(
            name=role_name,
            description=details.get('description') or '',
            color=details.get('color') or '',
        )

        # Permissions removed from the catalog since the deletion are skipped
        restored_ids = sorted(Permission.objects.existing_ids(snapshot_ids))
        role.permissions.set(restored_ids)

        audit_log = self._record(
            entry, RevertibleAction.DELETE_ROLE, role.id, actor, request,
            description=f'Reverted deletion of role "{role_name}"',
            severity=AuditLog.SEVERITY_INFO,
            extra_details={
                'restoredRoleId': role.id,
                'restoredPermissions': len(restored_ids),
                'skippedPermissions': sorted(set(snapshot_ids) - set(restored_ids)),
            },
        )
        result = RevertResult(
            message=f'Role "{role_name}" has been restored',
            reverted_action=RevertibleAction.DELETE_ROLE,
            original_audit_log_id=entry.id,
            role=role,
            audit_log=audit_log,
        )
        return result, []


def revert_role_audit(audit_log_id, actor, request=None) -> RevertResult:
    """Revert an audited role mutation using the process-wide cache."""
    return RoleReverter().revert(audit_log_id, actor, request=request)
