"""
Audit recorder and role detail builders.

``AuditRecorder.record`` appends one AuditLog entry. Recording is best
effort: a failure is logged (and alerted through SecurityLogger) but never
raised, so the mutation that triggered it still commits. Callers must not
assume every mutation has an audit entry.

The ``role_*`` helpers build the ``details`` payload stored with role
actions. Keys are camelCase because the payload is part of the API
surface (history views return it verbatim).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.db import transaction

from apps.core.exceptions import get_client_ip
from apps.core.logging import SecurityLogger
from apps.rbac.models import AuditLog

logger = logging.getLogger(__name__)

RESOURCE_ROLE = 'ROLE'
RESOURCE_USER = 'USER'


@dataclass
class AuditDraft:
    """An audit entry before the store assigns its id and timestamp."""

    action: str
    category: str
    resource: str
    resource_id: Any = None
    details: Dict[str, Any] = field(default_factory=dict)
    description: str = ''
    severity: str = AuditLog.SEVERITY_INFO
    status: str = AuditLog.STATUS_SUCCESS
    user: Any = None


class AuditRecorder:
    """Persists audit drafts; returns None instead of raising on failure."""

    def record(self, draft: AuditDraft, request=None) -> Optional[AuditLog]:
        user = draft.user
        if user is not None and not getattr(user, 'is_authenticated', False):
            user = None

        log_data = {
            'user': user,
            'action': draft.action,
            'category': draft.category,
            'resource': draft.resource,
            'resource_id': str(draft.resource_id) if draft.resource_id is not None else None,
            'severity': draft.severity,
            'status': draft.status,
            'details': draft.details or {},
            'description': draft.description,
        }

        if request is not None:
            log_data['ip_address'] = get_client_ip(request)
            log_data['user_agent'] = request.META.get('HTTP_USER_AGENT', '')
            log_data['request_id'] = getattr(request, 'request_id', None)

        try:
            # Savepoint: a failed insert must not break the caller's transaction
            with transaction.atomic():
                return AuditLog.objects.create(**log_data)
        except Exception as e:
            logger.error(
                f"Failed to create audit log: {str(e)}",
                extra={'action': draft.action, 'resource_id': log_data['resource_id']},
                exc_info=True
            )
            SecurityLogger.log_audit_write_failed(
                action=draft.action,
                resource=draft.resource,
                resource_id=draft.resource_id,
                error=str(e),
            )
            return None


def record_audit(draft: AuditDraft, request=None) -> Optional[AuditLog]:
    """Record ``draft`` with a default recorder. Returns None on failure."""
    return AuditRecorder().record(draft, request=request)


def role_snapshot(role) -> Dict[str, Any]:
    """Capture the state of a role needed to diff or recreate it."""
    return {
        'name': role.name,
        'description': role.description,
        'color': role.color,
        'permissions': role.permission_ids(),
        'users': role.user_ids(),
    }


def role_created_details(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'roleName': snapshot['name'],
        'description': snapshot['description'],
        'color': snapshot['color'],
        'permissionIds': snapshot['permissions'],
        'userIds': snapshot['users'],
        'permissionCount': len(snapshot['permissions']),
        'userCount': len(snapshot['users']),
    }


def role_update_changes(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Compute ``{field: {'from': old, 'to': new}}`` for every changed field.

    Permission and user sets are compared as sorted id lists, so the order
    in which they were assigned never produces a change. Strings compare
    exactly.
    """
    changes = {}
    for field_name in ('name', 'description', 'color'):
        if before[field_name] != after[field_name]:
            changes[field_name] = {'from': before[field_name], 'to': after[field_name]}

    for field_name in ('permissions', 'users'):
        old_ids = sorted(before[field_name])
        new_ids = sorted(after[field_name])
        if old_ids != new_ids:
            changes[field_name] = {'from': old_ids, 'to': new_ids}

    return changes


def role_updated_details(before: Dict[str, Any], after: Dict[str, Any],
                         changes: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'roleName': before['name'],
        'changes': changes,
        'permissionCount': len(after['permissions']),
        'userCount': len(after['users']),
    }


def role_deleted_details(snapshot: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'roleName': snapshot['name'],
        'description': snapshot['description'],
        'color': snapshot['color'],
        'permissionIds': snapshot['permissions'],
        'permissionCount': len(snapshot['permissions']),
    }
