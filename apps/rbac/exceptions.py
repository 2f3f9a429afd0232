"""
RBAC domain errors.

All derive from the core HRMSException hierarchy so the DRF exception
handler renders them with the right status code.
"""
from apps.core.exceptions import NotFound, ValidationError


class RoleValidationError(ValidationError):
    """Invalid role input (blank name, unknown permission or user ids)."""
    default_code = 'INVALID_ROLE'


class RoleNameConflict(ValidationError):
    default_code = 'ROLE_NAME_CONFLICT'

    def __init__(self, name, message=None):
        super().__init__(
            message or f'A role with name "{name}" already exists.',
            details={'name': name},
        )


class RoleInUse(ValidationError):
    """A role cannot be removed while users hold it."""
    default_code = 'ROLE_IN_USE'

    def __init__(self, user_count, message=None):
        self.user_count = user_count
        super().__init__(
            message or f'Cannot delete role. {user_count} user(s) are currently assigned to this role.',
            details={'userCount': user_count},
        )


class RoleNotFound(NotFound):
    default_code = 'ROLE_NOT_FOUND'


class UserNotFound(NotFound):
    default_code = 'USER_NOT_FOUND'


class RevertError(ValidationError):
    """Base class for reasons a revert was refused."""
    default_code = 'REVERT_REFUSED'


class AuditLogNotFound(NotFound):
    default_code = 'AUDIT_LOG_NOT_FOUND'


class WrongCategory(RevertError):
    default_code = 'WRONG_CATEGORY'


class NonRevertibleAction(RevertError):
    default_code = 'NON_REVERTIBLE_ACTION'


class MalformedResourceId(RevertError):
    default_code = 'MALFORMED_RESOURCE_ID'


class MissingChangeDetails(RevertError):
    default_code = 'MISSING_CHANGE_DETAILS'


class MalformedChangeDetails(RevertError):
    default_code = 'MALFORMED_CHANGE_DETAILS'
