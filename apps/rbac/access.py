"""
Access decision engine.

Decides whether a principal may perform an action given one or more
requirements. Decisions are values, never exceptions: a missing principal,
an unmet requirement or an unreachable permission store all produce a
DENY ``Decision`` with a reason. The DRF layer (apps.core.permissions)
turns those into HTTP responses.

Requirement shapes:
- RoleIn: principal's role name is in a set
- PermissionCheck: principal's permissions contain ALL / ANY of a set
- OwnerOrElevated: admin, elevated role on someone else's record, or owner
- DepartmentIn: admin, or principal's department is in a set
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Union

from django.db import DatabaseError

from apps.rbac.cache import PermissionCache

logger = logging.getLogger(__name__)


# Decision codes
AUTHENTICATION_REQUIRED = 'AUTHENTICATION_REQUIRED'
FORBIDDEN = 'FORBIDDEN'
STORE_UNAVAILABLE = 'STORE_UNAVAILABLE'


class PermissionMode(str, Enum):
    ALL = 'ALL'
    ANY = 'ANY'


@dataclass(frozen=True)
class RoleRef:
    id: int
    name: str


@dataclass(frozen=True)
class Principal:
    """Resolved identity of the caller for one request."""

    id: int
    name: str
    email: str
    department: Optional[str] = None
    role: Optional[RoleRef] = None

    @property
    def role_name(self) -> Optional[str]:
        return self.role.name if self.role else None

    @classmethod
    def from_user(cls, user) -> 'Principal':
        role = RoleRef(id=user.role.id, name=user.role.name) if user.role_id else None
        return cls(
            id=user.id,
            name=user.get_full_name(),
            email=user.email,
            department=user.department,
            role=role,
        )


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __bool__(self):
        return self.allowed

    @classmethod
    def allow(cls) -> 'Decision':
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, code: str = FORBIDDEN, **details) -> 'Decision':
        return cls(allowed=False, reason=reason, code=code, details=details)


def _frozen_names(names) -> FrozenSet[str]:
    if isinstance(names, str):
        return frozenset([names])
    return frozenset(names)


@dataclass(frozen=True)
class RoleIn:
    names: FrozenSet[str]

    def __post_init__(self):
        object.__setattr__(self, 'names', _frozen_names(self.names))

    def describe(self):
        return f"role in {sorted(self.names)}"


@dataclass(frozen=True)
class PermissionCheck:
    ids: FrozenSet[str]
    mode: PermissionMode = PermissionMode.ALL

    def __post_init__(self):
        object.__setattr__(self, 'ids', _frozen_names(self.ids))
        object.__setattr__(self, 'mode', PermissionMode(self.mode))

    def describe(self):
        return f"{self.mode.value.lower()} of permissions {sorted(self.ids)}"


@dataclass(frozen=True)
class OwnerOrElevated:
    target_param: str = 'id'

    def describe(self):
        return f"owner of '{self.target_param}' or elevated role"


@dataclass(frozen=True)
class DepartmentIn:
    names: FrozenSet[str]

    def __post_init__(self):
        object.__setattr__(self, 'names', _frozen_names(self.names))

    def describe(self):
        return f"department in {sorted(self.names)}"


Requirement = Union[RoleIn, PermissionCheck, OwnerOrElevated, DepartmentIn]


class PermissionResolutionError(Exception):
    """The principal's permission set cannot be determined (no role)."""


def resolve_target_id(param: str, path_params: Optional[Mapping] = None,
                      body: Any = None, query: Optional[Mapping] = None):
    """
    Find the target owner id for an ownership check.

    Looks at the path parameters, then the request body, then the query
    string; the first present, non-empty value wins.
    """
    sources = [path_params, body if isinstance(body, Mapping) else None, query]
    for source in sources:
        if not source:
            continue
        value = source.get(param)
        if value not in (None, ''):
            return value
    return None


def load_permission_ids(user_id) -> FrozenSet[str]:
    """
    Load a user's permission ids from the identity store.

    Raises PermissionResolutionError when the user is missing, inactive or
    has no role. Database errors propagate to the caller.
    """
    from apps.rbac.models import User

    user = User.objects.select_related('role').filter(pk=user_id, is_active=True).first()
    if user is None or user.role_id is None:
        raise PermissionResolutionError('User role not found')
    return frozenset(user.role.permissions.values_list('id', flat=True))


class AccessDecisionEngine:
    """
    Evaluates requirements against a principal.

    One engine is built at startup around the process-wide permission cache.
    ``loader`` maps a user id to a permission-id set on a cache miss.
    """

    def __init__(self, cache: PermissionCache,
                 loader: Callable[[Any], Iterable[str]] = load_permission_ids,
                 admin_role: str = 'ADMIN',
                 elevated_roles: Iterable[str] = ('ADMIN', 'HR', 'MANAGER')):
        self.cache = cache
        self.loader = loader
        self.admin_role = admin_role
        self.elevated_roles = frozenset(elevated_roles)
        self._checks = {
            RoleIn: self._check_role,
            PermissionCheck: self._check_permissions,
            OwnerOrElevated: self._check_ownership,
            DepartmentIn: self._check_department,
        }

    def resolve_permissions(self, principal: Principal) -> FrozenSet[str]:
        """
        Return the principal's permission ids, from the cache when fresh.

        Raises PermissionResolutionError or DatabaseError; callers inside the
        engine turn both into DENY decisions.
        """
        if principal.role is None:
            raise PermissionResolutionError('User role not found')

        cached = self.cache.get(principal.id)
        if cached is not None:
            return cached

        permission_ids = self.loader(principal.id)
        return self.cache.put(principal.id, permission_ids)

    def authorize(self, principal: Optional[Principal], requirement: Requirement,
                  target_id=None) -> Decision:
        """
        Decide a single requirement.

        ``target_id`` is only consulted by OwnerOrElevated; resolve it with
        ``resolve_target_id``.
        """
        if principal is None:
            return Decision.deny('Authentication required', code=AUTHENTICATION_REQUIRED)

        try:
            check = self._checks[type(requirement)]
        except KeyError:
            raise TypeError(f"Unsupported requirement: {requirement!r}")

        return check(principal, requirement, target_id)

    def authorize_all(self, principal: Optional[Principal], requirements: Sequence[Requirement],
                      target_lookup: Optional[Callable[[str], Any]] = None) -> Decision:
        """
        Decide several requirements; all must pass.

        Role requirements are evaluated first because they need no store
        access. The first denial is returned. ``target_lookup`` maps an
        OwnerOrElevated parameter name to the target id of the request.
        """
        ordered = sorted(requirements, key=lambda requirement: not isinstance(requirement, RoleIn))
        for requirement in ordered:
            target_id = None
            if isinstance(requirement, OwnerOrElevated) and target_lookup is not None:
                target_id = target_lookup(requirement.target_param)
            decision = self.authorize(principal, requirement, target_id=target_id)
            if not decision.allowed:
                return decision
        if principal is None:
            return Decision.deny('Authentication required', code=AUTHENTICATION_REQUIRED)
        return Decision.allow()

    def _check_role(self, principal, requirement: RoleIn, target_id):
        if principal.role_name in requirement.names:
            return Decision.allow()
        return Decision.deny(
            'Access denied. Insufficient role permissions.',
            required=sorted(requirement.names),
            current=principal.role_name,
        )

    def _check_permissions(self, principal, requirement: PermissionCheck, target_id):
        try:
            granted = self.resolve_permissions(principal)
        except PermissionResolutionError as e:
            return Decision.deny(str(e))
        except DatabaseError:
            logger.error(
                f"Permission resolution failed for user {principal.id}",
                extra={'user_id': principal.id},
                exc_info=True
            )
            return Decision.deny(
                'Permission store unavailable, please retry.',
                code=STORE_UNAVAILABLE,
            )

        if requirement.mode is PermissionMode.ALL:
            allowed = requirement.ids <= granted
        else:
            allowed = bool(requirement.ids & granted)

        if allowed:
            return Decision.allow()
        return Decision.deny(
            'Access denied. Insufficient permissions.',
            required=sorted(requirement.ids),
            mode=requirement.mode.value,
            missing=sorted(requirement.ids - granted),
        )

    def _check_ownership(self, principal, requirement: OwnerOrElevated, target_id):
        role_name = principal.role_name
        if role_name == self.admin_role:
            return Decision.allow()

        is_own = target_id is not None and str(target_id) == str(principal.id)
        if is_own:
            return Decision.allow()

        if role_name in self.elevated_roles:
            return Decision.allow()

        return Decision.deny(
            'Access denied. You can only access your own data or you lack sufficient privileges.'
        )

    def _check_department(self, principal, requirement: DepartmentIn, target_id):
        if principal.role_name == self.admin_role:
            return Decision.allow()
        if principal.department in requirement.names:
            return Decision.allow()
        return Decision.deny(
            'Access denied. Department access required.',
            required=sorted(requirement.names),
            current=principal.department,
        )


def get_access_engine() -> AccessDecisionEngine:
    """Return the process-wide engine built by the rbac app config."""
    from django.apps import apps
    return apps.get_app_config('rbac').access_engine
