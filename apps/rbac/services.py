"""
RBAC services for role administration, permission resolution and login.

Services:
- RBACService: permission resolution for a user through the permission cache
- RoleService: role CRUD and role assignment, audited and cache-invalidating
- AuthService: JWT issuing/validation and email/password login
"""
import logging
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional

import jwt
from django.conf import settings
from django.contrib.auth import authenticate
from django.db import IntegrityError, transaction
from django.db.models import Count, ProtectedError

from apps.rbac.access import (
    Principal, PermissionResolutionError, get_access_engine,
)
from apps.rbac.audit import (
    AuditDraft, AuditRecorder, RESOURCE_ROLE, RESOURCE_USER,
    role_created_details, role_deleted_details, role_snapshot,
    role_update_changes, role_updated_details,
)
from apps.rbac.cache import PermissionCache, get_permission_cache
from apps.rbac.exceptions import (
    RoleInUse, RoleNameConflict, RoleNotFound, RoleValidationError, UserNotFound,
)
from apps.rbac.models import AuditLog, Permission, Role, User

logger = logging.getLogger(__name__)


class RBACService:
    """
    Service for resolving a user's effective permissions.
    """

    @classmethod
    def resolve_permissions(cls, user) -> FrozenSet[str]:
        """
        Resolve the permission ids granted to ``user`` by their role.

        Uses the process-wide permission cache (5 minute TTL by default);
        a user without a role has no permissions.

        Args:
            user: User instance

        Returns:
            frozenset of permission ids
        """
        try:
            return get_access_engine().resolve_permissions(Principal.from_user(user))
        except PermissionResolutionError:
            return frozenset()

    @classmethod
    def has_all_permissions(cls, user, permission_ids: Iterable[str]) -> bool:
        return set(permission_ids).issubset(cls.resolve_permissions(user))

    @classmethod
    def has_any_permission(cls, user, permission_ids: Iterable[str]) -> bool:
        return bool(set(permission_ids) & cls.resolve_permissions(user))


class RoleService:
    """
    Role administration: create, update, delete and assign roles.

    Every mutation runs in a single transaction, writes an audit entry and
    invalidates the permission cache of affected users before returning.
    """

    def __init__(self, cache: Optional[PermissionCache] = None, recorder: Optional[AuditRecorder] = None):
        self.cache = cache if cache is not None else get_permission_cache()
        self.recorder = recorder if recorder is not None else AuditRecorder()

    @staticmethod
    def _clean_name(name) -> str:
        name = (name or '').strip()
        if not name:
            raise RoleValidationError('Role name is required')
        return name

    @staticmethod
    def _validate_permission_ids(permission_ids) -> list:
        requested = set(permission_ids)
        unknown = requested - Permission.objects.existing_ids(requested)
        if unknown:
            raise RoleValidationError(
                'One or more permission IDs are invalid',
                details={'invalidPermissionIds': sorted(unknown)},
            )
        return sorted(requested)

    @staticmethod
    def _validate_user_ids(user_ids) -> list:
        requested = set(user_ids)
        found = set(User.objects.filter(id__in=requested).values_list('id', flat=True))
        unknown = requested - found
        if unknown:
            raise RoleValidationError(
                'One or more user IDs are invalid',
                details={'invalidUserIds': sorted(unknown)},
            )
        return sorted(requested)

    @staticmethod
    def _lock_role(role_id) -> Role:
        role = Role.objects.select_for_update().filter(pk=role_id).first()
        if role is None:
            raise RoleNotFound('Role not found', details={'roleId': role_id})
        return role

    def create_role(self, actor, name, description='', color='', permission_ids=(), user_ids=(),
                    request=None) -> Role:
        """
        Create a role with its permissions and initial users.

        Users listed in ``user_ids`` are moved to the new role.

        Raises:
            RoleValidationError: blank name or unknown permission/user ids
            RoleNameConflict: name already used
        """
        name = self._clean_name(name)

        try:
            with transaction.atomic():
                if Role.objects.name_taken(name):
                    raise RoleNameConflict(name)

                permission_ids = self._validate_permission_ids(permission_ids)
                user_ids = self._validate_user_ids(user_ids)

                role = Role.objects.create(
                    name=name,
                    description=description or '',
                    color=color or '',
                )
                role.permissions.set(permission_ids)
                if user_ids:
                    User.objects.filter(id__in=user_ids).update(role=role)

                snapshot = role_snapshot(role)
                self.recorder.record(AuditDraft(
                    action='CREATE_ROLE',
                    category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
                    resource=RESOURCE_ROLE,
                    resource_id=role.id,
                    details=role_created_details(snapshot),
                    description=f'Created role "{name}" with {len(permission_ids)} permissions',
                    user=actor,
                ), request=request)
        except IntegrityError:
            raise RoleNameConflict(name)

        self.cache.invalidate_many(user_ids)

        logger.info(
            f"Role created: {name}",
            extra={'role_id': role.id, 'permission_count': len(permission_ids)}
        )
        return role

    def update_role(self, role_id, actor, name=None, description=None, color=None,
                    permission_ids=None, user_ids=None, request=None) -> Role:
        """
        Update the provided fields of a role.

        ``None`` means "leave unchanged". ``user_ids`` replaces the set of
        holders: listed users are moved to this role, others lose it. An
        update that changes nothing writes no audit entry.

        Raises:
            RoleNotFound, RoleValidationError, RoleNameConflict
        """
        try:
            with transaction.atomic():
                role = self._lock_role(role_id)
                before = role_snapshot(role)

                if name is not None:
                    name = self._clean_name(name)
                    if name != role.name and Role.objects.name_taken(name, exclude_id=role.id):
                        raise RoleNameConflict(name)
                    role.name = name
                if description is not None:
                    role.description = description
                if color is not None:
                    role.color = color
                role.save()

                if permission_ids is not None:
                    role.permissions.set(self._validate_permission_ids(permission_ids))

                if user_ids is not None:
                    user_ids = self._validate_user_ids(user_ids)
                    role.users.exclude(id__in=user_ids).update(role=None)
                    User.objects.filter(id__in=user_ids).update(role=role)

                after = role_snapshot(role)
                changes = role_update_changes(before, after)

                if changes:
                    self.recorder.record(AuditDraft(
                        action='UPDATE_ROLE',
                        category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
                        resource=RESOURCE_ROLE,
                        resource_id=role.id,
                        details=role_updated_details(before, after, changes),
                        description=f'Updated role "{before["name"]}": {", ".join(sorted(changes))}',
                        user=actor,
                    ), request=request)
        except IntegrityError:
            raise RoleNameConflict(name)

        if 'permissions' in changes or 'users' in changes:
            self.cache.invalidate_many(set(before['users']) | set(after['users']))

        return role

    def delete_role(self, role_id, actor, request=None) -> Dict[str, Any]:
        """
        Delete a role that no user holds.

        Returns the snapshot of the deleted role.

        Raises:
            RoleNotFound
            RoleInUse: users are still assigned (message carries the count)
        """
        try:
            with transaction.atomic():
                role = self._lock_role(role_id)

                user_count = role.users.count()
                if user_count:
                    raise RoleInUse(user_count)

                snapshot = role_snapshot(role)
                deleted_id = role.id
                role.delete()

                self.recorder.record(AuditDraft(
                    action='DELETE_ROLE',
                    category=AuditLog.CATEGORY_ROLE_MANAGEMENT,
                    resource=RESOURCE_ROLE,
                    resource_id=deleted_id,
                    details=role_deleted_details(snapshot),
                    description=f'Deleted role "{snapshot["name"]}"',
                    severity=AuditLog.SEVERITY_WARNING,
                    user=actor,
                ), request=request)
        except ProtectedError as e:
            # A user was assigned between the count and the delete
            raise RoleInUse(len(e.protected_objects))

        self.cache.invalidate_many(snapshot['users'])
        return snapshot

    def assign_role(self, user_id, role_id, actor, request=None) -> User:
        """
        Assign ``role_id`` to a user (None removes their role).

        Raises:
            UserNotFound, RoleNotFound
        """
        with transaction.atomic():
            user = User.objects.select_for_update().filter(pk=user_id).first()
            if user is None:
                raise UserNotFound('User not found', details={'userId': user_id})

            role = None
            if role_id is not None:
                role = Role.objects.filter(pk=role_id).first()
                if role is None:
                    raise RoleNotFound('Role not found', details={'roleId': role_id})

            previous = user.role_name
            if user.role_id != (role.id if role else None):
                user.role = role
                user.save(update_fields=['role'])

                self.recorder.record(AuditDraft(
                    action='ASSIGN_ROLE',
                    category=AuditLog.CATEGORY_USER_MANAGEMENT,
                    resource=RESOURCE_USER,
                    resource_id=user.id,
                    details={
                        'userName': user.get_full_name(),
                        'changes': {'role': {'from': previous, 'to': role.name if role else None}},
                    },
                    description=f'Changed role of user {user.id} from {previous} to {role.name if role else None}',
                    user=actor,
                ), request=request)

        self.cache.invalidate(user.id)
        return user

    @staticmethod
    def role_stats() -> Dict[str, Any]:
        """Overview counts for the roles dashboard."""
        distribution = Role.objects.annotate(user_count=Count('users')).order_by('name')
        return {
            'totalRoles': Role.objects.count(),
            'totalPermissions': Permission.objects.count(),
            'totalUsers': User.objects.count(),
            'roleDistribution': [
                {'name': role.name, 'color': role.color, 'userCount': role.user_count}
                for role in distribution
            ],
        }

    @staticmethod
    def role_history(role_id):
        """Role-management audit entries for a role, newest first."""
        return AuditLog.objects.role_management().filter(
            resource=RESOURCE_ROLE, resource_id=str(role_id)
        ).select_related('user')


class AuthService:
    """
    Service for authentication operations: JWT issuing, validation and login.
    """

    @classmethod
    def generate_jwt(cls, user: User) -> str:
        """
        Generate JWT token for a user.

        Args:
            user: User instance

        Returns:
            JWT token string
        """
        now = datetime.now(dt_timezone.utc)
        payload = {
            'user_id': str(user.id),
            'email': user.email,
            'exp': now + timedelta(hours=getattr(settings, 'JWT_EXPIRATION_HOURS', 24)),
            'iat': now,
        }

        return jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=getattr(settings, 'JWT_ALGORITHM', 'HS256')
        )

    @classmethod
    def validate_jwt(cls, token: str) -> Optional[Dict[str, Any]]:
        """
        Validate JWT token and return payload.

        Returns:
            Decoded payload dict or None if invalid or expired
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[getattr(settings, 'JWT_ALGORITHM', 'HS256')]
            )
        except jwt.ExpiredSignatureError:
            logger.info("Expired JWT presented")
            return None
        except jwt.InvalidTokenError:
            return None

    @classmethod
    def get_user_from_jwt(cls, token: str) -> Optional[User]:
        """
        Extract and return the active user from a JWT token.

        Returns:
            User instance or None if the token is invalid or the user is gone
        """
        payload = cls.validate_jwt(token)
        if not payload:
            return None

        user_id = payload.get('user_id')
        if not user_id:
            return None

        return User.objects.select_related('role').filter(id=user_id, is_active=True).first()

    @classmethod
    def login(cls, email: str, password: str, request=None) -> Optional[Dict[str, Any]]:
        """
        Authenticate user and return JWT token.

        Returns:
            Dict with user and token, or None if authentication failed
        """
        user = authenticate(request, username=email, password=password)
        if user is None:
            return None

        token = cls.generate_jwt(user)

        AuditRecorder().record(AuditDraft(
            action='LOGIN',
            category=AuditLog.CATEGORY_AUTHENTICATION,
            resource=RESOURCE_USER,
            resource_id=user.id,
            description=f'User {user.id} logged in',
            user=user,
        ), request=request)

        return {
            'user': user,
            'token': token,
        }
