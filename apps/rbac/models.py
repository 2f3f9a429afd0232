"""
RBAC models: users, roles, permissions and the audit trail.

Each user holds at most one role; a role bundles permissions. Audit log
entries are append-only and reference their resource by a loose string id
so history survives deletion of the resource.
"""
import logging
from django.contrib.auth.base_user import AbstractBaseUser, BaseUserManager
from django.db import models
from django.utils import timezone

from apps.core.models import TimestampedModel

logger = logging.getLogger(__name__)


class UserManager(BaseUserManager):
    """
    Manager for User queries.

    Compatible with Django's authentication system.
    """

    def active(self):
        """Return only active users."""
        return self.filter(is_active=True)

    def by_email(self, email):
        """Find user by email (case-insensitive)."""
        return self.filter(email__iexact=(email or '').strip()).first()

    def with_role(self, role_name):
        """Return users holding the named role."""
        return self.filter(role__name=role_name)

    def create_user(self, email, password=None, **extra_fields):
        """Create a new user with hashed password."""
        if not email:
            raise ValueError('Email address is required')

        email = self.normalize_email(email)
        extra_fields.setdefault('is_active', True)

        user = self.model(email=email, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user


class User(AbstractBaseUser):
    """
    Employee identity and login account.

    This is the AUTH_USER_MODEL for the application. Authorization comes
    from the single role assigned through ``role``.
    """

    email = models.EmailField(
        unique=True,
        help_text="User email address, used to log in"
    )
    name = models.CharField(
        max_length=200,
        blank=True,
        help_text="Display name"
    )
    department = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        db_index=True,
        help_text="Department the user belongs to (e.g., 'Engineering')"
    )
    role = models.ForeignKey(
        'Role',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='users',
        help_text="Role assigned to the user; a role cannot be deleted while users hold it"
    )

    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Whether user account is active"
    )
    created_at = models.DateTimeField(
        default=timezone.now,
        help_text="Timestamp when the user was created"
    )

    USERNAME_FIELD = 'email'
    EMAIL_FIELD = 'email'
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        db_table = 'users'
        ordering = ['id']
        indexes = [
            models.Index(fields=['role', 'is_active']),
        ]

    def __str__(self):
        return self.email

    def get_full_name(self):
        """Return display name or email if name not set."""
        return self.name or self.email

    @property
    def role_name(self):
        return self.role.name if self.role_id else None


class PermissionManager(models.Manager):
    """Manager for Permission queries."""

    def existing_ids(self, ids):
        """Return the subset of ``ids`` that exist in the catalog."""
        return set(self.filter(id__in=list(ids)).values_list('id', flat=True))

    def by_category(self, category):
        return self.filter(category=category)


class Permission(models.Model):
    """
    Atomic capability identified by a stable slug (e.g. 'view_audit_logs').

    The catalog is seeded by the ``seed_rbac`` command and only grows;
    roles link to permissions through ``Role.permissions``.
    """

    id = models.CharField(
        primary_key=True,
        max_length=100,
        help_text="Stable permission slug (e.g., 'manage_users')"
    )
    name = models.CharField(
        max_length=100,
        help_text="Human-readable permission name"
    )
    category = models.CharField(
        max_length=50,
        db_index=True,
        help_text="Permission category for grouping (e.g., 'Users', 'Audit')"
    )
    description = models.TextField(
        blank=True,
        help_text="Description of what this permission allows"
    )

    objects = PermissionManager()

    class Meta:
        db_table = 'permissions'
        ordering = ['category', 'id']

    def __str__(self):
        return self.id


class RoleManager(models.Manager):
    """Manager for Role queries."""

    def by_name(self, name):
        """Get role by name."""
        return self.filter(name=name).first()

    def name_taken(self, name, exclude_id=None):
        """Check whether another role already uses ``name``."""
        qs = self.filter(name=name)
        if exclude_id is not None:
            qs = qs.exclude(id=exclude_id)
        return qs.exists()

    def with_counts(self):
        """Annotate roles with permission and user counts."""
        return self.annotate(
            permission_count=models.Count('permissions', distinct=True),
            user_count=models.Count('users', distinct=True),
        )


class Role(TimestampedModel):
    """
    Named collection of permissions.

    Role names are unique system-wide. Deletion is refused while any user
    references the role (enforced by ``User.role`` PROTECT and checked
    up front by the role service).
    """

    name = models.CharField(
        max_length=100,
        unique=True,
        help_text="Unique role name (e.g., 'ADMIN', 'HR')"
    )
    description = models.TextField(
        blank=True,
        help_text="Description of the role's purpose"
    )
    color = models.CharField(
        max_length=20,
        blank=True,
        help_text="Display color for the role badge"
    )
    permissions = models.ManyToManyField(
        Permission,
        related_name='roles',
        blank=True,
        help_text="Permissions granted by this role"
    )

    objects = RoleManager()

    class Meta:
        db_table = 'roles'
        ordering = ['name']

    def __str__(self):
        return self.name

    def permission_ids(self):
        """Return the sorted permission ids of this role."""
        return sorted(self.permissions.values_list('id', flat=True))

    def user_ids(self):
        """Return the sorted ids of users holding this role."""
        return sorted(self.users.values_list('id', flat=True))


class AuditLogManager(models.Manager):
    """Manager for AuditLog queries."""

    def for_resource(self, resource, resource_id):
        """Get audit logs for a specific resource."""
        return self.filter(resource=resource, resource_id=str(resource_id))

    def role_management(self):
        return self.filter(category=AuditLog.CATEGORY_ROLE_MANAGEMENT)

    def for_user(self, user):
        """Get audit logs written by a user."""
        return self.filter(user=user)


class AuditLog(models.Model):
    """
    Immutable record of one mutation.

    Records who did what, to which resource, and the structured details
    needed to reverse it. Entries are never updated or deleted; a revert
    writes a new entry that points back at the original through
    ``details['originalAuditLogId']``.
    """

    CATEGORY_ROLE_MANAGEMENT = 'ROLE_MANAGEMENT'
    CATEGORY_USER_MANAGEMENT = 'USER_MANAGEMENT'
    CATEGORY_AUTHENTICATION = 'AUTHENTICATION'
    CATEGORY_SYSTEM = 'SYSTEM'

    CATEGORY_CHOICES = [
        (CATEGORY_ROLE_MANAGEMENT, 'Role management'),
        (CATEGORY_USER_MANAGEMENT, 'User management'),
        (CATEGORY_AUTHENTICATION, 'Authentication'),
        (CATEGORY_SYSTEM, 'System'),
    ]

    SEVERITY_INFO = 'INFO'
    SEVERITY_WARNING = 'WARNING'
    SEVERITY_ERROR = 'ERROR'
    SEVERITY_CRITICAL = 'CRITICAL'

    SEVERITY_CHOICES = [
        (SEVERITY_INFO, 'Info'),
        (SEVERITY_WARNING, 'Warning'),
        (SEVERITY_ERROR, 'Error'),
        (SEVERITY_CRITICAL, 'Critical'),
    ]

    STATUS_SUCCESS = 'SUCCESS'
    STATUS_FAILED = 'FAILED'

    STATUS_CHOICES = [
        (STATUS_SUCCESS, 'Success'),
        (STATUS_FAILED, 'Failed'),
    ]

    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='audit_logs',
        help_text="User who performed the action (null for system actions)"
    )

    # Action Details
    action = models.CharField(
        max_length=100,
        db_index=True,
        help_text="Action performed (e.g., 'CREATE_ROLE', 'REVERT_UPDATE_ROLE')"
    )
    category = models.CharField(
        max_length=50,
        choices=CATEGORY_CHOICES,
        db_index=True,
        help_text="Action category"
    )
    resource = models.CharField(
        max_length=50,
        help_text="Type of resource affected (e.g., 'ROLE')"
    )
    resource_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        db_index=True,
        help_text="Identifier of the affected resource; not a foreign key"
    )
    severity = models.CharField(
        max_length=20,
        choices=SEVERITY_CHOICES,
        default=SEVERITY_INFO,
        db_index=True,
    )
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default=STATUS_SUCCESS,
        db_index=True,
    )
    timestamp = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text="When the mutation happened"
    )

    details = models.JSONField(
        default=dict,
        blank=True,
        help_text="Snapshot or diff needed to understand and reverse the action"
    )
    description = models.TextField(
        blank=True,
        help_text="Human-readable description"
    )

    # Request Context
    ip_address = models.GenericIPAddressField(
        null=True,
        blank=True,
        help_text="IP address of the request"
    )
    user_agent = models.TextField(
        blank=True,
        help_text="User agent string"
    )
    request_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="Request ID for tracing"
    )

    objects = AuditLogManager()

    class Meta:
        db_table = 'audit_logs'
        ordering = ['-timestamp', '-id']
        indexes = [
            models.Index(fields=['category', 'timestamp']),
            models.Index(fields=['resource', 'resource_id']),
            models.Index(fields=['user', 'timestamp']),
        ]

    def __str__(self):
        user_str = self.user.email if self.user else 'System'
        return f"{user_str} - {self.action} - {self.resource}:{self.resource_id}"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise ValueError("Audit log entries are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Audit log entries cannot be deleted")
