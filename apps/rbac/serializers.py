"""
RBAC serializers for REST API endpoints.

Provides serialization for:
- Authentication (login, current user)
- Users and role assignment
- Roles and permissions
- Audit logs and role history
"""
from rest_framework import serializers

from apps.rbac.models import AuditLog, Permission, Role, User
from apps.rbac.revert import can_revert


# ===== AUTHENTICATION SERIALIZERS =====

class LoginSerializer(serializers.Serializer):
    """Serializer for user login."""

    email = serializers.EmailField(required=True)
    password = serializers.CharField(
        required=True,
        write_only=True,
        style={'input_type': 'password'}
    )

    def validate_email(self, value):
        """Normalize email to lowercase."""
        return value.lower()


# ===== USER SERIALIZERS =====

class RoleSummarySerializer(serializers.ModelSerializer):
    """Compact role representation embedded in users."""

    class Meta:
        model = Role
        fields = ['id', 'name', 'color']
        read_only_fields = fields


class UserSerializer(serializers.ModelSerializer):
    """Serializer for User model."""

    role = RoleSummarySerializer(read_only=True)
    createdAt = serializers.DateTimeField(source='created_at', read_only=True)
    isActive = serializers.BooleanField(source='is_active', read_only=True)

    class Meta:
        model = User
        fields = ['id', 'email', 'name', 'department', 'role', 'isActive', 'createdAt']
        read_only_fields = fields


class AssignRoleSerializer(serializers.Serializer):
    """Serializer for assigning a role to a user. Null removes the role."""

    roleId = serializers.IntegerField(required=True, allow_null=True)


# ===== ROLE & PERMISSION SERIALIZERS =====

class PermissionSerializer(serializers.ModelSerializer):
    """Serializer for Permission model."""

    class Meta:
        model = Permission
        fields = ['id', 'name', 'category', 'description']
        read_only_fields = fields


class PermissionWithUsageSerializer(PermissionSerializer):
    """Permission with the number of roles granting it."""

    roleCount = serializers.IntegerField(source='role_count', read_only=True)

    class Meta(PermissionSerializer.Meta):
        fields = PermissionSerializer.Meta.fields + ['roleCount']
        read_only_fields = fields


class RoleSerializer(serializers.ModelSerializer):
    """Serializer for Role model with its permission ids and counts."""

    permissions = serializers.SerializerMethodField()
    permissionCount = serializers.SerializerMethodField()
    userCount = serializers.SerializerMethodField()
    createdAt = serializers.DateTimeField(source='created_at', read_only=True)
    updatedAt = serializers.DateTimeField(source='updated_at', read_only=True)

    class Meta:
        model = Role
        fields = [
            'id', 'name', 'description', 'color', 'permissions',
            'permissionCount', 'userCount', 'createdAt', 'updatedAt'
        ]
        read_only_fields = fields

    def get_permissions(self, obj):
        return obj.permission_ids()

    def get_permissionCount(self, obj):
        # Annotated by RoleManager.with_counts when listing
        count = getattr(obj, 'permission_count', None)
        return count if count is not None else obj.permissions.count()

    def get_userCount(self, obj):
        count = getattr(obj, 'user_count', None)
        return count if count is not None else obj.users.count()


class RoleDetailSerializer(RoleSerializer):
    """Detailed serializer for Role with full permissions and users."""

    permissions = PermissionSerializer(many=True, read_only=True)
    users = serializers.SerializerMethodField()

    class Meta(RoleSerializer.Meta):
        fields = RoleSerializer.Meta.fields + ['users']
        read_only_fields = fields

    def get_users(self, obj):
        return [
            {'id': user.id, 'name': user.name, 'email': user.email}
            for user in obj.users.order_by('id')
        ]


class RoleWriteSerializer(serializers.Serializer):
    """
    Serializer for creating and updating roles.

    On update (``partial=True``) omitted fields are left unchanged.
    """

    name = serializers.CharField(required=True, max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, default='')
    color = serializers.CharField(required=False, allow_blank=True, max_length=20, default='')
    permissions = serializers.ListField(
        child=serializers.CharField(),
        required=False,
        default=list,
        help_text="Permission ids granted by the role"
    )
    userIds = serializers.ListField(
        child=serializers.IntegerField(),
        required=False,
        default=list,
        help_text="Users to assign to the role"
    )

    def validate_name(self, value):
        """Validate name is not blank."""
        if not value.strip():
            raise serializers.ValidationError("Role name cannot be empty.")
        return value.strip()

    def to_service_kwargs(self):
        """Map validated data to RoleService keyword arguments."""
        # Partial validation applies no defaults, so omitted keys stay absent
        data = self.validated_data
        mapping = {
            'name': 'name',
            'description': 'description',
            'color': 'color',
            'permissions': 'permission_ids',
            'userIds': 'user_ids',
        }
        return {mapping[key]: value for key, value in data.items() if key in mapping}


# ===== AUDIT LOG SERIALIZERS =====

class AuditLogSerializer(serializers.ModelSerializer):
    """Serializer for AuditLog model."""

    user = serializers.SerializerMethodField()
    resourceId = serializers.CharField(source='resource_id', read_only=True)
    ipAddress = serializers.CharField(source='ip_address', read_only=True)
    userAgent = serializers.CharField(source='user_agent', read_only=True)
    requestId = serializers.CharField(source='request_id', read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            'id', 'user', 'action', 'category', 'resource', 'resourceId',
            'severity', 'status', 'timestamp', 'details', 'description',
            'ipAddress', 'userAgent', 'requestId'
        ]
        read_only_fields = fields

    def get_user(self, obj):
        if obj.user is None:
            return None
        return {'id': obj.user.id, 'name': obj.user.name, 'email': obj.user.email}


class RoleHistorySerializer(AuditLogSerializer):
    """Audit entry for the role history view, flagged with revertibility."""

    canRevert = serializers.SerializerMethodField()

    class Meta(AuditLogSerializer.Meta):
        fields = AuditLogSerializer.Meta.fields + ['canRevert']
        read_only_fields = fields

    def get_canRevert(self, obj):
        return can_revert(obj)


class AuditLogCreateSerializer(serializers.Serializer):
    """Serializer for recording an audit entry through the API."""

    action = serializers.CharField(required=True, max_length=100)
    category = serializers.ChoiceField(choices=AuditLog.CATEGORY_CHOICES)
    resource = serializers.CharField(required=True, max_length=50)
    resourceId = serializers.CharField(required=False, allow_null=True, allow_blank=True, max_length=100)
    severity = serializers.ChoiceField(choices=AuditLog.SEVERITY_CHOICES, default=AuditLog.SEVERITY_INFO)
    status = serializers.ChoiceField(choices=AuditLog.STATUS_CHOICES, default=AuditLog.STATUS_SUCCESS)
    details = serializers.DictField(required=False, default=dict)
    description = serializers.CharField(required=False, allow_blank=True, default='')
