"""
Management command to seed the permission catalog and default roles.

Creates the canonical Permission records and the ADMIN, HR, MANAGER and
EMPLOYEE roles. Existing records are left untouched, so the command is
idempotent and safe to re-run. Optionally creates an initial admin user.
"""
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from apps.rbac.models import Permission, Role, User


class Command(BaseCommand):
    help = 'Seed the permission catalog and default roles (idempotent)'

    PERMISSIONS = [
        {
            'id': 'manage_users',
            'name': 'User Management',
            'category': 'Users',
            'description': 'Create, edit, delete users',
        },
        {
            'id': 'manage_roles',
            'name': 'Role Management',
            'category': 'System',
            'description': 'Manage roles and permissions',
        },
        {
            'id': 'manage_jobs',
            'name': 'Job Management',
            'category': 'Jobs',
            'description': 'Create, edit, archive jobs',
        },
        {
            'id': 'view_reports',
            'name': 'View Reports',
            'category': 'Analytics',
            'description': 'View all reports',
        },
        {
            'id': 'manage_policies',
            'name': 'Policy Management',
            'category': 'Compliance',
            'description': 'Manage company policies',
        },
        {
            'id': 'view_audit_logs',
            'name': 'View Audit Logs',
            'category': 'Security',
            'description': 'View system audit logs',
        },
        {
            'id': 'manage_audit_logs',
            'name': 'Manage Audit Logs',
            'category': 'Security',
            'description': 'Create and manage audit logs',
        },
        {
            'id': 'view_profile',
            'name': 'View Personal Profile',
            'category': 'Personal',
            'description': 'Access personal profile',
        },
        {
            'id': 'manage_team',
            'name': 'Manage Team',
            'category': 'Teams',
            'description': "Manage one's own team",
        },
    ]

    # None grants every permission in the catalog
    ROLES = [
        {
            'name': 'ADMIN',
            'description': 'Full system access with all permissions',
            'color': 'red',
            'permissions': None,
        },
        {
            'name': 'HR',
            'description': 'Human resources management and employee operations',
            'color': 'blue',
            'permissions': [
                'manage_users', 'manage_jobs', 'view_reports', 'manage_policies', 'view_profile',
            ],
        },
        {
            'name': 'MANAGER',
            'description': 'Team and project management within department',
            'color': 'green',
            'permissions': ['view_reports', 'view_profile', 'manage_team'],
        },
        {
            'name': 'EMPLOYEE',
            'description': 'Standard employee access to personal features',
            'color': 'gray',
            'permissions': ['view_profile'],
        },
    ]

    def add_arguments(self, parser):
        parser.add_argument(
            '--admin-email',
            type=str,
            help='Create an ADMIN user with this email if it does not exist'
        )
        parser.add_argument(
            '--admin-password',
            type=str,
            help='Password for the admin user (required with --admin-email)'
        )
        parser.add_argument(
            '--admin-name',
            type=str,
            default='Admin User',
            help='Display name for the admin user'
        )

    def handle(self, *args, **options):
        admin_email = options.get('admin_email')
        admin_password = options.get('admin_password')
        if admin_email and not admin_password:
            raise CommandError('--admin-password is required with --admin-email')

        with transaction.atomic():
            self._seed_permissions()
            roles = self._seed_roles()
            if admin_email:
                self._seed_admin(admin_email, admin_password, options['admin_name'], roles['ADMIN'])

        self.stdout.write(self.style.SUCCESS('\n✓ RBAC seeding complete'))

    def _seed_permissions(self):
        self.stdout.write('Seeding permissions...')
        created_count = 0

        for perm_data in self.PERMISSIONS:
            permission, created = Permission.objects.get_or_create(
                id=perm_data['id'],
                defaults={
                    'name': perm_data['name'],
                    'category': perm_data['category'],
                    'description': perm_data['description'],
                }
            )
            if created:
                created_count += 1
                self.stdout.write(self.style.SUCCESS(f'✓ Created: {permission.id}'))
            else:
                self.stdout.write(self.style.HTTP_INFO(f'  Exists: {permission.id}'))

        self.stdout.write(
            f'{created_count} created, {len(self.PERMISSIONS) - created_count} unchanged'
        )

    def _seed_roles(self):
        self.stdout.write('Seeding roles...')
        all_permission_ids = [perm['id'] for perm in self.PERMISSIONS]
        roles = {}

        for role_data in self.ROLES:
            role, created = Role.objects.get_or_create(
                name=role_data['name'],
                defaults={
                    'description': role_data['description'],
                    'color': role_data['color'],
                }
            )
            if created:
                permission_ids = role_data['permissions'] or all_permission_ids
                role.permissions.set(permission_ids)
                self.stdout.write(
                    self.style.SUCCESS(f'✓ Created: {role.name} ({len(permission_ids)} permissions)')
                )
            else:
                self.stdout.write(self.style.HTTP_INFO(f'  Exists: {role.name}'))
            roles[role.name] = role

        return roles

    def _seed_admin(self, email, password, name, role):
        user = User.objects.by_email(email)
        if user is not None:
            self.stdout.write(self.style.HTTP_INFO(f'  Exists: {user.email}'))
            return user

        user = User.objects.create_user(email=email, password=password, name=name, role=role)
        self.stdout.write(self.style.SUCCESS(f'✓ Created admin user: {user.email}'))
        return user
