"""
RBAC app configuration.
"""
from django.apps import AppConfig
from django.conf import settings


class RbacConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.rbac'
    verbose_name = 'RBAC (Role-Based Access Control)'
    
    def ready(self):
        """Build the permission cache and access engine, then import signals."""
        from apps.rbac.access import AccessDecisionEngine
        from apps.rbac.cache import PermissionCache
        
        rbac_settings = getattr(settings, 'RBAC', {})
        
        self.permission_cache = PermissionCache(
            ttl=rbac_settings.get('PERMISSION_CACHE_TTL', 300)
        )
        self.access_engine = AccessDecisionEngine(
            cache=self.permission_cache,
            admin_role=rbac_settings.get('ADMIN_ROLE', 'ADMIN'),
            elevated_roles=rbac_settings.get('ELEVATED_ROLES', ('ADMIN', 'HR', 'MANAGER')),
        )
        
        import apps.rbac.signals  # noqa
