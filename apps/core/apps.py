from django.apps import AppConfig
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging

logger = logging.getLogger(__name__)


class CoreConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.core'
    verbose_name = 'Core'

    def ready(self):
        """
        Perform startup validation checks when Django initializes.
        
        Runs only for the server processes so migrations, shell and tests
        can start without a production configuration.
        """
        import sys
        if 'runserver' not in sys.argv and 'gunicorn' not in sys.argv[0]:
            return
        
        self._validate_jwt_configuration()
        self._validate_rbac_configuration()
        
        logger.info("All startup configuration validations passed")

    def _validate_jwt_configuration(self):
        """Validate JWT secret key configuration."""
        jwt_secret = getattr(settings, 'JWT_SECRET_KEY', None)
        secret_key = getattr(settings, 'SECRET_KEY', None)
        
        if not jwt_secret:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be set in environment variables. "
                "Generate a strong key with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )
        
        if len(jwt_secret) < 32:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY must be at least 32 characters long. "
                f"Current length: {len(jwt_secret)}."
            )
        
        if jwt_secret == secret_key:
            raise ImproperlyConfigured(
                "JWT_SECRET_KEY must be different from SECRET_KEY."
            )
        
        unique_chars = len(set(jwt_secret))
        if unique_chars < 16:
            raise ImproperlyConfigured(
                f"JWT_SECRET_KEY has insufficient entropy. "
                f"Found only {unique_chars} unique characters, need at least 16."
            )
        
        logger.info("JWT configuration validated")

    def _validate_rbac_configuration(self):
        """Validate the RBAC settings block."""
        rbac = getattr(settings, 'RBAC', {})
        
        ttl = rbac.get('PERMISSION_CACHE_TTL', 300)
        if ttl <= 0:
            raise ImproperlyConfigured(
                f"RBAC['PERMISSION_CACHE_TTL'] must be a positive number of seconds, got {ttl}."
            )
        
        admin_role = rbac.get('ADMIN_ROLE')
        if not admin_role:
            raise ImproperlyConfigured("RBAC['ADMIN_ROLE'] must be set.")
        
        if admin_role not in rbac.get('ELEVATED_ROLES', []):
            logger.warning(
                f"RBAC admin role {admin_role!r} is not listed in ELEVATED_ROLES; "
                f"it is still always allowed by ownership checks."
            )
        
        logger.info("RBAC configuration validated")
