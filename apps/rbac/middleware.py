"""
JWT bearer authentication middleware.

Resolves ``Authorization: Bearer <token>`` to an active user and attaches
it to ``request.user``. Requests without a usable token continue as
anonymous; the access policy on each view decides whether that is allowed.
"""
import logging
from django.contrib.auth.models import AnonymousUser
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

logger = logging.getLogger(__name__)


class JWTAuthenticationMiddleware(MiddlewareMixin):
    """
    Attach the JWT-authenticated user to the request.

    A malformed Authorization header is rejected with 401. An invalid or
    expired token leaves the request anonymous so public endpoints keep
    working; protected endpoints then answer 401.
    """

    # Paths that never need a user
    PUBLIC_PATHS = [
        '/v1/health',
        '/schema',
    ]

    def process_request(self, request):
        request.user = AnonymousUser()

        if self._is_public_path(request.path):
            return None

        header = request.headers.get('Authorization')
        if not header:
            return None

        scheme, _, token = header.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            return self._error_response(
                'INVALID_AUTH_HEADER',
                'Authorization header must be "Bearer <token>"',
                status=401
            )

        from apps.rbac.services import AuthService

        user = AuthService.get_user_from_jwt(token.strip())
        if user is None:
            logger.info(
                "Rejected bearer token",
                extra={'request_id': getattr(request, 'request_id', None), 'path': request.path}
            )
            return None

        request.user = user
        return None

    def _is_public_path(self, path):
        return any(path.startswith(public_path) for public_path in self.PUBLIC_PATHS)

    def _error_response(self, code, message, status=400):
        """Generate standardized error response."""
        return JsonResponse({'error': message, 'code': code}, status=status)
