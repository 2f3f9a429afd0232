"""
Authentication REST API views.

Implements endpoints for:
- Login (email + password, returns a JWT)
- Current user with resolved permissions
"""
from rest_framework import status
from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django_ratelimit.decorators import ratelimit
from django.utils.decorators import method_decorator
from drf_spectacular.utils import extend_schema, OpenApiExample
from drf_spectacular.types import OpenApiTypes

from apps.core.exceptions import RATE_LIMIT_RETRY_AFTER, get_client_ip
from apps.core.logging import SecurityLogger
from apps.rbac.services import AuthService, RBACService
from apps.rbac.serializers import LoginSerializer, UserSerializer


@extend_schema(
    tags=['Authentication'],
    summary='Login user',
    description='''
Authenticate user with email and password.

Returns JWT token for API authentication and user information.

**No authentication required** - this is a public endpoint.

**Rate limit**: 5 requests/minute per IP address
    ''',
    request=LoginSerializer,
    responses={
        200: OpenApiTypes.OBJECT,
        401: OpenApiTypes.OBJECT,
        429: OpenApiTypes.OBJECT,
    },
    examples=[
        OpenApiExample(
            'Login Request',
            value={
                'email': 'admin@example.com',
                'password': 'SecurePass123!'
            },
            request_only=True
        ),
        OpenApiExample(
            'Success Response',
            value={
                'user': {
                    'id': 1,
                    'email': 'admin@example.com',
                    'name': 'Ada Admin',
                    'department': 'IT',
                    'role': {'id': 1, 'name': 'ADMIN', 'color': 'red'},
                    'isActive': True,
                    'createdAt': '2025-01-01T00:00:00Z'
                },
                'token': 'eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...',
                'message': 'Login successful'
            },
            response_only=True
        ),
        OpenApiExample(
            'Invalid Credentials',
            value={
                'error': 'Invalid email or password',
                'code': 'INVALID_CREDENTIALS'
            },
            response_only=True,
            status_codes=['401']
        ),
        OpenApiExample(
            'Rate Limit Exceeded',
            value={
                'error': 'Rate limit exceeded. Please try again later.',
                'code': 'RATE_LIMIT_EXCEEDED'
            },
            response_only=True,
            status_codes=['429']
        )
    ]
)
@method_decorator(ratelimit(key='ip', rate='5/m', method='POST', block=False), name='dispatch')
class LoginView(APIView):
    """
    POST /v1/auth/login

    Authenticate user and return JWT token.

    No authentication required.
    Rate limited to 5 requests per minute per IP address.
    """
    authentication_classes = []
    permission_classes = []

    def post(self, request):
        """Login user."""
        ip_address = get_client_ip(request) or 'unknown'

        # Check if rate limited
        if getattr(request, 'limited', False):
            email = request.data.get('email', 'unknown') if isinstance(request.data, dict) else 'unknown'

            SecurityLogger.log_rate_limit_exceeded(
                endpoint='/v1/auth/login',
                ip_address=ip_address,
                user_email=email,
                limit='5/min per IP'
            )

            response = Response(
                {
                    'error': 'Rate limit exceeded. Please try again later.',
                    'code': 'RATE_LIMIT_EXCEEDED',
                    'retry_after': RATE_LIMIT_RETRY_AFTER
                },
                status=status.HTTP_429_TOO_MANY_REQUESTS
            )
            response['Retry-After'] = str(RATE_LIMIT_RETRY_AFTER)
            return response

        serializer = LoginSerializer(data=request.data)

        if not serializer.is_valid():
            return Response(
                {
                    'error': 'Validation error',
                    'code': 'VALIDATION_ERROR',
                    'details': serializer.errors
                },
                status=status.HTTP_400_BAD_REQUEST
            )

        result = AuthService.login(
            email=serializer.validated_data['email'],
            password=serializer.validated_data['password'],
            request=request
        )

        if not result:
            SecurityLogger.log_failed_login(
                email=serializer.validated_data['email'],
                ip_address=ip_address,
                user_agent=request.META.get('HTTP_USER_AGENT', 'unknown'),
                reason='Invalid credentials'
            )

            return Response(
                {
                    'error': 'Invalid email or password',
                    'code': 'INVALID_CREDENTIALS'
                },
                status=status.HTTP_401_UNAUTHORIZED
            )

        return Response(
            {
                'user': UserSerializer(result['user']).data,
                'token': result['token'],
                'message': 'Login successful'
            },
            status=status.HTTP_200_OK
        )


@extend_schema(
    tags=['Authentication'],
    summary='Get current user',
    description='''
Get the authenticated user's profile together with the permission ids
granted by their role.

Requires JWT authentication (`Authorization: Bearer <token>`).
    ''',
    responses={
        200: OpenApiTypes.OBJECT,
        401: OpenApiTypes.OBJECT,
    },
)
class CurrentUserView(APIView):
    """
    GET /v1/auth/me

    Requires JWT authentication.
    """
    permission_classes = [IsAuthenticated]

    def get(self, request):
        """Get current user and permissions."""
        user = request.user
        data = UserSerializer(user).data
        data['permissions'] = sorted(RBACService.resolve_permissions(user))
        return Response(data, status=status.HTTP_200_OK)
