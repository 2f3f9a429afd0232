"""
Custom exception handlers for DRF.
"""
import logging
from rest_framework.views import exception_handler
from rest_framework.response import Response
from rest_framework.exceptions import APIException
from rest_framework import status
from django_ratelimit.exceptions import Ratelimited
from django.http import JsonResponse

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_AFTER = 60  # seconds


def get_client_ip(request):
    forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR')


def ratelimit_view(request, exception):
    """
    Custom view for django-ratelimit to return 429 instead of 403.

    Called when a rate limit is exceeded with block=True. Returns 429 with a
    Retry-After header indicating when to retry.
    """
    from apps.core.logging import SecurityLogger

    ip_address = get_client_ip(request) or 'unknown'

    SecurityLogger.log_rate_limit_exceeded(
        endpoint=request.path,
        ip_address=ip_address,
        limit='Rate limit exceeded'
    )

    response = JsonResponse(
        {
            'error': 'Rate limit exceeded. Please try again later.',
            'code': 'RATE_LIMIT_EXCEEDED',
            'retry_after': RATE_LIMIT_RETRY_AFTER,
        },
        status=429
    )

    # Add Retry-After header (RFC 6585)
    response['Retry-After'] = str(RATE_LIMIT_RETRY_AFTER)

    return response


def custom_exception_handler(exc, context):
    """
    Custom exception handler that logs errors and returns consistent format.

    Domain exceptions (HRMSException) are rendered as
    ``{"error": message, "code": code, "details": {...}}`` with the status
    code declared on the exception class. Everything else goes through DRF's
    default handler.
    """
    request = context.get('request')
    request_id = getattr(request, 'request_id', None) if request else None

    # Handle django-ratelimit exceptions
    if isinstance(exc, Ratelimited):
        from apps.core.logging import SecurityLogger

        SecurityLogger.log_rate_limit_exceeded(
            endpoint=request.path if request else 'unknown',
            ip_address=(get_client_ip(request) if request else None) or 'unknown',
            limit='Rate limit exceeded'
        )

        response = Response(
            {
                'error': 'Rate limit exceeded. Please try again later.',
                'code': 'RATE_LIMIT_EXCEEDED',
                'request_id': request_id,
                'retry_after': RATE_LIMIT_RETRY_AFTER,
            },
            status=status.HTTP_429_TOO_MANY_REQUESTS
        )
        response['Retry-After'] = str(RATE_LIMIT_RETRY_AFTER)
        return response

    if isinstance(exc, HRMSException):
        log_method = logger.error if exc.status_code >= 500 else logger.warning
        log_method(
            f"Domain error: {exc.__class__.__name__}: {exc.message}",
            extra={
                'code': exc.code,
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            }
        )

        data = {
            'error': exc.message,
            'code': exc.code,
        }
        if exc.details:
            data['details'] = exc.details
        if request_id:
            data['request_id'] = request_id

        return Response(data, status=exc.status_code)

    # Call DRF's default exception handler first
    response = exception_handler(exc, context)

    # If DRF didn't handle it, return a generic 500 error
    if response is None:
        logger.error(
            f"API Exception: {exc.__class__.__name__}",
            extra={
                'exception': str(exc),
                'request_id': request_id,
                'path': request.path if request else None,
                'method': request.method if request else None,
            },
            exc_info=True
        )
        return Response(
            {
                'error': 'Internal server error',
                'code': 'INTERNAL_ERROR',
                'request_id': request_id,
            },
            status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )

    logger.warning(
        f"API Exception: {exc.__class__.__name__}",
        extra={
            'exception': str(exc),
            'request_id': request_id,
            'status_code': response.status_code,
            'path': request.path if request else None,
            'method': request.method if request else None,
        }
    )

    # Flatten DRF's {"detail": ...} into the {"error", "code"} envelope
    if isinstance(response.data, dict) and set(response.data.keys()) == {'detail'}:
        detail = response.data['detail']
        response.data = {
            'error': str(detail),
            'code': getattr(detail, 'code', None) or exc.__class__.__name__,
        }
        if getattr(exc, 'details', None):
            response.data['details'] = exc.details

    # Add request_id to all error responses
    if request_id and isinstance(response.data, dict):
        response.data['request_id'] = request_id

    return response


class HRMSException(Exception):
    """Base exception for HRMS domain errors."""

    status_code = 400
    default_code = 'ERROR'

    def __init__(self, message, code=None, details=None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(HRMSException):
    """Raised when input validation fails."""
    status_code = 400
    default_code = 'VALIDATION_ERROR'


class NotFound(HRMSException):
    """Raised when a referenced entity does not exist."""
    status_code = 404
    default_code = 'NOT_FOUND'


class StoreUnavailable(HRMSException):
    """Raised when the identity store cannot be reached. Retryable."""
    status_code = 503
    default_code = 'STORE_UNAVAILABLE'


class AccessDenied(APIException):
    """
    403 raised by the access policy permission class.

    Carries the denial reason and the required/current role or permissions
    so clients can explain the refusal.
    """
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Access denied'
    default_code = 'FORBIDDEN'

    def __init__(self, reason=None, details=None):
        super().__init__(detail=reason or self.default_detail, code=self.default_code)
        self.details = details or {}

    def get_full_details(self):
        return {'message': str(self.detail), 'code': self.default_code, 'details': self.details}


class ServiceUnavailable(APIException):
    """503 raised when permissions cannot be resolved because the store is down."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Permission store unavailable, please retry.'
    default_code = 'STORE_UNAVAILABLE'
