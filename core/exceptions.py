"""
Domain error taxonomy and the API error boundary.

Errors:
    - ValidationError: bad input or a business-rule violation (400)
    - UnauthorizedError: caller is not authenticated (401)
    - ForbiddenError: caller lacks rights over the resource (403)
    - NotFoundError: referenced entity is absent (404)

Every error raised inside a view ends up in api_exception_handler, which
renders the JSON envelope {"success": false, "message": "..."}.
"""
import logging

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class DomainError(Exception):
    """Base class for errors that map to a specific HTTP status."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'Internal Server Error'

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Invalid request'


class UnauthorizedError(DomainError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = 'User not authenticated'


class ForbiddenError(UnauthorizedError):
    """Authenticated, but not allowed to touch this resource."""
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Forbidden'


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Not found'


def error_response(message, status_code, headers=None):
    return Response(
        {'success': False, 'message': message},
        status=status_code,
        headers=headers
    )


def _first_message(detail):
    """Flatten DRF error details into one human-readable line."""
    if isinstance(detail, dict):
        if 'detail' in detail:
            return _first_message(detail['detail'])
        field, value = next(iter(detail.items()))
        message = _first_message(value)
        if field == 'non_field_errors':
            return message
        return f"{field}: {message}"
    if isinstance(detail, (list, tuple)):
        if not detail:
            return 'Invalid request'
        return _first_message(detail[0])
    return str(detail)


def api_exception_handler(exc, context):
    """
    DRF EXCEPTION_HANDLER rendering every failure as an error envelope.

    Domain errors keep their own status; DRF errors (serializer validation,
    authentication, permissions, 404) keep DRF's status. Anything else is
    logged with its traceback and reported as a generic 500.
    """
    view = context.get('view')
    view_name = view.__class__.__name__ if view is not None else 'unknown view'

    if isinstance(exc, DomainError):
        logger.warning(f"{view_name}: {exc.__class__.__name__}: {exc.message}")
        return error_response(exc.message, exc.status_code)

    response = exception_handler(exc, context)
    if response is not None:
        message = _first_message(response.data)
        logger.warning(f"{view_name}: {response.status_code} {message}")
        headers = {
            key: value for key, value in response.items()
            if key in ('WWW-Authenticate', 'Retry-After')
        }
        return error_response(message, response.status_code, headers=headers)

    logger.exception(f"Unexpected error in {view_name}: {exc}")
    return error_response(
        'Internal Server Error',
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
