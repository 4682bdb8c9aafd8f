"""
Caller identity for API requests.

Authentication itself happens upstream (the auth gateway validates the
session and forwards the caller's id and role as headers). This module only
turns those headers into an Identity and provides the permission checks the
order endpoints need.
"""
import hmac
import logging
from dataclasses import dataclass

from django.conf import settings
from rest_framework import authentication, permissions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as reported by the auth gateway."""
    user_id: str
    role: str = ''

    is_authenticated = True
    is_anonymous = False

    @property
    def is_admin(self) -> bool:
        return bool(self.role) and self.role == settings.ADMIN_ROLE

    def __str__(self):
        return self.user_id


def _meta_key(header_name):
    return 'HTTP_' + header_name.upper().replace('-', '_')


class GatewayIdentityAuthentication(authentication.BaseAuthentication):
    """
    Reads the caller identity forwarded by the auth gateway.

    Headers (configurable):
        - IDENTITY_USER_HEADER (default X-User-Id)
        - IDENTITY_ROLE_HEADER (default X-User-Role)
    """

    def authenticate(self, request):
        user_id = request.META.get(_meta_key(settings.IDENTITY_USER_HEADER), '').strip()
        if not user_id or user_id in ('undefined', 'null'):
            return None
        role = request.META.get(_meta_key(settings.IDENTITY_ROLE_HEADER), '').strip()
        return Identity(user_id=user_id, role=role), None

    def authenticate_header(self, request):
        return 'Bearer realm="api"'


class IsAdmin(permissions.BasePermission):
    """Caller must carry the admin role."""
    message = 'Forbidden: Admin access required'

    def has_permission(self, request, view):
        user = request.user
        return bool(
            user and user.is_authenticated and getattr(user, 'is_admin', False)
        )


class IsAdminOrReadOnly(IsAdmin):
    """Anyone may read; writes need the admin role."""

    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return True
        return super().has_permission(request, view)


class HasWebhookSecret(permissions.BasePermission):
    """
    Payment-provider callbacks authenticate with a shared secret header.

    Denied outright when ORDERS_WEBHOOK_SECRET is not configured.
    """
    message = 'Invalid webhook secret'

    def has_permission(self, request, view):
        expected = settings.ORDERS_WEBHOOK_SECRET
        if not expected:
            logger.error("Webhook call rejected: ORDERS_WEBHOOK_SECRET is not configured")
            return False
        provided = request.META.get(_meta_key(settings.ORDERS_WEBHOOK_HEADER), '')
        return hmac.compare_digest(provided.encode(), expected.encode())
