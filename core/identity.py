"""
Buyer profile lookup.

Order reads are decorated with the buyer's profile from the identity
provider. Lookups never fail a read: any error degrades to a placeholder
profile flagged with "unavailable": True.
"""
import logging
from typing import Dict, Optional

import httpx
from django.conf import settings
from django.core.cache import cache
from django.utils.module_loading import import_string

logger = logging.getLogger(__name__)


def placeholder_profile(user_id: Optional[str]) -> Dict:
    return {
        'id': user_id or 'unknown',
        'first_name': 'Unknown',
        'last_name': 'User',
        'full_name': 'Unknown User',
        'email': 'No email available',
        'image_url': None,
        'username': None,
        'created_at': None,
        'unavailable': True,
    }


class IdentityProvider:
    """Capability interface: profile(user_id) -> dict."""

    def profile(self, user_id: str) -> Dict:
        raise NotImplementedError

    def profiles(self, user_ids) -> Dict[str, Dict]:
        """Look up several users, one call per distinct id."""
        return {user_id: self.profile(user_id) for user_id in set(user_ids)}


class ClerkIdentityProvider(IdentityProvider):
    """
    Profiles from the Clerk backend API (GET /users/{id}).

    Results are cached in the Django cache for
    IDENTITY_PROFILE_CACHE_SECONDS; failures are not cached.
    """
    cache_prefix = 'identity:profile:'

    def __init__(self, secret_key=None, api_url=None, timeout=None, transport=None):
        self.secret_key = secret_key if secret_key is not None else settings.CLERK_SECRET_KEY
        self.api_url = (api_url or settings.CLERK_API_URL).rstrip('/')
        self.timeout = timeout if timeout is not None else settings.IDENTITY_REQUEST_TIMEOUT
        self.transport = transport

    def profile(self, user_id: str) -> Dict:
        if not user_id or not user_id.strip() or user_id in ('undefined', 'null'):
            return placeholder_profile(user_id)

        cache_key = f"{self.cache_prefix}{user_id}"
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        if not self.secret_key:
            logger.error("Clerk secret key is not configured; using placeholder profile")
            return placeholder_profile(user_id)

        try:
            with httpx.Client(
                base_url=self.api_url,
                timeout=self.timeout,
                transport=self.transport,
                headers={'Authorization': f"Bearer {self.secret_key}"},
            ) as client:
                response = client.get(f"/users/{user_id}")
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Error getting user {user_id} from Clerk: {e}")
            return placeholder_profile(user_id)

        profile = self._to_profile(user_id, data)
        cache.set(cache_key, profile, settings.IDENTITY_PROFILE_CACHE_SECONDS)
        return profile

    @staticmethod
    def _to_profile(user_id, data):
        first_name = data.get('first_name') or 'Unknown'
        last_name = data.get('last_name') or 'User'

        email = 'No email available'
        addresses = data.get('email_addresses') or []
        if addresses:
            primary_id = data.get('primary_email_address_id')
            primary = next((a for a in addresses if a.get('id') == primary_id), addresses[0])
            email = primary.get('email_address') or email

        return {
            'id': data.get('id') or user_id,
            'first_name': first_name,
            'last_name': last_name,
            'full_name': f"{first_name} {last_name}".strip(),
            'email': email,
            'image_url': data.get('image_url'),
            'username': data.get('username'),
            'created_at': data.get('created_at'),
            'unavailable': False,
        }


def get_identity_provider() -> IdentityProvider:
    """Instantiate the provider named by the IDENTITY_PROVIDER setting."""
    provider_class = import_string(settings.IDENTITY_PROVIDER)
    return provider_class()
