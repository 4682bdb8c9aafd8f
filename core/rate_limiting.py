"""
Redis-based rate limiting for API endpoints.
Implements a fixed window counter keyed by caller identity (or client IP
for anonymous callers).
"""
import logging
from functools import wraps

import redis
from django.conf import settings
from rest_framework import status

from core.exceptions import error_response

logger = logging.getLogger(__name__)

_redis_client = None
_redis_unavailable = False


def get_redis_client():
    """
    Lazily connect to Redis.

    Returns None when REDIS_URL is unset or the first connection attempt
    failed; rate limiting is then disabled for the life of the process.
    """
    global _redis_client, _redis_unavailable
    if _redis_client is not None or _redis_unavailable:
        return _redis_client
    if not settings.REDIS_URL:
        _redis_unavailable = True
        return None
    try:
        client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5
        )
        client.ping()
    except (redis.ConnectionError, redis.TimeoutError) as e:
        logger.warning(f"Redis connection failed: {e}. Rate limiting will be disabled.")
        _redis_unavailable = True
        return None
    _redis_client = client
    return _redis_client


def get_client_ip(request):
    """Extract client IP address from request."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        ip = x_forwarded_for.split(',')[0].strip()
    else:
        ip = request.META.get('REMOTE_ADDR', 'unknown')
    return ip


def get_client_key(request):
    """Identity-scoped key for authenticated callers, IP otherwise."""
    user = getattr(request, 'user', None)
    user_id = getattr(user, 'user_id', None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_client_ip(request)}"


def _check_limit(client, scope, request, max_requests, window_seconds):
    """
    Count this request and return (count, ttl).

    Raises redis.RedisError if Redis fails mid-request.
    """
    key = f"rate_limit:{scope}:{get_client_key(request)}"
    current_count = client.incr(key)
    if current_count == 1:
        client.expire(key, window_seconds)
    ttl = client.ttl(key)
    return current_count, ttl


def _limit_exceeded(max_requests, window_seconds, ttl):
    return error_response(
        f'Rate limit exceeded. Maximum {max_requests} requests per {window_seconds} seconds allowed.',
        status.HTTP_429_TOO_MANY_REQUESTS,
        headers={
            'X-RateLimit-Limit': str(max_requests),
            'X-RateLimit-Remaining': '0',
            'X-RateLimit-Reset': str(ttl),
            'Retry-After': str(ttl)
        }
    )


def _add_headers(response, max_requests, current_count, ttl):
    response['X-RateLimit-Limit'] = str(max_requests)
    response['X-RateLimit-Remaining'] = str(max(0, max_requests - current_count))
    response['X-RateLimit-Reset'] = str(ttl)
    return response


def rate_limit(max_requests: int = 20, window_seconds: int = 60):
    """
    Redis-based rate limiting decorator for DRF view methods.

    Args:
        max_requests: Maximum number of requests allowed in the window
        window_seconds: Time window in seconds

    Usage:
        @rate_limit(20, 60)  # 20 requests per minute
        def get(self, request):
            ...
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(self, request, *args, **kwargs):
            client = get_redis_client() if settings.RATE_LIMIT_ENABLED else None
            if client is None:
                return view_func(self, request, *args, **kwargs)

            try:
                current_count, ttl = _check_limit(
                    client, view_func.__name__, request, max_requests, window_seconds
                )
            except redis.RedisError as e:
                # Fail open
                logger.error(f"Redis error in rate limiting: {e}")
                return view_func(self, request, *args, **kwargs)

            if current_count > max_requests:
                return _limit_exceeded(max_requests, window_seconds, ttl)

            response = view_func(self, request, *args, **kwargs)
            return _add_headers(response, max_requests, current_count, ttl)

        return wrapper
    return decorator


class RateLimitMixin:
    """
    Mixin class for class-based views to add rate limiting.

    Only methods listed in rate_limit_methods are counted.

    Usage:
        class MyView(RateLimitMixin, APIView):
            rate_limit_max_requests = 20
            rate_limit_window_seconds = 60
    """
    rate_limit_max_requests = 20
    rate_limit_window_seconds = 60
    rate_limit_methods = ('POST', 'PUT', 'PATCH', 'DELETE')

    def initial(self, request, *args, **kwargs):
        # Runs after authentication so the key can use the caller identity.
        super().initial(request, *args, **kwargs)
        self._rate_limit_state = None

        if request.method not in self.rate_limit_methods or not settings.RATE_LIMIT_ENABLED:
            return
        client = get_redis_client()
        if client is None:
            return

        try:
            self._rate_limit_state = _check_limit(
                client, self.__class__.__name__, request,
                self.rate_limit_max_requests, self.rate_limit_window_seconds
            )
        except redis.RedisError as e:
            logger.error(f"Redis error in rate limiting: {e}")
            return

        current_count, ttl = self._rate_limit_state
        if current_count > self.rate_limit_max_requests:
            raise RateLimitExceeded(ttl)

    def handle_exception(self, exc):
        if isinstance(exc, RateLimitExceeded):
            return _limit_exceeded(
                self.rate_limit_max_requests, self.rate_limit_window_seconds, exc.ttl
            )
        return super().handle_exception(exc)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        state = getattr(self, '_rate_limit_state', None)
        if state is not None and response.status_code != status.HTTP_429_TOO_MANY_REQUESTS:
            current_count, ttl = state
            _add_headers(response, self.rate_limit_max_requests, current_count, ttl)
        return response


class RateLimitExceeded(Exception):
    def __init__(self, ttl):
        self.ttl = ttl
        super().__init__(f"Rate limit exceeded, retry after {ttl}s")
