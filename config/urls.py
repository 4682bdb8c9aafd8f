"""
Root URL configuration for the Storefront Orders service.

Catalog and order APIs share the /api/ prefix; each app namespaces its
own route names.
"""
import logging

from django.contrib import admin
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.urls import include, path

logger = logging.getLogger('core.health')

SERVICE_NAME = 'storefront-orders'


def health_check(request):
    """Liveness plus a database round trip, for container orchestration."""
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
    except DatabaseError as e:
        logger.error(f"Health check failed: {e}")
        return JsonResponse(
            {'status': 'unhealthy', 'service': SERVICE_NAME, 'database': 'unavailable'},
            status=503
        )
    return JsonResponse({'status': 'healthy', 'service': SERVICE_NAME, 'database': 'ok'})


urlpatterns = [
    path('admin/', admin.site.urls),
    path('health/', health_check, name='health-check'),
    path('api/', include('inventory.urls')),
    path('api/', include('orders.urls')),
]
