import logging

from django.db import connection
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET

logger = logging.getLogger(__name__)


@require_GET
def index_view(request):
    return JsonResponse({"message": "API running", "timestamp": timezone.now().isoformat()})


@require_GET
def health_view(request):
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
        db_ok = True
    except Exception:
        logger.exception("Health check: database unreachable")
        db_ok = False
    return JsonResponse({"status": "healthy" if db_ok else "unhealthy", "database": "ok" if db_ok else "error"})


def error_404_view(request, exception):
    return JsonResponse({"success": False, "message": "Not found"}, status=404)


def error_500_view(request):
    return JsonResponse({"success": False, "message": "Internal server error"}, status=500)
