import logging
from functools import wraps

from django.conf import settings
from django.core.cache import cache
from django.http import JsonResponse

from .utils import client_ip

logger = logging.getLogger(__name__)


def rate_limit(name: str):
    """Fixed-window per-IP limit configured as ``RATE_LIMITS[name] = (requests, seconds)``."""

    def decorator(view):
        @wraps(view)
        def wrapped(request, *args, **kwargs):
            limit, window = getattr(settings, "RATE_LIMITS", {}).get(name, (None, None))
            if limit:
                ip = client_ip(request)
                key = f"ratelimit:{name}:{ip}"
                cache.add(key, 0, timeout=window)
                try:
                    count = cache.incr(key)
                except ValueError:
                    # expired between add and incr
                    cache.set(key, 1, timeout=window)
                    count = 1
                if count > limit:
                    logger.warning("Rate limit %s exceeded by %s on %s", name, ip, request.path)
                    return JsonResponse(
                        {"success": False, "message": "Too many requests, please try again later."},
                        status=429,
                    )
            return view(request, *args, **kwargs)

        return wrapped

    return decorator
