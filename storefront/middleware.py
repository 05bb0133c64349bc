import logging

from payments.utils import client_ip

logger = logging.getLogger(__name__)

PAYMENT_PATH_PREFIXES = ("/orders", "/payments/", "/downloads/")


class PaymentRequestLogMiddleware:
    """Log every hit on the order, callback and download endpoints."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        if request.path.startswith(PAYMENT_PATH_PREFIXES):
            logger.info(
                "[PAYMENT REQUEST] %s %s ip=%s ua=%s",
                request.method,
                request.path,
                client_ip(request),
                request.META.get("HTTP_USER_AGENT", "-"),
            )
        response = self.get_response(request)
        if request.path.startswith(PAYMENT_PATH_PREFIXES) and response.status_code >= 500:
            logger.error("[PAYMENT REQUEST] %s %s -> %s", request.method, request.path, response.status_code)
        return response
