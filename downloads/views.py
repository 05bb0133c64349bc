import logging

from django.http import FileResponse, JsonResponse
from django.views.decorators.http import require_GET

from payments.exceptions import StorefrontError

from .services import DownloadAuthorizer
from .signers import LocalFileSigner

logger = logging.getLogger(__name__)


@require_GET
def signed_download_view(request, product_id: str):
    # transactionId is accepted as an alias
    correlation_id = request.GET.get("orderId") or request.GET.get("transactionId") or ""
    try:
        grant = DownloadAuthorizer().authorize(product_id, correlation_id)
    except StorefrontError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)
    return JsonResponse({"success": True, **grant.as_dict()})


@require_GET
def local_file_view(request, token: str):
    try:
        path, claims = LocalFileSigner().resolve(token)
    except StorefrontError as e:
        return JsonResponse(e.as_dict(), status=e.status_code)

    logger.info("Streaming %s for order %s", path.name, claims.get("order"))
    response = FileResponse(open(path, "rb"), as_attachment=True, filename=path.name, content_type="application/pdf")
    response["Cache-Control"] = "no-cache"
    return response
