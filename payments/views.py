import json
import logging

from django.http import JsonResponse
from django.shortcuts import redirect
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .exceptions import CallbackDecodeError, GatewayError, IntegrityError, NotFoundError, StorefrontError
from .forms import CheckoutForm
from .ratelimit import rate_limit
from .services import SOURCE_POLL, Customer, OrderLifecycle, redirect_target
from .utils import client_ip, is_transaction_id

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8"))
    except Exception: return None


def _error(exc: StorefrontError) -> JsonResponse:
    return JsonResponse(exc.as_dict(), status=exc.status_code)


@csrf_exempt
@require_POST
@rate_limit("create_order")
def create_order_view(request):
    body = _json_body(request)
    if not isinstance(body, dict):
        return JsonResponse({"success": False, "message": "Invalid JSON body"}, status=400)

    form = CheckoutForm(body)
    if not form.is_valid():
        return JsonResponse({"success": False, "message": form.first_error()}, status=400)
    data = form.cleaned_data

    customer = Customer(name=data["customerName"], email=data["customerEmail"], phone=data["customerPhone"])
    items = body.get("items", body.get("orderItems"))
    metadata = {
        "userAgent": request.META.get("HTTP_USER_AGENT", ""),
        "ipAddress": client_ip(request),
        "source": str(body.get("source") or "web"),
    }

    try:
        result = OrderLifecycle().create_order(customer, items, data["totalAmount"], metadata=metadata)
    except StorefrontError as e:
        return _error(e)
    except Exception:
        logger.exception("Create order crashed for %s", customer.email)
        return JsonResponse({"success": False, "message": "Internal server error"}, status=500)

    order = result.order
    return JsonResponse(
        {
            "success": True,
            "orderId": order.pk,
            "transactionId": order.transaction_id,
            "merchantOrderId": order.merchant_order_id,
            "paymentUrl": result.payment_url,
        },
        status=201,
    )


@require_GET
def order_detail_view(request, correlation_id: str):
    lifecycle = OrderLifecycle()
    try:
        order = lifecycle.get_order(correlation_id)
    except NotFoundError as e:
        return _error(e)
    return JsonResponse(lifecycle.summarize(order))


@csrf_exempt
@require_POST
@rate_limit("status_check")
def order_status_view(request, correlation_id: str):
    """Pull the latest state from the gateway and reconcile before answering."""
    lifecycle = OrderLifecycle()
    try:
        outcome = lifecycle.reconcile(correlation_id, SOURCE_POLL)
    except StorefrontError as e:
        return _error(e)
    summary = lifecycle.summarize(outcome.order)
    summary["changed"] = outcome.changed
    return JsonResponse(summary)


def _callback_material(request):
    checksum = request.headers.get("X-VERIFY", "")
    response = ""
    if request.method == "POST":
        response = request.POST.get("response", "")
        if not response and request.content_type == "application/json":
            body = _json_body(request)
            if isinstance(body, dict):
                response = str(body.get("response") or "")
    return response, checksum


@csrf_exempt
@require_http_methods(["GET", "POST"])
def payment_callback_view(request, transaction_id: str):
    if not is_transaction_id(transaction_id):
        logger.warning("Rejected callback with malformed transaction id %r", transaction_id)
        return JsonResponse({"success": False, "message": "Invalid transaction id"}, status=400)

    logger.info("Payment callback received for %s (%s)", transaction_id, request.method)
    response, checksum = _callback_material(request)

    try:
        outcome = OrderLifecycle().reconcile_callback(transaction_id, response, checksum)
    except NotFoundError:
        return redirect(redirect_target(None, transaction_id=transaction_id, error="order-not-found"))
    except IntegrityError:
        return redirect(redirect_target(None, transaction_id=transaction_id, error="invalid-signature"))
    except CallbackDecodeError as e:
        logger.error("Callback payload for %s could not be decoded: %s", transaction_id, e)
        return redirect(redirect_target(None, transaction_id=transaction_id, error="invalid-payload"))
    except GatewayError as e:
        logger.error("Callback status check failed for %s: %s", transaction_id, e)
        return redirect(redirect_target(None, transaction_id=transaction_id, error="callback-failed"))
    except StorefrontError as e:
        logger.error("Callback for %s could not be processed (%s): %s", transaction_id, type(e).__name__, e)
        return redirect(redirect_target(None, transaction_id=transaction_id, error="callback-failed"))

    return redirect(redirect_target(outcome.status, order_id=outcome.order.pk, transaction_id=transaction_id))
