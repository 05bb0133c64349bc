import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMessage
from django.template.loader import render_to_string

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _from_email():
    return getattr(settings, "ORDERS_FROM_EMAIL", None) or getattr(settings, "DEFAULT_FROM_EMAIL", None)


def _admin_recipients() -> List[str]:
    # Comma-separated list via env or settings
    raw = getattr(settings, "ORDERS_ADMIN_EMAILS", "") or ""
    emails = [e.strip() for e in raw.split(",") if e and e.strip()]
    seen = set()
    uniq: List[str] = []
    for e in emails:
        if e.lower() not in seen:
            seen.add(e.lower())
            uniq.append(e)
    return uniq


def _context(order) -> dict:
    payment = order.payment_state
    frontend = getattr(settings, "FRONTEND_URL", "").rstrip("/")
    return {
        "order_id": order.pk,
        "transaction_id": order.transaction_id,
        "merchant_order_id": order.merchant_order_id,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "total_amount": order.total_amount,
        "items": order.order_items,
        "gateway_transaction_id": payment.gateway_transaction_id,
        "payment_method": payment.payment_method,
        "downloads_url": f"{frontend}/payment-success?orderId={order.pk}&transactionId={order.transaction_id}",
    }


def send_order_confirmation(*, order) -> None:
    """Receipt to the customer plus a notification to admins for a completed order.

    Called once, when reconciliation first moves the order to completed.
    """
    try:
        context = _context(order)
    except Exception:
        logger.exception("Could not build confirmation context for %s", order.transaction_id)
        return

    try:
        if order.customer_email:
            subject = f"Your digital products are ready - Order #{order.pk}"
            body = render_to_string("emails/order_confirmation_customer.txt", context)
            EmailMessage(subject, body, _from_email(), [order.customer_email]).send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send order confirmation to %s for %s", order.customer_email, order.transaction_id)

    try:
        admins = _admin_recipients()
        if admins:
            subject = f"New order paid: {order.transaction_id} - INR {order.total_amount}"
            body = render_to_string("emails/order_confirmation_admin.txt", context)
            EmailMessage(subject, body, _from_email(), admins).send(fail_silently=_fail_silently())
    except Exception:
        logger.exception("Failed to send admin notification for %s", order.transaction_id)
