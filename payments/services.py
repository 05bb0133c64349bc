"""Order lifecycle: creation, payment initiation and reconciliation."""
import logging
from dataclasses import dataclass, replace
from typing import Optional
from urllib.parse import urlencode

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from catalog.models import Product

from .emails import send_order_confirmation
from .exceptions import GatewayError, IntegrityError, NotFoundError, ValidationError
from .integrations.phonepe import GATEWAY, PaymentRequest, ProviderStatus, get_client
from .models import Order
from .state import (
    CANCELLED, COMPLETED, FAILED, PENDING, PROCESSING,
    PaymentState, check_total, parse_items, transition,
)
from .store import DuplicateCorrelationId, OrderStore
from .utils import generate_merchant_order_id, generate_transaction_id, product_code

logger = logging.getLogger(__name__)

SOURCE_CALLBACK = "callback"
SOURCE_POLL = "poll"

ID_ATTEMPTS = 3


@dataclass
class Customer:
    name: str
    email: str
    phone: str


@dataclass
class CreateOrderResult:
    order: Order
    payment_url: str


@dataclass
class ReconcileOutcome:
    order: Order
    status: str
    changed: bool


class OrderLifecycle:
    def __init__(self, gateway=None, store: Optional[OrderStore] = None):
        self._gateway = gateway
        self.store = store or OrderStore()

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = get_client()
        return self._gateway

    # ---------- creation ----------
    def _check_amount_limits(self, total):
        low = getattr(settings, "ORDER_AMOUNT_MIN", 1)
        high = getattr(settings, "ORDER_AMOUNT_MAX", 200000)
        if total < low or total > high:
            raise ValidationError(f"Amount must be between INR {low} and INR {high}")

    def _check_catalog(self, items):
        """Every item must be an active catalog product sold at its catalog price."""
        wanted = {item.product_id for item in items}
        products = {p.product_id: p for p in Product.objects.filter(product_id__in=wanted, is_active=True)}
        for item in items:
            product = products.get(item.product_id)
            if product is None:
                logger.warning("Order rejected: product %s unknown or inactive", item.product_id)
                raise ValidationError(f"Product {item.product_id} is not available")
            if item.price != product.price:
                logger.warning(
                    "Order rejected: product %s priced %s, catalog says %s",
                    item.product_id, item.price, product.price,
                )
                raise ValidationError(f"Price mismatch for product {item.product_id}")

    def _persist_pending(self, customer: Customer, items, total, metadata) -> Order:
        code = product_code(item.product_id for item in items)
        for attempt in range(1, ID_ATTEMPTS + 1):
            transaction_id = generate_transaction_id()
            merchant_order_id = generate_merchant_order_id(customer.phone, code)
            payment = PaymentState(
                transaction_id=transaction_id,
                merchant_order_id=merchant_order_id,
                amount=total,
                gateway=GATEWAY,
            )
            try:
                return self.store.create(
                    transaction_id=transaction_id,
                    merchant_order_id=merchant_order_id,
                    customer_name=customer.name,
                    customer_email=customer.email,
                    customer_phone=customer.phone,
                    items=[item.to_dict() for item in items],
                    total_amount=total,
                    payment=payment.to_dict(),
                    metadata=metadata,
                )
            except DuplicateCorrelationId:
                if attempt == ID_ATTEMPTS:
                    raise

    def create_order(self, customer: Customer, raw_items, total_amount, *, metadata: Optional[dict] = None) -> CreateOrderResult:
        if not (customer.name or "").strip():
            raise ValidationError("Customer name required")
        if not customer.phone or len(customer.phone) < 10:
            raise ValidationError("Invalid phone number")
        items = parse_items(raw_items)
        self._check_catalog(items)
        total = check_total(items, total_amount)
        self._check_amount_limits(total)

        # persisted before the gateway is contacted so an outage never loses the order
        order = self._persist_pending(customer, items, total, metadata)
        payment = order.payment_state
        logger.info(
            "Order %s created transaction_id=%s merchant_order_id=%s amount=%s",
            order.pk, order.transaction_id, order.merchant_order_id, total,
        )

        request = PaymentRequest(
            amount=total,
            customer_phone=customer.phone,
            customer_name=customer.name,
            customer_email=customer.email,
            merchant_transaction_id=order.transaction_id,
            merchant_order_id=order.merchant_order_id,
        )
        try:
            result = self.gateway.initiate_payment(request)
            error = "" if result.success and result.payment_url else (result.error or "Payment initiation failed")
        except (GatewayError, ValidationError) as e:
            result, error = None, e.message or "Payment initiation failed"

        if not error:
            order = self.store.update_payment(order.pk, replace(payment, payment_url=result.payment_url))
            return CreateOrderResult(order=order, payment_url=result.payment_url)

        logger.error("Payment initiation failed for transaction_id=%s: %s", order.transaction_id, error)
        self.store.update_payment(order.pk, replace(payment, status=FAILED, failure_reason=error))
        raise GatewayError(error, correlation_id=order.transaction_id)

    # ---------- queries ----------
    def get_order(self, correlation_id: str) -> Order:
        order = self.store.find_by_correlation_id(correlation_id)
        if order is None:
            raise NotFoundError("Order not found", correlation_id=correlation_id)
        return order

    @staticmethod
    def summarize(order: Order) -> dict:
        payment = order.payment_state
        return {
            "orderId": order.pk,
            "transactionId": order.transaction_id,
            "merchantOrderId": order.merchant_order_id,
            "customerName": order.customer_name,
            "customerEmail": order.customer_email,
            "totalAmount": str(order.total_amount),
            "itemCount": len(order.items or []),
            "items": order.items,
            "status": payment.status,
            "payment": {
                "gateway": payment.gateway,
                "status": payment.status,
                "paymentUrl": payment.payment_url,
                "gatewayTransactionId": payment.gateway_transaction_id,
                "paymentMethod": payment.payment_method,
                "paidAt": payment.paid_at.isoformat() if payment.paid_at else None,
                "failureReason": payment.failure_reason,
                "lastCheckedAt": payment.last_checked_at.isoformat() if payment.last_checked_at else None,
            },
            "createdAt": order.created_at.isoformat() if order.created_at else None,
            "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        }

    # ---------- reconciliation ----------
    def reconcile(self, correlation_id: str, source: str,
                  observation: Optional[ProviderStatus] = None) -> ReconcileOutcome:
        """Apply one provider observation to the order.

        Without an ``observation`` the provider is asked directly; callers
        only pass one that came from a checksum-verified callback. Gateway
        failures propagate and leave the order untouched.
        """
        order = self.store.find_by_correlation_id(correlation_id)
        if order is None:
            logger.error("Reconcile (%s): no order for correlation id %s", source, correlation_id)
            raise NotFoundError("Order not found", correlation_id=correlation_id)

        if observation is None:
            raw = self.gateway.check_payment_status(order.merchant_order_id)
            observation = ProviderStatus.from_payload(raw)

        with self.store.locked(order.pk) as latest:
            before = latest.payment_state
            after = transition(before, observation, timezone.now())
            order = self.store.update_payment(latest.pk, after, status_payload=observation.payload)
            changed = after.status != before.status
            if changed and after.status == COMPLETED:
                if before.status in (FAILED, CANCELLED):
                    logger.warning(
                        "Order %s moved from %s to completed on provider report (%s)",
                        order.transaction_id, before.status, source,
                    )
                transaction.on_commit(lambda o=order: send_order_confirmation(order=o))

        log = logger.info if after.status != FAILED else logger.warning
        log(
            "Reconciled %s via %s: provider=%s status %s -> %s",
            order.transaction_id, source, observation.raw_state or observation.state.value,
            before.status, after.status,
        )
        return ReconcileOutcome(order=order, status=after.status, changed=changed)

    def reconcile_callback(self, transaction_id: str, response: str = "", checksum: str = "") -> ReconcileOutcome:
        """Reconcile from a gateway callback.

        A callback without checksum material is advisory: the status is
        pulled from the provider. A signed payload is applied directly only
        if its checksum matches and it names this order.
        """
        if not (response or checksum):
            return self.reconcile(transaction_id, SOURCE_CALLBACK)

        verification = self.gateway.verify_callback(response, checksum)
        if not verification.is_valid:
            logger.error("Untrusted callback for %s: %s", transaction_id, verification.error)
            raise IntegrityError(verification.error, correlation_id=transaction_id)

        observation = ProviderStatus.from_payload(verification.data)
        body = verification.data.get("data") or verification.data.get("payload") or verification.data
        named = {
            str(body.get(key)) for key in ("merchantTransactionId", "merchantOrderId", "originalMerchantOrderId")
            if isinstance(body, dict) and body.get(key)
        }
        if not named:
            logger.warning("Signed callback for %s names no order; pulling status", transaction_id)
            return self.reconcile(transaction_id, SOURCE_CALLBACK)

        order = self.get_order(transaction_id)
        if not named & {order.transaction_id, order.merchant_order_id}:
            logger.error("Signed callback for %s names another order: %s", transaction_id, sorted(named))
            raise IntegrityError("Callback does not belong to this order", correlation_id=transaction_id)
        return self.reconcile(transaction_id, SOURCE_CALLBACK, observation)


# ---------- redirect contract ----------
_REDIRECT_PAGES = {
    COMPLETED: "payment-success",
    FAILED: "payment-failed",
    CANCELLED: "payment-failed",
    PENDING: "payment-pending",
    PROCESSING: "payment-pending",
}


def redirect_target(status: Optional[str], *, order_id=None, transaction_id: str = "", error: str = "") -> str:
    """Frontend URL for a resolved status; ``None`` status means lookup/verification failed."""
    base = getattr(settings, "FRONTEND_URL", "").rstrip("/")
    page = _REDIRECT_PAGES.get(status, "payment-error") if status else "payment-error"
    params = {}
    if order_id is not None:
        params["orderId"] = order_id
    if transaction_id:
        params["transactionId"] = transaction_id
    if page == "payment-error":
        params["error"] = error or "unknown"
    query = urlencode(params)
    return f"{base}/{page}?{query}" if query else f"{base}/{page}"
