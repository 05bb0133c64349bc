"""Value objects embedded in an order and the payment transition rule."""

from dataclasses import asdict, dataclass, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from django.utils.dateparse import parse_datetime

from .exceptions import ValidationError
from .integrations.phonepe import GATEWAY, ProviderState, ProviderStatus

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATUS_CHOICES = [
    (PENDING, "Pending"),
    (PROCESSING, "Processing"),
    (COMPLETED, "Completed"),
    (FAILED, "Failed"),
    (CANCELLED, "Cancelled"),
]
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED, CANCELLED})
OPEN_STATUSES = frozenset({PENDING, PROCESSING})

TOTAL_EPSILON = Decimal("0.01")


def _decimal(value, label: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {label}")
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ValidationError(f"Invalid {label}")


@dataclass(frozen=True)
class OrderItem:
    product_id: str
    name: str
    price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @classmethod
    def from_dict(cls, raw) -> "OrderItem":
        if not isinstance(raw, dict):
            raise ValidationError("Invalid order item data")
        product_id = raw.get("productId") or raw.get("product_id") or raw.get("id")
        name = raw.get("name")
        name = name.strip() if isinstance(name, str) else ""
        if not product_id or not name or raw.get("price") in (None, "") or raw.get("quantity") in (None, ""):
            raise ValidationError("Invalid order item data")

        price = _decimal(raw["price"], "item price")
        quantity = raw["quantity"]
        if isinstance(quantity, bool) or not isinstance(quantity, (int, str)):
            raise ValidationError("Item quantity must be a whole number")
        try:
            quantity = int(quantity)
        except ValueError:
            raise ValidationError("Item quantity must be a whole number")
        if price <= 0 or quantity <= 0:
            raise ValidationError("Item price and quantity must be positive")
        return cls(product_id=str(product_id), name=name, price=price, quantity=quantity)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price": str(self.price),
            "quantity": self.quantity,
        }


def parse_items(raw_items) -> list:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("Order items are required")
    return [OrderItem.from_dict(raw) for raw in raw_items]


def items_total(items: Iterable[OrderItem]) -> Decimal:
    return sum((item.line_total for item in items), Decimal("0"))


def check_total(items: Iterable[OrderItem], total_amount) -> Decimal:
    """Return ``total_amount`` as a Decimal if it matches the item sum within a paisa."""
    total = _decimal(total_amount, "total amount")
    if total <= 0:
        raise ValidationError("Valid total amount is required")
    if abs(items_total(items) - total) > TOTAL_EPSILON:
        raise ValidationError("Total amount mismatch")
    return total


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _dt(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return parse_datetime(value)


@dataclass(frozen=True)
class PaymentState:
    transaction_id: str
    merchant_order_id: str
    amount: Decimal
    gateway: str = GATEWAY
    currency: str = "INR"
    status: str = PENDING
    payment_url: str = ""
    gateway_transaction_id: str = ""
    payment_method: str = ""
    paid_at: Optional[datetime] = None
    failure_reason: str = ""
    last_checked_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_completed(self) -> bool:
        return self.status == COMPLETED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["amount"] = str(self.amount)
        data["paid_at"] = _iso(self.paid_at)
        data["last_checked_at"] = _iso(self.last_checked_at)
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PaymentState":
        data = data or {}
        return cls(
            transaction_id=data.get("transaction_id", ""),
            merchant_order_id=data.get("merchant_order_id", ""),
            amount=Decimal(str(data.get("amount") or "0")),
            gateway=data.get("gateway") or GATEWAY,
            currency=data.get("currency") or "INR",
            status=data.get("status") or PENDING,
            payment_url=data.get("payment_url") or "",
            gateway_transaction_id=data.get("gateway_transaction_id") or "",
            payment_method=data.get("payment_method") or "",
            paid_at=_dt(data.get("paid_at")),
            failure_reason=data.get("failure_reason") or "",
            last_checked_at=_dt(data.get("last_checked_at")),
        )


def transition(payment: PaymentState, observation: ProviderStatus, now: datetime) -> PaymentState:
    """Merge a provider observation into ``payment``.

    ``completed`` is absorbing. A failed/cancelled order may still move to
    ``completed`` when the provider reports captured funds; pending and
    unknown observations never change the status.
    """
    if payment.status == COMPLETED:
        return replace(payment, last_checked_at=now)

    if observation.state is ProviderState.COMPLETED:
        return replace(
            payment,
            status=COMPLETED,
            gateway_transaction_id=observation.gateway_transaction_id or payment.gateway_transaction_id,
            payment_method=observation.payment_method or payment.payment_method,
            paid_at=now,
            failure_reason="",
            last_checked_at=now,
        )

    if observation.state is ProviderState.FAILED and payment.status in OPEN_STATUSES:
        return replace(
            payment,
            status=FAILED,
            failure_reason=observation.failure_reason or "Payment failed",
            last_checked_at=now,
        )

    return replace(payment, last_checked_at=now)
