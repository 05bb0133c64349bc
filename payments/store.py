"""Order record store.

Every payment write is a full replace of the ``payment`` JSON in a single-row
``UPDATE``; callers that merge must read the row through :meth:`OrderStore.locked`
immediately before writing.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from django.db import IntegrityError as DatabaseIntegrityError
from django.db import transaction
from django.utils import timezone

from .models import Order
from .state import OPEN_STATUSES, PaymentState

logger = logging.getLogger(__name__)


class DuplicateCorrelationId(Exception):
    pass


class OrderStore:
    def create(self, **fields) -> Order:
        try:
            with transaction.atomic():
                return Order.objects.create(**fields)
        except DatabaseIntegrityError as e:
            logger.warning(
                "Correlation id collision transaction_id=%s merchant_order_id=%s",
                fields.get("transaction_id"), fields.get("merchant_order_id"),
            )
            raise DuplicateCorrelationId(str(e)) from e

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        if not transaction_id:
            return None
        return Order.objects.filter(transaction_id=transaction_id).first()

    def find_by_merchant_order_id(self, merchant_order_id: str) -> Optional[Order]:
        if not merchant_order_id:
            return None
        return Order.objects.filter(merchant_order_id=merchant_order_id).first()

    def find_by_correlation_id(self, correlation_id: str) -> Optional[Order]:
        return self.find_by_transaction_id(correlation_id) or self.find_by_merchant_order_id(correlation_id)

    def update_payment(self, order_pk: int, payment: PaymentState, *, status_payload: Optional[dict] = None) -> Order:
        fields = {"payment": payment.to_dict(), "updated_at": timezone.now()}
        if status_payload is not None:
            fields["last_status_payload"] = status_payload
        updated = Order.objects.filter(pk=order_pk).update(**fields)
        if not updated:
            raise Order.DoesNotExist(f"Order {order_pk} vanished during payment update")
        return Order.objects.get(pk=order_pk)

    @contextmanager
    def locked(self, order_pk: int) -> Iterator[Order]:
        """Yield the freshest copy of the row, locked until the block exits."""
        with transaction.atomic():
            yield Order.objects.select_for_update().get(pk=order_pk)

    def pending(self, *, older_than=None, limit: int = 50) -> list:
        qs = Order.objects.filter(payment__status__in=sorted(OPEN_STATUSES))
        if older_than is not None:
            qs = qs.filter(updated_at__lt=older_than)
        return list(qs.order_by("updated_at")[:limit])
