from django.core.serializers.json import DjangoJSONEncoder
from django.db import models

from .state import COMPLETED, OrderItem, PaymentState


class Order(models.Model):
    transaction_id = models.CharField(max_length=40, unique=True)  # callback correlation, TX_...
    merchant_order_id = models.CharField(max_length=63, unique=True)  # sent to the gateway, ORDER_...

    customer_name = models.CharField(max_length=128)
    customer_email = models.EmailField()
    customer_phone = models.CharField(max_length=20)

    items = models.JSONField(default=list, encoder=DjangoJSONEncoder)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2)

    payment = models.JSONField(default=dict, encoder=DjangoJSONEncoder)
    last_status_payload = models.JSONField(blank=True, null=True, encoder=DjangoJSONEncoder)
    metadata = models.JSONField(blank=True, null=True, encoder=DjangoJSONEncoder)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        indexes = [models.Index(fields=["customer_email"], name="order_customer_email_idx")]

    @property
    def payment_state(self) -> PaymentState:
        return PaymentState.from_dict(self.payment)

    @property
    def order_items(self) -> list:
        return [OrderItem.from_dict(raw) for raw in self.items or []]

    @property
    def status(self) -> str:
        return self.payment_state.status

    @property
    def is_paid(self) -> bool:
        return self.status == COMPLETED

    def has_product(self, product_id) -> bool:
        wanted = str(product_id)
        return any(
            str(raw.get("product_id") or raw.get("productId") or raw.get("id")) == wanted
            for raw in self.items or []
            if isinstance(raw, dict)
        )

    def __str__(self):
        return f"{self.transaction_id} ({self.status})"
