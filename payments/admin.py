from django.contrib import admin, messages

from .exceptions import StorefrontError
from .models import Order
from .services import SOURCE_POLL, OrderLifecycle


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("transaction_id", "status", "total_amount", "customer_email", "created_at", "updated_at")
    search_fields = ("transaction_id", "merchant_order_id", "customer_email", "customer_phone")
    list_filter = ("created_at",)
    readonly_fields = (
        "transaction_id", "merchant_order_id", "items", "total_amount",
        "payment", "last_status_payload", "metadata", "created_at", "updated_at",
    )
    actions = ["reconcile_with_gateway"]

    def has_delete_permission(self, request, obj=None):
        # orders are audit records
        return False

    @admin.action(description="Reconcile selected orders with the gateway")
    def reconcile_with_gateway(self, request, queryset):
        lifecycle = OrderLifecycle()
        for order in queryset:
            try:
                outcome = lifecycle.reconcile(order.transaction_id, SOURCE_POLL)
                self.message_user(request, f"{order.transaction_id} -> {outcome.status}")
            except StorefrontError as e:
                self.message_user(request, f"{order.transaction_id}: {e}", level=messages.WARNING)
