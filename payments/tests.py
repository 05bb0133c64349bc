from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from django.core import mail
from django.core.management import call_command
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from catalog.models import Product

from .emails import send_order_confirmation
from .exceptions import GatewayError, IntegrityError, NotFoundError, ValidationError
from .integrations.phonepe import (
    CallbackVerification, PaymentInitiationResult, ProviderState, ProviderStatus,
)
from .models import Order
from .services import SOURCE_POLL, Customer, OrderLifecycle, redirect_target
from .state import (
    CANCELLED, COMPLETED, FAILED, PENDING,
    OrderItem, PaymentState, check_total, parse_items, transition,
)
from .utils import (
    client_ip, generate_merchant_order_id, generate_transaction_id,
    is_merchant_order_id, is_transaction_id, product_code,
)

ITEMS = [{"productId": "P1", "name": "Bhagavad Gita", "price": 499, "quantity": 1}]


def make_order(status=PENDING, items=None, total="499.00"):
    tx = generate_transaction_id()
    merchant_order_id = generate_merchant_order_id("9876543210", "P1")
    payment = PaymentState(
        transaction_id=tx, merchant_order_id=merchant_order_id, amount=Decimal(total), status=status,
    )
    return Order.objects.create(
        transaction_id=tx,
        merchant_order_id=merchant_order_id,
        customer_name="Asha",
        customer_email="asha@example.com",
        customer_phone="9876543210",
        items=items or [{"product_id": "P1", "name": "Bhagavad Gita", "price": "499.00", "quantity": 1}],
        total_amount=Decimal(total),
        payment=payment.to_dict(),
    )


def observed(state, **kwargs):
    return ProviderStatus(state=state, raw_state=state.value, **kwargs)


class IdentifierTests(SimpleTestCase):
    def test_transaction_id_format(self):
        tx = generate_transaction_id()
        self.assertTrue(is_transaction_id(tx))
        self.assertNotEqual(tx, generate_transaction_id())

    def test_merchant_order_id_uses_product_and_phone_suffix(self):
        merchant_order_id = generate_merchant_order_id("+91 98765 43210", product_code(["p-1"]))
        self.assertTrue(merchant_order_id.startswith("ORDER_P1_3210_"))
        self.assertTrue(is_merchant_order_id(merchant_order_id))

    def test_mixed_products_are_a_bundle(self):
        self.assertEqual(product_code(["P1", "P2"]), "BUNDLE")
        self.assertEqual(product_code(["P1", "P1"]), "P1")

    def test_malformed_ids_rejected(self):
        self.assertFalse(is_transaction_id("TX_123_abc"))
        self.assertFalse(is_transaction_id("../../etc/passwd"))


class OrderItemTests(SimpleTestCase):
    def test_accepts_product_id_aliases(self):
        item = OrderItem.from_dict({"id": "P2", "name": "Japa", "price": "120.50", "quantity": "2"})
        self.assertEqual(item.product_id, "P2")
        self.assertEqual(item.line_total, Decimal("241.00"))

    def test_rejects_non_positive_price(self):
        with self.assertRaises(ValidationError):
            OrderItem.from_dict({"productId": "P1", "name": "Gita", "price": 0, "quantity": 1})

    def test_rejects_fractional_quantity(self):
        with self.assertRaises(ValidationError):
            OrderItem.from_dict({"productId": "P1", "name": "Gita", "price": 10, "quantity": 1.5})

    def test_empty_items_rejected(self):
        with self.assertRaisesMessage(ValidationError, "Order items are required"):
            parse_items([])

    def test_total_must_match_items(self):
        items = parse_items(ITEMS * 2)
        self.assertEqual(check_total(items, "998.00"), Decimal("998.00"))
        self.assertEqual(check_total(items, "998.01"), Decimal("998.01"))
        with self.assertRaisesMessage(ValidationError, "Total amount mismatch"):
            check_total(items, "999")


class TransitionTests(SimpleTestCase):
    def setUp(self):
        self.now = timezone.now()
        self.pending = PaymentState(transaction_id="TX", merchant_order_id="MO", amount=Decimal("499"))

    def test_completed_observation_marks_paid(self):
        after = transition(
            self.pending,
            observed(ProviderState.COMPLETED, gateway_transaction_id="OM123", payment_method="UPI_QR"),
            self.now,
        )
        self.assertEqual(after.status, COMPLETED)
        self.assertEqual(after.gateway_transaction_id, "OM123")
        self.assertEqual(after.payment_method, "UPI_QR")
        self.assertEqual(after.paid_at, self.now)
        self.assertEqual(after.last_checked_at, self.now)

    def test_failed_observation_records_reason(self):
        after = transition(self.pending, observed(ProviderState.FAILED, failure_reason="TXN_DECLINED"), self.now)
        self.assertEqual(after.status, FAILED)
        self.assertEqual(after.failure_reason, "TXN_DECLINED")

    def test_pending_and_unknown_leave_status(self):
        for state in (ProviderState.PENDING, ProviderState.UNKNOWN):
            after = transition(self.pending, observed(state), self.now)
            self.assertEqual(after.status, PENDING)
            self.assertEqual(after.last_checked_at, self.now)

    def test_completed_is_absorbing(self):
        paid = transition(self.pending, observed(ProviderState.COMPLETED), self.now)
        later = self.now + timedelta(minutes=5)
        for state in ProviderState:
            after = transition(paid, observed(state, failure_reason="late"), later)
            self.assertEqual(after.status, COMPLETED)
            self.assertEqual(after.paid_at, self.now)
            self.assertEqual(after.last_checked_at, later)

    def test_failed_is_not_refailed_but_can_complete(self):
        failed = PaymentState(transaction_id="TX", merchant_order_id="MO", amount=Decimal("1"),
                              status=FAILED, failure_reason="first")
        again = transition(failed, observed(ProviderState.FAILED, failure_reason="second"), self.now)
        self.assertEqual(again.failure_reason, "first")
        recovered = transition(failed, observed(ProviderState.COMPLETED), self.now)
        self.assertEqual(recovered.status, COMPLETED)
        self.assertEqual(recovered.failure_reason, "")

    def test_applying_same_observation_twice_is_idempotent(self):
        for state in ProviderState:
            obs = observed(state, gateway_transaction_id="OM1")
            once = transition(self.pending, obs, self.now)
            self.assertEqual(transition(once, obs, self.now), once)

    def test_round_trip_through_json(self):
        paid = transition(self.pending, observed(ProviderState.COMPLETED), self.now)
        self.assertEqual(PaymentState.from_dict(paid.to_dict()), paid)


class CreateOrderTests(TestCase):
    def setUp(self):
        self.gateway = Mock()
        self.lifecycle = OrderLifecycle(gateway=self.gateway)
        self.customer = Customer(name="Asha", email="asha@example.com", phone="9876543210")
        Product.objects.create(product_id="P1", name="Bhagavad Gita", price=Decimal("499.00"))

    def test_success_stores_payment_url(self):
        self.gateway.initiate_payment.return_value = PaymentInitiationResult(
            success=True, payment_url="https://mercury.phonepe.com/pay/abc",
        )
        result = self.lifecycle.create_order(self.customer, ITEMS, "499.00", metadata={"source": "web"})

        order = Order.objects.get()
        self.assertEqual(result.payment_url, "https://mercury.phonepe.com/pay/abc")
        self.assertEqual(order.status, PENDING)
        self.assertEqual(order.payment_state.payment_url, "https://mercury.phonepe.com/pay/abc")
        self.assertEqual(order.payment_state.amount, Decimal("499.00"))
        self.assertTrue(order.merchant_order_id.startswith("ORDER_P1_3210_"))

        request = self.gateway.initiate_payment.call_args.args[0]
        self.assertEqual(request.merchant_transaction_id, order.transaction_id)
        self.assertEqual(request.merchant_order_id, order.merchant_order_id)
        self.assertEqual(request.amount, Decimal("499.00"))

    def test_price_must_match_catalog(self):
        items = [{"productId": "P1", "name": "Bhagavad Gita", "price": 1, "quantity": 1}]
        with self.assertRaisesMessage(ValidationError, "Price mismatch for product P1"):
            self.lifecycle.create_order(self.customer, items, 1)
        self.assertFalse(Order.objects.exists())
        self.gateway.initiate_payment.assert_not_called()

    def test_unknown_or_inactive_product_rejected(self):
        Product.objects.create(product_id="P2", name="Retired", price=Decimal("99.00"), is_active=False)
        for product_id in ("P2", "P404"):
            items = [{"productId": product_id, "name": "Anything", "price": 99, "quantity": 1}]
            with self.assertRaisesMessage(ValidationError, f"Product {product_id} is not available"):
                self.lifecycle.create_order(self.customer, items, 99)
        self.assertFalse(Order.objects.exists())
        self.gateway.initiate_payment.assert_not_called()

    def test_total_mismatch_creates_nothing(self):
        with self.assertRaisesMessage(ValidationError, "Total amount mismatch"):
            self.lifecycle.create_order(self.customer, ITEMS, "500.00")
        self.assertFalse(Order.objects.exists())
        self.gateway.initiate_payment.assert_not_called()

    def test_amount_above_limit_rejected(self):
        Product.objects.create(product_id="GOLD", name="Gold", price=Decimal("300000.00"))
        items = [{"productId": "GOLD", "name": "Gold", "price": 300000, "quantity": 1}]
        with self.assertRaises(ValidationError):
            self.lifecycle.create_order(self.customer, items, 300000)

    def test_gateway_rejection_persists_failed_order(self):
        self.gateway.initiate_payment.return_value = PaymentInitiationResult(success=False, error="KEY_NOT_CONFIGURED")
        with self.assertRaisesMessage(GatewayError, "KEY_NOT_CONFIGURED"):
            self.lifecycle.create_order(self.customer, ITEMS, 499)

        order = Order.objects.get()
        self.assertEqual(order.status, FAILED)
        self.assertEqual(order.payment_state.failure_reason, "KEY_NOT_CONFIGURED")

    def test_missing_token_persists_failed_order(self):
        self.gateway.initiate_payment.side_effect = GatewayError("Access token required for PhonePe payment")
        with self.assertRaises(GatewayError):
            self.lifecycle.create_order(self.customer, ITEMS, 499)
        self.assertEqual(Order.objects.get().status, FAILED)

    def test_transaction_id_collision_is_retried(self):
        existing = make_order()
        fresh = generate_transaction_id()
        self.gateway.initiate_payment.return_value = PaymentInitiationResult(success=True, payment_url="https://pay/x")
        with patch("payments.services.generate_transaction_id", side_effect=[existing.transaction_id, fresh]):
            result = self.lifecycle.create_order(self.customer, ITEMS, 499)

        self.assertEqual(result.order.transaction_id, fresh)
        self.assertEqual(Order.objects.count(), 2)


class ReconcileTests(TestCase):
    def setUp(self):
        self.gateway = Mock()
        self.lifecycle = OrderLifecycle(gateway=self.gateway)
        self.order = make_order()

    def test_poll_completes_order_and_sends_one_confirmation(self):
        self.gateway.check_payment_status.return_value = {
            "orderId": "OMO1", "state": "COMPLETED",
            "paymentDetails": [{"transactionId": "OM123", "paymentMode": "UPI_QR", "state": "COMPLETED"}],
        }
        with self.captureOnCommitCallbacks(execute=True):
            outcome = self.lifecycle.reconcile(self.order.transaction_id, SOURCE_POLL)

        self.assertTrue(outcome.changed)
        self.assertEqual(outcome.status, COMPLETED)
        payment = Order.objects.get(pk=self.order.pk).payment_state
        self.assertEqual(payment.gateway_transaction_id, "OM123")
        self.assertIsNotNone(payment.paid_at)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["asha@example.com"])
        self.assertIn("Bhagavad Gita x1  INR 499.00", mail.outbox[0].body)
        self.assertIn(f"Transaction: {self.order.transaction_id}", mail.outbox[0].body)
        self.assertIn("Gateway reference: OM123", mail.outbox[0].body)
        self.gateway.check_payment_status.assert_called_once_with(self.order.merchant_order_id)

        with self.captureOnCommitCallbacks(execute=True):
            again = self.lifecycle.reconcile(self.order.merchant_order_id, SOURCE_POLL)
        self.assertFalse(again.changed)
        self.assertEqual(len(mail.outbox), 1)

    def test_gateway_error_leaves_order_untouched(self):
        self.gateway.check_payment_status.side_effect = GatewayError("Status check failed: timeout")
        before = Order.objects.get(pk=self.order.pk).payment

        with self.assertRaises(GatewayError):
            self.lifecycle.reconcile(self.order.transaction_id, SOURCE_POLL)
        self.assertEqual(Order.objects.get(pk=self.order.pk).payment, before)

    def test_completed_order_never_regresses(self):
        paid = make_order(status=COMPLETED)
        self.gateway.check_payment_status.return_value = {"state": "FAILED", "errorCode": "LATE"}
        outcome = self.lifecycle.reconcile(paid.transaction_id, SOURCE_POLL)
        self.assertEqual(outcome.status, COMPLETED)
        self.assertFalse(outcome.changed)

    def test_completed_after_cancel_is_logged(self):
        cancelled = make_order(status=CANCELLED)
        with self.assertLogs("payments.services", level="WARNING") as logs:
            outcome = self.lifecycle.reconcile(
                cancelled.transaction_id, SOURCE_POLL, observed(ProviderState.COMPLETED),
            )
        self.assertEqual(outcome.status, COMPLETED)
        self.assertIn("cancelled to completed", logs.output[0])
        self.gateway.check_payment_status.assert_not_called()

    def test_unknown_order(self):
        with self.assertRaises(NotFoundError):
            self.lifecycle.reconcile("TX_0000000000000_000000000000", SOURCE_POLL)


class ReconcileCallbackTests(TestCase):
    def setUp(self):
        self.gateway = Mock()
        self.lifecycle = OrderLifecycle(gateway=self.gateway)
        self.order = make_order()

    def test_unsigned_callback_pulls_status(self):
        self.gateway.check_payment_status.return_value = {"state": "PENDING"}
        outcome = self.lifecycle.reconcile_callback(self.order.transaction_id)
        self.assertEqual(outcome.status, PENDING)
        self.gateway.verify_callback.assert_not_called()

    def test_tampered_callback_changes_nothing(self):
        self.gateway.verify_callback.return_value = CallbackVerification(is_valid=False, error="Checksum mismatch")
        before = Order.objects.get(pk=self.order.pk).payment

        with self.assertRaises(IntegrityError):
            self.lifecycle.reconcile_callback(self.order.transaction_id, "eyJ9", "bad###1")

        self.assertEqual(Order.objects.get(pk=self.order.pk).payment, before)
        self.gateway.check_payment_status.assert_not_called()

    def test_signed_callback_for_another_order_rejected(self):
        self.gateway.verify_callback.return_value = CallbackVerification(
            is_valid=True, data={"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TX_other"}},
        )
        with self.assertRaises(IntegrityError):
            self.lifecycle.reconcile_callback(self.order.transaction_id, "eyJ9", "sum###1")
        self.assertEqual(Order.objects.get(pk=self.order.pk).status, PENDING)

    def test_signed_callback_applied_without_pull(self):
        self.gateway.verify_callback.return_value = CallbackVerification(
            is_valid=True,
            data={
                "code": "PAYMENT_ERROR",
                "data": {"merchantTransactionId": self.order.transaction_id, "state": "FAILED",
                         "responseCode": "ZM"},
            },
        )
        outcome = self.lifecycle.reconcile_callback(self.order.transaction_id, "eyJ9", "sum###1")
        self.assertEqual(outcome.status, FAILED)
        self.gateway.check_payment_status.assert_not_called()


class RedirectTargetTests(SimpleTestCase):
    def test_status_pages(self):
        self.assertEqual(
            redirect_target(COMPLETED, order_id=7, transaction_id="TX_1"),
            "https://shop.example.com/payment-success?orderId=7&transactionId=TX_1",
        )
        self.assertTrue(redirect_target(CANCELLED, order_id=7).startswith("https://shop.example.com/payment-failed"))
        self.assertTrue(redirect_target(PENDING, order_id=7).startswith("https://shop.example.com/payment-pending"))

    def test_error_page(self):
        self.assertEqual(
            redirect_target(None, transaction_id="TX_1", error="order-not-found"),
            "https://shop.example.com/payment-error?transactionId=TX_1&error=order-not-found",
        )


class ReconcilePendingCommandTests(TestCase):
    def test_reconciles_stale_open_orders_only(self):
        stale = make_order()
        make_order(status=COMPLETED)
        Order.objects.update(updated_at=timezone.now() - timedelta(minutes=10))

        gateway = Mock()
        gateway.check_payment_status.return_value = {"state": "COMPLETED"}
        out = StringIO()
        with patch("payments.services.get_client", return_value=gateway):
            call_command("reconcile_pending_orders", "--sleep", "0", stdout=out)

        gateway.check_payment_status.assert_called_once_with(stale.merchant_order_id)
        self.assertEqual(Order.objects.get(pk=stale.pk).status, COMPLETED)
        self.assertIn("Checked 1, updated 1 orders.", out.getvalue())

    def test_nothing_pending(self):
        out = StringIO()
        call_command("reconcile_pending_orders", stdout=out)
        self.assertIn("No pending orders", out.getvalue())


class ConfirmationEmailTests(TestCase):
    @override_settings(ORDERS_ADMIN_EMAILS="ops@example.com, OPS@example.com")
    def test_admin_notification_rendered_once(self):
        order = make_order(status=COMPLETED)
        Order.objects.filter(pk=order.pk).update(customer_name="Asha & Co")
        send_order_confirmation(order=Order.objects.get(pk=order.pk))

        self.assertEqual(len(mail.outbox), 2)
        customer, admin = mail.outbox
        self.assertIn("Hi Asha & Co,", customer.body)
        self.assertEqual(admin.to, ["ops@example.com"])
        self.assertIn(f"({order.merchant_order_id}) completed.", admin.body)
        self.assertIn("Customer: Asha & Co <asha@example.com> 9876543210", admin.body)


class ClientIpTests(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()

    def test_forwarded_header_ignored_without_trusted_proxy(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="6.6.6.6", REMOTE_ADDR="10.0.0.5")
        self.assertEqual(client_ip(request), "10.0.0.5")

    @override_settings(TRUSTED_PROXY_COUNT=1)
    def test_entry_appended_by_trusted_proxy(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="6.6.6.6, 203.0.113.7", REMOTE_ADDR="10.0.0.5")
        self.assertEqual(client_ip(request), "203.0.113.7")

    @override_settings(TRUSTED_PROXY_COUNT=2)
    def test_short_header_falls_back_to_peer(self):
        request = self.factory.get("/", HTTP_X_FORWARDED_FOR="203.0.113.7", REMOTE_ADDR="10.0.0.5")
        self.assertEqual(client_ip(request), "10.0.0.5")
