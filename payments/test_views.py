import base64
import hashlib
import json
from decimal import Decimal
from unittest.mock import patch

import requests
from django.core.cache import cache
from django.test import TestCase, override_settings

from catalog.models import Product

from .exceptions import ConfigurationError
from .integrations.phonepe import get_client
from .models import Order
from .state import COMPLETED, FAILED, PENDING
from .test_gateway import TOKEN_OK, FakeResponse
from .tests import make_order

PAY_OK = FakeResponse(200, {"orderId": "OMO1", "state": "PENDING", "redirectUrl": "https://mercury.phonepe.com/pay/1"})


def order_body(**overrides):
    body = {
        "customerName": "Asha <b>",
        "customerEmail": "Asha@Example.com",
        "customerPhone": "9876543210",
        "items": [{"productId": "P1", "name": "Bhagavad Gita", "price": 499, "quantity": 1}],
        "totalAmount": 499,
    }
    body.update(overrides)
    return body


def signed(payload):
    response = base64.b64encode(json.dumps(payload).encode()).decode()
    checksum = hashlib.sha256((response + "test-salt-key").encode()).hexdigest() + "###1"
    return response, checksum


class ViewTestCase(TestCase):
    def setUp(self):
        get_client.cache_clear()
        cache.clear()

    def post_json(self, url, body):
        return self.client.post(url, data=json.dumps(body), content_type="application/json")


class CreateOrderViewTests(ViewTestCase):
    def setUp(self):
        super().setUp()
        Product.objects.create(product_id="P1", name="Bhagavad Gita", price=Decimal("499.00"))

    @patch("payments.integrations.phonepe.requests.post", side_effect=[TOKEN_OK, PAY_OK])
    def test_creates_pending_order(self, post):
        resp = self.post_json("/orders", order_body())

        self.assertEqual(resp.status_code, 201)
        data = resp.json()
        order = Order.objects.get()
        self.assertTrue(data["success"])
        self.assertEqual(data["orderId"], order.pk)
        self.assertEqual(data["transactionId"], order.transaction_id)
        self.assertEqual(data["paymentUrl"], "https://mercury.phonepe.com/pay/1")
        self.assertEqual(order.status, PENDING)
        self.assertEqual(order.customer_name, "Asha b")
        self.assertEqual(order.customer_email, "asha@example.com")
        self.assertEqual(order.metadata["source"], "web")

    def test_rejects_bad_input(self):
        cases = [
            (order_body(items=[]), "Order items are required"),
            (order_body(totalAmount=500), "Total amount mismatch"),
            (order_body(customerPhone="12345"), "customerPhone"),
            (order_body(customerEmail="not-an-email"), "customerEmail"),
        ]
        for body, message in cases:
            resp = self.post_json("/orders", body)
            self.assertEqual(resp.status_code, 400)
            self.assertIn(message, resp.json()["message"])
        self.assertFalse(Order.objects.exists())

    def test_rejects_non_json(self):
        resp = self.client.post("/orders", data="nope", content_type="application/json")
        self.assertEqual(resp.status_code, 400)

    @patch("payments.integrations.phonepe.requests.post",
           side_effect=[TOKEN_OK, FakeResponse(500, {"message": "Internal error"})])
    def test_gateway_failure_is_502_and_order_kept(self, post):
        resp = self.post_json("/orders", order_body())

        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json(), {"success": False, "message": "Internal error"})
        self.assertEqual(Order.objects.get().status, FAILED)

    @override_settings(RATE_LIMITS={"create_order": (1, 60)})
    def test_rate_limited(self):
        self.post_json("/orders", order_body(items=[]))
        resp = self.post_json("/orders", order_body(items=[]))
        self.assertEqual(resp.status_code, 429)

    @override_settings(RATE_LIMITS={"create_order": (2, 900)})
    def test_rate_limit_ignores_rotating_forwarded_for(self):
        codes = [
            self.client.post(
                "/orders", data=json.dumps(order_body(items=[])), content_type="application/json",
                HTTP_X_FORWARDED_FOR=f"198.51.100.{n}",
            ).status_code
            for n in range(4)
        ]
        self.assertEqual(codes, [400, 400, 429, 429])

    def test_client_price_must_match_catalog(self):
        body = order_body(
            items=[{"productId": "P1", "name": "Bhagavad Gita", "price": 1, "quantity": 1}], totalAmount=1,
        )
        resp = self.post_json("/orders", body)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Price mismatch for product P1")
        self.assertFalse(Order.objects.exists())

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get("/orders").status_code, 405)


class OrderStatusViewTests(ViewTestCase):
    def test_detail(self):
        order = make_order()
        resp = self.client.get(f"/orders/{order.merchant_order_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["transactionId"], order.transaction_id)
        self.assertEqual(resp.json()["status"], PENDING)

    def test_detail_not_found(self):
        resp = self.client.get("/orders/TX_0000000000000_000000000000")
        self.assertEqual(resp.status_code, 404)

    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get",
           return_value=FakeResponse(200, {"state": "COMPLETED", "paymentDetails": [{"transactionId": "OM1"}]}))
    def test_status_check_reconciles(self, get, post):
        order = make_order()
        resp = self.client.post(f"/orders/{order.transaction_id}/status")

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], COMPLETED)
        self.assertTrue(resp.json()["changed"])
        self.assertEqual(resp.json()["payment"]["gatewayTransactionId"], "OM1")

    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get", side_effect=requests.Timeout("slow"))
    def test_status_check_gateway_down(self, get, post):
        order = make_order()
        resp = self.client.post(f"/orders/{order.transaction_id}/status")
        self.assertEqual(resp.status_code, 502)
        self.assertIsNone(Order.objects.get(pk=order.pk).payment_state.last_checked_at)


class PaymentCallbackViewTests(ViewTestCase):
    def callback_url(self, order):
        return f"/payments/callback/{order.transaction_id}"

    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, {"state": "COMPLETED"}))
    def test_redirect_without_payload_pulls_status(self, get, post):
        order = make_order()
        resp = self.client.get(self.callback_url(order))

        self.assertEqual(resp.status_code, 302)
        self.assertEqual(
            resp.url,
            f"https://shop.example.com/payment-success?orderId={order.pk}&transactionId={order.transaction_id}",
        )
        get.assert_called_once()
        self.assertEqual(Order.objects.get(pk=order.pk).status, COMPLETED)

    @patch("payments.integrations.phonepe.requests.get")
    def test_signed_post_applied_directly(self, get):
        order = make_order()
        response, checksum = signed({
            "code": "PAYMENT_SUCCESS",
            "data": {"merchantTransactionId": order.transaction_id, "transactionId": "T2401", "state": "COMPLETED",
                     "paymentInstrument": {"type": "CARD"}},
        })
        resp = self.client.post(self.callback_url(order), {"response": response}, HTTP_X_VERIFY=checksum)

        self.assertEqual(resp.status_code, 302)
        self.assertTrue(resp.url.startswith("https://shop.example.com/payment-success"))
        payment = Order.objects.get(pk=order.pk).payment_state
        self.assertEqual(payment.status, COMPLETED)
        self.assertEqual(payment.gateway_transaction_id, "T2401")
        self.assertEqual(payment.payment_method, "CARD")
        get.assert_not_called()

    @patch("payments.integrations.phonepe.requests.get")
    def test_signed_failure_redirects_to_failed(self, get):
        order = make_order()
        response, checksum = signed({
            "code": "PAYMENT_ERROR",
            "data": {"merchantTransactionId": order.transaction_id, "state": "FAILED"},
        })
        resp = self.client.post(self.callback_url(order), {"response": response}, HTTP_X_VERIFY=checksum)

        self.assertTrue(resp.url.startswith("https://shop.example.com/payment-failed"))
        self.assertEqual(Order.objects.get(pk=order.pk).status, FAILED)

    @patch("payments.integrations.phonepe.requests.get")
    def test_tampered_payload_changes_nothing(self, get):
        order = make_order()
        response, checksum = signed({"code": "PAYMENT_ERROR", "data": {"merchantTransactionId": order.transaction_id}})
        forged, _ = signed({
            "code": "PAYMENT_SUCCESS",
            "data": {"merchantTransactionId": order.transaction_id, "state": "COMPLETED"},
        })
        before = Order.objects.get(pk=order.pk).payment

        resp = self.client.post(self.callback_url(order), {"response": forged}, HTTP_X_VERIFY=checksum)

        self.assertEqual(resp.status_code, 302)
        self.assertIn("payment-error", resp.url)
        self.assertIn("error=invalid-signature", resp.url)
        self.assertEqual(Order.objects.get(pk=order.pk).payment, before)
        get.assert_not_called()

    def test_undecodable_payload(self):
        order = make_order()
        garbage = "%%%"
        checksum = hashlib.sha256((garbage + "test-salt-key").encode()).hexdigest() + "###1"
        resp = self.client.post(self.callback_url(order), {"response": garbage}, HTTP_X_VERIFY=checksum)
        self.assertIn("error=invalid-payload", resp.url)
        self.assertEqual(Order.objects.get(pk=order.pk).status, PENDING)

    def test_unknown_order(self):
        resp = self.client.get("/payments/callback/TX_0000000000000_000000000000")
        self.assertEqual(resp.status_code, 302)
        self.assertIn("error=order-not-found", resp.url)

    def test_malformed_transaction_id(self):
        resp = self.client.get("/payments/callback/not-a-transaction")
        self.assertEqual(resp.status_code, 400)

    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get", side_effect=requests.ConnectionError("refused"))
    def test_gateway_down_during_pull(self, get, post):
        order = make_order()
        resp = self.client.get(self.callback_url(order))
        self.assertIn("error=callback-failed", resp.url)
        self.assertEqual(Order.objects.get(pk=order.pk).status, PENDING)

    def test_misconfigured_gateway_redirects_to_error(self):
        order = make_order()
        with patch("payments.services.get_client", side_effect=ConfigurationError("APP_BASE_URL is required")):
            resp = self.client.get(self.callback_url(order))

        self.assertEqual(resp.status_code, 302)
        self.assertIn("payment-error", resp.url)
        self.assertIn("error=callback-failed", resp.url)
        self.assertEqual(Order.objects.get(pk=order.pk).status, PENDING)
