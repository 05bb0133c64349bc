import base64
import hashlib
import json
import threading
import time
from decimal import Decimal
from unittest.mock import patch

import requests
from django.conf import settings
from django.test import SimpleTestCase

from .exceptions import CallbackDecodeError, ConfigurationError, GatewayError, ValidationError
from .integrations.phonepe import (
    AccessCredential, PaymentRequest, PhonePeClient, ProviderState, ProviderStatus, TokenCache,
)


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text or json.dumps(data)

    def json(self):
        if self._data is None:
            raise ValueError("No JSON object could be decoded")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")


TOKEN_OK = FakeResponse(200, {"access_token": "tok", "expires_in": 3600})


def make_client(clock=None, **overrides):
    cache = TokenCache(clock=clock) if clock else TokenCache()
    return PhonePeClient({**settings.PHONEPE, **overrides}, token_cache=cache)


def make_request(**overrides):
    fields = dict(
        amount=Decimal("499.00"),
        customer_phone="9876543210",
        customer_name="Asha",
        customer_email="asha@example.com",
        merchant_transaction_id="TX_1700000000000_0123456789ab",
        merchant_order_id="ORDER_P1_3210_1700000000000_1234",
    )
    fields.update(overrides)
    return PaymentRequest(**fields)


class TokenCacheTests(SimpleTestCase):
    def test_fresh_token_is_reused(self):
        now = [1000.0]
        cache = TokenCache(clock=lambda: now[0])
        calls = []

        def refresh():
            calls.append(1)
            return AccessCredential(token=f"tok{len(calls)}", expires_at=now[0] + 60)

        self.assertEqual(cache.get(refresh), "tok1")
        self.assertEqual(cache.get(refresh), "tok1")
        now[0] += 61
        self.assertEqual(cache.get(refresh), "tok2")
        self.assertEqual(len(calls), 2)

    def test_failed_refresh_is_not_cached(self):
        cache = TokenCache()
        self.assertIsNone(cache.get(lambda: None))
        self.assertIsNone(cache.credential)

    def test_concurrent_readers_share_one_refresh(self):
        cache = TokenCache()
        calls = []

        def refresh():
            calls.append(1)
            time.sleep(0.05)
            return AccessCredential(token="shared", expires_at=time.time() + 600)

        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get(refresh))) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results, ["shared"] * 8)
        self.assertEqual(len(calls), 1)


class CredentialExchangeTests(SimpleTestCase):
    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    def test_expiry_keeps_refresh_margin(self, post):
        client = make_client(clock=lambda: 1000.0)
        self.assertEqual(client.get_access_token(), "tok")
        self.assertEqual(client.token_cache.credential.expires_at, 1000.0 + 3600 - 300)

        url = post.call_args.args[0]
        self.assertTrue(url.endswith("/v1/oauth/token"))
        self.assertEqual(post.call_args.kwargs["data"]["grant_type"], "client_credentials")
        self.assertEqual(post.call_args.kwargs["timeout"], 5)

    @patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, {"access_token": "t",
                                                                                           "expires_at": 5000}))
    def test_absolute_expiry_preferred(self, post):
        client = make_client(clock=lambda: 1000.0)
        client.get_access_token()
        self.assertEqual(client.token_cache.credential.expires_at, 4700)

    @patch("payments.integrations.phonepe.requests.post", side_effect=requests.Timeout("timed out"))
    def test_sandbox_failure_yields_no_token(self, post):
        client = make_client()
        self.assertIsNone(client.get_access_token())
        with self.assertRaisesMessage(GatewayError, "Access token required"):
            client.initiate_payment(make_request())

    @patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(401, {"message": "bad"}))
    def test_production_failure_raises(self, post):
        client = make_client(PRODUCTION=True)
        with self.assertRaises(GatewayError):
            client.get_access_token()

    @patch("payments.integrations.phonepe.requests.post", return_value=FakeResponse(200, {"access_token": "t"}))
    def test_missing_expiry_is_not_cached(self, post):
        client = make_client()
        self.assertIsNone(client.get_access_token())
        self.assertIsNone(client.token_cache.credential)

        with self.assertRaisesMessage(GatewayError, "No token expiry"):
            make_client(PRODUCTION=True).get_access_token()

    @patch("payments.integrations.phonepe.requests.post",
           return_value=FakeResponse(200, {"access_token": "t", "expires_at": "tomorrow"}))
    def test_invalid_expiry_is_a_gateway_error(self, post):
        self.assertIsNone(make_client().get_access_token())
        with self.assertRaisesMessage(GatewayError, "Invalid token expiry"):
            make_client(PRODUCTION=True).get_access_token()

    def test_missing_app_base_url(self):
        with self.settings(APP_BASE_URL=""), self.assertRaises(ConfigurationError):
            PhonePeClient(dict(settings.PHONEPE))


class InitiatePaymentTests(SimpleTestCase):
    @patch("payments.integrations.phonepe.requests.post")
    def test_success_returns_redirect_url(self, post):
        post.side_effect = [
            TOKEN_OK,
            FakeResponse(200, {"orderId": "OMO1", "state": "PENDING", "redirectUrl": "https://mercury/pay"}),
        ]
        request = make_request()
        result = make_client().initiate_payment(request)

        self.assertTrue(result.success)
        self.assertEqual(result.payment_url, "https://mercury/pay")
        self.assertEqual(result.state, "PENDING")

        url = post.call_args.args[0]
        body = post.call_args.kwargs["json"]
        headers = post.call_args.kwargs["headers"]
        self.assertTrue(url.endswith("/checkout/v2/pay"))
        self.assertEqual(headers["Authorization"], "O-Bearer tok")
        self.assertEqual(body["amount"], 49900)
        self.assertEqual(body["merchantOrderId"], request.merchant_order_id)
        self.assertEqual(
            body["paymentFlow"]["merchantUrls"]["redirectUrl"],
            f"https://api.example.com/payments/callback/{request.merchant_transaction_id}",
        )

    @patch("payments.integrations.phonepe.requests.post")
    def test_rejection_maps_to_failed_result(self, post):
        post.side_effect = [TOKEN_OK, FakeResponse(400, {"code": "BAD_REQUEST", "message": "Invalid amount"})]
        with self.assertLogs("payments.integrations.phonepe", level="ERROR"):
            result = make_client().initiate_payment(make_request())

        self.assertFalse(result.success)
        self.assertEqual(result.error, "Invalid amount")
        self.assertEqual(result.debug["status_code"], 400)

    @patch("payments.integrations.phonepe.requests.post")
    def test_network_error_maps_to_failed_result(self, post):
        post.side_effect = [TOKEN_OK, requests.ConnectionError("refused")]
        result = make_client().initiate_payment(make_request())
        self.assertFalse(result.success)
        self.assertIn("refused", result.error)

    @patch("payments.integrations.phonepe.requests.post")
    def test_invalid_request_never_reaches_gateway(self, post):
        client = make_client()
        for bad in (make_request(amount=Decimal("0")), make_request(customer_phone="12345"),
                    make_request(customer_name="  ")):
            with self.assertRaises(ValidationError):
                client.initiate_payment(bad)
        post.assert_not_called()


class CheckStatusTests(SimpleTestCase):
    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get")
    def test_status_request(self, get, post):
        get.return_value = FakeResponse(200, {"state": "COMPLETED", "amount": 49900})
        data = make_client().check_payment_status("ORDER_P1_3210_1700000000000_1234")

        self.assertEqual(data["state"], "COMPLETED")
        url = get.call_args.args[0]
        headers = get.call_args.kwargs["headers"]
        self.assertTrue(url.endswith("/checkout/v2/order/ORDER_P1_3210_1700000000000_1234/status"))
        self.assertEqual(headers["X-MERCHANT-ID"], "TESTMERCHANT")
        self.assertEqual(headers["Authorization"], "O-Bearer tok")

    @patch("payments.integrations.phonepe.requests.post", return_value=TOKEN_OK)
    @patch("payments.integrations.phonepe.requests.get")
    def test_failures_raise_gateway_error(self, get, post):
        client = make_client()
        for outcome in (requests.Timeout("slow"), FakeResponse(500, {"message": "down"}),
                        FakeResponse(200, None, text="<html>")):
            get.side_effect = [outcome]
            with self.assertRaises(GatewayError):
                client.check_payment_status("ORDER_P1_3210_1700000000000_1234")

    def test_requires_order_id(self):
        with self.assertRaises(ValidationError):
            make_client().check_payment_status("")


class CallbackVerificationTests(SimpleTestCase):
    def setUp(self):
        self.client_ = make_client()
        self.payload = {"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TX_1", "state": "COMPLETED"}}
        self.response = base64.b64encode(json.dumps(self.payload).encode()).decode()

    def checksum(self, response):
        return hashlib.sha256((response + "test-salt-key").encode()).hexdigest() + "###1"

    def test_valid_checksum(self):
        result = self.client_.verify_callback(self.response, self.checksum(self.response))
        self.assertTrue(result.is_valid)
        self.assertEqual(result.data, self.payload)

    def test_tampered_payload(self):
        tampered = base64.b64encode(b'{"code": "PAYMENT_SUCCESS", "data": {"merchantTransactionId": "TX_2"}}').decode()
        result = self.client_.verify_callback(tampered, self.checksum(self.response))
        self.assertFalse(result.is_valid)
        self.assertEqual(result.error, "Checksum mismatch")

    def test_missing_material(self):
        self.assertFalse(self.client_.verify_callback("", "x###1").is_valid)
        self.assertFalse(self.client_.verify_callback(self.response, None).is_valid)

    def test_undecodable_payload(self):
        garbage = "not base64 !!"
        with self.assertRaises(CallbackDecodeError):
            self.client_.verify_callback(garbage, self.checksum(garbage))


class ProviderStatusTests(SimpleTestCase):
    def test_order_status_body(self):
        status = ProviderStatus.from_payload({
            "orderId": "OMO1",
            "state": "FAILED",
            "errorCode": "TXN_DECLINED",
            "paymentDetails": [
                {"transactionId": "OM1", "paymentMode": "UPI_INTENT", "state": "FAILED"},
                {"transactionId": "OM2", "paymentMode": "CARD", "state": "FAILED"},
            ],
        })
        self.assertIs(status.state, ProviderState.FAILED)
        self.assertEqual(status.gateway_transaction_id, "OM2")
        self.assertEqual(status.payment_method, "CARD")
        self.assertEqual(status.failure_reason, "TXN_DECLINED")

    def test_webhook_envelope(self):
        status = ProviderStatus.from_payload({
            "event": "checkout.order.completed",
            "payload": {"state": "COMPLETED", "paymentDetails": [{"transactionId": "OM9"}]},
        })
        self.assertIs(status.state, ProviderState.COMPLETED)
        self.assertEqual(status.gateway_transaction_id, "OM9")
        self.assertEqual(status.payment_method, "UPI")

    def test_redirect_callback_code(self):
        status = ProviderStatus.from_payload({"code": "PAYMENT_PENDING", "data": {"merchantTransactionId": "TX_1"}})
        self.assertIs(status.state, ProviderState.PENDING)

    def test_unrecognised_state(self):
        with self.assertLogs("payments.integrations.phonepe", level="WARNING"):
            status = ProviderStatus.from_payload({"state": "REVERSED"})
        self.assertIs(status.state, ProviderState.UNKNOWN)
