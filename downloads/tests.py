import tempfile
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch
from urllib.parse import urlparse

import requests
from django.test import SimpleTestCase, TestCase, override_settings

from catalog.models import Product
from payments.exceptions import AuthorizationError, ConfigurationError, NotFoundError
from payments.integrations.phonepe import get_client
from payments.state import COMPLETED, FAILED
from payments.test_gateway import FakeResponse
from payments.tests import make_order

from .signers import LocalFileSigner, safe_file_name

SIGNED = FakeResponse(200, {"signedURL": "/object/sign/products/gita.pdf?token=abc"})


class DownloadTestCase(TestCase):
    def setUp(self):
        self.product = Product.objects.create(
            product_id="P1", name="Bhagavad Gita", price=Decimal("499.00"),
            storage_bucket="products", file_name="gita.pdf",
        )

    def download(self, product_id, **params):
        return self.client.get(f"/downloads/{product_id}", params)


class SignedDownloadTests(DownloadTestCase):
    @patch("downloads.signers.requests.post", return_value=SIGNED)
    def test_paid_order_gets_signed_url(self, post):
        order = make_order(status=COMPLETED)
        resp = self.download("P1", orderId=order.transaction_id)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {
            "success": True,
            "productId": "P1",
            "signedUrl": "https://storage.example.com/storage/v1/object/sign/products/gita.pdf?token=abc",
            "expiresIn": 60,
            "fileName": "gita.pdf",
        })
        self.assertEqual(post.call_args.args[0], "https://storage.example.com/storage/v1/object/sign/products/gita.pdf")
        self.assertEqual(post.call_args.kwargs["json"], {"expiresIn": 60})
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer service-role-key")

    @patch("downloads.signers.requests.post", return_value=SIGNED)
    def test_transaction_id_alias_and_merchant_order_id(self, post):
        order = make_order(status=COMPLETED)
        self.assertEqual(self.download("P1", transactionId=order.transaction_id).status_code, 200)
        self.assertEqual(self.download("P1", orderId=order.merchant_order_id).status_code, 200)

    @patch("downloads.signers.requests.post")
    def test_unpaid_orders_refused(self, post):
        for status in ("pending", FAILED):
            order = make_order(status=status)
            resp = self.download("P1", orderId=order.transaction_id)
            self.assertEqual(resp.status_code, 403)
            self.assertFalse(resp.json()["success"])
        post.assert_not_called()

    @patch("downloads.signers.requests.post")
    def test_product_not_in_order(self, post):
        Product.objects.create(product_id="P2", name="Japa Mala", price=Decimal("120.00"), file_name="japa.pdf")
        order = make_order(status=COMPLETED)
        resp = self.download("P2", orderId=order.transaction_id)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["message"], "Product not part of this order")
        post.assert_not_called()

    def test_missing_or_unknown_order(self):
        self.assertEqual(self.download("P1").status_code, 400)
        self.assertEqual(self.download("P1", orderId="TX_0000000000000_000000000000").status_code, 404)

    def test_product_missing_from_catalog(self):
        order = make_order(status=COMPLETED, items=[
            {"product_id": "P9", "name": "Retired", "price": "499.00", "quantity": 1},
        ])
        self.assertEqual(self.download("P9", orderId=order.transaction_id).status_code, 404)

    def test_product_without_file(self):
        Product.objects.filter(pk=self.product.pk).update(file_name="")
        order = make_order(status=COMPLETED)
        resp = self.download("P1", orderId=order.transaction_id)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.json()["message"], "No file configured for product")

    @patch("downloads.signers.requests.post", side_effect=requests.Timeout("slow"))
    def test_storage_unavailable(self, post):
        order = make_order(status=COMPLETED)
        resp = self.download("P1", orderId=order.transaction_id)
        self.assertEqual(resp.status_code, 502)

    @patch("downloads.signers.requests.post", return_value=FakeResponse(400, {"error": "not_found"}))
    def test_storage_refuses(self, post):
        order = make_order(status=COMPLETED)
        self.assertEqual(self.download("P1", orderId=order.transaction_id).status_code, 502)


class LocalDownloadTests(DownloadTestCase):
    def setUp(self):
        super().setUp()
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        (self.root / "gita.pdf").write_bytes(b"%PDF-1.4 gita")
        overrides = override_settings(DOWNLOADS={
            "BACKEND": "local", "URL_TTL": 60, "PRODUCTS_FOLDER": str(self.root), "SIGNING_KEY": "local-key",
        })
        overrides.enable()
        self.addCleanup(overrides.disable)

    def test_signed_link_streams_file(self):
        order = make_order(status=COMPLETED)
        resp = self.download("P1", orderId=order.transaction_id)
        self.assertEqual(resp.status_code, 200)
        signed_url = resp.json()["signedUrl"]
        self.assertTrue(signed_url.startswith("https://api.example.com/downloads/file/"))

        file_resp = self.client.get(urlparse(signed_url).path)
        self.assertEqual(file_resp.status_code, 200)
        self.assertEqual(b"".join(file_resp.streaming_content), b"%PDF-1.4 gita")
        self.assertIn("attachment", file_resp["Content-Disposition"])
        self.assertEqual(file_resp["Cache-Control"], "no-cache")
        file_resp.close()

    def test_expired_link(self):
        token = urlparse(LocalFileSigner().sign("", "gita.pdf", -10)).path.rsplit("/", 1)[-1]
        with self.assertRaisesMessage(AuthorizationError, "Download link expired"):
            LocalFileSigner().resolve(token)
        self.assertEqual(self.client.get(f"/downloads/file/{token}").status_code, 403)

    def test_forged_link(self):
        other = LocalFileSigner(root=str(self.root), secret="someone-else")
        token = urlparse(other.sign("", "gita.pdf", 60)).path.rsplit("/", 1)[-1]
        self.assertEqual(self.client.get(f"/downloads/file/{token}").status_code, 403)

    def test_paths_stay_inside_products_folder(self):
        signer = LocalFileSigner()
        self.assertEqual(signer.sandboxed_path("../../gita.pdf"), (self.root / "gita.pdf").resolve())
        with self.assertRaises(NotFoundError):
            signer.sandboxed_path("../../etc/passwd")


class SafeFileNameTests(SimpleTestCase):
    def test_strips_directories_and_forces_pdf(self):
        self.assertEqual(safe_file_name("books/gita.pdf"), "gita.pdf")
        self.assertEqual(safe_file_name("..\\..\\secret"), "secret.pdf")

    def test_blank_name(self):
        with self.assertRaises(ConfigurationError):
            safe_file_name("")


class CheckoutToDownloadTests(DownloadTestCase):
    def setUp(self):
        super().setUp()
        get_client.cache_clear()

    def checkout(self):
        body = {
            "customerName": "Asha",
            "customerEmail": "asha@example.com",
            "customerPhone": "9876543210",
            "items": [{"id": "P1", "name": "Bhagavad Gita", "price": 499, "quantity": 2}],
            "totalAmount": 998,
        }
        pay = FakeResponse(200, {"orderId": "OMO1", "state": "PENDING", "redirectUrl": "https://mercury/pay"})
        token = FakeResponse(200, {"access_token": "tok", "expires_in": 3600})
        with patch("payments.integrations.phonepe.requests.post", side_effect=[token, pay]):
            resp = self.client.post("/orders", data=body, content_type="application/json")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["paymentUrl"], "https://mercury/pay")
        return resp.json()

    def poll(self, order, provider_body):
        with patch("payments.integrations.phonepe.requests.get", return_value=FakeResponse(200, provider_body)):
            return self.client.post(f"/orders/{order['transactionId']}/status").json()

    @patch("downloads.signers.requests.post", return_value=SIGNED)
    def test_paid_order_downloads(self, post):
        order = self.checkout()
        summary = self.poll(order, {"state": "COMPLETED", "paymentDetails": [{"transactionId": "OM1"}]})
        self.assertEqual(summary["status"], COMPLETED)
        self.assertIsNotNone(summary["payment"]["paidAt"])

        resp = self.download("P1", orderId=order["transactionId"])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["expiresIn"], 60)

    @patch("downloads.signers.requests.post", return_value=SIGNED)
    def test_failed_order_refused(self, post):
        order = self.checkout()
        summary = self.poll(order, {"state": "FAILED", "errorCode": "TXN_DECLINED"})
        self.assertEqual(summary["status"], FAILED)
        self.assertEqual(summary["payment"]["failureReason"], "TXN_DECLINED")

        self.assertEqual(self.download("P1", orderId=order["transactionId"]).status_code, 403)
        post.assert_not_called()

    @patch("payments.integrations.phonepe.requests.post")
    def test_underpriced_checkout_never_reaches_gateway(self, post):
        body = {
            "customerName": "Asha",
            "customerEmail": "asha@example.com",
            "customerPhone": "9876543210",
            "items": [{"id": "P1", "name": "Bhagavad Gita", "price": 1, "quantity": 1}],
            "totalAmount": 1,
        }
        resp = self.client.post("/orders", data=body, content_type="application/json")

        self.assertEqual(resp.status_code, 400)
        post.assert_not_called()
        self.assertEqual(self.download("P1", orderId="anything").status_code, 404)
