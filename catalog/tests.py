from decimal import Decimal

from django.test import TestCase

from .models import Product


class ProductViewTests(TestCase):
    def setUp(self):
        Product.objects.create(product_id="P1", name="Bhagavad Gita", price=Decimal("499.00"), category="books")
        Product.objects.create(product_id="P2", name="Retired", price=Decimal("99.00"), is_active=False)

    def test_list_only_active(self):
        resp = self.client.get("/products")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([p["id"] for p in resp.json()], ["P1"])
        self.assertEqual(resp.json()[0]["price"], "499.00")

    def test_detail(self):
        self.assertEqual(self.client.get("/products/P1").json()["name"], "Bhagavad Gita")
        self.assertEqual(self.client.get("/products/P2").status_code, 404)
