from django.test import TestCase, override_settings


@override_settings(DEBUG=False)
class ErrorHandlerTests(TestCase):
    def test_unknown_url_returns_json_404(self):
        response = self.client.get('/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"success": False, "message": "Not found"})

    def test_health_reports_database(self):
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "healthy", "database": "ok"})

    def test_payment_requests_are_logged(self):
        with self.assertLogs('storefront.middleware', level='INFO') as logs:
            self.client.get('/orders/TX_0000000000000_000000000000', HTTP_USER_AGENT='pytest')
        self.assertIn('ua=pytest', logs.output[0])
