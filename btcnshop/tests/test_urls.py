from django.test import SimpleTestCase
from django.urls import resolve, reverse

from payments import views, webhook


class PaymentRoutesTests(SimpleTestCase):
    def test_ipn_route(self):
        self.assertEqual(reverse('payments:btcn_ipn'), '/payments/ipn')
        self.assertIs(resolve('/payments/ipn/').func, webhook.btcn_ipn)

    def test_order_pages(self):
        self.assertEqual(resolve('/payments/order-received/7/').func, views.order_received_view)
        self.assertEqual(resolve('/payments/view-order/7/').func, views.view_order_view)
        self.assertEqual(resolve('/payments/checkout/7/').func, views.checkout_view)

    def test_unknown_url_is_404(self):
        response = self.client.get('/this-url-does-not-exist/')
        self.assertEqual(response.status_code, 404)
