from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth.models import User
from django.test import TestCase, override_settings
from django.urls import reverse

from orders.models import Order

from .tests import GATEWAY, FakeResponse, tx_payload


@override_settings(BTCN_GATEWAY=GATEWAY, SITE_NAME="Test Shop")
class CheckoutViewTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(total=Decimal("10.00"), currency="BTCN", billing_email="bob@example.com")
        self.url = reverse("payments:checkout", kwargs={"order_id": self.order.pk})

    def test_get_shows_gateway(self):
        resp = self.client.get(self.url, {"key": self.order.order_key})
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "BitcoiNote")
        self.assertContains(resp, "Pay your order with your BTCN coins")

    def test_wrong_key_is_404(self):
        resp = self.client.get(self.url, {"key": "nope"})
        self.assertEqual(resp.status_code, 404)

    def test_post_creates_transaction_and_redirects(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P1"))) as req:
            resp = self.client.post(self.url, {"key": self.order.order_key})

        self.assertEqual(resp.status_code, 302)
        self.assertEqual(resp["Location"], "http://gateway.test/pay/P1")
        sent = req.call_args.kwargs["data"]
        received = f"http://testserver/payments/order-received/{self.order.pk}/?key={self.order.order_key}"
        self.assertEqual(sent["ipnUrl"], "http://testserver/payments/ipn")
        self.assertEqual(sent["successRedirectUrl"], received)
        self.assertEqual(sent["errorRedirectUrl"], received)
        self.assertEqual(sent["customData"], str(self.order.pk))

        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_method, "btcn_gateway")
        self.assertEqual(self.order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(self.order.get_meta("btcn_payment_id"), "P1")

    def test_gateway_failure_is_bad_request(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertLogs("payments.views", level="ERROR") as cm:
                resp = self.client.post(self.url, {"key": self.order.order_key})

        self.assertEqual(resp.status_code, 400)
        self.assertIn(f"Reference ID: {self.order.pk}", resp.content.decode())
        self.assertIn(str(self.order.pk), cm.output[0])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_PENDING)

    @override_settings(BTCN_GATEWAY={**GATEWAY, "ENABLED": False})
    def test_disabled_gateway(self):
        with patch("payments.integrations.btcn.requests.request") as req:
            resp = self.client.post(self.url, {"key": self.order.order_key})
        self.assertEqual(resp.status_code, 400)
        req.assert_not_called()

    def test_already_on_hold_goes_to_order_page(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.STATUS_ON_HOLD)
        resp = self.client.get(self.url, {"key": self.order.order_key})
        self.assertEqual(resp.status_code, 302)
        self.assertIn("/payments/order-received/", resp["Location"])


@override_settings(BTCN_GATEWAY=GATEWAY)
class OrderReceivedViewTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(
            total=Decimal("10.00"),
            currency="BTCN",
            status=Order.STATUS_ON_HOLD,
            payment_method="btcn_gateway",
            metadata={"btcn_payment_id": "P1"},
        )
        self.url = reverse("payments:order_received", kwargs={"order_id": self.order.pk})

    def _get(self, **params):
        return self.client.get(self.url, {"key": self.order.order_key, **params})

    def test_pending_payment_shows_reminder(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "pending"))):
            resp = self._get()

        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "We didn't receive your payment yet!")
        self.assertContains(resp, "Complete Payment")
        self.assertContains(resp, "completePayment=1")
        self.assertContains(resp, "Send the exact amount.")

    def test_completed_payment_completes_order(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "completed"))):
            resp = self._get(paymentId="P1", status="completed")

        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Your payment was successful!")
        self.assertNotContains(resp, "Complete Payment")
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_COMPLETED)

    def test_cancelled_return_notice(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "cancelled"))):
            resp = self._get(paymentId="P1", status="cancelled")
        self.assertContains(resp, "Your payment was cancelled!")

    def test_expired_return_notice(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "expired"))):
            resp = self._get(paymentId="P1", status="expired")
        self.assertContains(resp, "Your payment has expired!")

    def test_complete_payment_redirects_to_pending_transaction(self):
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "pending"))):
            resp = self._get(completePayment="1")
        self.assertEqual(resp.status_code, 302)
        self.assertEqual(resp["Location"], "http://gateway.test/pay/P1")

    def test_complete_payment_replaces_cancelled_transaction(self):
        responses = [FakeResponse(200, tx_payload("P1", "cancelled")), FakeResponse(201, tx_payload("P2"))]
        with patch("payments.integrations.btcn.requests.request", side_effect=responses):
            resp = self._get(completePayment="1")
        self.assertEqual(resp.status_code, 302)
        self.assertEqual(resp["Location"], "http://gateway.test/pay/P2")
        self.order.refresh_from_db()
        self.assertEqual(self.order.get_meta("btcn_payment_id"), "P2")

    def test_complete_payment_failure_is_surfaced(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertLogs("payments.views", level="ERROR"):
                resp = self._get(completePayment="1")
        self.assertEqual(resp.status_code, 502)
        self.assertContains(resp, "could not reach the payment gateway", status_code=502)

    def test_lookup_failure_without_request_still_renders(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertLogs("payments.services", level="ERROR"):
                resp = self._get()
        self.assertEqual(resp.status_code, 200)
        self.assertContains(resp, "Complete Payment")

    def test_wrong_key_is_404(self):
        resp = self.client.get(self.url, {"key": "nope"})
        self.assertEqual(resp.status_code, 404)

    def test_key_of_another_order_is_404(self):
        other = Order.objects.create(total=Decimal("5.00"))
        resp = self.client.get(self.url, {"key": other.order_key})
        self.assertEqual(resp.status_code, 404)


@override_settings(BTCN_GATEWAY=GATEWAY)
class ViewOrderViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("carol", "carol@example.com", "pw")
        self.order = Order.objects.create(
            total=Decimal("10.00"),
            customer=self.user,
            status=Order.STATUS_ON_HOLD,
            payment_method="btcn_gateway",
            metadata={"btcn_payment_id": "P1"},
        )
        self.url = reverse("payments:view_order", kwargs={"order_id": self.order.pk})

    def test_requires_login(self):
        resp = self.client.get(self.url)
        self.assertEqual(resp.status_code, 302)

    def test_other_customers_order_is_404(self):
        User.objects.create_user("dave", "dave@example.com", "pw")
        self.client.login(username="dave", password="pw")
        resp = self.client.get(self.url)
        self.assertEqual(resp.status_code, 404)

    def test_owner_sees_poll_result(self):
        self.client.login(username="carol", password="pw")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "completed"))):
            resp = self.client.get(self.url)
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_COMPLETED)
