from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.utils import timezone

from orders.models import Order

from .tests import GATEWAY, FakeResponse, tx_payload


@override_settings(BTCN_GATEWAY=GATEWAY)
class ReconcileBtcnOrdersTests(TestCase):
    def _order(self, payment_id, status=Order.STATUS_ON_HOLD, payment_method="btcn_gateway"):
        order = Order.objects.create(
            total=Decimal("10.00"),
            status=status,
            payment_method=payment_method,
            metadata={"btcn_payment_id": payment_id},
        )
        Order.objects.filter(pk=order.pk).update(updated_at=timezone.now() - timedelta(minutes=10))
        return order

    def _run(self, *args):
        out = StringIO()
        call_command("reconcile_btcn_orders", "--sleep", "0", *args, stdout=out)
        return out.getvalue()

    def test_completes_paid_orders_only(self):
        paid = self._order("P1")
        waiting = self._order("P2")
        self._order("P3", payment_method="cod")
        self._order("P4", status=Order.STATUS_COMPLETED)

        def respond(method, url, **kwargs):
            if url.endswith("/P1"):
                return FakeResponse(200, tx_payload("P1", "completed"))
            if url.endswith("/P2"):
                return FakeResponse(200, tx_payload("P2", "pending"))
            raise AssertionError(f"unexpected lookup {url}")

        with patch("payments.integrations.btcn.requests.request", side_effect=respond):
            output = self._run()

        paid.refresh_from_db()
        waiting.refresh_from_db()
        self.assertEqual(paid.status, Order.STATUS_COMPLETED)
        self.assertEqual(waiting.status, Order.STATUS_ON_HOLD)
        self.assertIn("Checked 2, completed 1 orders.", output)

    def test_gateway_errors_are_reported_and_skipped(self):
        order = self._order("P1")
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            output = self._run()
        self.assertIn(f"Order {order.pk}:", output)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)

    def test_recent_orders_are_left_alone(self):
        order = Order.objects.create(
            total=Decimal("10.00"), status=Order.STATUS_ON_HOLD, payment_method="btcn_gateway",
            metadata={"btcn_payment_id": "P1"},
        )
        with patch("payments.integrations.btcn.requests.request") as req:
            output = self._run("--older-than-minutes", "5")
        req.assert_not_called()
        self.assertIn("No on-hold BTCN orders to reconcile.", output)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)
