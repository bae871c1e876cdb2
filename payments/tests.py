import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import patch

from django.core import mail
from django.core.exceptions import ImproperlyConfigured
from django.test import SimpleTestCase, TestCase, override_settings
from requests import ConnectionError as RequestsConnectionError

from orders.models import Order, OrderLine, Product

from .conf import get_config
from .emails import payment_instructions
from .integrations import btcn
from .integrations.btcn import GatewayError, Transaction
from .services import (
    CallbackUrls,
    InvalidSignature,
    OrderNotFound,
    create_transaction,
    get_payment_id,
    handle_ipn,
    handle_payment_revisit,
    update_order_status,
)
from .utils import ipn_signature, verify_ipn_signature

GATEWAY = {
    "ENABLED": True,
    "TITLE": "BitcoiNote",
    "DESCRIPTION": "Pay your order with your BTCN coins",
    "INSTRUCTIONS": "Send the exact amount.",
    "URL": "http://gateway.test/",
    "USERNAME": "client",
    "PASSWORD": "secret",
    "IPN_SECRET": "ipn-secret",
    "TIMEOUT": 5,
}

URLS = CallbackUrls(
    ipn_url="http://shop.test/payments/ipn",
    success_url="http://shop.test/payments/order-received/1/?key=k",
    error_url="http://shop.test/payments/order-received/1/?key=k",
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


def tx_payload(payment_id="P1", status="pending", amount="10", **extra):
    data = {
        "paymentId": payment_id,
        "status": status,
        "amount": amount,
        "currency": "BTCN",
        "statusUrl": f"http://gateway.test/pay/{payment_id}",
    }
    data.update(extra)
    return data


def sign(body: bytes, secret: str = "ipn-secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_order(status=Order.STATUS_PENDING, payment_id=None, **kwargs):
    defaults = {"total": Decimal("10.00"), "currency": "BTCN", "payment_method": "btcn_gateway",
                "billing_email": "alice@example.com"}
    defaults.update(kwargs)
    order = Order.objects.create(status=status, **defaults)
    if payment_id:
        order.update_meta("btcn_payment_id", payment_id)
    return order


@override_settings(BTCN_GATEWAY=GATEWAY)
class GatewayRequestTests(SimpleTestCase):
    def test_json_body_on_200_and_201(self):
        for code in (200, 201):
            with patch("payments.integrations.btcn.requests.request",
                       return_value=FakeResponse(code, {"ok": True})):
                self.assertEqual(btcn.gateway_request("GET", "/api/ping"), {"ok": True})

    def test_sends_basic_auth_form_body_and_timeout(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(201, {})) as req:
            btcn.gateway_request("POST", "/api/transactions", {"amount": "10"})

        method, url = req.call_args.args
        self.assertEqual(method, "POST")
        self.assertEqual(url, "http://gateway.test/api/transactions")
        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["data"], {"amount": "10"})
        self.assertEqual(kwargs["timeout"], 5.0)
        self.assertEqual((kwargs["auth"].username, kwargs["auth"].password), ("client", "secret"))

    def test_204_is_empty(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(204)):
            self.assertIsNone(btcn.gateway_request("DELETE", "/api/transactions/P1"))

    def test_404_empty_only_when_allowed(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(404, text="nope")):
            self.assertIsNone(btcn.gateway_request("GET", "/api/transactions/P1", null_on_404=True))
            with self.assertRaises(GatewayError) as cm:
                btcn.gateway_request("GET", "/api/transactions/P1")
        self.assertIn("status: 404", str(cm.exception))

    def test_unexpected_status_raises(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="boom")):
            with self.assertRaises(GatewayError) as cm:
                btcn.gateway_request("GET", "/api/transactions/P1", null_on_404=True)
        self.assertIn("boom", str(cm.exception))

    def test_transport_failure_raises(self):
        with patch("payments.integrations.btcn.requests.request", side_effect=RequestsConnectionError("refused")):
            with self.assertRaises(GatewayError):
                btcn.gateway_request("GET", "/api/transactions/P1")

    def test_invalid_json_raises(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(200, text="<html>")):
            with self.assertRaises(GatewayError):
                btcn.gateway_request("GET", "/api/transactions/P1")

    def test_get_transaction_tolerates_404(self):
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(404)):
            self.assertIsNone(btcn.get_transaction("P1"))


class TransactionPayloadTests(SimpleTestCase):
    def test_parses_payload(self):
        tx = Transaction.from_payload(tx_payload(status="completed", amount=10, customData=42))
        self.assertEqual(tx.payment_id, "P1")
        self.assertTrue(tx.is_completed)
        self.assertEqual(tx.amount, Decimal("10"))
        self.assertEqual(tx.custom_data, "42")
        self.assertEqual(tx.status_url, "http://gateway.test/pay/P1")

    def test_missing_fields_rejected(self):
        with self.assertRaises(GatewayError) as cm:
            Transaction.from_payload({"status": "pending"})
        self.assertIn("paymentId", str(cm.exception))
        self.assertIn("amount", str(cm.exception))

    def test_unknown_status_rejected(self):
        with self.assertRaises(GatewayError):
            Transaction.from_payload(tx_payload(status="refunded"))

    def test_bad_amount_and_non_object_rejected(self):
        with self.assertRaises(GatewayError):
            Transaction.from_payload(tx_payload(amount="ten"))
        with self.assertRaises(GatewayError):
            Transaction.from_payload(["P1"])

    def test_non_finite_amount_rejected(self):
        for amount in ("NaN", "Infinity", "-Infinity", "sNaN"):
            with self.assertRaises(GatewayError):
                Transaction.from_payload(tx_payload(amount=amount))


class IpnSignatureTests(SimpleTestCase):
    body = b'{"paymentId":"P1","status":"completed","amount":10,"customData":"1"}'

    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_matching_signature_passes(self):
        self.assertEqual(ipn_signature(self.body), sign(self.body))
        self.assertTrue(verify_ipn_signature(self.body, sign(self.body)))
        self.assertTrue(verify_ipn_signature(self.body, sign(self.body).upper()))

    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_any_altered_byte_fails(self):
        good = sign(self.body)
        for i in range(len(self.body)):
            altered = bytearray(self.body)
            altered[i] ^= 0x01
            self.assertFalse(verify_ipn_signature(bytes(altered), good))

    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_other_secret_or_missing_header_fails(self):
        self.assertFalse(verify_ipn_signature(self.body, sign(self.body, "other-secret")))
        self.assertFalse(verify_ipn_signature(self.body, None))
        self.assertFalse(verify_ipn_signature(self.body, ""))

    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_non_ascii_header_fails(self):
        self.assertFalse(verify_ipn_signature(self.body, "é" * 64))
        self.assertFalse(verify_ipn_signature(self.body, sign(self.body)[:-1] + "é"))

    @override_settings(BTCN_GATEWAY={**GATEWAY, "IPN_SECRET": ""})
    def test_missing_secret_is_configuration_error(self):
        with self.assertLogs("payments.utils", level="ERROR"):
            with self.assertRaises(ImproperlyConfigured):
                verify_ipn_signature(self.body, sign(self.body))


class GatewayConfigTests(SimpleTestCase):
    @override_settings(BTCN_GATEWAY={"IPN_SECRET": "s"})
    def test_defaults(self):
        config = get_config()
        self.assertTrue(config.enabled)
        self.assertEqual(config.title, "BitcoiNote")
        self.assertEqual(config.gateway_url, "http://localhost:38071")
        self.assertEqual(config.gateway_username, "client")
        self.assertEqual(config.instructions, "Pay your order with your BTCN coins")
        self.assertEqual(config.timeout, 30.0)

    @override_settings(BTCN_GATEWAY={"URL": ""})
    def test_missing_url_is_configuration_error(self):
        with self.assertRaises(ImproperlyConfigured):
            btcn.gateway_request("GET", "/api/transactions/P1")


@override_settings(BTCN_GATEWAY=GATEWAY, SITE_NAME="Test Shop")
class CreateTransactionTests(TestCase):
    def test_stores_payment_id_and_puts_order_on_hold(self):
        order = make_order()
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P1"))) as req:
            tx = create_transaction(order, URLS)

        self.assertEqual(tx.payment_id, "P1")
        sent = req.call_args.kwargs["data"]
        self.assertEqual(sent, {
            "amount": "10.00",
            "currency": "BTCN",
            "description": f"Test Shop Order #{order.pk}",
            "customData": str(order.pk),
            "ipnUrl": URLS.ipn_url,
            "successRedirectUrl": URLS.success_url,
            "errorRedirectUrl": URLS.error_url,
            "allowUserCancel": "1",
        })
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(get_payment_id(order), "P1")
        self.assertTrue(order.notes.filter(content="New gateway transaction created, payment ID: P1").exists())

    def test_regeneration_keeps_on_hold_and_overwrites_id(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P2"))):
            create_transaction(order, URLS)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(get_payment_id(order), "P2")
        self.assertEqual(order.notes.count(), 1)

    def test_gateway_failure_leaves_order_untouched(self):
        order = make_order()
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertRaises(GatewayError):
                create_transaction(order, URLS)

        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_PENDING)
        self.assertIsNone(get_payment_id(order))
        self.assertEqual(order.notes.count(), 0)

    def test_missing_status_url_is_gateway_error(self):
        order = make_order()
        payload = tx_payload("P1")
        del payload["statusUrl"]
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(201, payload)):
            with self.assertRaises(GatewayError):
                create_transaction(order, URLS)
        self.assertIsNone(get_payment_id(Order.objects.get(pk=order.pk)))

    def test_sends_awaiting_payment_email(self):
        order = make_order()
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P1"))):
            with self.captureOnCommitCallbacks(execute=True):
                create_transaction(order, URLS)

        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["alice@example.com"])
        self.assertIn("Send the exact amount.", mail.outbox[0].body)
        self.assertIn(URLS.success_url, mail.outbox[0].body)


@override_settings(BTCN_GATEWAY=GATEWAY)
class UpdateOrderStatusTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Mug", sku="MUG", price=Decimal("10"), manage_stock=True, stock_quantity=3)
        self.order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        OrderLine.objects.create(order=self.order, product=self.product, quantity=1, unit_price=Decimal("10"))
        self.completed = Transaction.from_payload(tx_payload("P1", "completed", 10))

    def test_completes_on_hold_order_once(self):
        self.assertTrue(update_order_status(self.order, self.completed))
        self.assertFalse(update_order_status(self.order, self.completed))

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_COMPLETED)
        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 2)
        notes = self.order.notes.filter(content__contains="BTCN payment successful")
        self.assertEqual(notes.count(), 1)
        self.assertIn("P1", notes.get().content)
        self.assertIn("(10 BTCN)", notes.get().content)

    def test_stale_duplicate_delivery_is_noop(self):
        stale = Order.objects.get(pk=self.order.pk)
        self.assertTrue(update_order_status(self.order, self.completed))
        self.assertFalse(update_order_status(stale, self.completed))

        self.product.refresh_from_db()
        self.assertEqual(self.product.stock_quantity, 2)
        self.assertEqual(self.order.notes.filter(content__contains="BTCN payment successful").count(), 1)

    def test_other_statuses_never_mutate(self):
        for status in ("pending", "cancelled", "expired"):
            tx = Transaction.from_payload(tx_payload("P1", status))
            self.assertFalse(update_order_status(self.order, tx))
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(self.order.notes.count(), 0)

    def test_not_on_hold_is_ignored(self):
        pending = make_order(status=Order.STATUS_PENDING)
        self.assertFalse(update_order_status(pending, self.completed))
        pending.refresh_from_db()
        self.assertEqual(pending.status, Order.STATUS_PENDING)

    def test_sends_confirmation_with_payment_id(self):
        with self.captureOnCommitCallbacks(execute=True):
            update_order_status(self.order, self.completed)

        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("BitcoiNote Payment ID: P1", mail.outbox[0].body)


@override_settings(BTCN_GATEWAY=GATEWAY)
class HandlePaymentRevisitTests(TestCase):
    def test_ignores_orders_of_other_gateways_or_states(self):
        other = make_order(status=Order.STATUS_ON_HOLD, payment_method="cod")
        pending = make_order(status=Order.STATUS_PENDING, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request") as req:
            self.assertIsNone(handle_payment_revisit(other, urls=URLS, complete_payment=True))
            self.assertIsNone(handle_payment_revisit(pending, urls=URLS, complete_payment=True))
        req.assert_not_called()

    def test_completed_transaction_completes_order(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "completed"))) as req:
            self.assertIsNone(handle_payment_revisit(order, urls=URLS, complete_payment=True))

        self.assertEqual(req.call_args.args, ("GET", "http://gateway.test/api/transactions/P1"))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_COMPLETED)

    def test_pending_without_request_changes_nothing(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "pending"))):
            self.assertIsNone(handle_payment_revisit(order, urls=URLS))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)

    def test_pending_with_request_redirects_to_existing(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(200, tx_payload("P1", "pending"))) as req:
            url = handle_payment_revisit(order, urls=URLS, complete_payment=True)

        self.assertEqual(url, "http://gateway.test/pay/P1")
        self.assertEqual(req.call_count, 1)

    def test_cancelled_with_request_creates_new_transaction(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        responses = [FakeResponse(200, tx_payload("P1", "cancelled")), FakeResponse(201, tx_payload("P2"))]
        with patch("payments.integrations.btcn.requests.request", side_effect=responses) as req:
            url = handle_payment_revisit(order, urls=URLS, complete_payment=True)

        self.assertEqual(url, "http://gateway.test/pay/P2")
        self.assertEqual([c.args[0] for c in req.call_args_list], ["GET", "POST"])
        order.refresh_from_db()
        self.assertEqual(get_payment_id(order), "P2")
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)

    def test_unknown_transaction_with_request_creates_new_transaction(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        responses = [FakeResponse(404), FakeResponse(201, tx_payload("P2"))]
        with patch("payments.integrations.btcn.requests.request", side_effect=responses):
            url = handle_payment_revisit(order, urls=URLS, complete_payment=True)
        self.assertEqual(url, "http://gateway.test/pay/P2")

    def test_missing_payment_id_with_request_creates_transaction(self):
        order = make_order(status=Order.STATUS_ON_HOLD)
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P9"))) as req:
            with self.assertLogs("payments.services", level="WARNING"):
                url = handle_payment_revisit(order, urls=URLS, complete_payment=True)

        self.assertEqual(url, "http://gateway.test/pay/P9")
        self.assertEqual(req.call_args.args[0], "POST")

    def test_failure_is_logged_and_swallowed_without_request(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertLogs("payments.services", level="ERROR") as cm:
                self.assertIsNone(handle_payment_revisit(order, urls=URLS))
        self.assertIn(str(order.pk), cm.output[0])

    def test_failure_propagates_with_request(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        with patch("payments.integrations.btcn.requests.request", return_value=FakeResponse(500, text="down")):
            with self.assertRaises(GatewayError):
                handle_payment_revisit(order, urls=URLS, complete_payment=True)


@override_settings(BTCN_GATEWAY=GATEWAY)
class HandleIpnTests(TestCase):
    def _body(self, order_id, payment_id="P1", status="completed", amount=10):
        return json.dumps({"paymentId": payment_id, "status": status, "amount": amount,
                           "customData": str(order_id)}).encode()

    def test_invalid_signature_mutates_nothing(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        body = self._body(order.pk)
        with self.assertRaises(InvalidSignature):
            handle_ipn(body, sign(body, "wrong"))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)

    def test_unknown_order(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        body = self._body(order.pk + 1000, payment_id="P9")
        with self.assertRaises(OrderNotFound):
            handle_ipn(body, sign(body))
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(order.get_meta("btcn_payment_id"), "P1")
        self.assertFalse(order.notes.exists())

    def test_missing_custom_data_is_unknown_order(self):
        body = json.dumps({"paymentId": "P1", "status": "completed", "amount": 10}).encode()
        with self.assertRaises(OrderNotFound):
            handle_ipn(body, sign(body))

    def test_malformed_body(self):
        body = b"not json"
        with self.assertRaises(GatewayError):
            handle_ipn(body, sign(body))

    def test_mismatched_payment_id_is_overwritten(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        body = self._body(order.pk, payment_id="P2", status="pending")
        with self.assertLogs("payments.services", level="WARNING") as cm:
            handle_ipn(body, sign(body))
        self.assertIn('"P2" instead of "P1"', cm.output[0])
        order.refresh_from_db()
        self.assertEqual(get_payment_id(order), "P2")
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)


@override_settings(BTCN_GATEWAY=GATEWAY, SITE_NAME="Test Shop")
class EndToEndTests(TestCase):
    def test_checkout_then_ipn_completes_order(self):
        order = make_order(total=Decimal("10"), currency="BTCN")
        with patch("payments.integrations.btcn.requests.request",
                   return_value=FakeResponse(201, tx_payload("P1"))):
            create_transaction(order, URLS)
        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_ON_HOLD)
        self.assertEqual(get_payment_id(order), "P1")

        body = json.dumps({"paymentId": "P1", "status": "completed", "amount": 10,
                           "customData": str(order.pk)}).encode()
        handle_ipn(body, sign(body))

        order.refresh_from_db()
        self.assertEqual(order.status, Order.STATUS_COMPLETED)
        note = order.notes.get(content__contains="BTCN payment successful").content
        self.assertIn("P1", note)
        self.assertIn("10", note)


class PaymentInstructionsTests(TestCase):
    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_admin_copies_and_other_gateways_get_nothing(self):
        order = make_order(status=Order.STATUS_ON_HOLD)
        self.assertEqual(payment_instructions(order, sent_to_admin=True), [])
        other = make_order(status=Order.STATUS_ON_HOLD, payment_method="cod")
        self.assertEqual(payment_instructions(other), [])

    @override_settings(BTCN_GATEWAY=GATEWAY)
    def test_on_hold_and_completed_lines(self):
        order = make_order(status=Order.STATUS_ON_HOLD, payment_id="P1")
        self.assertEqual(payment_instructions(order, received_url="http://shop.test/o/1"), [
            "Send the exact amount.",
            "To see your order status or finish payment, visit this link: http://shop.test/o/1",
        ])
        order.status = Order.STATUS_COMPLETED
        self.assertEqual(payment_instructions(order), ["BitcoiNote Payment ID: P1"])
