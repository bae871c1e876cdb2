import hashlib
import hmac
import json
from decimal import Decimal
from django.test import TestCase, override_settings
from django.urls import reverse

from orders.models import Order


@override_settings(
    EMAIL_BACKEND='django.core.mail.backends.locmem.EmailBackend',
    BTCN_GATEWAY={'URL': 'http://gateway.test', 'IPN_SECRET': 'ipn-secret'},
)
class BtcnIpnTests(TestCase):
    def setUp(self):
        self.order = Order.objects.create(
            total=Decimal('10.00'),
            currency='BTCN',
            status='on-hold',
            payment_method='btcn_gateway',
            metadata={'btcn_payment_id': 'P1'},
        )

    def _post(self, payload, secret='ipn-secret', signature=None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        if signature is None:
            signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return self.client.post(
            reverse('payments:btcn_ipn'),
            data=body,
            content_type='application/json',
            HTTP_X_IPN_SIGNATURE=signature,
        )

    def _payload(self, **overrides):
        payload = {'paymentId': 'P1', 'status': 'completed', 'amount': 10, 'customData': str(self.order.pk)}
        payload.update(overrides)
        return payload

    def test_completed_transaction_completes_order(self):
        resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b'OK')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'completed')

    def test_redelivery_is_acknowledged_without_second_transition(self):
        self._post(self._payload())
        resp = self._post(self._payload())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.order.notes.filter(content__contains='BTCN payment successful').count(), 1)

    def test_wrong_secret_rejected(self):
        resp = self._post(self._payload(), secret='other')
        self.assertEqual(resp.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'on-hold')

    def test_missing_signature_rejected(self):
        resp = self._post(self._payload(), signature='')
        self.assertEqual(resp.status_code, 403)

    def test_non_ascii_signature_rejected(self):
        resp = self._post(self._payload(), signature='é' * 64)
        self.assertEqual(resp.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'on-hold')

    def test_tampered_body_rejected(self):
        body = json.dumps(self._payload(status='pending')).encode()
        signature = hmac.new(b'ipn-secret', body, hashlib.sha256).hexdigest()
        tampered = body.replace(b'pending', b'completed')
        resp = self._post(tampered, signature=signature)
        self.assertEqual(resp.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'on-hold')

    def test_unknown_order_not_acknowledged(self):
        resp = self._post(self._payload(customData='999999'))
        self.assertEqual(resp.status_code, 404)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'on-hold')
        self.assertEqual(self.order.get_meta('btcn_payment_id'), 'P1')

    def test_malformed_payload_rejected(self):
        resp = self._post(b'{"paymentId": "P1"}')
        self.assertEqual(resp.status_code, 400)

    def test_cancelled_transaction_leaves_order_on_hold(self):
        resp = self._post(self._payload(status='cancelled'))
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, 'on-hold')

    def test_get_not_allowed(self):
        resp = self.client.get(reverse('payments:btcn_ipn'))
        self.assertEqual(resp.status_code, 405)
