import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import transaction

from orders.models import Order
from orders.services import get_order, reduce_order_stock

from .conf import GATEWAY_ID, PAYMENT_ID_META_KEY, GatewayConfig, get_config
from .emails import send_awaiting_payment_email, send_payment_confirmation
from .integrations import btcn
from .integrations.btcn import GatewayError, Transaction
from .utils import verify_ipn_signature

logger = logging.getLogger(__name__)


class InvalidSignature(Exception): pass


class OrderNotFound(Exception): pass


@dataclass(frozen=True)
class CallbackUrls:
    ipn_url: str
    success_url: str
    error_url: str


def get_payment_id(order: Order) -> str | None:
    return order.get_meta(PAYMENT_ID_META_KEY) or None


def create_transaction(order: Order, urls: CallbackUrls, config: GatewayConfig | None = None) -> Transaction:
    """Create a gateway transaction for ``order``, store it on the order and return it.

    The order id travels as ``customData`` and is the only key the IPN
    callback has to find the order again.
    """
    config = config or get_config()
    payload = {
        "amount": str(order.total),
        "currency": order.currency,
        "description": f"{settings.SITE_NAME} Order #{order.pk}",
        "customData": str(order.pk),
        "ipnUrl": urls.ipn_url,
        "successRedirectUrl": urls.success_url,
        "errorRedirectUrl": urls.error_url,
        "allowUserCancel": "1",
    }
    tx = btcn.create_transaction(payload, config=config)
    if not tx.status_url:
        raise GatewayError(f"Gateway transaction {tx.payment_id} has no statusUrl")

    with transaction.atomic():
        order.update_meta(PAYMENT_ID_META_KEY, tx.payment_id)
        moved = order.update_status(Order.STATUS_ON_HOLD, f"Awaiting BTCN payment, payment ID: {tx.payment_id}.")
        if order.has_status(Order.STATUS_ON_HOLD):
            order.add_note(f"New gateway transaction created, payment ID: {tx.payment_id}")
        if moved:
            transaction.on_commit(lambda: send_awaiting_payment_email(order, urls.success_url, config=config))

    logger.info("Created BTCN transaction %s for order %s", tx.payment_id, order.pk)
    return tx


def process_payment(order: Order, urls: CallbackUrls, config: GatewayConfig | None = None) -> str:
    """Start a payment for ``order`` and return the URL the customer pays at."""
    if order.payment_method != GATEWAY_ID:
        order.payment_method = GATEWAY_ID
        order.save(update_fields=["payment_method", "updated_at"])
    tx = create_transaction(order, urls, config=config)
    return tx.status_url


def update_order_status(order: Order, tx: Transaction, config: GatewayConfig | None = None) -> bool:
    """Complete an on-hold order whose transaction has completed.

    Returns True only for the call that performed the transition; repeated
    or concurrent calls with the same transaction change nothing.
    """
    if not tx.is_completed or not order.has_status(Order.STATUS_ON_HOLD):
        return False

    with transaction.atomic():
        note = f"BTCN payment successful, payment ID: {tx.payment_id} ({tx.amount} BTCN)."
        if not order.update_status(Order.STATUS_COMPLETED, note):
            return False
        reduce_order_stock(order)
        transaction.on_commit(lambda: send_payment_confirmation(order, config=config))

    logger.info("Order %s completed by BTCN payment %s", order.pk, tx.payment_id)
    return True


def fetch_transaction(order: Order, config: GatewayConfig | None = None) -> Transaction | None:
    payment_id = get_payment_id(order)
    if not payment_id:
        logger.warning("No payment ID found for order %s", order.pk)
        return None
    return btcn.get_transaction(payment_id, config=config)


def handle_payment_revisit(order: Order, *, urls: CallbackUrls, complete_payment: bool = False,
                           config: GatewayConfig | None = None) -> str | None:
    """Check an on-hold order when its customer comes back to the order page.

    Completes the order if the transaction went through without us seeing
    the IPN. When the customer asked to complete payment, returns the URL
    to send them to: the pending transaction's page or a fresh
    transaction's page. Otherwise returns None.
    """
    if order.payment_method != GATEWAY_ID or not order.has_status(Order.STATUS_ON_HOLD):
        return None

    try:
        tx = fetch_transaction(order, config=config)
        if tx and tx.is_completed:
            update_order_status(order, tx, config=config)
            return None
        if complete_payment:
            if tx and tx.is_pending:
                if not tx.status_url:
                    raise GatewayError(f"Gateway transaction {tx.payment_id} has no statusUrl")
                return tx.status_url
            # old transaction is gone, cancelled or expired
            tx = create_transaction(order, urls, config=config)
            return tx.status_url
    except Exception:
        if complete_payment:
            raise
        logger.exception("Exception during TX verification for order %s", order.pk)
    return None


def handle_ipn(raw_body: bytes, signature: str | None, config: GatewayConfig | None = None) -> Order:
    """Verify and apply an IPN delivery; return the affected order.

    Raises before touching the order if the signature is wrong, the body is
    not a transaction, or the order does not exist.
    """
    config = config or get_config()
    if not verify_ipn_signature(raw_body, signature, config):
        raise InvalidSignature("Invalid signature")

    tx = btcn.parse_transaction(raw_body)
    order = get_order(tx.custom_data) if tx.custom_data is not None else None
    if order is None:
        raise OrderNotFound(f"Order not found: {tx.custom_data}")

    with transaction.atomic():
        expected = get_payment_id(order)
        if expected != tx.payment_id:
            logger.warning('Unexpected payment ID, "%s" instead of "%s" for order %s', tx.payment_id, expected, order.pk)
            order.update_meta(PAYMENT_ID_META_KEY, tx.payment_id)
        update_order_status(order, tx, config=config)
    return order
