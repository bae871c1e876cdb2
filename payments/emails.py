import logging
from typing import List

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template.loader import render_to_string

from orders.models import Order

from .conf import GATEWAY_ID, PAYMENT_ID_META_KEY, GatewayConfig, get_config

logger = logging.getLogger(__name__)


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _from_email() -> str:
    return getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)


def payment_instructions(order, *, sent_to_admin: bool = False, received_url: str = "",
                         config: GatewayConfig | None = None) -> List[str]:
    """Lines the gateway adds to customer emails about ``order``.

    On-hold orders get the configured instructions plus a link back to the
    order page; completed orders get the payment id. Admin copies get nothing.
    """
    if sent_to_admin or order.payment_method != GATEWAY_ID:
        return []
    config = config or get_config()
    lines: List[str] = []
    if order.has_status(Order.STATUS_ON_HOLD):
        if config.instructions:
            lines.append(config.instructions)
        if received_url:
            lines.append(f"To see your order status or finish payment, visit this link: {received_url}")
    elif order.has_status(Order.STATUS_COMPLETED):
        lines.append(f"BitcoiNote Payment ID: {order.get_meta(PAYMENT_ID_META_KEY, '')}")
    return lines


def _send(subject: str, template: str, context: dict, recipient: str) -> None:
    text = render_to_string(f"emails/{template}.txt", context)
    html = render_to_string(f"emails/{template}.html", context)
    msg = EmailMultiAlternatives(subject, text, _from_email(), [recipient])
    msg.attach_alternative(html, "text/html")
    msg.send(fail_silently=_fail_silently())


def send_awaiting_payment_email(order, received_url: str, config: GatewayConfig | None = None) -> None:
    """Tell the customer their order is on hold until the BTCN payment arrives."""
    if not order.billing_email:
        return
    try:
        context = {
            "order": order,
            "site_name": settings.SITE_NAME,
            "received_url": received_url,
            "instructions": payment_instructions(order, received_url=received_url, config=config),
        }
        _send(f"Your {settings.SITE_NAME} order #{order.pk} is awaiting payment",
              "btcn_awaiting_payment", context, order.billing_email)
    except Exception:
        logger.exception("Failed to send awaiting-payment email for order %s", order.pk)


def send_payment_confirmation(order, config: GatewayConfig | None = None) -> None:
    if not order.billing_email:
        return
    try:
        context = {
            "order": order,
            "site_name": settings.SITE_NAME,
            "instructions": payment_instructions(order, config=config),
        }
        _send(f"Payment received: order #{order.pk} – {order.total} {order.currency}",
              "btcn_payment_complete", context, order.billing_email)
    except Exception:
        logger.exception("Failed to send payment confirmation for order %s", order.pk)
