import logging

from django.contrib.auth.decorators import login_required
from django.http import Http404, HttpResponseBadRequest
from django.shortcuts import redirect, render
from django.urls import reverse
from django.views.decorators.http import require_GET, require_http_methods

from orders.models import Order
from orders.services import get_order, get_order_by_key

from .conf import GATEWAY_ID, get_config
from .integrations.btcn import GatewayError
from .services import CallbackUrls, handle_payment_revisit, process_payment

logger = logging.getLogger(__name__)

RETURN_NOTICES = {
    "cancelled": ("notice-error", "Your payment was cancelled!"),
    "expired": ("notice-error", "Your payment has expired!"),
}


def order_received_url(request, order) -> str:
    path = reverse("payments:order_received", kwargs={"order_id": order.pk})
    return request.build_absolute_uri(f"{path}?key={order.order_key}")


def callback_urls(request, order) -> CallbackUrls:
    received = order_received_url(request, order)
    return CallbackUrls(
        ipn_url=request.build_absolute_uri(reverse("payments:btcn_ipn")),
        success_url=received,
        error_url=received,
    )


def _return_notice(request):
    # the gateway appends paymentId and status when it sends the customer back
    if "paymentId" not in request.GET:
        return None
    css, text = RETURN_NOTICES.get(
        request.GET.get("status", ""), ("notice-message", "Your payment was successful!")
    )
    return {"css": css, "text": text}


def _order_page(request, order):
    """Shared body of the order-received and view-order pages."""
    config = get_config()
    received_url = order_received_url(request, order)
    complete_payment = bool(request.GET.get("completePayment"))

    error = None
    status = 200
    try:
        pay_url = handle_payment_revisit(
            order, urls=callback_urls(request, order), complete_payment=complete_payment, config=config
        )
    except GatewayError as e:
        logger.error("Could not complete payment for order %s: %s", order.pk, e)
        pay_url = None
        error = f"We could not reach the payment gateway. Please try again in a minute. Reference ID: {order.pk}"
        status = 502

    if pay_url:
        return redirect(pay_url)

    needs_payment = order.payment_method == GATEWAY_ID and order.has_status(Order.STATUS_ON_HOLD)
    ctx = {
        "order": order,
        "notice": _return_notice(request),
        "error": error,
        "needs_payment": needs_payment,
        "complete_payment_url": f"{received_url}&completePayment=1",
        "instructions": config.instructions if needs_payment else "",
    }
    return render(request, "payments/order.html", ctx, status=status)


@require_http_methods(["GET", "POST"])
def checkout_view(request, order_id: str):
    order = get_order(order_id)
    key = request.POST.get("key") or request.GET.get("key") or ""
    if order is None or key != order.order_key:
        raise Http404("Order not found")

    config = get_config()
    if not config.enabled:
        return HttpResponseBadRequest("BTCN payments are currently disabled")
    if not order.has_status(Order.STATUS_PENDING, Order.STATUS_FAILED):
        return redirect(order_received_url(request, order))

    if request.method == "GET":
        return render(request, "payments/checkout.html", {"order": order, "gateway": config})

    try:
        pay_url = process_payment(order, callback_urls(request, order), config=config)
    except GatewayError:
        logger.exception("BTCN transaction creation failed for order %s", order.pk)
        return HttpResponseBadRequest(f"Could not create payment session. Reference ID: {order.pk}")
    return redirect(pay_url)


@require_GET
def order_received_view(request, order_id: str):
    order = get_order_by_key(request.GET.get("key"))
    if order is None or str(order.pk) != order_id:
        raise Http404("Order not found")
    return _order_page(request, order)


@login_required
@require_GET
def view_order_view(request, order_id: str):
    order = get_order(order_id)
    if order is None or order.customer_id != request.user.id:
        raise Http404("Order not found")
    return _order_page(request, order)
