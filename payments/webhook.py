import logging

from django.http import HttpResponse, HttpResponseBadRequest, HttpResponseForbidden, HttpResponseNotFound
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from .integrations.btcn import GatewayError
from .services import InvalidSignature, OrderNotFound, handle_ipn

logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def btcn_ipn(request):
    """IPN callback from the gateway service.

    Only a plain ``OK`` with HTTP 200 counts as delivered; every other
    response makes the gateway redeliver later.
    """
    signature = request.headers.get("X-IPN-Signature", "")
    try:
        order = handle_ipn(request.body, signature)
    except InvalidSignature:
        logger.warning("Rejected IPN with invalid signature from %s", request.META.get("REMOTE_ADDR"))
        return HttpResponseForbidden("Invalid signature")
    except GatewayError as e:
        logger.warning("Rejected malformed IPN: %s", e)
        return HttpResponseBadRequest("Invalid payload")
    except OrderNotFound as e:
        logger.warning("Rejected IPN: %s", e)
        return HttpResponseNotFound("Order not found")

    logger.info("IPN processed for order %s (status %s)", order.pk, order.status)
    return HttpResponse("OK", content_type="text/plain")
