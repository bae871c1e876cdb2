"""Signature helpers for gateway IPN callbacks."""

import hashlib
import hmac
import logging

from django.core.exceptions import ImproperlyConfigured

from .conf import GatewayConfig, get_config

logger = logging.getLogger(__name__)


def ipn_signature(raw_body: bytes, config: GatewayConfig | None = None) -> str:
    """Return the hex HMAC-SHA256 of ``raw_body`` keyed with the IPN secret.

    The gateway signs the exact bytes it sends, so the body must not be
    parsed or re-serialized before hashing. Raises
    :class:`~django.core.exceptions.ImproperlyConfigured` when
    ``settings.BTCN_GATEWAY['IPN_SECRET']`` is missing.
    """
    config = config or get_config()
    if not config.gateway_ipn_secret:
        logger.error("BTCN gateway IPN_SECRET missing in settings")
        raise ImproperlyConfigured(
            "BTCN_GATEWAY['IPN_SECRET'] setting is required to verify IPN signatures"
        )
    secret = config.gateway_ipn_secret.encode("utf-8")
    return hmac.new(secret, raw_body, hashlib.sha256).hexdigest()


def verify_ipn_signature(raw_body: bytes, received_sig: str | None, config: GatewayConfig | None = None) -> bool:
    expected = ipn_signature(raw_body, config)
    received = (received_sig or "").strip().lower()
    # compare bytes; compare_digest rejects non-ASCII str
    return hmac.compare_digest(expected.encode("ascii"), received.encode("utf-8", "replace"))
