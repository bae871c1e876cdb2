from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

GATEWAY_ID = "btcn_gateway"
PAYMENT_ID_META_KEY = "btcn_payment_id"


@dataclass(frozen=True)
class GatewayConfig:
    enabled: bool
    title: str
    description: str
    instructions: str
    gateway_url: str
    gateway_username: str
    gateway_password: str
    gateway_ipn_secret: str
    timeout: float = 30.0

    def require_url(self) -> str:
        if not self.gateway_url:
            raise ImproperlyConfigured("BTCN_GATEWAY['URL'] setting is required to reach the gateway service")
        return self.gateway_url.rstrip("/")


def get_config() -> GatewayConfig:
    """Build the gateway configuration from ``settings.BTCN_GATEWAY``.

    Read on every call so ``override_settings`` in tests takes effect.
    """
    raw = getattr(settings, "BTCN_GATEWAY", None) or {}
    description = raw.get("DESCRIPTION", "Pay your order with your BTCN coins")
    return GatewayConfig(
        enabled=bool(raw.get("ENABLED", True)),
        title=raw.get("TITLE", "BitcoiNote"),
        description=description,
        instructions=raw.get("INSTRUCTIONS") or description,
        gateway_url=raw.get("URL", "http://localhost:38071"),
        gateway_username=raw.get("USERNAME", "client"),
        gateway_password=raw.get("PASSWORD", ""),
        gateway_ipn_secret=raw.get("IPN_SECRET", ""),
        timeout=float(raw.get("TIMEOUT", 30)),
    )
