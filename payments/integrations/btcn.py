import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

import requests
from requests import RequestException
from requests.auth import HTTPBasicAuth

from ..conf import GatewayConfig, get_config

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Accept": "application/json"}

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"
TRANSACTION_STATUSES = {STATUS_PENDING, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_EXPIRED}


class GatewayError(Exception): pass


@dataclass(frozen=True)
class Transaction:
    payment_id: str
    status: str
    amount: Decimal
    currency: str = ""
    status_url: str = ""
    custom_data: str | None = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    @classmethod
    def from_payload(cls, data) -> "Transaction":
        if not isinstance(data, dict):
            raise GatewayError(f"Malformed transaction payload: expected object, got {type(data).__name__}")
        missing = [k for k in ("paymentId", "status", "amount") if data.get(k) in (None, "")]
        if missing:
            raise GatewayError(f"Malformed transaction payload, missing fields: {', '.join(missing)}")
        status = str(data["status"])
        if status not in TRANSACTION_STATUSES:
            raise GatewayError(f"Malformed transaction payload, unknown status: {status}")
        try:
            amount = Decimal(str(data["amount"]))
        except (InvalidOperation, ValueError):
            raise GatewayError(f"Malformed transaction payload, invalid amount: {data['amount']!r}")
        if not amount.is_finite():
            raise GatewayError(f"Malformed transaction payload, invalid amount: {data['amount']!r}")
        custom = data.get("customData")
        return cls(
            payment_id=str(data["paymentId"]),
            status=status,
            amount=amount,
            currency=str(data.get("currency") or ""),
            status_url=str(data.get("statusUrl") or ""),
            custom_data=None if custom is None else str(custom),
            raw=data,
        )


def _auth(config: GatewayConfig) -> HTTPBasicAuth:
    return HTTPBasicAuth(config.gateway_username, config.gateway_password)


def gateway_request(method: str, path: str, body: dict | None = None, null_on_404: bool = False,
                    config: GatewayConfig | None = None):
    """Send a request to the gateway service.

    Returns the decoded JSON body on 200/201, ``None`` on 204 (and on 404
    when ``null_on_404`` is set). Anything else raises :class:`GatewayError`.
    """
    config = config or get_config()
    url = config.require_url() + path
    try:
        resp = requests.request(
            method, url, data=body or None, headers=COMMON_HEADERS, auth=_auth(config), timeout=config.timeout
        )
    except RequestException as e:
        raise GatewayError(f"Gateway request failed, error: {e}")

    code = resp.status_code
    if code == 204:
        return None
    if code in (200, 201):
        try:
            return resp.json()
        except ValueError:
            raise GatewayError(f"Gateway request failed, invalid JSON body (status {code}): {resp.text[:800]}")
    if code == 404 and null_on_404:
        return None
    logger.warning("Gateway %s %s returned HTTP %s", method, path, code)
    raise GatewayError(f"Gateway request failed, status: {code}, data: {resp.text[:800]}")


def create_transaction(payload: dict, config: GatewayConfig | None = None) -> Transaction:
    data = gateway_request("POST", "/api/transactions", payload, config=config)
    if data is None:
        raise GatewayError("Gateway returned no transaction for create request")
    return Transaction.from_payload(data)


def get_transaction(payment_id: str, config: GatewayConfig | None = None) -> Transaction | None:
    data = gateway_request("GET", f"/api/transactions/{payment_id}", null_on_404=True, config=config)
    if data is None:
        return None
    return Transaction.from_payload(data)


def parse_transaction(raw_body: bytes) -> Transaction:
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise GatewayError(f"Malformed transaction payload: {e}")
    return Transaction.from_payload(data)
