"""Payment provider adapter.

The rest of the code only talks to ``PaymentGateway``; ``RazorpayGateway`` is
the production implementation over the Razorpay REST API.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import List, Optional

import requests
import structlog

from config import Settings
from errors import GatewayError

logger = structlog.get_logger(__name__)

API_URL = "https://api.razorpay.com/v1"
CAPTURED = "captured"


def verify_signature(remote_order_id: str, remote_payment_id: str, supplied_signature: Optional[str], secret: str) -> bool:
    """Check a checkout callback: HMAC-SHA256 of ``"{order}|{payment}"`` keyed by the API secret."""
    if not supplied_signature or not secret:
        return False
    message = f"{remote_order_id}|{remote_payment_id}".encode()
    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode(), supplied_signature.encode())


class PaymentGateway(ABC):
    @abstractmethod
    def create_remote_order(self, amount_minor: int, currency: str, receipt: str, notes: Optional[dict] = None) -> dict:
        ...

    @abstractmethod
    def fetch_payments_for_order(self, remote_order_id: str) -> List[dict]:
        ...

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> dict:
        ...

    @abstractmethod
    def create_payment_link(self, amount_minor: int, currency: str, description: str, customer: dict, callback_url: str, notes: Optional[dict] = None) -> dict:
        ...

    @abstractmethod
    def fetch_payment_link(self, payment_link_id: str) -> dict:
        ...

    @abstractmethod
    def refund(self, payment_id: str, amount_minor: Optional[int] = None) -> dict:
        ...

    @abstractmethod
    def verify_signature(self, remote_order_id: str, remote_payment_id: str, supplied_signature: Optional[str]) -> bool:
        ...


class RazorpayGateway(PaymentGateway):
    """Talks to the Razorpay REST API with HTTP basic auth (key id / key secret)."""

    def __init__(self, key_id: str, key_secret: str, timeout: float = 10.0, session: Optional[requests.Session] = None, base_url: str = API_URL):
        self._secret = key_secret
        self._timeout = timeout
        self._base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.auth = (key_id, key_secret)

    def _call(self, operation: str, method: str, path: str, payload: Optional[dict] = None) -> dict:
        try:
            response = self._session.request(method, f"{self._base_url}{path}", json=payload, timeout=self._timeout)
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("gateway_error", operation=operation, error=str(exc))
            raise GatewayError(operation, str(exc))

    def create_remote_order(self, amount_minor, currency, receipt, notes=None):
        data = {"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes or {}}
        return self._call("create_order", "POST", "/orders", data)

    def fetch_payments_for_order(self, remote_order_id):
        response = self._call("fetch_order_payments", "GET", f"/orders/{remote_order_id}/payments")
        return list((response or {}).get("items", []))

    def fetch_payment(self, payment_id):
        return self._call("fetch_payment", "GET", f"/payments/{payment_id}")

    def create_payment_link(self, amount_minor, currency, description, customer, callback_url, notes=None):
        data = {
            "amount": amount_minor,
            "currency": currency,
            "description": description,
            "customer": customer,
            "notify": {"sms": False, "email": True},
            "reminder_enable": True,
            "callback_url": callback_url,
            "callback_method": "get",
            "notes": notes or {},
        }
        return self._call("create_payment_link", "POST", "/payment_links", data)

    def fetch_payment_link(self, payment_link_id):
        return self._call("fetch_payment_link", "GET", f"/payment_links/{payment_link_id}")

    def refund(self, payment_id, amount_minor=None):
        data = {"amount": amount_minor} if amount_minor else {}
        return self._call("refund", "POST", f"/payments/{payment_id}/refund", data)

    def verify_signature(self, remote_order_id, remote_payment_id, supplied_signature):
        return verify_signature(remote_order_id, remote_payment_id, supplied_signature, self._secret)


def build_gateway(settings: Settings) -> Optional[PaymentGateway]:
    if not settings.razorpay_configured:
        logger.warning("razorpay_not_configured")
        return None
    return RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        timeout=settings.gateway_timeout_seconds,
    )
