"""PayPal Orders v2 client (OAuth client credentials) and webhook verification."""
import json
import logging
from decimal import Decimal

import requests
from django.conf import settings
from requests import RequestException
from requests.auth import HTTPBasicAuth

from payments.exceptions import ProviderCommunicationFailure, WebhookVerificationError

logger = logging.getLogger(__name__)

TIMEOUT = 30
SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

# Headers PayPal signs webhook deliveries with
SIGNATURE_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


class PayPalError(ProviderCommunicationFailure): pass


class PayPalSignatureError(WebhookVerificationError): pass


class PayPalClient:
    def __init__(self, client_id=None, client_secret=None, mode=None):
        self.client_id = client_id if client_id is not None else getattr(settings, "PAYPAL_CLIENT_ID", "")
        self.client_secret = client_secret if client_secret is not None else getattr(settings, "PAYPAL_CLIENT_SECRET", "")
        mode = mode or getattr(settings, "PAYPAL_MODE", "sandbox")
        self.base_url = SANDBOX_URL if mode == "sandbox" else LIVE_URL
        self._access_token = None

    def _token(self) -> str:
        if self._access_token:
            return self._access_token
        if not (self.client_id and self.client_secret):
            raise PayPalError("Missing PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET")
        data = self._call(
            "POST", "/v1/oauth2/token",
            auth=HTTPBasicAuth(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
            what="access token",
        )
        self._access_token = data["access_token"]
        return self._access_token

    def _call(self, method, path, *, what, **kwargs) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, timeout=TIMEOUT, **kwargs)
        except RequestException as e:
            logger.exception("PayPal %s request failed", what)
            raise PayPalError(f"PayPal {what} request failed: {e}")
        try: body = resp.json()
        except ValueError: body = {"raw": resp.text}
        if resp.status_code >= 400:
            logger.error("PayPal %s failed: status=%s body=%s", what, resp.status_code, json.dumps(body)[:800])
            raise PayPalError(f"PayPal {what} failed: HTTP {resp.status_code}")
        return body

    def _authed(self, method, path, *, what, **kwargs) -> dict:
        headers = {"Authorization": f"Bearer {self._token()}", "Content-Type": "application/json"}
        return self._call(method, path, what=what, headers=headers, **kwargs)

    def create_order(self, amount, currency="USD", metadata=None) -> dict:
        metadata = metadata or {}
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "currency_code": currency.upper(),
                    "value": f"{Decimal(str(amount)):.2f}",
                },
                "description": metadata.get("description", "Order Payment"),
                "reference_id": metadata.get("order_number", ""),
                "custom_id": str(metadata.get("order_id", "")),
            }],
            "application_context": {
                "return_url": metadata.get("return_url") or settings.PAYMENTS_RETURN_URL,
                "cancel_url": metadata.get("cancel_url") or settings.PAYMENTS_CANCEL_URL,
                "brand_name": getattr(settings, "PAYPAL_BRAND_NAME", ""),
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
            },
        }
        return self._authed("POST", "/v2/checkout/orders", json=payload, what="order creation")

    def capture_order(self, order_id: str) -> dict:
        return self._authed("POST", f"/v2/checkout/orders/{order_id}/capture", json={}, what="order capture")

    def get_order_details(self, order_id: str) -> dict:
        return self._authed("GET", f"/v2/checkout/orders/{order_id}", what="order details")

    def verify_webhook_signature(self, headers, event: dict, webhook_id=None) -> None:
        """Ask PayPal to verify a webhook delivery; raises ``PayPalSignatureError`` if it does not."""
        webhook_id = webhook_id or getattr(settings, "PAYPAL_WEBHOOK_ID", "")
        if not webhook_id:
            raise PayPalSignatureError("Missing PAYPAL_WEBHOOK_ID")
        payload = {key: headers.get(header, "") for key, header in SIGNATURE_HEADERS.items()}
        missing = [SIGNATURE_HEADERS[k] for k, v in payload.items() if not v]
        if missing:
            raise PayPalSignatureError(f"Missing headers: {', '.join(missing)}")
        payload["webhook_id"] = webhook_id
        payload["webhook_event"] = event
        result = self._authed(
            "POST", "/v1/notifications/verify-webhook-signature", json=payload, what="webhook verification",
        )
        if result.get("verification_status") != "SUCCESS":
            raise PayPalSignatureError(f"Verification status: {result.get('verification_status')}")


def approval_url(order: dict) -> str:
    for link in order.get("links") or []:
        if link.get("rel") in ("approve", "payer-action"):
            return link.get("href", "")
    return ""


def first_capture(order: dict) -> dict:
    for unit in order.get("purchase_units") or []:
        captures = ((unit.get("payments") or {}).get("captures")) or []
        if captures:
            return captures[0]
    return {}
