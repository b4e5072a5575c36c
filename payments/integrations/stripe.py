"""Minimal Stripe REST client: PaymentIntents and webhook signature checks."""
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal, ROUND_HALF_UP

import requests
from django.conf import settings
from requests import RequestException

from payments.exceptions import ProviderCommunicationFailure, WebhookVerificationError

logger = logging.getLogger(__name__)

TIMEOUT = 30
# Currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = {"bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga", "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf"}


class StripeError(ProviderCommunicationFailure): pass


class StripeSignatureError(WebhookVerificationError): pass


def _base_url() -> str:
    return getattr(settings, "STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")


def _headers() -> dict:
    key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not key: raise StripeError("Missing STRIPE_SECRET_KEY")
    return {"Authorization": f"Bearer {key}"}


def to_minor_units(amount, currency: str) -> int:
    amount = Decimal(str(amount))
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int, currency: str) -> Decimal:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(value)
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def _request(method: str, path: str, data=None) -> dict:
    url = f"{_base_url()}{path}"
    try:
        resp = requests.request(method, url, headers=_headers(), data=data, timeout=TIMEOUT)
    except RequestException as e:
        logger.exception("Stripe %s %s failed", method, path)
        raise StripeError(f"Stripe request failed: {e}")
    try: body = resp.json()
    except ValueError: body = {"raw": resp.text}
    if resp.status_code >= 400:
        message = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
        logger.error("Stripe %s %s -> %s: %s", method, path, resp.status_code, json.dumps(body)[:800])
        raise StripeError(f"Stripe error {resp.status_code}: {message or 'unexpected response'}")
    return body


def create_payment_intent(*, amount, currency: str, metadata: dict, description: str = "") -> dict:
    data = {
        "amount": to_minor_units(amount, currency),
        "currency": currency.lower(),
        "description": description,
        "automatic_payment_methods[enabled]": "true",
    }
    for key, value in (metadata or {}).items():
        data[f"metadata[{key}]"] = str(value)
    return _request("POST", "/v1/payment_intents", data=data)


def retrieve_payment_intent(intent_id: str) -> dict:
    return _request("GET", f"/v1/payment_intents/{intent_id}")


def construct_event(payload: bytes, sig_header: str, secret: str, tolerance: int = 300) -> dict:
    """Verify a ``Stripe-Signature`` header and return the decoded event.

    The header looks like ``t=<unix ts>,v1=<hex hmac>[,v1=...]``; the signed
    message is ``"<t>.<raw body>"`` with HMAC-SHA256 under the endpoint secret.
    """
    if not secret:
        raise StripeSignatureError("Missing webhook secret")
    if not sig_header:
        raise StripeSignatureError("Missing Stripe-Signature header")

    timestamp, signatures = None, []
    for part in sig_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise StripeSignatureError("Malformed Stripe-Signature header")
    try:
        ts = int(timestamp)
    except ValueError:
        raise StripeSignatureError("Malformed timestamp in Stripe-Signature header")

    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    signed = f"{timestamp}.".encode("utf-8") + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise StripeSignatureError("No signature matches the expected signature")
    if tolerance and abs(time.time() - ts) > tolerance:
        raise StripeSignatureError("Timestamp outside the tolerance zone")

    try:
        return json.loads(payload.decode("utf-8"))
    except ValueError:
        raise StripeSignatureError("Invalid payload")
