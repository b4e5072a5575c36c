"""Provider adapters.

Every adapter offers the same operations:

* ``create_session(order, currency)`` opens a provider-side payment and returns
  a :class:`PaymentSession` (provider id + what the client needs to pay).
* ``resume_session(payment)`` rebuilds the session of a still-open payment.
* ``confirm(payment)`` asks the provider for the final word on a payment
  (Stripe: fetch the PaymentIntent; PayPal: capture the approved order).
* ``parse_webhook(request)`` verifies a webhook delivery and reduces it to a
  :class:`ProviderOutcome`.

Provider ids of every shape end up in ``Payment.provider_reference``.
"""
import enum
import json
import logging
from dataclasses import dataclass, field

from django.conf import settings
from django.utils import timezone

from orders.status import PaymentProvider

from .exceptions import WebhookVerificationError
from .integrations import paypal, stripe

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    APPROVED = "approved"  # payer approved; capture still pending on our side
    PENDING = "pending"
    IGNORED = "ignored"


@dataclass(frozen=True)
class PaymentSession:
    provider_reference: str
    client_reference: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderOutcome:
    kind: Outcome
    provider_reference: str = ""
    capture_reference: str = ""
    metadata: dict = field(default_factory=dict)
    event_type: str = ""


class StripeGateway:
    provider = PaymentProvider.STRIPE

    def create_session(self, order, currency) -> PaymentSession:
        intent = stripe.create_payment_intent(
            amount=order.total,
            currency=currency,
            metadata={"order_id": order.pk, "order_number": order.order_number},
            description=f"Payment for Order #{order.order_number}",
        )
        return PaymentSession(
            provider_reference=intent["id"],
            client_reference=intent.get("client_secret", ""),
            metadata={"client_secret": intent.get("client_secret", "")},
        )

    def resume_session(self, payment) -> PaymentSession:
        secret = (payment.metadata or {}).get("client_secret", "")
        return PaymentSession(payment.provider_reference, secret, {"client_secret": secret})

    def confirm(self, payment) -> ProviderOutcome:
        return self.outcome_for_intent(stripe.retrieve_payment_intent(payment.provider_reference))

    poll = confirm

    def parse_webhook(self, request) -> ProviderOutcome:
        event = stripe.construct_event(
            request.body,
            request.headers.get("Stripe-Signature", ""),
            getattr(settings, "STRIPE_WEBHOOK_SECRET", ""),
            tolerance=getattr(settings, "STRIPE_WEBHOOK_TOLERANCE", 300),
        )
        event_type = event.get("type", "")
        intent = ((event.get("data") or {}).get("object")) or {}
        if event_type == "payment_intent.succeeded":
            return self._succeeded(intent, event_type)
        if event_type == "payment_intent.payment_failed":
            return self._failed(intent, event_type)
        return ProviderOutcome(Outcome.IGNORED, intent.get("id", ""), event_type=event_type)

    def outcome_for_intent(self, intent: dict) -> ProviderOutcome:
        status = intent.get("status", "")
        if status == "succeeded":
            return self._succeeded(intent)
        if status == "canceled" or (status == "requires_payment_method" and intent.get("last_payment_error")):
            return self._failed(intent)
        return ProviderOutcome(Outcome.PENDING, intent.get("id", ""))

    def _succeeded(self, intent, event_type=""):
        currency = intent.get("currency", "usd")
        return ProviderOutcome(
            Outcome.SUCCEEDED,
            provider_reference=intent.get("id", ""),
            metadata={"stripe_data": {
                "amount": str(stripe.from_minor_units(intent.get("amount") or 0, currency)),
                "currency": currency,
                "status": intent.get("status"),
                "description": intent.get("description"),
                "completed_at": timezone.now().isoformat(),
            }},
            event_type=event_type,
        )

    def _failed(self, intent, event_type=""):
        error = intent.get("last_payment_error") or {}
        return ProviderOutcome(
            Outcome.FAILED,
            provider_reference=intent.get("id", ""),
            metadata={"stripe_data": {
                "error": error.get("message") or "Unknown error",
                "status": intent.get("status"),
                "failed_at": timezone.now().isoformat(),
            }},
            event_type=event_type,
        )


class PayPalGateway:
    provider = PaymentProvider.PAYPAL

    def __init__(self, client=None):
        self.client = client or paypal.PayPalClient()

    def create_session(self, order, currency) -> PaymentSession:
        created = self.client.create_order(order.total, currency, {
            "order_id": order.pk,
            "order_number": order.order_number,
            "description": f"Payment for Order #{order.order_number}",
        })
        url = paypal.approval_url(created)
        return PaymentSession(
            provider_reference=created["id"],
            client_reference=url,
            metadata={"approval_url": url, "paypal_status": created.get("status", "")},
        )

    def resume_session(self, payment) -> PaymentSession:
        url = (payment.metadata or {}).get("approval_url", "")
        return PaymentSession(payment.provider_reference, url, {"approval_url": url})

    def confirm(self, payment) -> ProviderOutcome:
        return self.outcome_for_order(self.client.capture_order(payment.provider_reference))

    def poll(self, payment) -> ProviderOutcome:
        details = self.client.get_order_details(payment.provider_reference)
        if details.get("status") == "APPROVED":
            return ProviderOutcome(Outcome.APPROVED, details.get("id", ""))
        return self.outcome_for_order(details)

    def parse_webhook(self, request) -> ProviderOutcome:
        try:
            event = json.loads(request.body.decode("utf-8"))
        except ValueError:
            raise WebhookVerificationError("Invalid JSON payload")
        self.client.verify_webhook_signature(request.headers, event)

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        if event_type == "CHECKOUT.ORDER.APPROVED":
            return ProviderOutcome(Outcome.APPROVED, resource.get("id", ""), event_type=event_type)
        if event_type.startswith("PAYMENT.CAPTURE."):
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id", "")
            outcome = self._capture_outcome(resource, order_id)
            return ProviderOutcome(
                outcome.kind, outcome.provider_reference, outcome.capture_reference,
                outcome.metadata, event_type=event_type,
            )
        return ProviderOutcome(Outcome.IGNORED, resource.get("id", ""), event_type=event_type)

    def outcome_for_order(self, order: dict) -> ProviderOutcome:
        capture = paypal.first_capture(order)
        if capture:
            return self._capture_outcome(capture, order.get("id", ""))
        if order.get("status") == "VOIDED":
            return ProviderOutcome(
                Outcome.FAILED, order.get("id", ""), metadata={"paypal_data": {"status": "VOIDED"}},
            )
        return ProviderOutcome(Outcome.PENDING, order.get("id", ""))

    def _capture_outcome(self, capture: dict, order_id: str) -> ProviderOutcome:
        status = capture.get("status", "")
        data = {
            "capture_id": capture.get("id"),
            "status": status,
            "amount": (capture.get("amount") or {}).get("value"),
            "currency": (capture.get("amount") or {}).get("currency_code"),
        }
        if status == "COMPLETED":
            data["completed_at"] = timezone.now().isoformat()
            return ProviderOutcome(Outcome.SUCCEEDED, order_id, capture.get("id", ""), {"paypal_data": data})
        if status in ("DECLINED", "FAILED"):
            data["failed_at"] = timezone.now().isoformat()
            return ProviderOutcome(Outcome.FAILED, order_id, capture.get("id", ""), {"paypal_data": data})
        return ProviderOutcome(Outcome.PENDING, order_id, capture.get("id", ""))


# Every PaymentProvider needs an entry; payments.checks enforces it.
GATEWAYS = {
    PaymentProvider.STRIPE: StripeGateway,
    PaymentProvider.PAYPAL: PayPalGateway,
}


def get_gateway(provider):
    return GATEWAYS[PaymentProvider(provider)]()
