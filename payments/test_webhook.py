import hashlib
import hmac
import json
import time
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.test import TestCase, override_settings
from django.urls import reverse

from orders.services import place_order
from orders.status import OrderStatus, PaymentProvider, PaymentStatus

from .integrations.paypal import PayPalClient, PayPalError, PayPalSignatureError
from .models import Payment

User = get_user_model()

ITEMS = [{"product_id": 1, "name": "Gita", "price": "100.00", "quantity": 1}]


def stripe_signature(body: str, secret="whsec_test"):
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


@override_settings(
    EMAIL_BACKEND="django.core.mail.backends.locmem.EmailBackend",
    ORDERS_EVENT_HANDLERS=["orders.emails.send_order_status_email"],
)
class StripeWebhookTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)
        self.payment = Payment.objects.create(
            order=self.order, payer=self.user, provider=PaymentProvider.STRIPE,
            provider_reference="pi_123", amount=self.order.total,
        )

    def _post(self, payload: dict, signature=None):
        body = json.dumps(payload)
        with self.captureOnCommitCallbacks(execute=True):
            return self.client.post(
                reverse("payments:stripe_webhook"),
                data=body,
                content_type="application/json",
                HTTP_STRIPE_SIGNATURE=signature if signature is not None else stripe_signature(body),
            )

    def _event(self, event_type="payment_intent.succeeded", intent_id="pi_123", **intent):
        return {
            "id": "evt_1",
            "type": event_type,
            "data": {"object": {"id": intent_id, "amount": 11300, "currency": "usd", **intent}},
        }

    def test_succeeded_marks_order_paid(self):
        resp = self._post(self._event(status="succeeded"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "processed")
        self.assertEqual(resp.json()["order_status"], "paid")
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.metadata["stripe_data"]["amount"], "113.00")
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self.order.transaction_id, "pi_123")
        self.assertEqual(len(mail.outbox), 1)

    def test_duplicate_delivery_is_noop(self):
        event = self._event(status="succeeded")
        self._post(event)
        history = self.order.status_history.count()
        resp = self._post(event)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "already_processed")
        self.assertEqual(self.order.status_history.count(), history)
        self.assertEqual(len(mail.outbox), 1)

    def test_payment_failed(self):
        resp = self._post(self._event(
            "payment_intent.payment_failed", status="requires_payment_method",
            last_payment_error={"message": "Your card was declined."},
        ))
        self.assertEqual(resp.status_code, 200)
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.assertEqual(self.payment.metadata["stripe_data"]["error"], "Your card was declined.")
        self.assertEqual(self.order.status, OrderStatus.PENDING)
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(len(mail.outbox), 0)

    def test_bad_signature_rejected(self):
        resp = self._post(self._event(status="succeeded"), signature=stripe_signature("{}", "whsec_wrong"))
        self.assertEqual(resp.status_code, 400)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)

    def test_missing_signature_rejected(self):
        resp = self._post(self._event(status="succeeded"), signature="")
        self.assertEqual(resp.status_code, 400)

    def test_unknown_intent_is_404(self):
        resp = self._post(self._event(intent_id="pi_unknown", status="succeeded"))
        self.assertEqual(resp.status_code, 404)

    def test_unhandled_event_ignored(self):
        resp = self._post(self._event("charge.refunded"))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ignored")
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)

    def test_get_not_allowed(self):
        self.assertEqual(self.client.get(reverse("payments:stripe_webhook")).status_code, 405)


@override_settings(ORDERS_EVENT_HANDLERS=[])
class PayPalWebhookTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)
        self.payment = Payment.objects.create(
            order=self.order, payer=self.user, provider=PaymentProvider.PAYPAL,
            provider_reference="PP-1", amount=self.order.total,
        )

    def _post(self, payload: dict):
        return self.client.post(
            reverse("payments:paypal_webhook"),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def _capture_event(self, status="COMPLETED", event_type="PAYMENT.CAPTURE.COMPLETED"):
        return {
            "id": "WH-EVT-1",
            "event_type": event_type,
            "resource": {
                "id": "CAP-1",
                "status": status,
                "amount": {"value": "113.00", "currency_code": "USD"},
                "supplementary_data": {"related_ids": {"order_id": "PP-1"}},
            },
        }

    @patch.object(PayPalClient, "verify_webhook_signature", return_value=None)
    def test_capture_completed(self, verify):
        resp = self._post(self._capture_event())
        self.assertEqual(resp.status_code, 200)
        verify.assert_called_once()
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.capture_reference, "CAP-1")
        self.assertEqual(self.payment.metadata["paypal_data"]["capture_id"], "CAP-1")
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self.order.transaction_id, "CAP-1")

    @patch.object(PayPalClient, "verify_webhook_signature", return_value=None)
    def test_capture_denied(self, verify):
        resp = self._post(self._capture_event("DECLINED", "PAYMENT.CAPTURE.DENIED"))
        self.assertEqual(resp.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertEqual(self.order.status, OrderStatus.PENDING)

    @patch.object(PayPalClient, "capture_order")
    @patch.object(PayPalClient, "verify_webhook_signature", return_value=None)
    def test_order_approved_is_captured(self, verify, capture):
        capture.return_value = {"id": "PP-1", "status": "COMPLETED", "purchase_units": [
            {"payments": {"captures": [{"id": "CAP-2", "status": "COMPLETED"}]}},
        ]}
        resp = self._post({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "PP-1", "status": "APPROVED"}})
        self.assertEqual(resp.status_code, 200)
        capture.assert_called_once_with("PP-1")
        self.order.refresh_from_db()
        self.assertEqual(self.order.transaction_id, "CAP-2")

    @patch.object(PayPalClient, "verify_webhook_signature", side_effect=PayPalSignatureError("FAILURE"))
    def test_failed_verification(self, verify):
        resp = self._post(self._capture_event())
        self.assertEqual(resp.status_code, 400)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.PENDING)

    @patch.object(PayPalClient, "verify_webhook_signature", side_effect=PayPalError("timeout"))
    def test_verification_unavailable_asks_for_retry(self, verify):
        resp = self._post(self._capture_event())
        self.assertEqual(resp.status_code, 503)

    @patch.object(PayPalClient, "verify_webhook_signature", return_value=None)
    def test_duplicate_capture(self, verify):
        self._post(self._capture_event())
        resp = self._post(self._capture_event())
        self.assertEqual(resp.json()["status"], "already_processed")
        self.assertEqual(self.order.status_history.filter(to_status=OrderStatus.PAID).count(), 1)
