import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from requests import ConnectionError as RequestsConnectionError

from orders.exceptions import PaymentNotAcceptable
from orders.models import Order
from orders.services import place_order
from orders.status import OrderStatus, PaymentProvider, PaymentStatus

from .exceptions import PaymentAlreadyFinal
from .gateways import Outcome, PayPalGateway, ProviderOutcome, StripeGateway
from .integrations import paypal, stripe
from .models import Payment
from .services import apply_outcome, start_payment

User = get_user_model()

ITEMS = [{"product_id": 1, "name": "Gita", "price": "100.00", "quantity": 1}]


class FakeResponse:
    def __init__(self, data=None, status_code=200):
        self._data = data if data is not None else {}
        self.status_code = status_code
        self.text = json.dumps(self._data)

    def json(self):
        return self._data


def make_payment(order, provider=PaymentProvider.STRIPE, reference="pi_123"):
    return Payment.objects.create(
        order=order, payer=order.customer, provider=provider,
        provider_reference=reference, amount=order.total, metadata={"order_number": order.order_number},
    )


@override_settings(ORDERS_EVENT_HANDLERS=[])
class PaymentModelTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)
        self.payment = make_payment(self.order)

    def test_completion_marks_order_paid(self):
        self.payment.mark_as_completed("txn_123", {})
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.provider_reference, "txn_123")
        self.assertIsNotNone(self.payment.completed_at)
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertEqual(self.order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.transaction_id, "txn_123")
        entry = self.order.latest_status_change()
        self.assertEqual((entry.from_status, entry.to_status), (OrderStatus.PENDING, OrderStatus.PAID))

    def test_metadata_merges_last_write_wins(self):
        self.payment.mark_as_completed("pi_123", {"order_number": "X", "stripe_data": {"status": "succeeded"}})
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.metadata, {"order_number": "X", "stripe_data": {"status": "succeeded"}})

    def test_final_payment_is_not_touched(self):
        self.payment.mark_as_completed("pi_123")
        completed_at = self.payment.completed_at
        history = self.order.status_history.count()

        with self.assertRaises(PaymentAlreadyFinal):
            self.payment.mark_as_completed("pi_other", {"late": True})
        with self.assertRaises(PaymentAlreadyFinal):
            self.payment.mark_as_failed({"late": True})

        self.payment.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.payment.provider_reference, "pi_123")
        self.assertEqual(self.payment.completed_at, completed_at)
        self.assertNotIn("late", self.payment.metadata)
        self.assertEqual(self.order.status_history.count(), history)

    def test_failure_leaves_order_payable(self):
        self.payment.mark_as_failed({"stripe_data": {"error": "card_declined"}})
        self.payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(self.payment.status, PaymentStatus.FAILED)
        self.assertEqual(self.order.status, OrderStatus.PENDING)
        self.assertEqual(self.order.payment_status, PaymentStatus.FAILED)
        self.assertTrue(self.order.can_accept_payment())

    def test_paypal_capture_id_becomes_transaction_id(self):
        payment = make_payment(self.order, PaymentProvider.PAYPAL, "PP-1")
        payment.mark_as_completed("PP-1", {}, capture_reference="CAP-9")
        self.order.refresh_from_db()
        self.assertEqual(payment.capture_reference, "CAP-9")
        self.assertEqual(self.order.transaction_id, "CAP-9")

    def test_apply_outcome_on_final_payment(self):
        stale = Payment.objects.get(pk=self.payment.pk)
        self.payment.mark_as_completed("pi_123")
        changed = apply_outcome(stale, ProviderOutcome(Outcome.FAILED, "pi_123"))
        self.assertFalse(changed)
        self.assertEqual(stale.status, PaymentStatus.COMPLETED)


class StripeHelperTests(TestCase):
    def _sign(self, payload, secret="whsec_test", ts=None):
        ts = ts or int(time.time())
        sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        return f"t={ts},v1={sig}"

    def test_minor_units(self):
        self.assertEqual(stripe.to_minor_units(Decimal("113.00"), "usd"), 11300)
        self.assertEqual(stripe.to_minor_units(Decimal("0.105"), "usd"), 11)
        self.assertEqual(stripe.to_minor_units(Decimal("500"), "JPY"), 500)
        self.assertEqual(stripe.from_minor_units(11300, "usd"), Decimal("113.00"))

    def test_construct_event_accepts_valid_signature(self):
        payload = b'{"type": "payment_intent.succeeded"}'
        event = stripe.construct_event(payload, self._sign(payload), "whsec_test")
        self.assertEqual(event["type"], "payment_intent.succeeded")

    def test_construct_event_rejects_wrong_secret(self):
        payload = b'{"type": "payment_intent.succeeded"}'
        with self.assertRaises(stripe.StripeSignatureError):
            stripe.construct_event(payload, self._sign(payload, secret="whsec_other"), "whsec_test")

    def test_construct_event_rejects_old_timestamp(self):
        payload = b"{}"
        header = self._sign(payload, ts=int(time.time()) - 3600)
        with self.assertRaises(stripe.StripeSignatureError):
            stripe.construct_event(payload, header, "whsec_test", tolerance=300)

    def test_construct_event_rejects_malformed_header(self):
        with self.assertRaises(stripe.StripeSignatureError):
            stripe.construct_event(b"{}", "garbage", "whsec_test")

    @patch("payments.integrations.stripe.requests.request")
    def test_create_payment_intent_form_fields(self, request):
        request.return_value = FakeResponse({"id": "pi_1", "client_secret": "pi_1_secret"})
        stripe.create_payment_intent(amount=Decimal("113.00"), currency="USD", metadata={"order_id": 5})
        method, url = request.call_args.args
        self.assertEqual((method, url), ("POST", "https://api.stripe.com/v1/payment_intents"))
        data = request.call_args.kwargs["data"]
        self.assertEqual(data["amount"], 11300)
        self.assertEqual(data["currency"], "usd")
        self.assertEqual(data["metadata[order_id]"], "5")
        self.assertEqual(request.call_args.kwargs["headers"], {"Authorization": "Bearer sk_test_dummy"})

    @patch("payments.integrations.stripe.requests.request")
    def test_api_error_raises(self, request):
        request.return_value = FakeResponse({"error": {"message": "No such intent"}}, status_code=404)
        with self.assertRaisesMessage(stripe.StripeError, "No such intent"):
            stripe.retrieve_payment_intent("pi_missing")


class PayPalHelperTests(TestCase):
    def test_approval_url(self):
        order = {"links": [{"rel": "self", "href": "a"}, {"rel": "approve", "href": "https://paypal/approve"}]}
        self.assertEqual(paypal.approval_url(order), "https://paypal/approve")
        self.assertEqual(paypal.approval_url({}), "")

    @patch("payments.integrations.paypal.requests.request")
    def test_token_is_cached(self, request):
        request.side_effect = [
            FakeResponse({"access_token": "tok"}),
            FakeResponse({"id": "PP-1", "status": "APPROVED"}),
            FakeResponse({"id": "PP-1", "status": "APPROVED"}),
        ]
        client = paypal.PayPalClient()
        client.get_order_details("PP-1")
        client.get_order_details("PP-1")
        self.assertEqual(request.call_count, 3)
        self.assertEqual(request.call_args.kwargs["headers"]["Authorization"], "Bearer tok")

    def test_verify_requires_headers(self):
        with self.assertRaises(paypal.PayPalSignatureError):
            paypal.PayPalClient().verify_webhook_signature({}, {"id": "WH-1"})

    @patch("payments.integrations.paypal.requests.request")
    def test_verify_failure_status(self, request):
        request.side_effect = [
            FakeResponse({"access_token": "tok"}),
            FakeResponse({"verification_status": "FAILURE"}),
        ]
        headers = {header: "x" for header in paypal.SIGNATURE_HEADERS.values()}
        with self.assertRaises(paypal.PayPalSignatureError):
            paypal.PayPalClient().verify_webhook_signature(headers, {"id": "WH-1"})
        payload = request.call_args.kwargs["json"]
        self.assertEqual(payload["webhook_id"], "WH-TEST")
        self.assertEqual(payload["transmission_sig"], "x")


@override_settings(ORDERS_EVENT_HANDLERS=[])
class GatewayTests(TestCase):
    def test_stripe_intent_outcomes(self):
        gateway = StripeGateway()
        self.assertIs(gateway.outcome_for_intent({"id": "pi", "status": "succeeded"}).kind, Outcome.SUCCEEDED)
        self.assertIs(gateway.outcome_for_intent({"id": "pi", "status": "processing"}).kind, Outcome.PENDING)
        self.assertIs(gateway.outcome_for_intent({"id": "pi", "status": "canceled"}).kind, Outcome.FAILED)
        failed = gateway.outcome_for_intent({
            "id": "pi", "status": "requires_payment_method", "last_payment_error": {"message": "declined"},
        })
        self.assertIs(failed.kind, Outcome.FAILED)
        self.assertEqual(failed.metadata["stripe_data"]["error"], "declined")

    def test_paypal_order_outcomes(self):
        gateway = PayPalGateway(client=object())
        captured = {"id": "PP-1", "status": "COMPLETED", "purchase_units": [
            {"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED",
                                        "amount": {"value": "113.00", "currency_code": "USD"}}]}},
        ]}
        outcome = gateway.outcome_for_order(captured)
        self.assertIs(outcome.kind, Outcome.SUCCEEDED)
        self.assertEqual((outcome.provider_reference, outcome.capture_reference), ("PP-1", "CAP-1"))
        self.assertIs(gateway.outcome_for_order({"id": "PP-1", "status": "CREATED"}).kind, Outcome.PENDING)
        self.assertIs(gateway.outcome_for_order({"id": "PP-1", "status": "VOIDED"}).kind, Outcome.FAILED)


@override_settings(ORDERS_EVENT_HANDLERS=[])
class StartPaymentTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)

    @patch("payments.integrations.stripe.requests.request")
    def test_stripe_session(self, request):
        request.return_value = FakeResponse({"id": "pi_123", "client_secret": "pi_123_secret", "status": "requires_payment_method"})
        payment, session = start_payment(self.order, "stripe", payer=self.user)
        self.assertEqual(session.client_reference, "pi_123_secret")
        self.assertEqual(payment.provider_reference, "pi_123")
        self.assertEqual(payment.amount, Decimal("113.00"))
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertEqual(payment.metadata["order_number"], self.order.order_number)
        self.assertEqual(request.call_args.kwargs["data"]["amount"], 11300)

    @patch("payments.integrations.paypal.requests.request")
    def test_paypal_session(self, request):
        request.side_effect = [
            FakeResponse({"access_token": "tok"}),
            FakeResponse({"id": "PP-1", "status": "CREATED", "links": [
                {"rel": "approve", "href": "https://paypal.example/approve"},
            ]}, status_code=201),
        ]
        payment, session = start_payment(self.order, "paypal", payer=self.user)
        self.assertEqual(payment.provider, PaymentProvider.PAYPAL)
        self.assertEqual(payment.provider_reference, "PP-1")
        self.assertEqual(session.client_reference, "https://paypal.example/approve")
        body = request.call_args.kwargs["json"]
        self.assertEqual(body["purchase_units"][0]["amount"], {"currency_code": "USD", "value": "113.00"})

    def test_paid_order_rejected(self):
        self.order.mark_as_paid("txn_1")
        with self.assertRaises(PaymentNotAcceptable):
            start_payment(self.order, "stripe", payer=self.user)
        self.assertFalse(Payment.objects.exists())

    @patch("payments.integrations.stripe.requests.request")
    def test_order_paid_elsewhere_rejected(self, request):
        stale = Order.objects.get(pk=self.order.pk)
        self.order.mark_as_paid("txn_1")
        self.assertTrue(stale.can_accept_payment())
        with self.assertRaises(PaymentNotAcceptable):
            start_payment(stale, "stripe", payer=self.user)
        request.assert_not_called()
        self.assertFalse(Payment.objects.exists())

    @patch("payments.integrations.stripe.requests.request")
    def test_second_start_reuses_open_payment(self, request):
        request.return_value = FakeResponse({"id": "pi_123", "client_secret": "pi_123_secret"})
        first, _ = start_payment(self.order, "stripe", payer=self.user)
        again, session = start_payment(self.order, "stripe", payer=self.user)
        self.assertEqual(again.pk, first.pk)
        self.assertEqual(session.client_reference, "pi_123_secret")
        self.assertEqual(request.call_count, 1)
        self.assertEqual(Payment.objects.count(), 1)

    @patch("payments.integrations.stripe.requests.request")
    def test_new_session_after_failed_payment(self, request):
        request.side_effect = [
            FakeResponse({"id": "pi_1", "client_secret": "pi_1_secret"}),
            FakeResponse({"id": "pi_2", "client_secret": "pi_2_secret"}),
        ]
        first, _ = start_payment(self.order, "stripe", payer=self.user)
        first.mark_as_failed()
        second, session = start_payment(self.order, "stripe", payer=self.user)
        self.assertNotEqual(second.pk, first.pk)
        self.assertEqual(session.client_reference, "pi_2_secret")

    @patch("payments.integrations.stripe.requests.request", side_effect=RequestsConnectionError("down"))
    def test_provider_failure_leaves_no_payment(self, request):
        with self.assertRaises(stripe.StripeError):
            start_payment(self.order, "stripe", payer=self.user)
        self.assertFalse(Payment.objects.exists())


@override_settings(ORDERS_EVENT_HANDLERS=[])
class PaymentViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)
        self.client.force_login(self.user)

    def _create(self, provider, order=None):
        return self.client.post(
            reverse("payments:create_payment", kwargs={"order_id": (order or self.order).pk}),
            data=json.dumps({"provider": provider}),
            content_type="application/json",
        )

    @patch("payments.integrations.stripe.requests.request")
    def test_create_stripe_payment(self, request):
        request.return_value = FakeResponse({"id": "pi_123", "client_secret": "pi_123_secret"})
        resp = self._create("stripe")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["client_secret"], "pi_123_secret")
        self.assertEqual(resp.json()["publishable_key"], "pk_test_dummy")

    def test_unknown_provider(self):
        resp = self._create("bitcoin")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "provider must be one of: stripe, paypal")

    def test_other_customers_order(self):
        bob = User.objects.create_user("bob", "bob@example.com", "pw")
        other = place_order(bob, ITEMS)
        self.assertEqual(self._create("stripe", other).status_code, 403)

    def test_paid_order(self):
        self.order.mark_as_paid("txn_1")
        resp = self._create("stripe")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "This order cannot be paid.")

    @patch("payments.integrations.stripe.requests.request", side_effect=RequestsConnectionError("down"))
    def test_provider_down(self, request):
        self.assertEqual(self._create("stripe").status_code, 502)

    @patch("payments.integrations.stripe.requests.request")
    def test_confirm_succeeded_intent(self, request):
        payment = make_payment(self.order)
        request.return_value = FakeResponse({"id": "pi_123", "status": "succeeded", "amount": 11300, "currency": "usd"})
        resp = self.client.post(reverse("payments:confirm_payment", kwargs={"payment_id": payment.pk}))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["payment"]["status"], "completed")
        self.assertEqual(resp.json()["order_status"], "paid")
        payment.refresh_from_db()
        self.assertEqual(payment.metadata["stripe_data"]["amount"], "113.00")

    def test_confirm_someone_elses_payment(self):
        bob = User.objects.create_user("bob", "bob@example.com", "pw")
        other = place_order(bob, ITEMS)
        payment = make_payment(other)
        resp = self.client.post(reverse("payments:confirm_payment", kwargs={"payment_id": payment.pk}))
        self.assertEqual(resp.status_code, 403)


@override_settings(ORDERS_EVENT_HANDLERS=[])
class ReconcilePendingPaymentsCommandTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.order = place_order(self.user, ITEMS)

    def _age(self, payment, minutes=10):
        Payment.objects.filter(pk=payment.pk).update(updated_at=timezone.now() - timedelta(minutes=minutes))

    @patch("payments.integrations.stripe.requests.request")
    def test_completes_stale_stripe_payment(self, request):
        payment = make_payment(self.order)
        self._age(payment)
        request.return_value = FakeResponse({"id": "pi_123", "status": "succeeded", "amount": 11300, "currency": "usd"})
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)
        payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.status, OrderStatus.PAID)
        self.assertIn("updated 1", out.getvalue())

    @patch("payments.integrations.paypal.requests.request")
    def test_captures_approved_paypal_order(self, request):
        payment = make_payment(self.order, PaymentProvider.PAYPAL, "PP-1")
        self._age(payment)
        request.side_effect = [
            FakeResponse({"access_token": "tok"}),
            FakeResponse({"id": "PP-1", "status": "APPROVED"}),
            FakeResponse({"id": "PP-1", "status": "COMPLETED", "purchase_units": [
                {"payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}},
            ]}),
        ]
        call_command("reconcile_pending_payments", "--sleep", "0", stdout=StringIO())
        payment.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(self.order.transaction_id, "CAP-1")

    @patch("payments.integrations.stripe.requests.request")
    def test_fresh_payments_skipped(self, request):
        make_payment(self.order)
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)
        request.assert_not_called()
        self.assertIn("No pending payments", out.getvalue())

    @patch("payments.integrations.stripe.requests.request", side_effect=RequestsConnectionError("down"))
    def test_provider_failure_is_reported(self, request):
        payment = make_payment(self.order)
        self._age(payment)
        out = StringIO()
        call_command("reconcile_pending_payments", "--sleep", "0", stdout=out)
        payment.refresh_from_db()
        self.assertEqual(payment.status, PaymentStatus.PENDING)
        self.assertIn(f"Payment {payment.pk}:", out.getvalue())
