import json
from decimal import Decimal
from itertools import product
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core import mail
from django.core.checks import run_checks
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.urls import reverse

from .events import EventDispatcher, OrderStatusChanged, default_dispatcher
from .exceptions import InvalidTransition, PersistenceFailure
from .models import Order, OrderStatusHistory
from .services import cancel_order, place_order
from .status import (
    OrderStatus, PaymentStatus, TERMINAL_STATUSES, TRANSITIONS, allowed_transitions, can_transition,
)

User = get_user_model()

EXPECTED_TABLE = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

ITEMS = [{"product_id": 1, "name": "Gita", "sku": "BK-1", "price": "100.00", "quantity": 1}]


def make_order(customer, status=OrderStatus.PENDING, payment_status=PaymentStatus.PENDING):
    order = place_order(customer, ITEMS, shipping={"shipping_name": "Alice"})
    # Fixture setup only: jump straight to the wanted state
    Order.objects.filter(pk=order.pk).update(status=status, payment_status=payment_status)
    order.refresh_from_db()
    return order


class TransitionTableTests(TestCase):
    def test_table_matches_lifecycle(self):
        self.assertEqual({s: set(t) for s, t in TRANSITIONS.items()}, EXPECTED_TABLE)

    def test_every_status_has_a_row(self):
        for status in OrderStatus:
            allowed_transitions(status)

    def test_terminal_statuses(self):
        self.assertEqual(TERMINAL_STATUSES, {OrderStatus.DELIVERED, OrderStatus.CANCELLED})
        for target in OrderStatus:
            self.assertFalse(can_transition(OrderStatus.DELIVERED, target))
            self.assertFalse(can_transition(OrderStatus.CANCELLED, target))

    def test_no_self_transitions(self):
        for status in OrderStatus:
            self.assertFalse(can_transition(status, status))

    def test_accepts_raw_values(self):
        self.assertTrue(can_transition("pending", "paid"))
        self.assertFalse(can_transition("paid", "shipped"))

    def test_system_checks_pass(self):
        errors = [e for e in run_checks() if e.id and e.id.split(".")[0] in ("orders", "payments")]
        self.assertEqual(errors, [])

    def test_labels_and_values(self):
        self.assertEqual(OrderStatus.PAID.label, "Paid")
        self.assertEqual(
            OrderStatus.values, ["pending", "paid", "processing", "shipped", "delivered", "cancelled"],
        )


class PlaceOrderTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")

    def test_totals_and_initial_state(self):
        order = place_order(self.user, ITEMS)
        self.assertEqual(order.subtotal, Decimal("100.00"))
        self.assertEqual(order.tax, Decimal("8.00"))
        self.assertEqual(order.shipping_cost, Decimal("5.00"))
        self.assertEqual(order.total, Decimal("113.00"))
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING)

    def test_order_number_format(self):
        order = place_order(self.user, ITEMS)
        self.assertRegex(order.order_number, r"^ORD-\d{4}-[A-Z0-9]{6}$")

    def test_initial_history_row(self):
        order = place_order(self.user, ITEMS)
        entry = order.status_history.get()
        self.assertIsNone(entry.from_status)
        self.assertEqual(entry.to_status, OrderStatus.PENDING)

    def test_line_snapshots(self):
        order = place_order(self.user, [
            {"product_id": 7, "name": "Lamp", "price": "19.99", "quantity": 3},
            {"product_id": 8, "name": "Oil", "price": "2.50", "quantity": 2},
        ], tax=Decimal("0"), shipping_cost=Decimal("0"))
        lines = {i.product_id: i for i in order.items.all()}
        self.assertEqual(lines[7].subtotal, Decimal("59.97"))
        self.assertEqual(lines[8].subtotal, Decimal("5.00"))
        self.assertEqual(order.total, Decimal("64.97"))

    def test_total_invariant_within_cents(self):
        order = place_order(self.user, [{"product_id": 1, "name": "X", "price": "33.33", "quantity": 3}])
        self.assertEqual(order.total, order.subtotal + order.tax + order.shipping_cost)

    def test_empty_cart_rejected(self):
        with self.assertRaises(ValueError):
            place_order(self.user, [])
        self.assertFalse(Order.objects.exists())

    def test_recalculate_totals(self):
        order = place_order(self.user, ITEMS)
        item = order.items.get()
        type(item).objects.filter(pk=item.pk).update(subtotal=Decimal("50.00"))
        order.recalculate_totals()
        order.refresh_from_db()
        self.assertEqual(order.subtotal, Decimal("50.00"))
        self.assertEqual(order.total, Decimal("63.00"))


class TransitionToTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.admin = User.objects.create_user("admin", "admin@example.com", "pw", first_name="Ada", is_staff=True)
        self.events = []
        self.dispatcher = EventDispatcher([self.events.append])

    def test_every_valid_pair(self):
        for source, targets in EXPECTED_TABLE.items():
            for target in targets:
                with self.subTest(source=source, target=target):
                    self.events.clear()
                    order = make_order(self.user, source)
                    before = order.status_history.count()
                    with self.captureOnCommitCallbacks(execute=True):
                        event = order.transition_to(target, actor=self.admin, note="ok", dispatcher=self.dispatcher)
                    order.refresh_from_db()
                    self.assertEqual(order.status, target)
                    self.assertEqual(order.status_history.count(), before + 1)
                    entry = order.latest_status_change()
                    self.assertEqual((entry.from_status, entry.to_status), (source, target))
                    self.assertEqual(entry.changed_by, self.admin)
                    self.assertEqual(entry.note, "ok")
                    self.assertEqual(self.events, [event])
                    self.assertEqual(event.previous_status, source)
                    self.assertEqual(event.changed_by, "Ada")

    def test_every_invalid_pair(self):
        for source, target in product(OrderStatus, OrderStatus):
            if source == target or target in EXPECTED_TABLE[source]:
                continue
            with self.subTest(source=source, target=target):
                order = make_order(self.user, source)
                before = order.status_history.count()
                with self.captureOnCommitCallbacks(execute=True) as callbacks:
                    with self.assertRaises(InvalidTransition) as cm:
                        order.transition_to(target, dispatcher=self.dispatcher)
                order.refresh_from_db()
                self.assertEqual(order.status, source)
                self.assertEqual(order.payment_status, PaymentStatus.PENDING)
                self.assertEqual(order.status_history.count(), before)
                self.assertEqual(callbacks, [])
                self.assertIn(source.value, str(cm.exception))
                self.assertIn(target.value, str(cm.exception))

    def test_same_status_is_noop(self):
        for status in OrderStatus:
            with self.subTest(status=status):
                order = make_order(self.user, status)
                before = order.status_history.count()
                with self.captureOnCommitCallbacks(execute=True) as callbacks:
                    result = order.transition_to(status, dispatcher=self.dispatcher)
                self.assertIsNone(result)
                self.assertEqual(callbacks, [])
                self.assertEqual(order.status_history.count(), before)

    def test_paid_then_shipped_rejected(self):
        order = make_order(self.user)
        order.transition_to(OrderStatus.PAID, dispatcher=self.dispatcher)
        with self.assertRaises(InvalidTransition):
            order.transition_to(OrderStatus.SHIPPED, dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PAID)

    def test_stale_copy_does_not_duplicate_history(self):
        order = make_order(self.user, OrderStatus.PAID)
        stale = Order.objects.get(pk=order.pk)
        with self.captureOnCommitCallbacks(execute=True):
            first = order.transition_to(OrderStatus.PROCESSING, dispatcher=self.dispatcher)
            second = stale.transition_to(OrderStatus.PROCESSING, dispatcher=self.dispatcher)
        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(stale.status, OrderStatus.PROCESSING)
        self.assertEqual(order.status_history.filter(to_status=OrderStatus.PROCESSING).count(), 1)
        self.assertEqual(len(self.events), 1)

    def test_storage_failure_rolls_back(self):
        order = make_order(self.user)
        before = order.status_history.count()
        with patch.object(OrderStatusHistory, "save", side_effect=DatabaseError("disk full")):
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                with self.assertRaises(PersistenceFailure):
                    order.transition_to(OrderStatus.PAID, dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.status_history.count(), before)
        self.assertEqual(callbacks, [])
        self.assertEqual(self.events, [])

    def test_system_actor_allowed(self):
        order = make_order(self.user)
        event = order.transition_to(OrderStatus.CANCELLED, dispatcher=self.dispatcher)
        self.assertIsNone(event.changed_by)
        self.assertIsNone(order.latest_status_change().changed_by)


class PaymentEntryPointTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.events = []
        self.dispatcher = EventDispatcher([self.events.append])

    def test_mark_as_paid(self):
        order = make_order(self.user)
        with self.captureOnCommitCallbacks(execute=True):
            order.mark_as_paid("txn_123", dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PAID)
        self.assertEqual(order.payment_status, PaymentStatus.COMPLETED)
        self.assertEqual(order.transaction_id, "txn_123")
        self.assertIsNotNone(order.paid_at)
        entry = order.latest_status_change()
        self.assertEqual((entry.from_status, entry.to_status), (OrderStatus.PENDING, OrderStatus.PAID))
        self.assertEqual(len(self.events), 1)

    def test_mark_as_paid_twice(self):
        order = make_order(self.user)
        order.mark_as_paid("txn_1", dispatcher=self.dispatcher)
        paid_at = order.paid_at
        history = order.status_history.count()
        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            order.mark_as_paid("txn_2", dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.transaction_id, "txn_1")
        self.assertEqual(order.paid_at, paid_at)
        self.assertEqual(order.status_history.count(), history)
        self.assertEqual(callbacks, [])

    def test_mark_as_failed_keeps_status(self):
        order = make_order(self.user)
        order.mark_as_failed()
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.payment_status, PaymentStatus.FAILED)
        self.assertTrue(order.can_accept_payment())
        self.assertEqual(order.latest_status_change().note, "Payment failed")

    def test_failure_after_payment_ignored(self):
        order = make_order(self.user)
        order.mark_as_paid("txn_1", dispatcher=self.dispatcher)
        order.mark_payment_failed()
        order.refresh_from_db()
        self.assertEqual(order.payment_status, PaymentStatus.COMPLETED)

    def test_can_accept_payment(self):
        expected = {
            PaymentStatus.PENDING: True,
            PaymentStatus.FAILED: True,
            PaymentStatus.COMPLETED: False,
            PaymentStatus.REFUNDED: False,
        }
        for payment_status, accepted in expected.items():
            with self.subTest(payment_status=payment_status):
                order = make_order(self.user, payment_status=payment_status)
                self.assertIs(order.can_accept_payment(), accepted)


class CancelOrderTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")
        self.dispatcher = EventDispatcher()

    def test_cancel_paid_order(self):
        order = make_order(self.user, OrderStatus.PAID)
        cancel_order(order, actor=self.user, note="customer asked", dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.CANCELLED)
        self.assertEqual(order.latest_status_change().note, "Cancelled: customer asked")

    def test_cancel_requires_note(self):
        order = make_order(self.user)
        with self.assertRaises(ValueError):
            cancel_order(order, note="  ", dispatcher=self.dispatcher)

    def test_processing_order_cannot_be_cancelled_here(self):
        order = make_order(self.user, OrderStatus.PROCESSING)
        self.assertFalse(order.can_be_cancelled())
        with self.assertRaises(InvalidTransition):
            cancel_order(order, note="late", dispatcher=self.dispatcher)

    def test_cancel_checks_current_status_not_stale_copy(self):
        order = make_order(self.user, OrderStatus.PAID)
        stale = Order.objects.get(pk=order.pk)
        order.transition_to(OrderStatus.PROCESSING, dispatcher=self.dispatcher)
        self.assertTrue(stale.can_be_cancelled())
        with self.assertRaises(InvalidTransition):
            cancel_order(stale, note="changed my mind", dispatcher=self.dispatcher)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PROCESSING)
        self.assertFalse(order.status_history.filter(to_status=OrderStatus.CANCELLED).exists())


class EventTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user("alice", "alice@example.com", "pw")

    def test_broadcast_payload(self):
        order = make_order(self.user)
        event = order.transition_to(OrderStatus.PAID, dispatcher=EventDispatcher())
        self.assertIsInstance(event, OrderStatusChanged)
        self.assertEqual(event.broadcast_channels(), [f"user.{self.user.pk}.orders", "admin.orders"])
        payload = event.broadcast_payload()
        self.assertEqual(payload["current_status"], "paid")
        self.assertEqual(payload["current_status_label"], "Paid")
        self.assertEqual(payload["previous_status"], "pending")
        self.assertEqual(payload["items_count"], 1)
        self.assertEqual(payload["items_summary"], [{"product_name": "Gita", "quantity": 1}])
        json.dumps(payload)

    def test_failing_handler_does_not_stop_others(self):
        seen = []

        def boom(event):
            raise RuntimeError("smtp down")

        order = make_order(self.user)
        dispatcher = EventDispatcher([boom, seen.append])
        with self.assertLogs("orders.events", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                order.transition_to(OrderStatus.PAID, dispatcher=dispatcher)
        self.assertEqual(len(seen), 1)

    @override_settings(ORDERS_EVENT_HANDLERS=["orders.emails.send_order_status_email"])
    def test_default_dispatcher_sends_status_emails(self):
        order = make_order(self.user)
        self.assertEqual(len(default_dispatcher().handlers), 1)
        with self.captureOnCommitCallbacks(execute=True):
            order.transition_to(OrderStatus.PAID)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn(order.order_number, mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, ["alice@example.com"])

        with self.captureOnCommitCallbacks(execute=True):
            order.transition_to(OrderStatus.PROCESSING)
        self.assertEqual(len(mail.outbox), 1)


@override_settings(ORDERS_EVENT_HANDLERS=[])
class OrderManagementViewTests(TestCase):
    def setUp(self):
        self.customer = User.objects.create_user("alice", "alice@example.com", "pw")
        self.staff = User.objects.create_user("admin", "admin@example.com", "pw", is_staff=True)
        self.order = make_order(self.customer)

    def _post(self, name, payload):
        return self.client.post(
            reverse(name, kwargs={"pk": self.order.pk}),
            data=json.dumps(payload),
            content_type="application/json",
        )

    def test_staff_updates_status(self):
        self.client.force_login(self.staff)
        resp = self._post("orders:manage_update_status", {"status": "paid", "note": "paid at counter"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["status"], "paid")
        self.assertEqual(resp.json()["message"], "Order status updated to Paid")
        entry = self.order.latest_status_change()
        self.assertEqual(entry.changed_by, self.staff)

    def test_invalid_transition_is_400(self):
        self.client.force_login(self.staff)
        resp = self._post("orders:manage_update_status", {"status": "shipped"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("pending", resp.json()["message"])
        self.assertIn("shipped", resp.json()["message"])

    def test_unknown_status_is_400(self):
        self.client.force_login(self.staff)
        resp = self._post("orders:manage_update_status", {"status": "lost"})
        self.assertEqual(resp.status_code, 400)
        self.assertIn("processing", resp.json()["message"])

    def test_customer_cannot_manage(self):
        self.client.force_login(self.customer)
        resp = self._post("orders:manage_update_status", {"status": "paid"})
        self.assertEqual(resp.status_code, 403)

    def test_cancel_needs_note(self):
        self.client.force_login(self.staff)
        self.assertEqual(self._post("orders:manage_cancel", {}).status_code, 400)
        resp = self._post("orders:manage_cancel", {"note": "out of stock"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["order"]["status"], "cancelled")

    def test_detail_lists_transitions(self):
        self.client.force_login(self.staff)
        resp = self.client.get(reverse("orders:manage_detail", kwargs={"pk": self.order.pk}))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["available_transitions"], ["cancelled", "paid"])
        self.assertEqual(len(resp.json()["order"]["status_history"]), 1)

    def test_list_filters_by_status(self):
        make_order(self.customer, OrderStatus.SHIPPED)
        self.client.force_login(self.staff)
        resp = self.client.get(reverse("orders:manage_list"), {"status": "shipped"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([o["status"] for o in resp.json()["orders"]], ["shipped"])
        self.assertIn("delivered", resp.json()["available_statuses"])

    def test_customer_sees_own_orders(self):
        other = User.objects.create_user("bob", "bob@example.com", "pw")
        make_order(other)
        self.client.force_login(self.customer)
        resp = self.client.get(reverse("orders:my_orders"))
        self.assertEqual([o["id"] for o in resp.json()["orders"]], [self.order.pk])
        resp = self.client.get(reverse("orders:my_order_detail", kwargs={"pk": self.order.pk + 1}))
        self.assertEqual(resp.status_code, 404)
