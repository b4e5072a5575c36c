import logging
from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import DatabaseError, models, transaction
from django.utils import timezone

from .events import default_dispatcher, OrderStatusChanged
from .exceptions import InvalidTransition, PersistenceFailure
from .status import CANCELLABLE_STATUSES, OrderStatus, PaymentStatus, allowed_transitions, can_transition

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def actor_name(actor):
    if actor is None:
        return None
    return actor.get_full_name() or actor.get_username()


@contextmanager
def _order_transaction(order):
    """Atomic block for a status change; storage errors roll back everything."""
    try:
        with transaction.atomic():
            yield
    except DatabaseError as e:
        logger.exception("Status change for order=%s rolled back", order.order_number)
        raise PersistenceFailure(f"Could not persist status change for order {order.order_number}") from e


class Order(models.Model):
    """Order aggregate.

    ``status`` and ``payment_status`` are only changed through
    :meth:`transition_to`, :meth:`mark_as_paid` and :meth:`mark_as_failed`, so
    every change is locked, recorded in the history ledger and announced with an
    ``OrderStatusChanged`` event.
    """

    customer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="orders")
    order_number = models.CharField(max_length=20, unique=True, db_index=True)

    status = models.CharField(max_length=16, choices=OrderStatus.choices, default=OrderStatus.PENDING, db_index=True)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)

    shipping_name = models.CharField(max_length=255, blank=True, default="")
    shipping_address = models.CharField(max_length=255, blank=True, default="")
    shipping_city = models.CharField(max_length=255, blank=True, default="")
    shipping_state = models.CharField(max_length=255, blank=True, default="")
    shipping_zipcode = models.CharField(max_length=20, blank=True, default="")
    shipping_country = models.CharField(max_length=255, blank=True, default="")
    shipping_phone = models.CharField(max_length=20, blank=True, default="")

    subtotal = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    tax = models.DecimalField(max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0, validators=[MinValueValidator(0)])
    total = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])

    payment_method = models.CharField(max_length=32, blank=True, default="")
    transaction_id = models.CharField(max_length=128, blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)

    def __str__(self):
        return f"{self.order_number} ({self.status})"

    def clean(self):
        if None in (self.subtotal, self.tax, self.shipping_cost, self.total):
            return
        expected = money(self.subtotal) + money(self.tax) + money(self.shipping_cost)
        if money(self.total) != expected:
            raise ValidationError({"total": f"Total must equal subtotal + tax + shipping ({expected})."})

    # --- queries ---

    def allowed_transitions(self):
        return allowed_transitions(self.status)

    def can_transition_to(self, status) -> bool:
        return can_transition(self.status, status)

    def can_be_cancelled(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def can_accept_payment(self) -> bool:
        return self.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED)

    def latest_status_change(self):
        return self.status_history.order_by("-created_at", "-id").first()

    def recalculate_totals(self, save=True):
        self.subtotal = money(sum((item.subtotal for item in self.items.all()), Decimal("0")))
        self.total = money(self.subtotal) + money(self.tax) + money(self.shipping_cost)
        if save:
            self.save(update_fields=["subtotal", "total", "updated_at"])
        return self.total

    # --- status changes ---

    def transition_to(self, new_status, *, actor=None, note="", dispatcher=None, allowed_from=None):
        """Move the order to ``new_status`` following the transition table.

        Returns the emitted ``OrderStatusChanged`` event, or ``None`` when the
        order is already in ``new_status`` (no history row, no event).
        Raises ``InvalidTransition`` when the table does not allow the move,
        or when ``allowed_from`` is given and the locked status is not in it.
        """
        new_status = OrderStatus(new_status)
        dispatcher = dispatcher or default_dispatcher()
        event = None
        with _order_transaction(self):
            locked = Order.objects.select_for_update().get(pk=self.pk)
            current = OrderStatus(locked.status)
            if current != new_status:
                blocked = allowed_from is not None and current not in allowed_from
                if blocked or not can_transition(current, new_status):
                    raise InvalidTransition(current, new_status)
                event = locked._record_status(current, new_status, actor=actor, note=note)
                dispatcher.dispatch_on_commit(event)
        self._sync_from(locked)
        if event is None:
            logger.info("Order %s already %s; nothing to do", self.order_number, new_status)
        return event

    def mark_as_paid(self, transaction_id, *, actor=None, note=None, dispatcher=None):
        """Record a confirmed payment.

        Sets status PAID without consulting the transition table; only trusted
        payment confirmation flows call this. A second call once the payment
        status is COMPLETED changes nothing.
        """
        dispatcher = dispatcher or default_dispatcher()
        event = None
        with _order_transaction(self):
            locked = Order.objects.select_for_update().get(pk=self.pk)
            if locked.payment_status == PaymentStatus.COMPLETED:
                logger.info(
                    "Order %s already paid (txn=%s); ignoring txn=%s",
                    locked.order_number, locked.transaction_id, transaction_id,
                )
            else:
                previous = OrderStatus(locked.status)
                locked.payment_status = PaymentStatus.COMPLETED
                locked.transaction_id = transaction_id or ""
                locked.paid_at = timezone.now()
                payment_fields = ["payment_status", "transaction_id", "paid_at"]
                if previous == OrderStatus.PAID:
                    locked.save(update_fields=payment_fields + ["updated_at"])
                else:
                    if previous != OrderStatus.PENDING:
                        logger.warning("Order %s paid while %s", locked.order_number, previous)
                    event = locked._record_status(
                        previous, OrderStatus.PAID, actor=actor,
                        note=note or f"Payment confirmed ({transaction_id})",
                        extra_fields=payment_fields,
                    )
                    dispatcher.dispatch_on_commit(event)
        self._sync_from(locked)
        return event

    def mark_as_failed(self, *, actor=None, note=None):
        """Flag the payment as failed; the order keeps its status so the customer can retry."""
        with _order_transaction(self):
            locked = Order.objects.select_for_update().get(pk=self.pk)
            if locked.payment_status == PaymentStatus.COMPLETED:
                logger.warning("Order %s is already paid; ignoring payment failure", locked.order_number)
            else:
                locked.payment_status = PaymentStatus.FAILED
                locked.save(update_fields=["payment_status", "updated_at"])
                locked.status_history.create(
                    from_status=locked.status,
                    to_status=locked.status,
                    changed_by=actor,
                    note=note or "Payment failed",
                )
        self._sync_from(locked)

    # Alias used by the payment reconciliation code
    mark_payment_failed = mark_as_failed

    def _record_status(self, previous, new_status, *, actor, note, extra_fields=()):
        self.status = new_status
        self.save(update_fields=["status", *extra_fields, "updated_at"])
        self.status_history.create(
            from_status=previous,
            to_status=new_status,
            changed_by=actor,
            note=note or "",
        )
        return OrderStatusChanged.from_order(self, previous, changed_by=actor_name(actor))

    def _sync_from(self, other):
        for name in ("status", "payment_status", "transaction_id", "paid_at", "updated_at"):
            setattr(self, name, getattr(other, name))


class OrderItem(models.Model):
    """Line snapshot taken at checkout; later product changes do not touch it."""

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    product_id = models.PositiveIntegerField()
    product_name = models.CharField(max_length=255)
    product_sku = models.CharField(max_length=64, blank=True, default="")
    price = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    quantity = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])

    def __str__(self):
        return f"{self.quantity} x {self.product_name}"


class OrderStatusHistory(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="status_history")
    from_status = models.CharField(max_length=16, choices=OrderStatus.choices, null=True, blank=True)
    to_status = models.CharField(max_length=16, choices=OrderStatus.choices)
    changed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name="+"
    )
    note = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        verbose_name_plural = "Order status history"

    def __str__(self):
        return f"{self.order_id}: {self.from_status or '-'} -> {self.to_status}"

    def save(self, *args, **kwargs):
        # Ledger rows are written once
        if not self._state.adding:
            raise ValueError("Order status history entries cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Order status history entries cannot be deleted.")
