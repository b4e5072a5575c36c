"""Closed status enumerations and the order transition table."""

from django.db import models


class OrderStatus(models.TextChoices):
    PENDING = "pending", "Pending"           # created at checkout
    PAID = "paid", "Paid"                    # payment received
    PROCESSING = "processing", "Processing"  # being prepared
    SHIPPED = "shipped", "Shipped"           # handed to the carrier
    DELIVERED = "delivered", "Delivered"     # received by the customer
    CANCELLED = "cancelled", "Cancelled"


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    REFUNDED = "refunded", "Refunded"


class PaymentProvider(models.TextChoices):
    STRIPE = "stripe", "Stripe"
    PAYPAL = "paypal", "PayPal"


FINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
})

# Every OrderStatus must have a row here; orders.checks enforces it.
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# cancel_order accepts fewer statuses than the table allows
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PAID})


def allowed_transitions(status) -> frozenset[OrderStatus]:
    """Return the statuses an order in ``status`` may move to.

    Raises ``KeyError`` for a status missing from the table so an unmapped
    state is never silently treated as terminal.
    """
    return TRANSITIONS[OrderStatus(status)]


def can_transition(current, target) -> bool:
    return OrderStatus(target) in allowed_transitions(current)
