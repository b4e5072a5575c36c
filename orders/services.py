import logging
from decimal import Decimal

from django.conf import settings
from django.db import transaction

from .models import Order, OrderItem, OrderStatusHistory, money
from .status import CANCELLABLE_STATUSES, OrderStatus, PaymentStatus
from .utils import generate_order_number

logger = logging.getLogger(__name__)

SHIPPING_FIELDS = (
    "shipping_name", "shipping_address", "shipping_city", "shipping_state",
    "shipping_zipcode", "shipping_country", "shipping_phone",
)


def _unique_order_number(max_attempts=5):
    number = generate_order_number()
    attempts = 0
    while Order.objects.filter(order_number=number).exists() and attempts < max_attempts:
        number = generate_order_number()
        attempts += 1
    return number


@transaction.atomic
def place_order(customer, items, *, shipping=None, payment_method="", notes="", tax=None, shipping_cost=None) -> Order:
    """Create a PENDING order from line items.

    ``items`` are dicts with ``product_id``, ``name``, ``price``, ``quantity``
    and an optional ``sku``; their values are copied onto the order lines.
    Tax defaults to ``ORDERS_TAX_RATE`` of the subtotal and shipping to the
    flat ``ORDERS_FLAT_SHIPPING`` rate.
    """
    if not items:
        raise ValueError("Cannot place an order without items")

    lines = []
    subtotal = Decimal("0")
    for item in items:
        quantity = int(item["quantity"])
        if quantity < 1:
            raise ValueError(f"Invalid quantity for product {item['product_id']}")
        price = money(item["price"])
        line_total = money(price * quantity)
        subtotal += line_total
        lines.append(OrderItem(
            product_id=item["product_id"],
            product_name=item["name"],
            product_sku=item.get("sku", "") or "",
            price=price,
            quantity=quantity,
            subtotal=line_total,
        ))

    subtotal = money(subtotal)
    if tax is None:
        tax = subtotal * getattr(settings, "ORDERS_TAX_RATE", Decimal("0.08"))
    if shipping_cost is None:
        shipping_cost = getattr(settings, "ORDERS_FLAT_SHIPPING", Decimal("5.00"))
    tax, shipping_cost = money(tax), money(shipping_cost)

    shipping = {k: (v or "") for k, v in (shipping or {}).items() if k in SHIPPING_FIELDS}
    order = Order(
        customer=customer,
        order_number=_unique_order_number(),
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        subtotal=subtotal,
        tax=tax,
        shipping_cost=shipping_cost,
        total=money(subtotal + tax + shipping_cost),
        payment_method=payment_method or "",
        notes=notes or "",
        **shipping,
    )
    order.full_clean()
    order.save()
    for line in lines:
        line.order = order
    OrderItem.objects.bulk_create(lines)
    OrderStatusHistory.objects.create(
        order=order, from_status=None, to_status=OrderStatus.PENDING, changed_by=customer, note="Order placed",
    )
    logger.info("Placed order %s total=%s items=%d", order.order_number, order.total, len(lines))
    return order


def update_order_status(order, status, *, actor=None, note="", dispatcher=None):
    return order.transition_to(status, actor=actor, note=note, dispatcher=dispatcher)


def cancel_order(order, *, actor=None, note, dispatcher=None):
    if not (note or "").strip():
        raise ValueError("A cancellation note is required")
    return order.transition_to(
        OrderStatus.CANCELLED, actor=actor, note=f"Cancelled: {note.strip()}", dispatcher=dispatcher,
        allowed_from=CANCELLABLE_STATUSES,
    )
