"""Domain event emitted after every committed order status change.

The aggregate never sends email or pushes socket messages itself. It builds an
``OrderStatusChanged`` value and hands it to a dispatcher once the database
transaction commits; the dispatcher fans it out to the configured handlers.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional

from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from .status import OrderStatus

logger = logging.getLogger(__name__)

BROADCAST_EVENT_NAME = "order.status.updated"
ADMIN_CHANNEL = "admin.orders"


@dataclass(frozen=True)
class ItemSummary:
    product_name: str
    quantity: int


@dataclass(frozen=True)
class OrderStatusChanged:
    order_id: int
    order_number: str
    customer_id: int
    customer_email: str
    status: OrderStatus
    previous_status: Optional[OrderStatus]
    changed_by: Optional[str]
    total: Decimal
    occurred_at: datetime
    items_count: int = 0
    items_summary: tuple[ItemSummary, ...] = field(default_factory=tuple)

    @classmethod
    def from_order(cls, order, previous_status, changed_by=None) -> "OrderStatusChanged":
        items = list(order.items.all())
        return cls(
            order_id=order.pk,
            order_number=order.order_number,
            customer_id=order.customer_id,
            customer_email=getattr(order.customer, "email", "") or "",
            status=OrderStatus(order.status),
            previous_status=OrderStatus(previous_status) if previous_status else None,
            changed_by=changed_by,
            total=order.total,
            occurred_at=order.updated_at,
            items_count=len(items),
            items_summary=tuple(
                ItemSummary(product_name=i.product_name, quantity=i.quantity) for i in items[:3]
            ),
        )

    def broadcast_channels(self) -> list[str]:
        # Each customer listens to their own orders; staff listen to all
        return [f"user.{self.customer_id}.orders", ADMIN_CHANNEL]

    def broadcast_payload(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "current_status": self.status.value,
            "current_status_label": self.status.label,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "changed_by": self.changed_by,
            "total": str(self.total),
            "updated_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "items_count": self.items_count,
            "items_summary": [
                {"product_name": s.product_name, "quantity": s.quantity} for s in self.items_summary
            ],
        }


Handler = Callable[[OrderStatusChanged], None]


class EventDispatcher:
    """Calls each handler with the event; a failing handler never stops the rest."""

    def __init__(self, handlers: Iterable[Handler] = ()):
        self.handlers = list(handlers)

    def dispatch(self, event: OrderStatusChanged) -> None:
        for handler in self.handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Order event handler %r failed for order=%s status=%s",
                    handler, event.order_number, event.status,
                )

    def dispatch_on_commit(self, event: OrderStatusChanged) -> None:
        transaction.on_commit(lambda: self.dispatch(event))


def default_dispatcher() -> EventDispatcher:
    handlers = [import_string(path) for path in getattr(settings, "ORDERS_EVENT_HANDLERS", [])]
    return EventDispatcher(handlers)
