def item_to_dict(item) -> dict:
    return {
        "product_id": item.product_id,
        "product_name": item.product_name,
        "product_sku": item.product_sku,
        "price": str(item.price),
        "quantity": item.quantity,
        "subtotal": str(item.subtotal),
    }


def history_to_dict(entry) -> dict:
    changed_by = entry.changed_by
    return {
        "from_status": entry.from_status,
        "to_status": entry.to_status,
        "changed_by": (changed_by.get_full_name() or changed_by.get_username()) if changed_by else None,
        "note": entry.note,
        "created_at": entry.created_at.isoformat(),
    }


def order_to_dict(order, *, with_history=False) -> dict:
    data = {
        "id": order.pk,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "subtotal": str(order.subtotal),
        "tax": str(order.tax),
        "shipping_cost": str(order.shipping_cost),
        "total": str(order.total),
        "payment_method": order.payment_method,
        "transaction_id": order.transaction_id,
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "created_at": order.created_at.isoformat(),
        "updated_at": order.updated_at.isoformat(),
        "items": [item_to_dict(i) for i in order.items.all()],
    }
    if with_history:
        data["status_history"] = [history_to_dict(h) for h in order.status_history.select_related("changed_by")]
    return data
