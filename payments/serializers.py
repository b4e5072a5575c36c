def payment_to_dict(payment) -> dict:
    return {
        "id": payment.pk,
        "order_id": payment.order_id,
        "provider": payment.provider,
        "provider_reference": payment.provider_reference,
        "capture_reference": payment.capture_reference,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
    }
