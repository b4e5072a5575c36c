import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from orders.exceptions import PaymentNotAcceptable
from orders.models import Order
from orders.status import PaymentStatus

from .exceptions import PaymentAlreadyFinal
from .gateways import Outcome, get_gateway
from .models import Payment

logger = logging.getLogger(__name__)


def start_payment(order, provider, *, payer):
    """Open a provider session for ``order`` and record a PENDING payment.

    The order row is locked and re-read before ``can_accept_payment`` is
    checked. A still-open PENDING payment for the same provider and amount is
    handed back instead of opening a second provider session. The Payment row
    is written only after the provider confirmed the session, so a failed or
    timed-out provider call leaves nothing behind.
    """
    gateway = get_gateway(provider)
    currency = getattr(settings, "ORDERS_CURRENCY", "usd")

    with transaction.atomic():
        locked = Order.objects.select_for_update().get(pk=order.pk)
        if not locked.can_accept_payment():
            raise PaymentNotAcceptable(locked)

        open_payment = (
            Payment.objects.filter(
                order=locked, provider=gateway.provider, status=PaymentStatus.PENDING,
                amount=locked.total, currency=currency,
            )
            .exclude(provider_reference="")
            .order_by("-created_at")
            .first()
        )
        if open_payment is not None:
            session = gateway.resume_session(open_payment)
            if session.client_reference:
                logger.info(
                    "Reusing %s payment %s for order %s (ref=%s)",
                    gateway.provider, open_payment.pk, locked.order_number, open_payment.provider_reference,
                )
                return open_payment, session

        session = gateway.create_session(locked, currency)
        payment = Payment.objects.create(
            order=locked,
            payer=payer,
            provider=gateway.provider,
            provider_reference=session.provider_reference,
            amount=locked.total,
            currency=currency,
            status=PaymentStatus.PENDING,
            metadata={
                "order_number": locked.order_number,
                "created_at": timezone.now().isoformat(),
                **session.metadata,
            },
        )
    logger.info(
        "Started %s payment %s for order %s (ref=%s)",
        gateway.provider, payment.pk, locked.order_number, session.provider_reference,
    )
    return payment, session


def apply_outcome(payment, outcome, *, actor=None) -> bool:
    """Feed a provider outcome into the payment. Returns True when it changed state."""
    try:
        if outcome.kind is Outcome.SUCCEEDED:
            payment.mark_as_completed(
                outcome.provider_reference or payment.provider_reference,
                outcome.metadata,
                capture_reference=outcome.capture_reference,
                actor=actor,
            )
        elif outcome.kind is Outcome.FAILED:
            payment.mark_as_failed(outcome.metadata, actor=actor)
        else:
            return False
    except PaymentAlreadyFinal as e:
        payment.status = e.payment.status
        logger.info("Payment %s already final (%s); skipping %s", payment.pk, payment.status, outcome.kind.value)
        return False
    return True


def confirm_payment(payment, *, actor=None):
    """Client-driven confirmation: ask the provider and reconcile synchronously."""
    if payment.is_final():
        return payment
    gateway = get_gateway(payment.provider)
    apply_outcome(payment, gateway.confirm(payment), actor=actor)
    return payment


def find_payment(provider, outcome):
    qs = Payment.objects.filter(provider=provider).select_related("order")
    payment = None
    if outcome.provider_reference:
        payment = qs.filter(provider_reference=outcome.provider_reference).first()
    if payment is None and outcome.capture_reference:
        payment = qs.filter(capture_reference=outcome.capture_reference).first()
    return payment


def reconcile_webhook(provider, request):
    """Verify and apply a webhook delivery.

    Returns ``(result, payment)`` where result is ``ignored``, ``processed``,
    ``already_processed`` or ``pending``. Raises ``WebhookVerificationError``
    for bad signatures and ``Payment.DoesNotExist`` when no payment matches.
    Deliveries are at-least-once; a repeat for a final payment is a no-op.
    """
    gateway = get_gateway(provider)
    outcome = gateway.parse_webhook(request)
    if outcome.kind is Outcome.IGNORED:
        logger.info("Ignoring %s webhook %s", provider, outcome.event_type)
        return "ignored", None

    payment = find_payment(gateway.provider, outcome)
    if payment is None:
        logger.error("No %s payment for reference %s", provider, outcome.provider_reference or outcome.capture_reference)
        raise Payment.DoesNotExist(f"No payment for reference {outcome.provider_reference}")
    if payment.is_final():
        logger.info("Webhook %s for final payment %s; nothing to do", outcome.event_type, payment.pk)
        return "already_processed", payment

    if outcome.kind is Outcome.APPROVED:
        outcome = gateway.confirm(payment)
    if apply_outcome(payment, outcome):
        return "processed", payment
    return ("already_processed" if payment.is_final() else "pending"), payment


def pending_payments(*, limit=50, older_than_minutes=5):
    cutoff = timezone.now() - timedelta(minutes=older_than_minutes)
    return (
        Payment.objects.filter(status=PaymentStatus.PENDING, updated_at__lt=cutoff)
        .exclude(provider_reference="")
        .select_related("order")
        .order_by("updated_at")[:limit]
    )


def reconcile_pending_payment(payment):
    """Poll the provider for a PENDING payment whose webhook never arrived."""
    gateway = get_gateway(payment.provider)
    outcome = gateway.poll(payment)
    if outcome.kind is Outcome.APPROVED:
        outcome = gateway.confirm(payment)
    return outcome, apply_outcome(payment, outcome)
