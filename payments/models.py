import logging

from django.conf import settings
from django.db import models, transaction
from django.utils import timezone

from orders.models import Order
from orders.status import FINAL_PAYMENT_STATUSES, PaymentProvider, PaymentStatus

from .exceptions import PaymentAlreadyFinal

logger = logging.getLogger(__name__)


class Payment(models.Model):
    """One attempt to pay an order through a provider.

    ``provider_reference`` holds the provider's primary id: the Stripe
    PaymentIntent id or the PayPal order id. PayPal capture ids go to
    ``capture_reference``.
    """

    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="payments")
    payer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="payments")
    provider = models.CharField(max_length=16, choices=PaymentProvider.choices)
    provider_reference = models.CharField(max_length=128, blank=True, default="", db_index=True)
    capture_reference = models.CharField(max_length=128, blank=True, default="", db_index=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=8, default="usd")
    status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING, db_index=True)
    metadata = models.JSONField(default=dict, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_reference"],
                condition=~models.Q(provider_reference=""),
                name="unique_provider_reference",
            ),
        ]

    def __str__(self):
        return f"{self.provider}:{self.provider_reference or self.pk} ({self.status})"

    def is_final(self) -> bool:
        return self.status in FINAL_PAYMENT_STATUSES

    def mark_as_completed(self, provider_reference, metadata=None, *, capture_reference="", actor=None, dispatcher=None):
        """Complete the payment and mark the owning order paid.

        Raises ``PaymentAlreadyFinal`` without touching anything when the
        payment was already completed, failed or refunded.
        """
        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=self.pk)
            if locked.is_final():
                raise PaymentAlreadyFinal(locked)
            locked.status = PaymentStatus.COMPLETED
            locked.provider_reference = provider_reference or locked.provider_reference
            if capture_reference:
                locked.capture_reference = capture_reference
            locked.completed_at = timezone.now()
            locked.metadata = {**(locked.metadata or {}), **(metadata or {})}
            locked.save()
            locked.order.mark_as_paid(
                capture_reference or locked.provider_reference, actor=actor, dispatcher=dispatcher,
            )
        self._sync_from(locked)
        logger.info("Payment %s completed for order %s", self.pk, self.order.order_number)

    def mark_as_failed(self, metadata=None, *, actor=None):
        with transaction.atomic():
            locked = Payment.objects.select_for_update().get(pk=self.pk)
            if locked.is_final():
                raise PaymentAlreadyFinal(locked)
            locked.status = PaymentStatus.FAILED
            locked.metadata = {**(locked.metadata or {}), **(metadata or {})}
            locked.save(update_fields=["status", "metadata", "updated_at"])
            locked.order.mark_as_failed(actor=actor)
        self._sync_from(locked)
        logger.info("Payment %s failed for order %s", self.pk, self.order.order_number)

    def _sync_from(self, other):
        for name in ("status", "provider_reference", "capture_reference", "metadata", "completed_at", "updated_at"):
            setattr(self, name, getattr(other, name))
        self.order = other.order
