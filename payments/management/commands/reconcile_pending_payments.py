import time

from django.core.management.base import BaseCommand

from orders.exceptions import OrderError
from payments.exceptions import PaymentError
from payments.services import pending_payments, reconcile_pending_payment


class Command(BaseCommand):
    help = "Poll Stripe/PayPal for PENDING payments and reconcile them with their orders"

    def add_arguments(self, parser):
        parser.add_argument("--max", type=int, default=50)
        parser.add_argument("--sleep", type=float, default=0.5)
        parser.add_argument("--older-than-minutes", type=int, default=5)

    def handle(self, *args, **opts):
        qs = pending_payments(limit=opts["max"], older_than_minutes=opts["older_than_minutes"])
        if not qs:
            self.stdout.write(self.style.SUCCESS("No pending payments to reconcile."))
            return

        checked = updated = 0
        for payment in qs:
            checked += 1
            try:
                outcome, changed = reconcile_pending_payment(payment)
            except (PaymentError, OrderError) as e:
                self.stdout.write(self.style.WARNING(f"Payment {payment.pk}: {e}"))
            else:
                if changed:
                    updated += 1
                    self.stdout.write(self.style.SUCCESS(f"Payment {payment.pk} -> {payment.status}"))
                else:
                    self.stdout.write(f"Payment {payment.pk}: {outcome.kind.value}")
            if opts["sleep"]:
                time.sleep(opts["sleep"])

        self.stdout.write(self.style.SUCCESS(f"Checked {checked}, updated {updated} payments."))
