from django.core.checks import Error, register

from orders.status import PaymentProvider

from .gateways import GATEWAYS


@register()
def check_payment_gateways(app_configs, **kwargs):
    missing = [p for p in PaymentProvider if p not in GATEWAYS]
    if missing:
        return [Error(
            "Payment providers without a gateway: %s" % ", ".join(missing),
            hint="Register an adapter in payments.gateways.GATEWAYS.",
            id="payments.E001",
        )]
    return []
