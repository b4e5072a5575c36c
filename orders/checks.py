from django.core.checks import Error, register

from .status import OrderStatus, TRANSITIONS


@register()
def check_transition_table(app_configs, **kwargs):
    errors = []
    missing = [s for s in OrderStatus if s not in TRANSITIONS]
    if missing:
        errors.append(Error(
            "Order statuses without a transition row: %s" % ", ".join(missing),
            hint="Add the status to orders.status.TRANSITIONS.",
            id="orders.E001",
        ))
    for source, targets in TRANSITIONS.items():
        if source in targets:
            errors.append(Error(
                f"Status {source} lists itself as a transition target.",
                id="orders.E002",
            ))
    return errors
