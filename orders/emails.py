import logging

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template import engines
from django.template.loader import render_to_string

from .status import OrderStatus

logger = logging.getLogger(__name__)

# PENDING and PROCESSING produce no customer email
STATUS_TEMPLATES = {
    OrderStatus.PAID: ("order_confirmation", "Order confirmed: {number}"),
    OrderStatus.SHIPPED: ("order_shipped", "Your order {number} has shipped"),
    OrderStatus.DELIVERED: ("order_delivered", "Your order {number} was delivered"),
    OrderStatus.CANCELLED: ("order_cancelled", "Your order {number} was cancelled"),
}


def _fail_silently() -> bool:
    return getattr(settings, "EMAIL_FAIL_SILENTLY", True)


def _template_exists(path: str) -> bool:
    try:
        engines["django"].get_template(path)
        return True
    except Exception:
        return False


def send_order_status_email(event) -> bool:
    """Email the customer about a status change. Returns True when a message went out."""
    entry = STATUS_TEMPLATES.get(event.status)
    if entry is None or not event.customer_email:
        return False
    name, subject = entry
    ctx = {"event": event, "order_number": event.order_number, "total": event.total, "status": event.status.label}
    text = render_to_string(f"emails/{name}.txt", ctx)
    from_email = getattr(settings, "DEFAULT_FROM_EMAIL", None) or getattr(settings, "EMAIL_HOST_USER", None)
    msg = EmailMultiAlternatives(subject.format(number=event.order_number), text, from_email, [event.customer_email])
    if _template_exists(f"emails/{name}.html"):
        try:
            msg.attach_alternative(render_to_string(f"emails/{name}.html", ctx), "text/html")
        except Exception:
            logger.exception("Failed to render HTML %s template; sending text-only", name)
    msg.send(fail_silently=_fail_silently())
    logger.info("Sent %s email for order %s", name, event.order_number)
    return True
