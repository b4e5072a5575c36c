import secrets
import string

from django.utils import timezone

ALNUM = string.ascii_uppercase + string.digits


def generate_order_number(prefix="ORD"):
    # e.g., ORD-2025-AB12CD
    rand = "".join(secrets.choice(ALNUM) for _ in range(6))
    return f"{prefix}-{timezone.now().year}-{rand}"
